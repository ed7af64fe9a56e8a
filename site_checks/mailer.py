"""
Outbound email for alerts and periodic reports.

Delivery is best-effort: jobs call `deliver`, which runs the blocking SMTP
exchange in a worker thread and turns failures into a logged False.
"""

from __future__ import annotations

import asyncio
import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Protocol

from site_checks.config import SmtpConfig
from site_checks.reports import Notification


LOGGER = logging.getLogger("site-monitoring")


class MailDeliveryError(RuntimeError):
    pass


@dataclass(frozen=True)
class OutgoingEmail:
    to: tuple[str, ...]
    subject: str
    text: str
    html: str

    @classmethod
    def from_notification(cls, to: list[str] | tuple[str, ...], notification: Notification) -> "OutgoingEmail":
        return cls(to=tuple(to), subject=notification.subject, text=notification.text, html=notification.html)


class Mailer(Protocol):
    def send(self, email: OutgoingEmail) -> None: ...


def build_message(email: OutgoingEmail, *, from_address: str) -> EmailMessage:
    msg = EmailMessage()
    msg["From"] = from_address
    msg["To"] = ", ".join(email.to)
    msg["Subject"] = email.subject
    msg.set_content(email.text)
    if email.html:
        msg.add_alternative(email.html, subtype="html")
    return msg


class SmtpMailer:
    def __init__(self, config: SmtpConfig):
        self.config = config

    def send(self, email: OutgoingEmail) -> None:
        if not email.to:
            raise MailDeliveryError("No recipients")
        cfg = self.config
        try:
            msg = build_message(email, from_address=cfg.from_address)
        except ValueError as e:
            # Header values with CR/LF are rejected by the email package.
            raise MailDeliveryError(f"Invalid message: {e}") from e
        try:
            if cfg.secure:
                server: smtplib.SMTP = smtplib.SMTP_SSL(
                    cfg.host, cfg.port, timeout=cfg.timeout_seconds, context=ssl.create_default_context()
                )
            else:
                server = smtplib.SMTP(cfg.host, cfg.port, timeout=cfg.timeout_seconds)
            with server:
                if not cfg.secure:
                    server.ehlo()
                    if server.has_extn("starttls"):
                        server.starttls(context=ssl.create_default_context())
                        server.ehlo()
                if cfg.username:
                    server.login(cfg.username, cfg.password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as e:
            raise MailDeliveryError(f"{type(e).__name__}: {e}") from e


async def deliver(mailer: Mailer, email: OutgoingEmail) -> bool:
    try:
        await asyncio.to_thread(mailer.send, email)
    except MailDeliveryError as e:
        LOGGER.warning("Email delivery failed to=%s subject=%r error=%s", ",".join(email.to), email.subject, e)
        return False
    LOGGER.info("Email sent to=%s subject=%r", ",".join(email.to), email.subject)
    return True
