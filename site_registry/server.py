from __future__ import annotations

import logging
import os

import uvicorn

from site_registry.app import create_app
from site_registry.settings import RegistrySettings


def main() -> None:
    host = os.getenv("SITE_REGISTRY_HOST", "0.0.0.0").strip() or "0.0.0.0"
    port = int(os.getenv("SITE_REGISTRY_PORT", "8111"))
    logging.basicConfig(
        level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").strip().upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    settings = RegistrySettings()
    app = create_app(settings)
    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
