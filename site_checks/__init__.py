"""Website monitoring: due selection, health checks, alerting and periodic reliability reports."""
