from __future__ import annotations

import logging

from scralytics.config import get_settings

# Per-statement and per-request chatter drowns out job transitions during long worker runs.
_QUIET_LOGGERS = ("sqlalchemy.engine", "uvicorn.access")

_LOG_CONFIGURED = False


def configure_logging(level: str | None = None) -> None:
    """Configure root logging once per process; ``level`` overrides LOG_LEVEL."""
    global _LOG_CONFIGURED
    if _LOG_CONFIGURED:
        return

    level_name = (level or get_settings().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    _LOG_CONFIGURED = True
