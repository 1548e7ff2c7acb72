from __future__ import annotations

import logging

from chatgate.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging() -> None:
    # Configure root logging once per process; repeated calls only adjust the level.
    global _configured
    level = getattr(logging, get_settings().log_level.upper(), logging.INFO)
    if _configured:
        logging.getLogger().setLevel(level)
        return
    logging.basicConfig(level=level, format=_LOG_FORMAT)
    # httpx logs every request at INFO, which would log each upstream call twice.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _configured = True
