"""Process-wide logging setup for the worker and API host."""

from __future__ import annotations

import logging
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"


def configure_logging(level: Optional[str] = None) -> None:
    from backend.app.core.settings import settings

    name = (level or settings.log_level or "INFO").upper()
    logging.basicConfig(format=LOG_FORMAT, level=getattr(logging, name, logging.INFO))
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
