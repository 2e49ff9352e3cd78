from __future__ import annotations

import logging
import sys

from eventrelay.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    # Configure the root logger once; later calls only adjust the level.
    resolved = (level or get_settings().log_level or "INFO").upper()
    root = logging.getLogger()
    if not any(getattr(handler, "_eventrelay", False) for handler in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        handler._eventrelay = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(resolved)
    # httpx logs every request at INFO; keep it out of delivery logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
