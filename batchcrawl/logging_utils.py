from __future__ import annotations

import json
import logging
import sys
import time
from typing import Any

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Send package logs to stderr; used by the command line entry point."""
    root = logging.getLogger("batchcrawl")
    root.setLevel(level.upper())
    if not root.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **fields: Any) -> None:
    """Log one structured event as a single JSON object."""
    if not logger.isEnabledFor(level):
        return
    payload = {"timestamp": time.time(), "event": event, **fields}
    logger.log(level, json.dumps(payload, ensure_ascii=False, default=str))
