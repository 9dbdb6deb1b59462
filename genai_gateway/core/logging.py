"""Logging setup: plain text for development, one JSON object per line in production."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import TextIO

from genai_gateway.core.config import Settings, settings

_HANDLER_MARK = "_genai_gateway_handler"
_TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Structured fields the gateway attaches via ``extra=`` and the JSON formatter emits
_EXTRA_FIELDS = (
    "provider",
    "model",
    "caller_id",
    "cache_key",
    "duration_ms",
    "cost",
    "cached",
    "error_kind",
    "attempt",
)


class JSONFormatter(logging.Formatter):
    """Structured JSON log formatter for production."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            log_data["exception"] = self.formatException(record.exc_info)
        for name in _EXTRA_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)
        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(cfg: Settings | None = None, stream: TextIO | None = None) -> logging.Handler:
    """Install the gateway's root handler. Calling it again replaces that handler only."""
    cfg = cfg or settings
    level = getattr(logging, cfg.log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)
    for existing in [h for h in root.handlers if getattr(h, _HANDLER_MARK, False)]:
        root.removeHandler(existing)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setLevel(level)
    setattr(handler, _HANDLER_MARK, True)
    handler.setFormatter(JSONFormatter() if cfg.log_json else logging.Formatter(_TEXT_FORMAT, datefmt=_DATE_FORMAT))
    root.addHandler(handler)

    # Transport chatter; request outcomes are logged by the gateway itself
    for name in ("httpx", "httpcore", "redis"):
        logging.getLogger(name).setLevel(logging.WARNING)
    return handler
