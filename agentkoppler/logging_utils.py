"""Logging setup for agentkoppler.

The root logger gets exactly one stream handler, plain text or JSON lines.
Library logger trees are reset to the configured level and routed through the
root logger; per-logger overrides from `logging.loggers` are applied last.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from .config import LoggingConfig

LIBRARY_LOGGERS = ("httpcore", "httpx", "uvicorn", "watchdog")

TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class JsonLogFormatter(logging.Formatter):
    """One JSON object per log record."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


def parse_level(name: str | None, default: int = logging.INFO) -> int:
    """Map a level name such as `debug` to its number; unknown names give `default`."""
    level = logging.getLevelName(str(name or "").strip().upper())
    return level if isinstance(level, int) else default


def _logger_tree(prefix: str) -> list[str]:
    known = [str(name) for name in logging.root.manager.loggerDict]
    return [prefix, *(name for name in known if name.startswith(f"{prefix}."))]


def setup_logging(cfg: LoggingConfig) -> None:
    """Configure logging from runtime configuration.

    Called again on every settings reload; the root handler is replaced, never stacked.
    """
    level = parse_level(cfg.level)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter() if cfg.json_logs else logging.Formatter(TEXT_FORMAT))
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    # uvicorn runs with log_config=None but libraries may still carry stale handlers or levels
    for prefix in LIBRARY_LOGGERS:
        for name in _logger_tree(prefix):
            logger = logging.getLogger(name)
            logger.handlers.clear()
            logger.setLevel(level)
            logger.propagate = True

    for name, override in cfg.loggers.items():
        logging.getLogger(name).setLevel(parse_level(override, level))
