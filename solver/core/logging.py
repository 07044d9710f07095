"""Logging setup for the solver process.

Every record emitted while a run is in flight carries that run's context
(run id, deposit, order, query, step). ``RunLogAdapter`` attaches it, and
both formatters read it back through ``record_context``: the JSON formatter
as top-level fields, the console formatter as a ``key=value`` trailer.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import MutableMapping
from datetime import datetime, timezone
from typing import Any, TextIO

# Ordered; the console trailer follows this order.
CONTEXT_KEYS = (
    "run_id",
    "deposit_id",
    "order_id",
    "query_id",
    "block_number",
    "tx_hash",
    "step",
    "state",
    "chain",
)

_SHORT = {"run_id": "run", "deposit_id": "deposit", "order_id": "order", "query_id": "query", "block_number": "block"}

NOISY_LOGGERS = ("httpcore", "httpx", "urllib3", "asyncio", "web3")


def record_context(record: logging.LogRecord) -> dict[str, Any]:
    """Run context found on ``record``, in ``CONTEXT_KEYS`` order, unset keys skipped."""
    return {key: getattr(record, key) for key in CONTEXT_KEYS if getattr(record, key, None) is not None}


class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "source": f"{record.module}.{record.funcName}:{record.lineno}",
            **record_context(record),
        }
        if record.exc_info and record.exc_info[1] is not None:
            exc_type, exc, _ = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__ if exc_type else type(exc).__name__,
                "message": str(exc),
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Single-line console output, colored by level when writing to a terminal."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, color: bool = False) -> None:
        super().__init__("%(asctime)s %(levelname)-8s %(name)s: %(message)s", datefmt="%H:%M:%S")
        self.color = color

    def formatMessage(self, record: logging.LogRecord) -> str:
        line = super().formatMessage(record)
        trailer = " ".join(
            f"{_SHORT.get(key, key)}={str(val)[:8] if key == 'run_id' else val}"
            for key, val in record_context(record).items()
        )
        if trailer:
            line = f"{line}  [{trailer}]"
        if self.color and record.levelno in self.LEVEL_COLORS:
            line = f"{self.LEVEL_COLORS[record.levelno]}{line}{self.RESET}"
        return line


def setup_logging(env: str = "development", log_level: str = "INFO", stream: TextIO | None = None) -> None:
    """Install a single stdout handler on the root logger.

    ``staging`` and ``production`` log JSON; anything else logs for a human.
    """
    stream = stream or sys.stdout
    if env in ("staging", "production"):
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = ConsoleFormatter(color=stream.isatty())

    handler = logging.StreamHandler(stream)
    handler.setFormatter(formatter)
    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, handlers=[handler], force=True)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


class RunLogAdapter(logging.LoggerAdapter):
    """Bind run-scoped context to every record emitted during one run.

    Per-call ``extra`` wins over bound values for the same key.
    """

    def bind(self, **kwargs: Any) -> None:
        self.extra = {**(self.extra or {}), **kwargs}

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**(self.extra or {}), **kwargs.get("extra", {})}
        return msg, kwargs
