"""Process logging for resource-api.

One console handler on the root logger renders every record as a single line:
UTC timestamp, level, logger, the request's correlation id and any ``extra``
fields as ``key=value`` pairs. Resource code passes structured fields through
:func:`log_context`.
"""

from __future__ import annotations

import logging
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

from resource_api.settings import Settings

_CORRELATION_ID: ContextVar[str | None] = ContextVar("resource_api_correlation_id", default=None)

# Everything a bare LogRecord carries, plus what Formatter.format() and
# uvicorn add; whatever is left on a record came in through ``extra``.
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime", "correlation_id", "taskName", "color_message"}

_CONFIGURED_FLAG = "_resource_api_configured"

_PROPAGATED_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access", "sqlalchemy")


class ConsoleLogFormatter(logging.Formatter):
    """``2024-05-06T07:08:09.123Z INFO  resource_api.x [cid=ab12] event key=value``"""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s %(levelname)-5s %(name)s [cid=%(correlation_id)s] %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        stamp = datetime.fromtimestamp(record.created, tz=UTC).strftime(datefmt or self.datefmt)
        return f"{stamp}.{int(record.msecs):03d}Z"

    def format(self, record: logging.LogRecord) -> str:
        record.correlation_id = (
            getattr(record, "correlation_id", None) or _CORRELATION_ID.get() or "-"
        )
        line = super().format(record)
        pairs = [
            f"{key}={'null' if value is None else value}"
            for key, value in vars(record).items()
            if key not in _RESERVED_ATTRS and not key.startswith("_")
        ]
        return " ".join([line, *pairs])


def setup_logging(settings: Settings) -> None:
    """Install the console handler on the root logger (once) and apply the level.

    Later calls only change the level, so building several apps in one process
    does not stack handlers.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.logging_level.upper(), logging.INFO))
    if getattr(root, _CONFIGURED_FLAG, False):
        return

    handler = logging.StreamHandler()
    handler.setFormatter(ConsoleLogFormatter())
    root.handlers = [handler]
    for name in _PROPAGATED_LOGGERS:
        third_party = logging.getLogger(name)
        third_party.handlers.clear()
        third_party.propagate = True
    setattr(root, _CONFIGURED_FLAG, True)


def bind_request_context(correlation_id: str | None) -> None:
    _CORRELATION_ID.set(correlation_id)


def clear_request_context() -> None:
    _CORRELATION_ID.set(None)


def log_context(**fields: Any) -> dict[str, Any]:
    """``extra`` payload for structured logs; fields left as ``None`` are dropped.

    Usual keys are ``resource``, ``entity_id``, ``user_id``, ``url`` and
    ``action``.
    """
    return {key: value for key, value in fields.items() if value is not None}


__all__ = [
    "ConsoleLogFormatter",
    "bind_request_context",
    "clear_request_context",
    "log_context",
    "setup_logging",
]
