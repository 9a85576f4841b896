from __future__ import annotations

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

from backoffice.context import get_correlation_id


# Structured ``extra`` keys that make it into the JSON line; anything else is dropped.
LOGGED_FIELDS = frozenset(
    {
        "method",
        "path",
        "status_code",
        "duration_ms",
        "activity_id",
        "rule_type",
        "tasks_created",
        "entity_type",
        "entity_id",
        "action",
        "contract_id",
        "user_id",
        "status",
        "error",
    }
)
MAX_ERROR_LENGTH = 500

_base_factory = logging.getLogRecordFactory()


def _attach_correlation_id(record: logging.LogRecord) -> None:
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _base_factory(*args, **kwargs)
    _attach_correlation_id(record)
    return record


class CorrelationIdFilter(logging.Filter):
    """Covers records built before the factory was installed."""

    def filter(self, record: logging.LogRecord) -> bool:
        _attach_correlation_id(record)
        return True


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = {key: value for key, value in vars(record).items() if key in LOGGED_FIELDS}
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:MAX_ERROR_LENGTH]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        return json.dumps(
            {
                "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "correlation_id": getattr(record, "correlation_id", None),
                "fields": fields,
            },
            default=str,
        )


def configure_logging(level: str | None = None) -> None:
    root = logging.getLogger()
    if getattr(root, "_backoffice_configured", False):
        return

    resolved = logging.getLevelName((level or os.getenv("LOG_LEVEL", "INFO")).upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(CorrelationIdFilter())

    logging.setLogRecordFactory(_record_factory)
    root.handlers[:] = [handler]
    root.setLevel(resolved)
    root._backoffice_configured = True  # type: ignore[attr-defined]
