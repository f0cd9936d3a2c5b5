"""Structured logging for the API process.

Every record carries the correlation id of the request that produced it, and
the ``extra=`` keys listed in ``STRUCTURED_FIELDS``. Output is one JSON object
per line unless ``LOG_FORMAT=text``.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from sales_os.core.context import get_correlation_id


STRUCTURED_FIELDS = frozenset(
    {
        "method",
        "path",
        "status_code",
        "duration_ms",
        "actor_id",
        "role",
        "table",
        "operation",
        "record_id",
        "opportunity_id",
        "from_stage",
        "to_stage",
        "event_name",
        "error",
    }
)
MAX_ERROR_LENGTH = 500
TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(correlation_id)s] %(message)s"


def _with_correlation_id(factory: Callable[..., logging.LogRecord]) -> Callable[..., logging.LogRecord]:
    def build(*args: Any, **kwargs: Any) -> logging.LogRecord:
        record = factory(*args, **kwargs)
        if not getattr(record, "correlation_id", None):
            record.correlation_id = get_correlation_id()
        return record

    return build


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        fields = {key: getattr(record, key) for key in sorted(STRUCTURED_FIELDS) if hasattr(record, key)}
        if isinstance(fields.get("error"), str):
            fields["error"] = fields["error"][:MAX_ERROR_LENGTH]
        if record.exc_info:
            fields["exception"] = self.formatException(record.exc_info)

        payload = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
            "fields": fields,
        }
        return json.dumps(payload, default=str)


def configure_logging(level: str | None = None, output: str | None = None) -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_sales_os_configured", False):
        return

    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    output = (output or os.getenv("LOG_FORMAT", "json")).lower()

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(logging.Formatter(TEXT_FORMAT) if output == "text" else JsonLogFormatter())

    logging.setLogRecordFactory(_with_correlation_id(logging.getLogRecordFactory()))
    root_logger.handlers[:] = [handler]
    root_logger.setLevel(getattr(logging, level_name, logging.INFO))
    # every request is already logged by the request logging middleware
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    root_logger._sales_os_configured = True  # type: ignore[attr-defined]
