"""One-line JSON log records for ``API_STRUCTURED_LOGGING=true``.

Billing identifiers passed through ``extra`` (``invoice_id``, ``group_id``
and friends) are lifted to the top level so a log index can join webhook,
renewal and refund lines for one invoice or group::

    {"timestamp": "...", "level": "ERROR", "logger": "billing_engine.payments.finalizer",
     "message": "Reconciliation gap ...", "invoice_id": "...", "gap_id": "..."}

Access-log lines carry the middleware's ``request`` mapping, and its
``correlation_id`` is copied next to the message.
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from typing import Any

BILLING_ID_FIELDS: tuple[str, ...] = (
    "correlation_id",
    "group_id",
    "invoice_id",
    "cycle_id",
    "order_id",
    "gap_id",
    "refund_id",
)


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request = getattr(record, "request", None)
        if isinstance(request, dict):
            entry["request"] = request
            if request.get("correlation_id"):
                entry["correlation_id"] = request["correlation_id"]

        for field in BILLING_ID_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                entry[field] = value

        if record.exc_info and record.exc_info[0] is not None:
            entry["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(entry, default=str, ensure_ascii=False)
