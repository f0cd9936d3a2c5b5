"""Domain event envelopes.

Envelopes are kept in ``published_events`` for inspection and handed to the
in-process bus. Nothing is persisted or sent off-process.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from sales_os.core.context import get_correlation_id
from sales_os.core.events import event_bus


ENVELOPE_VERSION = 1

published_events: list[dict[str, Any]] = []


def publish(
    event_type: str,
    payload: dict[str, Any],
    *,
    occurred_at: datetime,
    actor_user_id: str | None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    envelope = {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": occurred_at.isoformat(),
        "actor_user_id": actor_user_id,
        "correlation_id": correlation_id or get_correlation_id(),
        "version": ENVELOPE_VERSION,
        "payload": payload,
    }
    published_events.append(envelope)
    event_bus.publish(event_type, envelope)
    return envelope
