from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from backoffice.context import get_correlation_id
from backoffice.core.events import event_bus

ENVELOPE_VERSION = 1

# In-memory sink of every envelope published in this process.
published_events: list[dict[str, Any]] = []


def publish_event(
    event_type: str,
    payload: dict[str, Any],
    *,
    actor_user_id: str | None = None,
    correlation_id: str | None = None,
) -> dict[str, Any]:
    envelope = {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "version": ENVELOPE_VERSION,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "actor_user_id": actor_user_id,
        "correlation_id": correlation_id or get_correlation_id(),
        "payload": payload,
    }
    published_events.append(envelope)
    event_bus.publish(event_type, envelope)
    return envelope
