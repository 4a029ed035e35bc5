from __future__ import annotations

import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any

from app.context import get_correlation_id
from app.core.config import get_settings
from app.core.events import event_bus

published_events: deque[dict[str, Any]] = deque(maxlen=get_settings().event_buffer_size)

ENVELOPE_VERSION = 1


def publish(
    event_type: str,
    *,
    hub_id: uuid.UUID | str,
    payload: dict[str, Any],
    actor_user_id: str | None = None,
) -> dict[str, Any]:
    """Wrap a domain event in the standard envelope, keep it and dispatch it in-process."""
    envelope: dict[str, Any] = {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "actor_user_id": actor_user_id,
        "hub_id": str(hub_id),
        "correlation_id": get_correlation_id(),
        "version": ENVELOPE_VERSION,
        "payload": payload,
    }
    published_events.append(envelope)
    event_bus.publish(event_type, envelope)
    return envelope


def published_of_type(event_type: str) -> list[dict[str, Any]]:
    return [envelope for envelope in published_events if envelope["event_type"] == event_type]
