from __future__ import annotations

from typing import Any

from app.context import bound_context
from app.core.celery_app import celery_app
from app.core.database import SessionLocal
from app.crm.ingestion import ingestion_router


@celery_app.task(bind=True, name="crm.ingest_message")
def ingest_message_task(self, channel: str, message: str) -> list[dict[str, Any]]:
    """Feed one bus message through the ingestion router and report the outcomes.

    The celery task id doubles as the correlation id of the work it triggers.
    """
    session = SessionLocal()
    try:
        with bound_context(correlation_id=self.request.id):
            results = ingestion_router.handle(session, channel, message)
    finally:
        session.close()
    return [
        {
            "channel": result.channel,
            "outcome": result.outcome.value,
            "reason": result.reason,
            "client_id": str(result.client_id) if result.client_id else None,
            "event_id": result.event_id,
        }
        for result in results
    ]
