from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, ValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app import events
from app.core.config import get_settings
from app.crm.errors import InfrastructureError, InputValidationError, NotFoundError
from app.crm.models import CRMClientEvent, utcnow
from app.crm.repositories import client_repository, manager_repository
from app.crm.schemas import (
    ClientEventPage,
    ClientEventRead,
    DocumentLinkEventPayload,
    EmailEventPayload,
    ReplyEventPayload,
    TaskEventPayload,
    TextEventPayload,
    UnsubscribedEventPayload,
)
from app.metrics import observe_client_event_appended


logger = logging.getLogger("app.crm.ledger")


class ClientEventType(str, Enum):
    COMMENT = "Comment"
    CALL = "Call"
    EMAIL = "Email"
    DOCUMENT_LINK = "DocumentLink"
    REPLY = "Reply"
    UNSUBSCRIBED = "Unsubscribed"
    TASK = "Task"


_KNOWN_EVENT_TYPES = {member.value.casefold(): member.value for member in ClientEventType}

PAYLOAD_MODELS: dict[str, type[BaseModel]] = {
    ClientEventType.COMMENT.value: TextEventPayload,
    ClientEventType.CALL.value: TextEventPayload,
    ClientEventType.EMAIL.value: EmailEventPayload,
    ClientEventType.DOCUMENT_LINK.value: DocumentLinkEventPayload,
    ClientEventType.REPLY.value: ReplyEventPayload,
    ClientEventType.UNSUBSCRIBED.value: UnsubscribedEventPayload,
    ClientEventType.TASK.value: TaskEventPayload,
}


def parse_event_type(raw: str | None) -> str:
    """Canonical tag for known types (case-insensitive); other tags are kept verbatim."""
    value = (raw or "").strip()
    if not value:
        raise InputValidationError("event type must not be empty")
    return _KNOWN_EVENT_TYPES.get(value.casefold(), value)


def payload_model_for(event_type: str) -> type[BaseModel]:
    return PAYLOAD_MODELS.get(parse_event_type(event_type), TextEventPayload)


def build_event_payload(event_type: str, data: Mapping[str, Any]) -> dict[str, Any]:
    model = payload_model_for(event_type)
    try:
        validated = model.model_validate(dict(data))
    except ValidationError as exc:
        raise InputValidationError(
            f"invalid payload for event type '{event_type}'",
            details=[{"loc": list(error["loc"]), "msg": error["msg"]} for error in exc.errors()],
        ) from exc
    return validated.model_dump(mode="json", exclude_unset=True)


def decode_event_payload(event_type: str, data: Mapping[str, Any]) -> BaseModel | None:
    try:
        return payload_model_for(event_type).model_validate(dict(data))
    except (ValidationError, InputValidationError):
        logger.warning("client_event.payload_mismatch", extra={"event_type": event_type})
        return None


def dump_payload(payload: Mapping[str, Any]) -> str:
    # Sorted keys keep the stored text stable for duplicate detection.
    return json.dumps(dict(payload), ensure_ascii=False, sort_keys=True)


def load_payload(raw: str) -> dict[str, Any]:
    try:
        value = json.loads(raw)
    except ValueError:
        logger.warning("client_event.payload_unreadable")
        return {}
    return value if isinstance(value, dict) else {}


def to_event_read(event: CRMClientEvent) -> ClientEventRead:
    data = load_payload(event.event_data)
    decoded = decode_event_payload(event.event_type, data)
    return ClientEventRead(
        id=event.id,
        client_id=event.client_id,
        manager_id=event.manager_id,
        event_type=event.event_type,
        event_data=decoded.model_dump(mode="json", exclude_unset=True) if decoded is not None else data,
        created_at=event.created_at,
    )


@dataclass(slots=True)
class EventLedger:
    """Append-only client timeline.

    Rows are never updated; they disappear only with their client.
    """

    def append(
        self,
        session: Session,
        *,
        hub_id: uuid.UUID,
        client_id: uuid.UUID,
        manager_id: uuid.UUID,
        event_type: str,
        payload: Mapping[str, Any],
        actor_user_id: str | None = None,
    ) -> ClientEventRead:
        if not isinstance(payload, Mapping):
            raise InputValidationError("event payload must be a JSON object")
        tag = parse_event_type(event_type)

        client = client_repository.get(session, hub_id, client_id)
        if client is None:
            raise NotFoundError("client not found")
        manager = manager_repository.get(session, hub_id, manager_id)
        if manager is None:
            raise NotFoundError("manager not found")

        event = CRMClientEvent(
            client_id=client.id,
            manager_id=manager.id,
            event_type=tag,
            event_data=dump_payload(payload),
            created_at=utcnow(),
        )
        session.add(event)
        try:
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise InfrastructureError("failed to append client event") from exc
        session.refresh(event)

        observe_client_event_appended(tag)
        logger.info(
            "client_event.appended",
            extra={
                "hub_id": str(hub_id),
                "client_id": str(client_id),
                "manager_id": str(manager_id),
                "event_type": tag,
            },
        )
        events.publish(
            "crm.client_event.appended",
            hub_id=hub_id,
            payload={
                "client_event_id": event.id,
                "client_id": str(client_id),
                "manager_id": str(manager_id),
                "event_type": tag,
            },
            actor_user_id=actor_user_id,
        )
        return to_event_read(event)

    def exists(
        self,
        session: Session,
        *,
        client_id: uuid.UUID,
        manager_id: uuid.UUID,
        event_type: str,
        payload: Mapping[str, Any],
    ) -> bool:
        stmt = select(CRMClientEvent.id).where(
            CRMClientEvent.client_id == client_id,
            CRMClientEvent.manager_id == manager_id,
            CRMClientEvent.event_type == parse_event_type(event_type),
            CRMClientEvent.event_data == dump_payload(payload),
        )
        return session.scalar(stmt.limit(1)) is not None

    def list_events(
        self,
        session: Session,
        *,
        hub_id: uuid.UUID,
        client_id: uuid.UUID,
        event_type: str | None = None,
        page: int = 1,
        per_page: int | None = None,
    ) -> ClientEventPage:
        """Newest first; events sharing a timestamp come back in reverse insertion order."""
        if client_repository.get(session, hub_id, client_id) is None:
            raise NotFoundError("client not found")

        page = max(page, 1)
        per_page = per_page or get_settings().events_per_page
        stmt = select(CRMClientEvent).where(CRMClientEvent.client_id == client_id)
        if event_type:
            stmt = stmt.where(CRMClientEvent.event_type == parse_event_type(event_type))

        total = session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        rows = session.scalars(
            stmt.order_by(CRMClientEvent.created_at.desc(), CRMClientEvent.id.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
        ).all()
        return ClientEventPage(
            items=[to_event_read(row) for row in rows],
            total=int(total),
            page=page,
            per_page=per_page,
        )


event_ledger = EventLedger()
