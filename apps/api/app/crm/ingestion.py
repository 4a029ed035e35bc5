from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.orm import Session

from app.context import bound_context
from app.crm.bus import MessageChannel, RawMessage
from app.crm.errors import CRMError, InfrastructureError
from app.crm.ledger import ClientEventType, build_event_payload, event_ledger
from app.crm.models import CRMClient, CRMManager
from app.crm.normalization import normalize_email, sanitize_text
from app.crm.repositories import client_repository, hub_repository
from app.crm.schemas import ClientCreate, TaskAssignee
from app.crm.service import client_service, manager_service
from app.metrics import observe_ingestion
from app.otel import get_tracer


logger = logging.getLogger("app.crm.ingestion")
worker_logger = logging.getLogger("app.crm.worker")

CHANNEL_OUTBOUND_EMAIL = "outbound_email"
CHANNEL_REPLIES = "replies"
CHANNEL_CLIENTS = "clients"
CHANNEL_TASKS = "tasks"
CHANNELS = (CHANNEL_OUTBOUND_EMAIL, CHANNEL_REPLIES, CHANNEL_CLIENTS, CHANNEL_TASKS)


class Person(BaseModel):
    name: str
    email: str


class OutboundRecipient(BaseModel):
    address: str
    name: str | None = None


class OutboundEmailMessage(BaseModel):
    """Mirror of a send request the mailer has accepted."""

    hub_id: uuid.UUID
    sender: Person
    subject: str | None = None
    recipients: list[OutboundRecipient] = Field(default_factory=list)


class ReplyMessage(BaseModel):
    hub_id: uuid.UUID
    email: str
    subject: str | None = None
    message: str


class UnsubscribeMessage(BaseModel):
    hub_id: uuid.UUID
    email: str
    reason: str | None = None


class ClientUpsertMessage(BaseModel):
    hub_id: uuid.UUID
    name: str
    email: str | None = None
    phone: str | None = None
    fields: dict[str, str] | None = None


class TaskMessage(BaseModel):
    hub_id: uuid.UUID
    client_public_id: uuid.UUID | None = None
    client_email: str | None = None
    manager: Person
    public_id: str
    subject: str
    text: str | None = None
    track: str | None = None
    priority: str
    status: str
    assignee: TaskAssignee | None = None


class IngestionOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(slots=True)
class IngestionResult:
    channel: str
    outcome: IngestionOutcome
    reason: str | None = None
    client_id: uuid.UUID | None = None
    event_id: int | None = None


class SkipMessage(Exception):
    """Raised by channel handlers for messages that cannot be applied and should be dropped."""


def decode_message(raw: RawMessage) -> dict[str, Any]:
    text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
    value = json.loads(text)
    if not isinstance(value, dict):
        raise ValueError("message must be a JSON object")
    return value


class IngestionRouter:
    """Translates inbound bus messages into ledger appends and client upserts.

    ``handle`` never raises: every problem is reported as an outcome so the
    consumer can move on to the next message.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, Callable[[Session, dict[str, Any]], list[IngestionResult]]] = {
            CHANNEL_OUTBOUND_EMAIL: self._handle_outbound_email,
            CHANNEL_REPLIES: self._handle_reply,
            CHANNEL_CLIENTS: self._handle_client_upsert,
            CHANNEL_TASKS: self._handle_task,
        }
        self._tracer = get_tracer("app.crm.ingestion")

    def handle(self, session: Session, channel: str, raw: RawMessage) -> list[IngestionResult]:
        started = time.perf_counter()
        with self._tracer.start_as_current_span("crm.ingest_message") as span:
            span.set_attribute("crm.channel", channel)
            results = self._dispatch(session, channel, raw)
            span.set_attribute("crm.outcomes", [result.outcome.value for result in results])

        duration = time.perf_counter() - started
        for result in results:
            observe_ingestion(channel, result.outcome.value, duration)
            extra = {
                "channel": channel,
                "outcome": result.outcome.value,
                "reason": result.reason,
                "client_id": str(result.client_id) if result.client_id else None,
            }
            if result.outcome in (IngestionOutcome.SKIPPED, IngestionOutcome.FAILED):
                logger.warning("ingestion.message_dropped", extra=extra)
            else:
                logger.info("ingestion.message_processed", extra=extra)
        return results

    def _dispatch(self, session: Session, channel: str, raw: RawMessage) -> list[IngestionResult]:
        handler = self._handlers.get(channel)
        if handler is None:
            return [IngestionResult(channel, IngestionOutcome.SKIPPED, reason=f"unknown channel '{channel}'")]
        try:
            data = decode_message(raw)
            return handler(session, data)
        except (ValueError, ValidationError) as exc:
            session.rollback()
            return [IngestionResult(channel, IngestionOutcome.SKIPPED, reason=f"malformed message: {exc}")]
        except SkipMessage as exc:
            session.rollback()
            return [IngestionResult(channel, IngestionOutcome.SKIPPED, reason=str(exc))]
        except InfrastructureError as exc:
            session.rollback()
            logger.error("ingestion.store_unavailable", extra={"channel": channel, "error": exc.message})
            return [IngestionResult(channel, IngestionOutcome.FAILED, reason=exc.message)]
        except CRMError as exc:
            session.rollback()
            return [IngestionResult(channel, IngestionOutcome.SKIPPED, reason=exc.message)]
        except Exception as exc:
            session.rollback()
            logger.exception("ingestion.message_failed", extra={"channel": channel, "error": str(exc)})
            return [IngestionResult(channel, IngestionOutcome.FAILED, reason=str(exc))]

    def _require_hub(self, session: Session, hub_id: uuid.UUID) -> None:
        if hub_repository.get(session, hub_id) is None:
            raise SkipMessage(f"unknown hub '{hub_id}'")

    def _client_by_email(self, session: Session, hub_id: uuid.UUID, email: str | None) -> CRMClient | None:
        normalized = normalize_email(email)
        if normalized is None:
            return None
        return client_repository.get_by_email(session, hub_id, normalized)

    def _append_once(
        self,
        session: Session,
        channel: str,
        *,
        hub_id: uuid.UUID,
        client: CRMClient,
        manager: CRMManager,
        event_type: str,
        data: dict[str, Any],
    ) -> IngestionResult:
        payload = build_event_payload(event_type, data)
        if event_ledger.exists(
            session,
            client_id=client.id,
            manager_id=manager.id,
            event_type=event_type,
            payload=payload,
        ):
            return IngestionResult(channel, IngestionOutcome.DUPLICATE, client_id=client.id)
        event = event_ledger.append(
            session,
            hub_id=hub_id,
            client_id=client.id,
            manager_id=manager.id,
            event_type=event_type,
            payload=payload,
        )
        return IngestionResult(channel, IngestionOutcome.APPLIED, client_id=client.id, event_id=event.id)

    def _handle_outbound_email(self, session: Session, data: dict[str, Any]) -> list[IngestionResult]:
        message = OutboundEmailMessage.model_validate(data)
        self._require_hub(session, message.hub_id)
        if not message.recipients:
            raise SkipMessage("message has no recipients")

        resolved: list[CRMClient] = []
        results: list[IngestionResult] = []
        for recipient in message.recipients:
            try:
                client = self._client_by_email(session, message.hub_id, recipient.address)
            except CRMError:
                client = None
            if client is None:
                results.append(
                    IngestionResult(
                        CHANNEL_OUTBOUND_EMAIL,
                        IngestionOutcome.SKIPPED,
                        reason=f"unknown recipient '{recipient.address}'",
                    )
                )
            else:
                resolved.append(client)

        if resolved:
            manager = manager_service.create_or_update_manager(
                session,
                message.hub_id,
                name=message.sender.name,
                email=message.sender.email,
                is_user=True,
            )
            for client in resolved:
                results.append(
                    self._append_once(
                        session,
                        CHANNEL_OUTBOUND_EMAIL,
                        hub_id=message.hub_id,
                        client=client,
                        manager=manager,
                        event_type=ClientEventType.EMAIL.value,
                        data={"text": message.subject},
                    )
                )
        return results

    def _handle_reply(self, session: Session, data: dict[str, Any]) -> list[IngestionResult]:
        reply: ReplyMessage | None
        try:
            reply = ReplyMessage.model_validate(data)
        except ValidationError:
            reply = None
        message = reply if reply is not None else UnsubscribeMessage.model_validate(data)

        self._require_hub(session, message.hub_id)
        client = self._client_by_email(session, message.hub_id, message.email)
        if client is None:
            raise SkipMessage(f"no client with email '{message.email}'")

        manager = manager_service.create_or_update_manager(
            session,
            message.hub_id,
            name=client.name,
            email=message.email,
            is_user=False,
        )
        if isinstance(message, ReplyMessage):
            event_type = ClientEventType.REPLY.value
            event_data: dict[str, Any] = {"subject": message.subject, "text": sanitize_text(message.message)}
        else:
            event_type = ClientEventType.UNSUBSCRIBED.value
            event_data = {"text": sanitize_text(message.reason) if message.reason else None}

        return [
            self._append_once(
                session,
                CHANNEL_REPLIES,
                hub_id=message.hub_id,
                client=client,
                manager=manager,
                event_type=event_type,
                data=event_data,
            )
        ]

    def _handle_client_upsert(self, session: Session, data: dict[str, Any]) -> list[IngestionResult]:
        message = ClientUpsertMessage.model_validate(data)
        self._require_hub(session, message.hub_id)
        client, _created = client_service.upsert_client(
            session,
            message.hub_id,
            ClientCreate.model_validate(
                {
                    "name": message.name,
                    "email": normalize_email(message.email),
                    "phone": message.phone,
                    "fields": message.fields or {},
                }
            ),
        )
        return [IngestionResult(CHANNEL_CLIENTS, IngestionOutcome.APPLIED, client_id=client.id)]

    def _handle_task(self, session: Session, data: dict[str, Any]) -> list[IngestionResult]:
        message = TaskMessage.model_validate(data)
        self._require_hub(session, message.hub_id)

        client: CRMClient | None = None
        if message.client_public_id is not None:
            client = client_repository.get_by_public_id(session, message.hub_id, message.client_public_id)
        if client is None and message.client_email:
            client = self._client_by_email(session, message.hub_id, message.client_email)
        if client is None:
            raise SkipMessage("task client could not be resolved")

        manager = manager_service.create_or_update_manager(
            session,
            message.hub_id,
            name=message.manager.name,
            email=message.manager.email,
            is_user=True,
        )
        task_state = message.model_dump(
            include={"public_id", "text", "subject", "track", "priority", "status", "assignee"},
        )
        return [
            self._append_once(
                session,
                CHANNEL_TASKS,
                hub_id=message.hub_id,
                client=client,
                manager=manager,
                event_type=ClientEventType.TASK.value,
                data=task_state,
            )
        ]


class ChannelConsumer:
    """Drains one channel sequentially, opening a fresh session per message."""

    def __init__(
        self,
        channel: MessageChannel,
        router: IngestionRouter,
        session_factory: Callable[[], Session],
        *,
        logical_name: str | None = None,
        receive_timeout: float = 1.0,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.channel = channel
        self.router = router
        self.session_factory = session_factory
        self.logical_name = logical_name or channel.name
        self.receive_timeout = receive_timeout
        self.stop_event = stop_event or threading.Event()

    def run_once(self) -> list[IngestionResult] | None:
        """Process at most one message; None when the channel had nothing to deliver."""
        raw = self.channel.receive(self.receive_timeout)
        if raw is None:
            return None
        session = self.session_factory()
        try:
            with bound_context():
                return self.router.handle(session, self.logical_name, raw)
        finally:
            session.close()

    def run(self) -> None:
        worker_logger.info("consumer.started", extra={"channel": self.logical_name})
        while not self.stop_event.is_set():
            try:
                self.run_once()
            except InfrastructureError as exc:
                worker_logger.error(
                    "consumer.channel_unavailable",
                    extra={"channel": self.logical_name, "error": exc.message},
                )
                self.stop_event.wait(self.receive_timeout)
        worker_logger.info("consumer.stopped", extra={"channel": self.logical_name})


ingestion_router = IngestionRouter()
