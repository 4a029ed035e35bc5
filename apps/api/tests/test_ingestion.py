from __future__ import annotations

import json
import logging
import uuid
from collections import deque
from collections.abc import Generator

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.config import get_settings
from app.core.database import Base
from app.crm import tasks as crm_tasks
from app.crm.access import ActorUser
from app.crm.bus import InMemoryChannel
from app.crm.ingestion import (
    CHANNEL_CLIENTS,
    CHANNEL_OUTBOUND_EMAIL,
    CHANNEL_REPLIES,
    CHANNEL_TASKS,
    ChannelConsumer,
    IngestionOutcome,
    ingestion_router,
)
from app.crm.models import CRMClient, CRMClientEvent, CRMHub, CRMManager
from app.crm.schemas import ClientCreate
from app.crm.service import client_service


@pytest.fixture()
def session_factory() -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def seeded(session_factory: sessionmaker[Session]) -> dict[str, uuid.UUID]:
    with session_factory() as session:
        hub = CRMHub(name="Main hub")
        session.add(hub)
        session.commit()
        hub_id = hub.id
        actor = ActorUser(user_id="admin-1", hub_id=hub_id, roles={"crm", "crm_admin"})
        jane = client_service.create_client(session, actor, ClientCreate(name="Jane", email="jane@example.com"))
    return {"hub_id": hub_id, "jane_id": jane.id, "jane_public_id": jane.public_id}


def _consumer(
    channel: InMemoryChannel,
    session_factory: sessionmaker[Session],
    logical_name: str,
) -> ChannelConsumer:
    return ChannelConsumer(channel, ingestion_router, session_factory, logical_name=logical_name, receive_timeout=0.01)


def _events(session_factory: sessionmaker[Session], client_id: uuid.UUID) -> list[CRMClientEvent]:
    with session_factory() as session:
        return list(
            session.scalars(
                select(CRMClientEvent).where(CRMClientEvent.client_id == client_id).order_by(CRMClientEvent.id)
            ).all()
        )


def _outbound(hub_id: uuid.UUID, *addresses: str) -> dict:
    return {
        "hub_id": str(hub_id),
        "sender": {"name": "Max Seller", "email": "max@example.com"},
        "subject": "Our offer",
        "message": "<p>Hello</p>",
        "recipients": [{"address": address, "name": "Someone"} for address in addresses],
    }


def test_outbound_email_appends_email_event(
    session_factory: sessionmaker[Session],
    seeded: dict[str, uuid.UUID],
) -> None:
    channel = InMemoryChannel("sent")
    channel.put(_outbound(seeded["hub_id"], "JANE@example.com"))

    results = _consumer(channel, session_factory, CHANNEL_OUTBOUND_EMAIL).run_once()

    assert results is not None
    assert [result.outcome for result in results] == [IngestionOutcome.APPLIED]
    stored = _events(session_factory, seeded["jane_id"])
    assert [(row.event_type, json.loads(row.event_data)) for row in stored] == [("Email", {"text": "Our offer"})]

    with session_factory() as session:
        sender = session.scalar(select(CRMManager).where(CRMManager.email == "max@example.com"))
        assert sender is not None
        assert sender.is_user is True
        assert sender.name == "Max Seller"


def test_outbound_email_with_malformed_sender_skipped(
    session_factory: sessionmaker[Session],
    seeded: dict[str, uuid.UUID],
) -> None:
    message = _outbound(seeded["hub_id"], "jane@example.com")
    message["sender"] = {"name": "Bad Sender", "email": "bad..sender@example.com"}
    channel = InMemoryChannel("sent")
    channel.put(message)

    results = _consumer(channel, session_factory, CHANNEL_OUTBOUND_EMAIL).run_once()

    assert [result.outcome for result in results] == [IngestionOutcome.SKIPPED]
    assert "bad..sender@example.com" in (results[0].reason or "")
    assert _events(session_factory, seeded["jane_id"]) == []
    with session_factory() as session:
        assert session.scalar(select(func.count()).select_from(CRMManager)) == 0


def test_redelivered_message_is_duplicate(
    session_factory: sessionmaker[Session],
    seeded: dict[str, uuid.UUID],
) -> None:
    channel = InMemoryChannel("sent")
    channel.put(_outbound(seeded["hub_id"], "jane@example.com"))
    channel.put(_outbound(seeded["hub_id"], "jane@example.com"))
    consumer = _consumer(channel, session_factory, CHANNEL_OUTBOUND_EMAIL)

    first = consumer.run_once()
    second = consumer.run_once()

    assert [result.outcome for result in first] == [IngestionOutcome.APPLIED]
    assert [result.outcome for result in second] == [IngestionOutcome.DUPLICATE]
    assert len(_events(session_factory, seeded["jane_id"])) == 1


def test_unknown_recipient_skipped_known_one_applied(
    session_factory: sessionmaker[Session],
    seeded: dict[str, uuid.UUID],
) -> None:
    channel = InMemoryChannel("sent")
    channel.put(_outbound(seeded["hub_id"], "stranger@example.com", "jane@example.com"))

    results = _consumer(channel, session_factory, CHANNEL_OUTBOUND_EMAIL).run_once()

    outcomes = sorted(result.outcome.value for result in results)
    assert outcomes == ["applied", "skipped"]
    skipped = next(result for result in results if result.outcome is IngestionOutcome.SKIPPED)
    assert "stranger@example.com" in (skipped.reason or "")


def test_malformed_message_does_not_block_channel(
    session_factory: sessionmaker[Session],
    seeded: dict[str, uuid.UUID],
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    channel = InMemoryChannel("replies")
    channel.put(b"{not json")
    channel.put(json.dumps(["not", "an", "object"]))
    channel.put({"hub_id": str(seeded["hub_id"])})
    channel.put({"hub_id": str(seeded["hub_id"]), "email": "jane@example.com", "subject": "Re", "message": "Yes"})
    consumer = _consumer(channel, session_factory, CHANNEL_REPLIES)

    outcomes = [consumer.run_once()[0].outcome for _ in range(4)]

    assert outcomes == [
        IngestionOutcome.SKIPPED,
        IngestionOutcome.SKIPPED,
        IngestionOutcome.SKIPPED,
        IngestionOutcome.APPLIED,
    ]
    assert consumer.run_once() is None
    dropped = [record for record in caplog.records if record.name == "app.crm.ingestion" and record.getMessage() == "ingestion.message_dropped"]
    assert len(dropped) == 3
    assert all(getattr(record, "channel", None) == CHANNEL_REPLIES for record in dropped)


def test_reply_and_unsubscribe_events(
    session_factory: sessionmaker[Session],
    seeded: dict[str, uuid.UUID],
) -> None:
    channel = InMemoryChannel("replies")
    channel.put(
        {
            "hub_id": str(seeded["hub_id"]),
            "email": "jane@example.com",
            "subject": "Re: Our offer",
            "message": "Sounds good<script>alert(1)</script>",
        }
    )
    channel.put({"hub_id": str(seeded["hub_id"]), "email": "jane@example.com"})
    consumer = _consumer(channel, session_factory, CHANNEL_REPLIES)
    consumer.run_once()
    consumer.run_once()

    stored = _events(session_factory, seeded["jane_id"])
    assert [row.event_type for row in stored] == ["Reply", "Unsubscribed"]
    reply_data = json.loads(stored[0].event_data)
    assert reply_data["subject"] == "Re: Our offer"
    assert reply_data["text"].startswith("Sounds good")
    assert "<script>" not in reply_data["text"]

    with session_factory() as session:
        author = session.get(CRMManager, stored[0].manager_id)
        assert author is not None
        # The client is recorded as the author of their own reply.
        assert author.email == "jane@example.com"
        assert author.name == "Jane"
        assert author.is_user is False


def test_reply_from_unknown_address_skipped(
    session_factory: sessionmaker[Session],
    seeded: dict[str, uuid.UUID],
) -> None:
    with session_factory() as session:
        results = ingestion_router.handle(
            session,
            CHANNEL_REPLIES,
            json.dumps({"hub_id": str(seeded["hub_id"]), "email": "ghost@example.com", "message": "hi"}),
        )
    assert results[0].outcome is IngestionOutcome.SKIPPED


def test_unknown_hub_and_channel_skipped(
    session_factory: sessionmaker[Session],
    seeded: dict[str, uuid.UUID],
) -> None:
    with session_factory() as session:
        unknown_hub = ingestion_router.handle(
            session,
            CHANNEL_CLIENTS,
            json.dumps({"hub_id": str(uuid.uuid4()), "name": "Nobody"}),
        )
        unknown_channel = ingestion_router.handle(session, "faxes", "{}")

    assert unknown_hub[0].outcome is IngestionOutcome.SKIPPED
    assert "unknown hub" in (unknown_hub[0].reason or "")
    assert unknown_channel[0].outcome is IngestionOutcome.SKIPPED


def test_client_channel_upserts(
    session_factory: sessionmaker[Session],
    seeded: dict[str, uuid.UUID],
) -> None:
    channel = InMemoryChannel("clients")
    channel.put(
        {
            "hub_id": str(seeded["hub_id"]),
            "name": "Jane Doe",
            "email": "Jane@Example.com",
            "phone": "8 916 123 45 67",
            "fields": {"Source": "Web form"},
        }
    )
    channel.put({"hub_id": str(seeded["hub_id"]), "name": "Bob", "phone": "+79160000009"})
    channel.put({"hub_id": str(seeded["hub_id"]), "name": "Broken", "phone": "12"})
    consumer = _consumer(channel, session_factory, CHANNEL_CLIENTS)

    first = consumer.run_once()
    second = consumer.run_once()
    third = consumer.run_once()

    assert first[0].outcome is IngestionOutcome.APPLIED
    assert first[0].client_id == seeded["jane_id"]
    assert second[0].outcome is IngestionOutcome.APPLIED
    assert third[0].outcome is IngestionOutcome.SKIPPED

    with session_factory() as session:
        assert session.scalar(select(func.count()).select_from(CRMClient)) == 2
        jane = session.get(CRMClient, seeded["jane_id"])
        assert jane is not None
        assert jane.name == "Jane Doe"
        assert jane.phone == "+79161234567"
        assert jane.fields == "Web form"


def test_task_message_resolved_by_public_id(
    session_factory: sessionmaker[Session],
    seeded: dict[str, uuid.UUID],
) -> None:
    task = {
        "hub_id": str(seeded["hub_id"]),
        "client_public_id": str(seeded["jane_public_id"]),
        "manager": {"name": "Max", "email": "max@example.com"},
        "public_id": "TASK-7",
        "subject": "Send contract",
        "priority": "high",
        "status": "open",
        "assignee": {"name": "Max", "email": "max@example.com"},
    }
    channel = InMemoryChannel("tasks")
    channel.put(task)
    channel.put({**task, "status": "done"})
    channel.put({**task, "client_public_id": None, "client_email": "nobody@example.com"})
    consumer = _consumer(channel, session_factory, CHANNEL_TASKS)

    outcomes = [consumer.run_once()[0].outcome for _ in range(3)]

    assert outcomes == [IngestionOutcome.APPLIED, IngestionOutcome.APPLIED, IngestionOutcome.SKIPPED]
    stored = _events(session_factory, seeded["jane_id"])
    assert [json.loads(row.event_data)["status"] for row in stored] == ["open", "done"]
    assert json.loads(stored[0].event_data)["assignee"] == {"name": "Max", "email": "max@example.com"}


def test_celery_task_reports_outcomes(
    session_factory: sessionmaker[Session],
    seeded: dict[str, uuid.UUID],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(crm_tasks, "SessionLocal", session_factory)

    reported = crm_tasks.ingest_message_task(
        CHANNEL_REPLIES,
        json.dumps({"hub_id": str(seeded["hub_id"]), "email": "jane@example.com", "message": "Thanks"}),
    )

    assert reported == [
        {
            "channel": CHANNEL_REPLIES,
            "outcome": "applied",
            "reason": None,
            "client_id": str(seeded["jane_id"]),
            "event_id": reported[0]["event_id"],
        }
    ]
    assert isinstance(reported[0]["event_id"], int)
    appended = events.published_of_type("crm.client_event.appended")
    assert appended[-1]["correlation_id"] is not None


def test_celery_task_id_becomes_correlation_id(
    session_factory: sessionmaker[Session],
    seeded: dict[str, uuid.UUID],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(crm_tasks, "SessionLocal", session_factory)

    outcome = crm_tasks.ingest_message_task.apply(
        args=(CHANNEL_REPLIES, json.dumps({"hub_id": str(seeded["hub_id"]), "email": "jane@example.com", "message": "Ok"})),
        task_id="ingest-task-1",
    )

    assert outcome.get()[0]["outcome"] == "applied"
    appended = events.published_of_type("crm.client_event.appended")
    assert [envelope["correlation_id"] for envelope in appended] == ["ingest-task-1"]


def test_event_and_audit_buffers_stay_capped(
    session_factory: sessionmaker[Session],
    seeded: dict[str, uuid.UUID],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    settings = get_settings()
    assert events.published_events.maxlen == settings.event_buffer_size
    assert audit.audit_entries.maxlen == settings.audit_buffer_size

    monkeypatch.setattr(events, "published_events", deque(maxlen=3))
    monkeypatch.setattr(audit, "audit_entries", deque(maxlen=3))
    with session_factory() as session:
        for index in range(5):
            message = {"hub_id": str(seeded["hub_id"]), "name": f"Lead {index}", "email": f"lead{index}@example.com"}
            results = ingestion_router.handle(session, CHANNEL_CLIENTS, message)
            assert results[0].outcome is IngestionOutcome.APPLIED

    assert len(events.published_events) == 3
    assert len(audit.audit_entries) == 3
    assert [envelope["event_type"] for envelope in events.published_events] == ["crm.client.created"] * 3
    newest = events.published_events[-1]
    assert audit.audit_entries[-1]["entity_id"] == newest["payload"]["client_id"]
