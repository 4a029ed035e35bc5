from __future__ import annotations

import json
import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.config import get_settings
from app.core.database import Base
from app.crm import ledger as ledger_module
from app.crm.access import ActorUser
from app.crm.errors import InputValidationError, NotFoundError
from app.crm.ledger import build_event_payload, event_ledger, parse_event_type
from app.crm.models import CRMClientEvent, CRMHub
from app.crm.schemas import ClientCreate, ManagerCreate
from app.crm.service import client_service, manager_service


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
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
def timeline(db_session: Session) -> dict[str, uuid.UUID]:
    hub = CRMHub(name="Main hub")
    db_session.add(hub)
    db_session.commit()
    actor = ActorUser(user_id="admin-1", hub_id=hub.id, roles={"crm", "crm_admin"})
    client = client_service.create_client(db_session, actor, ClientCreate(name="Jane"))
    manager = manager_service.create_manager(db_session, actor, ManagerCreate(name="Max", email="max@example.com"))
    return {"hub_id": hub.id, "client_id": client.id, "manager_id": manager.id}


def _freeze_clock(monkeypatch: pytest.MonkeyPatch, *moments: datetime) -> None:
    queue = list(moments)
    monkeypatch.setattr(ledger_module, "utcnow", lambda: queue.pop(0))


def _append(session: Session, timeline: dict[str, uuid.UUID], event_type: str, payload: dict) -> int:
    return event_ledger.append(
        session,
        hub_id=timeline["hub_id"],
        client_id=timeline["client_id"],
        manager_id=timeline["manager_id"],
        event_type=event_type,
        payload=payload,
    ).id


def test_events_listed_newest_first(
    db_session: Session,
    timeline: dict[str, uuid.UUID],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    base = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    # Inserted out of chronological order on purpose.
    _freeze_clock(monkeypatch, base + timedelta(minutes=2), base, base + timedelta(minutes=5))
    t2 = _append(db_session, timeline, "Comment", {"text": "second"})
    t1 = _append(db_session, timeline, "Comment", {"text": "first"})
    t3 = _append(db_session, timeline, "Comment", {"text": "third"})

    page = event_ledger.list_events(db_session, hub_id=timeline["hub_id"], client_id=timeline["client_id"])

    assert [item.id for item in page.items] == [t3, t2, t1]
    assert page.total == 3


def test_equal_timestamps_break_ties_by_insertion_order(
    db_session: Session,
    timeline: dict[str, uuid.UUID],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    moment = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    _freeze_clock(monkeypatch, moment, moment, moment)
    ids = [_append(db_session, timeline, "Call", {"text": f"call {index}"}) for index in range(3)]

    page = event_ledger.list_events(db_session, hub_id=timeline["hub_id"], client_id=timeline["client_id"])

    assert [item.id for item in page.items] == list(reversed(ids))


def test_filter_by_type_and_paginate(db_session: Session, timeline: dict[str, uuid.UUID]) -> None:
    for index in range(3):
        _append(db_session, timeline, "Comment", {"text": f"note {index}"})
    _append(db_session, timeline, "DocumentLink", {"text": "Contract", "url": "https://example.com/contract.pdf"})

    documents = event_ledger.list_events(
        db_session,
        hub_id=timeline["hub_id"],
        client_id=timeline["client_id"],
        event_type="documentlink",
    )
    assert documents.total == 1
    assert documents.items[0].event_data == {"text": "Contract", "url": "https://example.com/contract.pdf"}

    second_page = event_ledger.list_events(
        db_session,
        hub_id=timeline["hub_id"],
        client_id=timeline["client_id"],
        page=2,
        per_page=3,
    )
    assert second_page.total == 4
    assert len(second_page.items) == 1


def test_event_type_tags() -> None:
    assert parse_event_type("comment") == "Comment"
    assert parse_event_type(" EMAIL ") == "Email"
    assert parse_event_type("Meeting") == "Meeting"
    with pytest.raises(InputValidationError):
        parse_event_type("  ")


def test_payload_variants_validated() -> None:
    task = build_event_payload(
        "Task",
        {"public_id": "T-1", "subject": "Call back", "priority": "high", "status": "open"},
    )
    assert task == {"public_id": "T-1", "subject": "Call back", "priority": "high", "status": "open"}

    with pytest.raises(InputValidationError):
        build_event_payload("DocumentLink", {"text": "missing url"})
    with pytest.raises(InputValidationError):
        build_event_payload("Reply", {"subject": "no text"})

    # Unknown tags fall back to the plain text shape.
    assert build_event_payload("Meeting", {"text": "on site"}) == {"text": "on site"}


def test_unknown_tag_stored_verbatim(db_session: Session, timeline: dict[str, uuid.UUID]) -> None:
    event_id = _append(db_session, timeline, "Meeting", {"text": "on site"})

    row = db_session.get(CRMClientEvent, event_id)
    assert row is not None
    assert row.event_type == "Meeting"
    assert json.loads(row.event_data) == {"text": "on site"}


def test_append_requires_client_and_manager_in_hub(db_session: Session, timeline: dict[str, uuid.UUID]) -> None:
    with pytest.raises(NotFoundError):
        event_ledger.append(
            db_session,
            hub_id=timeline["hub_id"],
            client_id=uuid.uuid4(),
            manager_id=timeline["manager_id"],
            event_type="Comment",
            payload={"text": "orphan"},
        )
    with pytest.raises(NotFoundError):
        event_ledger.append(
            db_session,
            hub_id=uuid.uuid4(),
            client_id=timeline["client_id"],
            manager_id=timeline["manager_id"],
            event_type="Comment",
            payload={"text": "wrong hub"},
        )
    assert db_session.scalars(select(CRMClientEvent)).all() == []


def test_append_publishes_envelope(db_session: Session, timeline: dict[str, uuid.UUID]) -> None:
    event_id = _append(db_session, timeline, "Comment", {"text": "hello"})

    appended = events.published_of_type("crm.client_event.appended")
    assert len(appended) == 1
    envelope = appended[0]
    assert envelope["hub_id"] == str(timeline["hub_id"])
    assert envelope["version"] == 1
    assert envelope["payload"] == {
        "client_event_id": event_id,
        "client_id": str(timeline["client_id"]),
        "manager_id": str(timeline["manager_id"]),
        "event_type": "Comment",
    }


def test_exists_detects_identical_payload(db_session: Session, timeline: dict[str, uuid.UUID]) -> None:
    _append(db_session, timeline, "Reply", {"subject": "Re: offer", "text": "Sounds good"})

    def exists(payload: dict) -> bool:
        return event_ledger.exists(
            db_session,
            client_id=timeline["client_id"],
            manager_id=timeline["manager_id"],
            event_type="reply",
            payload=payload,
        )

    # Key order does not matter.
    assert exists({"text": "Sounds good", "subject": "Re: offer"}) is True
    assert exists({"subject": "Re: offer", "text": "Different"}) is False


def test_mismatched_stored_payload_returned_raw(
    db_session: Session,
    timeline: dict[str, uuid.UUID],
    caplog: pytest.LogCaptureFixture,
) -> None:
    db_session.add(
        CRMClientEvent(
            client_id=timeline["client_id"],
            manager_id=timeline["manager_id"],
            event_type="DocumentLink",
            event_data='{"text": "no url here"}',
        )
    )
    db_session.commit()

    page = event_ledger.list_events(db_session, hub_id=timeline["hub_id"], client_id=timeline["client_id"])

    assert page.items[0].event_data == {"text": "no url here"}
    assert any(record.getMessage() == "client_event.payload_mismatch" for record in caplog.records)
