from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.core.config import get_settings
from app.core.database import Base
from app.crm.access import ActorUser, can_view_client
from app.crm.errors import ConflictError, NotFoundError, UnauthorizedError
from app.crm.models import CRMHub
from app.crm.query import client_query_service
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
def admin(db_session: Session) -> ActorUser:
    hub = CRMHub(name="Main hub")
    db_session.add(hub)
    db_session.commit()
    return ActorUser(user_id="admin-1", hub_id=hub.id, roles={"crm", "crm_admin"}, email="admin@example.com")


def test_manager_email_unique_per_hub(db_session: Session, admin: ActorUser) -> None:
    manager_service.create_manager(db_session, admin, ManagerCreate(name="Max", email="max@example.com"))
    with pytest.raises(ConflictError):
        manager_service.create_manager(db_session, admin, ManagerCreate(name="Max Again", email="MAX@example.com"))


def test_create_or_update_manager_only_raises_is_user(db_session: Session, admin: ActorUser) -> None:
    first = manager_service.create_or_update_manager(
        db_session,
        admin.hub_id,
        name="Sales Bot",
        email="bot@example.com",
        is_user=True,
    )
    second = manager_service.create_or_update_manager(
        db_session,
        admin.hub_id,
        name="Sales Robot",
        email="Bot@Example.com",
        is_user=False,
    )

    assert second.id == first.id
    assert second.name == "Sales Robot"
    assert second.is_user is True


def test_assignment_replaces_previous_set(db_session: Session, admin: ActorUser) -> None:
    manager = manager_service.create_manager(db_session, admin, ManagerCreate(name="Max", email="max@example.com"))
    alpha = client_service.create_client(db_session, admin, ClientCreate(name="Alpha"))
    beta = client_service.create_client(db_session, admin, ClientCreate(name="Beta"))
    gamma = client_service.create_client(db_session, admin, ClientCreate(name="Gamma"))

    manager_service.assign_clients(db_session, admin, manager.id, [alpha.id, beta.id])
    result = manager_service.assign_clients(db_session, admin, manager.id, [gamma.id, beta.id, gamma.id])

    assert [client.name for client in result.clients] == ["Beta", "Gamma"]
    assert [item.name for item in manager_service.list_client_managers(db_session, admin.hub_id, alpha.id)] == []

    cleared = manager_service.assign_clients(db_session, admin, manager.id, [])
    assert cleared.clients == []
    assigned_events = events.published_of_type("crm.manager.assigned")
    assert len(assigned_events) == 3
    assert assigned_events[-1]["payload"]["client_ids"] == []


def test_assignment_rejects_clients_of_other_hub(db_session: Session, admin: ActorUser) -> None:
    other_hub = CRMHub(name="Other hub")
    db_session.add(other_hub)
    db_session.commit()
    outsider = ActorUser(user_id="admin-2", hub_id=other_hub.id, roles={"crm", "crm_admin"})

    manager = manager_service.create_manager(db_session, admin, ManagerCreate(name="Max", email="max@example.com"))
    mine = client_service.create_client(db_session, admin, ClientCreate(name="Mine"))
    foreign = client_service.create_client(db_session, outsider, ClientCreate(name="Foreign"))
    manager_service.assign_clients(db_session, admin, manager.id, [mine.id])

    with pytest.raises(NotFoundError) as exc_info:
        manager_service.assign_clients(db_session, admin, manager.id, [mine.id, foreign.id])
    assert exc_info.value.details == {"client_ids": [str(foreign.id)]}

    # The previous assignment survives the failed replacement.
    listing = manager_service.list_managers_with_clients(db_session, admin.hub_id)
    assert [client.id for client in listing[0].clients] == [mine.id]

    with pytest.raises(NotFoundError):
        manager_service.assign_clients(db_session, outsider, manager.id, [])


def test_manager_role_sees_only_assigned_clients(db_session: Session, admin: ActorUser) -> None:
    manager = manager_service.create_manager(db_session, admin, ManagerCreate(name="Max", email="max@example.com"))
    assigned = client_service.create_client(db_session, admin, ClientCreate(name="Assigned"))
    hidden = client_service.create_client(db_session, admin, ClientCreate(name="Hidden"))
    manager_service.assign_clients(db_session, admin, manager.id, [assigned.id])

    manager_user = ActorUser(user_id="max", hub_id=admin.hub_id, roles={"crm", "crm_manager"}, email="Max@example.com")
    page = client_query_service.list_clients(db_session, manager_user)
    assert [item.id for item in page.items] == [assigned.id]
    assert page.total == 1

    hidden_row = client_service.get_client(db_session, admin.hub_id, hidden.id)
    assert can_view_client(db_session, manager_user, hidden_row) is False
    with pytest.raises(UnauthorizedError):
        client_query_service.client_detail(db_session, manager_user, hidden.id)


def test_plain_access_role_sees_nothing(db_session: Session, admin: ActorUser) -> None:
    client_service.create_client(db_session, admin, ClientCreate(name="Anyone"))
    viewer = ActorUser(user_id="viewer", hub_id=admin.hub_id, roles={"crm"}, email="viewer@example.com")

    assert client_query_service.list_clients(db_session, viewer).items == []

    no_role = ActorUser(user_id="nobody", hub_id=admin.hub_id, roles=set())
    with pytest.raises(UnauthorizedError):
        client_query_service.list_clients(db_session, no_role)


def test_list_clients_orders_by_name_and_paginates(db_session: Session, admin: ActorUser) -> None:
    for name in ["Charlie", "alpha", "Bravo"]:
        client_service.create_client(db_session, admin, ClientCreate(name=name))

    first_page = client_query_service.list_clients(db_session, admin, page=1, per_page=2)
    second_page = client_query_service.list_clients(db_session, admin, page=2, per_page=2)

    assert first_page.total == 3
    assert [item.name for item in first_page.items + second_page.items] == ["Bravo", "Charlie", "alpha"]


def test_public_id_filter(db_session: Session, admin: ActorUser) -> None:
    target = client_service.create_client(db_session, admin, ClientCreate(name="Target"))
    client_service.create_client(db_session, admin, ClientCreate(name="Noise"))

    found = client_query_service.list_clients(db_session, admin, public_id=str(target.public_id))
    assert [item.id for item in found.items] == [target.id]

    assert client_query_service.list_clients(db_session, admin, public_id="not-a-uuid").items == []
    assert client_query_service.list_clients(db_session, admin, public_id=str(uuid.uuid4())).items == []
