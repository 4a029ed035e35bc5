from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.auth import AuthUser, get_current_user as auth_get_current_user
from app.core.config import get_settings
from app.core.database import Base, get_db
from app.crm.access import ActorUser
from app.crm.api import get_current_user as crm_get_current_user
from app.crm.models import CRMHub
from app.main import app


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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def hub_id(db_session: Session) -> uuid.UUID:
    hub = CRMHub(name="Metrics hub")
    db_session.add(hub)
    db_session.commit()
    return hub.id


@pytest.fixture()
def auth_roles() -> list[str]:
    return ["crm_admin"]


@pytest.fixture()
def client(db_session: Session, hub_id: uuid.UUID, auth_roles: list[str]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_crm_user() -> ActorUser:
        return ActorUser(
            user_id="metrics-user",
            hub_id=hub_id,
            roles={"crm", "crm_admin"},
            email="metrics@example.com",
            correlation_id="metrics-corr-1",
        )

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=auth_roles)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_crm_user
    app.dependency_overrides[auth_get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_crm_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    created = client.post("/api/crm/clients", json={"name": "Metrics Client", "email": "metrics-client@example.com"})
    assert created.status_code == 201
    client_id = created.json()["id"]

    comment = client.post(f"/api/crm/clients/{client_id}/comments", json={"text": "counted"})
    assert comment.status_code == 201

    timeline = client.get(f"/api/crm/clients/{client_id}/events")
    assert timeline.status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "crm_client_events_appended_total" in body
    assert "crm_search_projections_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/crm/clients/{id}/events"' in body
    assert 'event_type="Comment"' in body
    assert client_id not in body


def test_metrics_disabled_returns_not_found(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")

    assert response.status_code == 404


@pytest.mark.parametrize("auth_roles", [["crm"]])
def test_metrics_require_admin_role(client: TestClient) -> None:
    response = client.get("/metrics")

    assert response.status_code == 403


def test_domain_events_counted(client: TestClient) -> None:
    created = client.post("/api/crm/clients", json={"name": "Counted Client"})
    assert created.status_code == 201

    body = client.get("/metrics").text

    assert "crm_domain_events_total" in body
    assert 'event_type="crm.client.created"' in body
