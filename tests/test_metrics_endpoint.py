from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from backoffice.core.auth import AuthUser, get_current_user as auth_get_current_user
from backoffice.core.config import get_settings
from backoffice.core.database import Base, get_db
from backoffice.crm.api import get_current_user as crm_get_current_user
from backoffice.crm.service import ActorUser
from backoffice.main import app


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
def roles() -> list[str]:
    return ["system.metrics.read"]


@pytest.fixture()
def client(db_session: Session, roles: list[str]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_crm_user() -> ActorUser:
        return ActorUser(
            user_id="metrics-user",
            permissions={
                "crm.funnels.manage",
                "crm.contacts.create",
                "crm.opportunities.create",
                "crm.opportunities.transition",
                "activities.manage",
                "activities.evaluate",
            },
            correlation_id="metrics-corr-1",
        )

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=roles)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_crm_user
    app.dependency_overrides[auth_get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_transition_and_evaluator_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    funnel = client.post("/api/crm/funnels", json={"name": "Metrics Funnel"})
    funnel_id = funnel.json()["id"]
    first = client.post(f"/api/crm/funnels/{funnel_id}/stages", json={"name": "Um", "position": 1})
    second = client.post(f"/api/crm/funnels/{funnel_id}/stages", json={"name": "Dois", "position": 2})
    contact = client.post("/api/crm/contacts", json={"full_name": "Metrics Contact"})
    opportunity = client.post(
        "/api/crm/opportunities",
        json={"contact_id": contact.json()["id"], "funnel_id": funnel_id, "stage_id": first.json()["id"]},
    )
    assert opportunity.status_code == 201

    moved = client.post(
        f"/api/crm/opportunities/{opportunity.json()['id']}/move-stage",
        json={"to_stage_id": second.json()["id"]},
    )
    assert moved.status_code == 200

    activity = client.post(
        "/api/critical-activities",
        json={"title": "Metrics Rule", "is_perpetual": True, "rule": {"rule_type": "inadimplente"}},
    )
    assert activity.status_code == 201
    evaluated = client.post("/api/critical-activities/evaluate")
    assert evaluated.status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "pipeline_transitions_total" in body
    assert "critical_activity_evaluation_duration_seconds" in body

    assert 'path="/health"' in body
    assert 'path="/api/crm/opportunities/{id}/move-stage"' in body
    assert 'entity_type="opportunity",action="stage_change"' in body
    assert 'rule_type="inadimplente"' in body


@pytest.mark.parametrize("roles", [["guest"]])
def test_metrics_endpoint_requires_role(client: TestClient) -> None:
    response = client.get("/metrics")
    assert response.status_code == 403


def test_metrics_endpoint_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")
    assert response.status_code == 404
    assert uuid.UUID(response.headers["x-correlation-id"])
