from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from backoffice import events
from backoffice.core.config import get_settings
from backoffice.core.database import Base, get_db
from backoffice.crm.api import get_current_user
from backoffice.crm.models import Opportunity
from backoffice.crm.service import ActorUser
from backoffice.main import app


ALL_PERMISSIONS = {
    "crm.funnels.manage",
    "crm.funnels.read",
    "crm.contacts.create",
    "crm.contacts.read",
    "crm.contacts.transition",
}


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
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> ActorUser:
        return ActorUser(user_id="planner-contacts", permissions=ALL_PERMISSIONS, correlation_id="corr-contacts")

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def funnels(client: TestClient) -> dict[str, str]:
    prospecting = client.post("/api/crm/funnels", json={"name": "Prospecção", "position": 1})
    assert prospecting.status_code == 201
    prospecting_id = prospecting.json()["id"]
    first = client.post(f"/api/crm/funnels/{prospecting_id}/stages", json={"name": "Lead", "position": 1})
    second = client.post(f"/api/crm/funnels/{prospecting_id}/stages", json={"name": "Reunião", "position": 2})
    assert first.status_code == 201
    assert second.status_code == 201

    planning = client.post("/api/crm/funnels", json={"name": "Planejamento", "position": 2})
    planning_id = planning.json()["id"]
    intake = client.post(f"/api/crm/funnels/{planning_id}/stages", json={"name": "Coleta", "position": 1})
    assert intake.status_code == 201

    reason = client.post("/api/crm/lost-reasons", json={"name": "Não respondeu"})
    assert reason.status_code == 201
    return {
        "prospecting": prospecting_id,
        "lead": first.json()["id"],
        "meeting": second.json()["id"],
        "planning": planning_id,
        "intake": intake.json()["id"],
        "reason": reason.json()["id"],
    }


def test_duplicate_stage_position_conflicts(client: TestClient, funnels: dict[str, str]) -> None:
    response = client.post(
        f"/api/crm/funnels/{funnels['prospecting']}/stages",
        json={"name": "Outra", "position": 1},
    )
    assert response.status_code == 409
    assert response.json()["code"] == "crm_funnel_stage_create_failed"

    stages = client.get(f"/api/crm/funnels/{funnels['prospecting']}/stages")
    assert [stage["name"] for stage in stages.json()] == ["Lead", "Reunião"]


def test_contact_requires_funnel_and_stage_together(client: TestClient, funnels: dict[str, str]) -> None:
    response = client.post(
        "/api/crm/contacts",
        json={"full_name": "Carlos", "funnel_id": funnels["prospecting"]},
    )
    assert response.status_code == 422


def test_contact_pipeline_transitions(client: TestClient, funnels: dict[str, str], db_session: Session) -> None:
    created = client.post(
        "/api/crm/contacts",
        json={"full_name": "Beatriz Costa", "funnel_id": funnels["prospecting"], "stage_id": funnels["lead"]},
    )
    assert created.status_code == 201
    contact = created.json()
    assert contact["current_stage_id"] == funnels["lead"]
    assert contact["stage_entered_at"] is not None

    moved = client.post(f"/api/crm/contacts/{contact['id']}/move-stage", json={"to_stage_id": funnels["meeting"]})
    assert moved.status_code == 200

    won = client.post(
        f"/api/crm/contacts/{contact['id']}/mark-won",
        json={"next_funnel_id": funnels["planning"], "next_stage_id": funnels["intake"], "notes": "Fechou"},
    )
    assert won.status_code == 200
    body = won.json()
    assert body["entity"]["status"] == "won"
    assert body["successor"]["contact_id"] == contact["id"]

    successor = db_session.scalar(select(Opportunity).where(Opportunity.contact_id == contact["id"]))
    assert successor is not None
    assert str(successor.current_stage_id) == funnels["intake"]

    history = client.get(f"/api/crm/contacts/{contact['id']}/history")
    assert [row["action"] for row in history.json()] == ["created", "stage_change", "won"]
    assert history.json()[2]["notes"] == "Fechou"


def test_contact_without_funnel_cannot_move(client: TestClient, funnels: dict[str, str]) -> None:
    created = client.post("/api/crm/contacts", json={"full_name": "Sem Funil"})
    assert created.status_code == 201

    response = client.post(
        f"/api/crm/contacts/{created.json()['id']}/move-stage",
        json={"to_stage_id": funnels["lead"]},
    )
    assert response.status_code == 422
    assert response.json()["code"] == "crm_contact_move_stage_failed"


def test_lost_contact_is_listed_by_status(client: TestClient, funnels: dict[str, str]) -> None:
    created = client.post(
        "/api/crm/contacts",
        json={"full_name": "Diego Ramos", "funnel_id": funnels["prospecting"], "stage_id": funnels["meeting"]},
    )
    contact_id = created.json()["id"]
    lost = client.post(f"/api/crm/contacts/{contact_id}/mark-lost", json={"lost_reason_id": funnels["reason"]})
    assert lost.status_code == 200

    lost_contacts = client.get("/api/crm/contacts", params={"status": "lost"})
    assert [row["id"] for row in lost_contacts.json()] == [contact_id]
    active_contacts = client.get("/api/crm/contacts", params={"status": "active"})
    assert active_contacts.json() == []

    lost_events = [item for item in events.published_events if item["event_type"] == "crm.contact.lost"]
    assert lost_events
    assert lost_events[-1]["correlation_id"] == "corr-contacts"
