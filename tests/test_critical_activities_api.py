from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import date

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from backoffice.core.config import get_settings
from backoffice.core.database import Base, get_db
from backoffice.crm.api import get_current_user
from backoffice.crm.models import Contact, HealthScoreSnapshot, Task, UserProfile
from backoffice.crm.service import ActorUser
from backoffice.main import app


ALL_PERMISSIONS = {
    "activities.manage",
    "activities.read",
    "activities.evaluate",
    "tasks.read",
    "tasks.complete",
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
def clear_settings() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def planner_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture()
def permissions() -> set[str]:
    return set(ALL_PERMISSIONS)


@pytest.fixture()
def client(
    db_session: Session,
    planner_id: uuid.UUID,
    permissions: set[str],
) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> ActorUser:
        return ActorUser(user_id=str(planner_id), permissions=permissions, correlation_id="corr-activities")

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def at_risk_contact(db_session: Session, planner_id: uuid.UUID) -> Contact:
    contact = Contact(full_name="Aline Barros", owner_id=planner_id)
    db_session.add(contact)
    db_session.flush()
    db_session.add(
        HealthScoreSnapshot(
            contact_id=contact.id,
            owner_id=planner_id,
            total_score=22,
            snapshot_date=date(2026, 10, 18),
        )
    )
    db_session.commit()
    return contact


def _create_perpetual(client: TestClient, title: str, rule: dict) -> dict:
    response = client.post(
        "/api/critical-activities",
        json={"title": title, "is_perpetual": True, "urgency": "high", "rule": rule},
    )
    assert response.status_code == 201
    return response.json()


def test_evaluate_batch_returns_counts_per_title(client: TestClient, at_risk_contact: Contact) -> None:
    created = _create_perpetual(client, "Saúde crítica", {"rule_type": "health_score_critico", "threshold": 40})
    assert created["tasks_created"] == 0
    assert created["activity"]["is_perpetual"] is True

    first = client.post("/api/critical-activities/evaluate")
    assert first.status_code == 200
    assert first.json() == {"success": True, "results": {"Saúde crítica": 1}, "errors": {}}

    second = client.post("/api/critical-activities/evaluate")
    assert second.status_code == 200
    assert second.json()["results"] == {"Saúde crítica": 0}

    detail = client.get(f"/api/critical-activities/{created['activity']['id']}")
    assert detail.status_code == 200
    assert detail.json()["open_triggers"] == 1
    assert detail.json()["stats"] == {"total": 1, "completed": 0, "pending": 1}
    assert detail.json()["last_run_at"] is not None


def test_completing_task_over_api_allows_new_task(
    client: TestClient,
    at_risk_contact: Contact,
    db_session: Session,
) -> None:
    created = _create_perpetual(client, "Saúde crítica", {"rule_type": "health_score_critico"})
    evaluated = client.post("/api/critical-activities/evaluate-single", json={"activity_id": created["activity"]["id"]})
    assert evaluated.status_code == 200
    assert evaluated.json() == {"success": True, "tasks_created": 1}

    tasks = client.get("/api/tasks", params={"status": "pending"})
    assert tasks.status_code == 200
    assert len(tasks.json()) == 1
    task_id = tasks.json()[0]["id"]
    assert tasks.json()[0]["contact_id"] == str(at_risk_contact.id)

    completed = client.post(f"/api/tasks/{task_id}/complete")
    assert completed.status_code == 200
    assert completed.json()["status"] == "completed"

    detail = client.get(f"/api/critical-activities/{created['activity']['id']}")
    assert detail.json()["open_triggers"] == 0
    assert detail.json()["stats"]["completed"] == 1

    again = client.post("/api/critical-activities/evaluate-single", json={"activity_id": created["activity"]["id"]})
    assert again.json()["tasks_created"] == 1
    assert len(db_session.scalars(select(Task)).all()) == 2


def test_evaluate_single_unknown_activity(client: TestClient) -> None:
    response = client.post("/api/critical-activities/evaluate-single", json={"activity_id": str(uuid.uuid4())})
    assert response.status_code == 404
    assert response.json() == {"error": "Critical activity not found"}


def test_evaluate_single_inactive_activity(client: TestClient) -> None:
    created = _create_perpetual(client, "Inadimplência", {"rule_type": "inadimplente"})
    activity_id = created["activity"]["id"]

    deactivated = client.patch(f"/api/critical-activities/{activity_id}", json={"is_active": False})
    assert deactivated.status_code == 200
    assert deactivated.json()["is_active"] is False

    response = client.post("/api/critical-activities/evaluate-single", json={"activity_id": activity_id})
    assert response.status_code == 422
    assert "error" in response.json()

    listed = client.get("/api/critical-activities")
    assert listed.json() == []
    everything = client.get("/api/critical-activities", params={"include_inactive": True})
    assert [row["id"] for row in everything.json()] == [activity_id]


def test_perpetual_activity_requires_rule(client: TestClient) -> None:
    response = client.post("/api/critical-activities", json={"title": "Sem regra", "is_perpetual": True})
    assert response.status_code == 422


def test_unknown_rule_type_is_rejected(client: TestClient) -> None:
    response = client.post(
        "/api/critical-activities",
        json={"title": "Regra nova", "is_perpetual": True, "rule": {"rule_type": "aniversario"}},
    )
    assert response.status_code == 422


def test_characteristic_operator_validation(client: TestClient) -> None:
    response = client.post(
        "/api/critical-activities",
        json={
            "title": "Casados",
            "is_perpetual": True,
            "rule": {"rule_type": "client_characteristic", "filter_type": "gender", "operator": "not_has", "value": "f"},
        },
    )
    assert response.status_code == 422


def test_manual_recurrence_distributes_on_create(client: TestClient, db_session: Session, planner_id: uuid.UUID) -> None:
    db_session.add(UserProfile(user_id=planner_id, full_name="Bruno Teixeira", position="planejador", is_approved=True))
    db_session.commit()

    created = _create_perpetual(client, "Revisão mensal", {"rule_type": "manual_recurrence", "interval": "monthly"})
    assert created["tasks_created"] == 1

    tasks = client.get("/api/tasks")
    assert [task["title"] for task in tasks.json()] == ["[Atividade Crítica] Revisão mensal"]


def test_task_of_another_user_cannot_be_completed(client: TestClient, db_session: Session) -> None:
    task = Task(assigned_to=uuid.uuid4(), title="Alheia", task_type="other", status="pending")
    db_session.add(task)
    db_session.commit()

    response = client.post(f"/api/tasks/{task.id}/complete")
    assert response.status_code == 403
    assert response.json()["code"] == "task_complete_failed"


@pytest.mark.parametrize("permissions", [{"activities.read"}])
def test_evaluate_requires_permission(client: TestClient) -> None:
    response = client.post("/api/critical-activities/evaluate")
    assert response.status_code == 403
