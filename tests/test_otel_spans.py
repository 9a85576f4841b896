from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import date

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from backoffice.core.config import get_settings
from backoffice.core.database import Base, get_db
from backoffice.crm.api import get_current_user as crm_get_current_user
from backoffice.crm.models import Contact, HealthScoreSnapshot
from backoffice.crm.service import ActorUser
from backoffice.main import app
from backoffice.otel import setup_inmemory_otel


ALL_PERMISSIONS = {
    "crm.contacts.create",
    "activities.manage",
    "activities.evaluate",
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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            permissions=ALL_PERMISSIONS,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.post(
        "/api/crm/contacts",
        json={"full_name": "Span Contact"},
        headers={"X-Correlation-Id": "otel-corr-1"},
    )
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_evaluation_span_records_rule_and_task_count(
    client: TestClient,
    db_session: Session,
    span_exporter: InMemorySpanExporter,
) -> None:
    owner_id = uuid.uuid4()
    contact = Contact(full_name="Span Cliente", owner_id=owner_id)
    db_session.add(contact)
    db_session.flush()
    db_session.add(
        HealthScoreSnapshot(contact_id=contact.id, owner_id=owner_id, total_score=2, snapshot_date=date(2026, 10, 1))
    )
    db_session.commit()

    created = client.post(
        "/api/critical-activities",
        json={"title": "Span Regra", "is_perpetual": True, "rule": {"rule_type": "health_score_critico"}},
    )
    activity_id = created.json()["activity"]["id"]
    response = client.post("/api/critical-activities/evaluate-single", json={"activity_id": activity_id})
    assert response.status_code == 200

    evaluation_spans = [
        span for span in span_exporter.get_finished_spans() if span.name == "critical_activity.evaluate"
    ]
    assert evaluation_spans
    assert any(
        span.attributes.get("activity_id") == activity_id
        and span.attributes.get("rule_type") == "health_score_critico"
        and span.attributes.get("tasks_created") == 1
        for span in evaluation_spans
    )
