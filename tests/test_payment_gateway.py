from __future__ import annotations

import json
import uuid
from collections.abc import Generator
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import pytest
import requests
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from backoffice.contracts.api import get_payment_gateway
from backoffice.contracts.gateway import (
    CANCELLED,
    OVERDUE,
    PAID,
    PENDING,
    UNKNOWN,
    HttpPaymentGatewayClient,
    PaymentGatewayError,
    resolve_payment_status,
)
from backoffice.contracts.models import Contract, Product
from backoffice.contracts.service import contract_service
from backoffice.core.config import get_settings
from backoffice.core.database import Base, get_db
from backoffice.crm.api import get_current_user
from backoffice.crm.models import Contact
from backoffice.crm.service import ActorUser
from backoffice.main import app


NOW = datetime(2026, 10, 19, tzinfo=timezone.utc)


class FakeGateway:
    def __init__(
        self,
        *,
        subscription: dict[str, Any] | None = None,
        bills: list[dict[str, Any]] | None = None,
        bill: dict[str, Any] | None = None,
        fail: bool = False,
    ) -> None:
        self.subscription = subscription
        self.bills = bills
        self.bill = bill
        self.fail = fail

    def get_subscription(self, subscription_id: str) -> dict[str, Any] | None:
        if self.fail:
            raise PaymentGatewayError("connection reset")
        return self.subscription

    def list_subscription_bills(self, subscription_id: str) -> list[dict[str, Any]] | None:
        return self.bills

    def get_bill(self, bill_id: str) -> dict[str, Any] | None:
        return self.bill


class FakeSession:
    def __init__(self, responses: dict[str, tuple[int, dict[str, Any]]]) -> None:
        self.responses = responses
        self.headers: dict[str, str] = {}
        self.auth: Any = None
        self.calls: list[tuple[str, dict[str, Any] | None]] = []

    def get(self, url: str, params: dict[str, Any] | None = None, timeout: float | None = None) -> requests.Response:
        self.calls.append((url, params))
        status_code, payload = self.responses[url]
        response = requests.Response()
        response.status_code = status_code
        response._content = json.dumps(payload).encode("utf-8")
        return response


class BrokenSession(FakeSession):
    def get(self, url: str, params: dict[str, Any] | None = None, timeout: float | None = None) -> requests.Response:
        raise requests.ConnectionError("gateway unreachable")


def test_canceled_subscription_wins() -> None:
    client = FakeGateway(subscription={"status": "canceled"}, bills=[{"status": "pending", "due_at": "2026-01-01"}])

    assert resolve_payment_status(client, "sub-1", None, now=NOW).status == CANCELLED


def test_oldest_overdue_bill_sets_days_late() -> None:
    client = FakeGateway(
        subscription={"status": "active"},
        bills=[
            {"status": "pending", "due_at": "2026-10-09T00:00:00Z"},
            {"status": "pending", "due_at": "2026-09-19T00:00:00Z"},
            {"status": "paid", "due_at": "2026-08-19T00:00:00Z"},
        ],
    )

    result = resolve_payment_status(client, "sub-1", None, now=NOW)

    assert result.status == OVERDUE
    assert result.details == "2 overdue bill(s), 30 days late"


@pytest.mark.parametrize(
    ("bills", "expected"),
    [
        ([], PENDING),
        ([{"status": "pending", "due_at": "2026-11-01T00:00:00Z"}], PENDING),
        ([{"status": "paid", "due_at": "2026-10-01T00:00:00Z"}], PAID),
    ],
)
def test_subscription_bill_states(bills: list[dict[str, Any]], expected: str) -> None:
    client = FakeGateway(subscription={"status": "active"}, bills=bills)

    assert resolve_payment_status(client, "sub-1", None, now=NOW).status == expected


def test_single_bill_fallback_and_unknown() -> None:
    overdue_bill = FakeGateway(bill={"status": "pending", "due_at": "2026-10-14T00:00:00Z"})
    result = resolve_payment_status(overdue_bill, None, "bill-1", now=NOW)
    assert result.status == OVERDUE
    assert result.details == "5 days late"

    rejected = FakeGateway(subscription=None, bills=None, bill=None)
    assert resolve_payment_status(rejected, "sub-1", "bill-1", now=NOW).status == UNKNOWN


def test_http_client_uses_basic_auth_and_unwraps_payloads() -> None:
    base = "https://gateway.test/api/v1"
    session = FakeSession(
        {
            f"{base}/subscriptions/42": (200, {"subscription": {"id": 42, "status": "active"}}),
            f"{base}/bills": (200, {"bills": [{"id": 1, "status": "paid"}]}),
            f"{base}/bills/7": (404, {"errors": []}),
        }
    )
    client = HttpPaymentGatewayClient(f"{base}/", "secret-key", session=session)  # type: ignore[arg-type]

    assert session.auth == ("secret-key", "")
    assert client.get_subscription("42") == {"id": 42, "status": "active"}
    assert client.list_subscription_bills("42") == [{"id": 1, "status": "paid"}]
    assert client.get_bill("7") is None
    assert session.calls[1][1]["query"] == "subscription_id:42"


def test_http_client_requires_api_key() -> None:
    with pytest.raises(PaymentGatewayError):
        HttpPaymentGatewayClient("https://gateway.test", "")


def test_http_client_wraps_transport_errors() -> None:
    client = HttpPaymentGatewayClient("https://gateway.test", "key", session=BrokenSession({}))  # type: ignore[arg-type]

    with pytest.raises(PaymentGatewayError):
        client.get_subscription("1")


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
def gateway() -> FakeGateway:
    return FakeGateway(
        subscription={"status": "active"},
        bills=[{"status": "pending", "due_at": "2020-01-01T00:00:00Z"}],
    )


@pytest.fixture()
def client(db_session: Session, gateway: FakeGateway) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> ActorUser:
        return ActorUser(
            user_id="finance-1",
            permissions={"contracts.billing_sync", "contracts.create", "contracts.products.manage"},
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _seed_contract(session: Session, **values: Any) -> Contract:
    contact = Contact(full_name="Celia Moraes", owner_id=uuid.uuid4())
    product = Product(name="Previdência")
    session.add_all([contact, product])
    session.flush()
    contract = Contract(contact_id=contact.id, product_id=product.id, contract_value=Decimal("100"), **values)
    session.add(contract)
    session.commit()
    return contract


def test_billing_status_endpoint_updates_contracts(
    client: TestClient,
    db_session: Session,
    gateway: FakeGateway,
) -> None:
    linked = _seed_contract(db_session, gateway_subscription_id="sub-9")
    unlinked = _seed_contract(db_session)

    response = client.post(
        "/api/contracts/billing-status",
        json={"contract_ids": [str(linked.id), str(unlinked.id)]},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert list(body["statuses"]) == [str(linked.id)]
    assert body["statuses"][str(linked.id)]["status"] == OVERDUE
    db_session.refresh(linked)
    assert linked.billing_status == OVERDUE

    gateway.fail = True
    failed = client.post("/api/contracts/billing-status", json={"contract_ids": [str(linked.id)]})
    assert failed.status_code == 200
    assert failed.json()["statuses"][str(linked.id)]["status"] == UNKNOWN


def test_contract_creation_calculates_commission(client: TestClient, db_session: Session) -> None:
    contact = Contact(full_name="Davi Campos", owner_id=uuid.uuid4())
    db_session.add(contact)
    db_session.commit()

    product = client.post(
        "/api/contracts/products",
        json={"name": "Seguro", "pb_calculation_type": "percentage", "pb_value": "0.3"},
    )
    assert product.status_code == 201

    contract = client.post(
        "/api/contracts",
        json={"contact_id": str(contact.id), "product_id": product.json()["id"], "contract_value": "2000"},
    )
    assert contract.status_code == 201
    assert Decimal(contract.json()["calculated_pbs"]) == Decimal("600.00")
    assert contract.json()["owner_id"] == str(contact.owner_id)

    broken = client.post("/api/contracts/products", json={"name": "Quebrado", "pb_formula": "{valor_total} * {x}"})
    rejected = client.post(
        "/api/contracts",
        json={"contact_id": str(contact.id), "product_id": broken.json()["id"], "contract_value": "10"},
    )
    assert rejected.status_code == 422
    assert rejected.json()["code"] == "contracts_create_failed"


def test_http_client_rejects_non_object_payloads() -> None:
    base = "https://gateway.test/api/v1"
    session = FakeSession(
        {
            f"{base}/subscriptions/1": (200, ["unexpected"]),  # type: ignore[dict-item]
            f"{base}/bills": (200, {"bills": [{"id": 1, "status": "paid"}, "garbage"]}),
            f"{base}/bills/3": (200, {"bill": "paid"}),
        }
    )
    client = HttpPaymentGatewayClient(base, "key", session=session)  # type: ignore[arg-type]

    with pytest.raises(PaymentGatewayError):
        client.get_subscription("1")
    with pytest.raises(PaymentGatewayError):
        client.list_subscription_bills("1")
    with pytest.raises(PaymentGatewayError):
        client.get_bill("3")


def test_malformed_gateway_answer_only_affects_its_contract(db_session: Session) -> None:
    base = "https://gateway.test/api/v1"
    session = FakeSession(
        {
            f"{base}/subscriptions/sub-bad": (200, ["unexpected"]),  # type: ignore[dict-item]
            f"{base}/subscriptions/sub-gone": (200, {"subscription": {"id": 2, "status": "canceled"}}),
        }
    )
    client = HttpPaymentGatewayClient(base, "key", session=session)  # type: ignore[arg-type]
    malformed = _seed_contract(db_session, gateway_subscription_id="sub-bad")
    cancelled = _seed_contract(db_session, gateway_subscription_id="sub-gone")

    result = contract_service.sync_billing_statuses(db_session, client, [malformed.id, cancelled.id])

    assert result.statuses[str(malformed.id)].status == UNKNOWN
    assert result.statuses[str(cancelled.id)].status == CANCELLED
    db_session.refresh(malformed)
    db_session.refresh(cancelled)
    assert malformed.billing_status == UNKNOWN
    assert cancelled.billing_status == CANCELLED
