from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

import requests
from opentelemetry import trace

from backoffice.context import get_correlation_id
from backoffice.core.config import Settings
from backoffice.metrics import observe_gateway_request


logger = logging.getLogger("backoffice.contracts.gateway")
tracer = trace.get_tracer("backoffice.contracts.gateway")

PAID = "paid"
OVERDUE = "overdue"
PENDING = "pending"
CANCELLED = "cancelled"
UNKNOWN = "unknown"


class PaymentGatewayError(RuntimeError):
    pass


@dataclass(slots=True)
class PaymentStatus:
    status: str
    details: str


class PaymentGatewayClient(Protocol):
    def get_subscription(self, subscription_id: str) -> dict[str, Any] | None: ...

    def list_subscription_bills(self, subscription_id: str) -> list[dict[str, Any]] | None: ...

    def get_bill(self, bill_id: str) -> dict[str, Any] | None: ...


class HttpPaymentGatewayClient:
    """Read-only client for the recurring-billing gateway.

    ``None`` means the gateway answered with a non-success status; transport
    failures raise :class:`PaymentGatewayError`.
    """

    def __init__(self, base_url: str, api_key: str, timeout: float = 15.0, session: requests.Session | None = None):
        if not api_key:
            raise PaymentGatewayError("payment gateway api key not configured")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.auth = (api_key, "")
        self.session.headers.update({"Content-Type": "application/json"})

    @classmethod
    def from_settings(cls, settings: Settings) -> HttpPaymentGatewayClient:
        return cls(
            settings.payment_gateway_url,
            settings.payment_gateway_api_key,
            timeout=settings.payment_gateway_timeout_seconds,
        )

    def _get(self, resource: str, path: str, params: dict[str, Any] | None = None) -> dict[str, Any] | None:
        with tracer.start_as_current_span(f"payment_gateway.{resource}") as span:
            span.set_attribute("correlation_id", get_correlation_id() or "")
            try:
                response = self.session.get(f"{self.base_url}/{path}", params=params, timeout=self.timeout)
            except requests.RequestException as exc:
                observe_gateway_request(resource, "error")
                raise PaymentGatewayError(f"payment gateway request failed: {exc}") from exc

            span.set_attribute("http.status_code", response.status_code)
            if not response.ok:
                observe_gateway_request(resource, "rejected")
                logger.warning(
                    "payment_gateway_non_success",
                    extra={"path": path, "status_code": response.status_code},
                )
                return None

            observe_gateway_request(resource, "ok")
            try:
                payload = response.json()
            except ValueError as exc:
                raise PaymentGatewayError("payment gateway returned invalid JSON") from exc
            return _expect_object(payload, resource)

    def get_subscription(self, subscription_id: str) -> dict[str, Any] | None:
        payload = self._get("subscription", f"subscriptions/{subscription_id}")
        return None if payload is None else _optional_object(payload.get("subscription"), "subscription")

    def list_subscription_bills(self, subscription_id: str) -> list[dict[str, Any]] | None:
        payload = self._get(
            "bills",
            "bills",
            params={
                "query": f"subscription_id:{subscription_id}",
                "sort_by": "created_at",
                "sort_order": "desc",
                "per_page": 50,
            },
        )
        if payload is None:
            return None
        bills = payload.get("bills") or []
        if not isinstance(bills, list):
            raise PaymentGatewayError("payment gateway returned a malformed bill list")
        return [_expect_object(bill, "bill") for bill in bills]

    def get_bill(self, bill_id: str) -> dict[str, Any] | None:
        payload = self._get("bill", f"bills/{bill_id}")
        return None if payload is None else _optional_object(payload.get("bill"), "bill")


def _expect_object(value: Any, what: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise PaymentGatewayError(f"payment gateway returned a malformed {what} payload")
    return value


def _optional_object(value: Any, what: str) -> dict[str, Any] | None:
    return None if value is None else _expect_object(value, what)


def _parse_due_at(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _is_past_due(bill: dict[str, Any], now: datetime) -> bool:
    due_at = _parse_due_at(bill.get("due_at"))
    return due_at is not None and due_at < now


def resolve_payment_status(
    client: PaymentGatewayClient,
    subscription_id: str | None,
    bill_id: str | None,
    *,
    now: datetime | None = None,
) -> PaymentStatus:
    current = now or datetime.now(timezone.utc)

    if subscription_id:
        subscription = client.get_subscription(subscription_id)
        if subscription is not None and subscription.get("status") == "canceled":
            return PaymentStatus(CANCELLED, "subscription canceled")

        bills = client.list_subscription_bills(subscription_id)
        if bills is not None:
            if not bills:
                return PaymentStatus(PENDING, "no bills issued")

            pending = [bill for bill in bills if bill.get("status") == "pending"]
            overdue = [bill for bill in pending if _is_past_due(bill, current)]
            if overdue:
                # bills are sorted newest first
                oldest_due = _parse_due_at(overdue[-1].get("due_at"))
                days_late = (current - oldest_due).days if oldest_due else 0
                return PaymentStatus(OVERDUE, f"{len(overdue)} overdue bill(s), {days_late} days late")
            if pending:
                return PaymentStatus(PENDING, "awaiting payment")
            return PaymentStatus(PAID, "payments up to date")

    if bill_id:
        bill = client.get_bill(bill_id)
        if bill is not None:
            bill_status = bill.get("status")
            if bill_status == "paid":
                return PaymentStatus(PAID, "payments up to date")
            if bill_status == "pending":
                if _is_past_due(bill, current):
                    due_at = _parse_due_at(bill.get("due_at"))
                    days_late = (current - due_at).days if due_at else 0
                    return PaymentStatus(OVERDUE, f"{days_late} days late")
                return PaymentStatus(PENDING, "awaiting payment")
            if bill_status == "canceled":
                return PaymentStatus(CANCELLED, "bill canceled")

    return PaymentStatus(UNKNOWN, "no information")
