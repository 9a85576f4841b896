"""Predicate evaluation for critical-activity rules.

Each matcher turns a typed rule into the (assignee, contact) pairs that
should currently have an open task. Matchers only read; trigger bookkeeping
and task creation happen in :mod:`backoffice.activities.service`.
"""

from __future__ import annotations

import json
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

from pydantic import ValidationError
from sqlalchemy import and_, func, select
from sqlalchemy.orm import Session

from backoffice.activities.models import ALL_CONTACTS_SCOPE, CriticalActivity
from backoffice.activities.schemas import (
    CharacteristicMatchRule,
    ExpiringContractRule,
    LowHealthScoreRule,
    ManualRecurrenceRule,
    OverduePaymentRule,
    RuleConfig,
    rule_config_adapter,
)
from backoffice.contracts.models import Contract, Product
from backoffice.crm.models import Contact, ContactDataCollection, HealthScoreSnapshot, UserProfile


OVERDUE_BILLING_STATUSES = {"overdue", "past_due", "canceled", "cancelled"}
RECURRENCE_INTERVALS = {
    "daily": timedelta(days=1),
    "weekly": timedelta(days=7),
    "monthly": timedelta(days=28),
}
GOAL_TERMS: dict[str, list[str]] = {
    "aposentadoria": ["aposentadoria", "aposentar"],
    "compra_imovel": ["imóvel", "imovel", "casa própria", "casa propria", "compra de imóvel"],
    "educacao_filhos": ["educação", "educacao", "filhos", "faculdade"],
    "viagem": ["viagem", "viajar"],
    "reserva_emergencia": ["reserva", "emergência", "emergencia"],
    "independencia_financeira": ["independência financeira", "independencia financeira"],
    "compra_veiculo": ["veículo", "veiculo", "carro"],
    "outros": ["outros", "outro"],
}
MAX_LISTED_CONTACTS = 5


class RuleConfigError(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class RuleMatch:
    user_id: uuid.UUID
    contact_id: uuid.UUID | None = None
    contact_name: str | None = None
    description: str | None = None

    @property
    def contact_scope(self) -> str:
        return str(self.contact_id) if self.contact_id is not None else ALL_CONTACTS_SCOPE


def parse_rule(activity: CriticalActivity) -> RuleConfig:
    if not activity.rule_type:
        raise RuleConfigError(f"activity {activity.id} has no rule type")
    payload = dict(activity.rule_config or {})
    payload["rule_type"] = activity.rule_type
    try:
        return rule_config_adapter.validate_python(payload)
    except ValidationError as exc:
        raise RuleConfigError(f"invalid rule configuration for activity {activity.id}: {exc}") from exc


def as_utc(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def is_overdue_billing_status(value: str | None) -> bool:
    normalized = (value or "").lower()
    return normalized in OVERDUE_BILLING_STATUSES or "overdue" in normalized


def recurrence_due(rule: ManualRecurrenceRule, last_run_at: datetime | None, now: datetime) -> bool:
    if last_run_at is None:
        return True
    return now - as_utc(last_run_at) >= RECURRENCE_INTERVALS[rule.interval]


def _unique(matches: list[RuleMatch]) -> list[RuleMatch]:
    seen: OrderedDict[tuple[uuid.UUID, str], RuleMatch] = OrderedDict()
    for match in matches:
        seen.setdefault((match.user_id, match.contact_scope), match)
    return list(seen.values())


def match_overdue_payments(session: Session, rule: OverduePaymentRule) -> list[RuleMatch]:
    rows = session.execute(
        select(Contract, Contact)
        .join(Contact, Contact.id == Contract.contact_id)
        .where(and_(Contract.status == "active", Contract.gateway_subscription_id.is_not(None)))
        .order_by(Contract.created_at.asc())
    ).all()

    matches: list[RuleMatch] = []
    for contract, contact in rows:
        if not is_overdue_billing_status(contract.billing_status):
            continue
        user_id = contact.owner_id or contract.owner_id
        if user_id is None:
            continue
        matches.append(
            RuleMatch(
                user_id=user_id,
                contact_id=contact.id,
                contact_name=contact.full_name,
                description=f"Cliente {contact.full_name} está inadimplente.",
            )
        )
    return _unique(matches)


def match_low_health_scores(session: Session, rule: LowHealthScoreRule) -> list[RuleMatch]:
    latest = (
        select(
            HealthScoreSnapshot.contact_id.label("contact_id"),
            func.max(HealthScoreSnapshot.snapshot_date).label("snapshot_date"),
        )
        .group_by(HealthScoreSnapshot.contact_id)
        .subquery()
    )
    rows = session.execute(
        select(HealthScoreSnapshot, Contact)
        .join(
            latest,
            and_(
                HealthScoreSnapshot.contact_id == latest.c.contact_id,
                HealthScoreSnapshot.snapshot_date == latest.c.snapshot_date,
            ),
        )
        .join(Contact, Contact.id == HealthScoreSnapshot.contact_id)
        .where(HealthScoreSnapshot.total_score < rule.threshold)
        .order_by(HealthScoreSnapshot.total_score.asc())
    ).all()

    matches: list[RuleMatch] = []
    for snapshot, contact in rows:
        user_id = contact.owner_id or snapshot.owner_id
        if user_id is None:
            continue
        matches.append(
            RuleMatch(
                user_id=user_id,
                contact_id=contact.id,
                contact_name=contact.full_name,
                description=(
                    f"Health Score de {contact.full_name} está em {snapshot.total_score} (abaixo de {rule.threshold})."
                ),
            )
        )
    return _unique(matches)


def match_expiring_contracts(
    session: Session,
    rule: ExpiringContractRule,
    *,
    today: date,
    default_category_id: uuid.UUID | None = None,
) -> list[RuleMatch]:
    category_id = rule.category_id or default_category_id
    stmt = (
        select(Contract, Contact)
        .join(Contact, Contact.id == Contract.contact_id)
        .where(
            and_(
                Contract.status == "active",
                Contract.end_date.is_not(None),
                Contract.end_date >= today,
                Contract.end_date <= today + timedelta(days=rule.days_before),
            )
        )
        .order_by(Contract.end_date.asc())
    )
    if category_id is not None:
        stmt = stmt.join(Product, Product.id == Contract.product_id).where(Product.category_id == category_id)

    matches: list[RuleMatch] = []
    for contract, contact in session.execute(stmt).all():
        user_id = contact.owner_id or contract.owner_id
        if user_id is None:
            continue
        matches.append(
            RuleMatch(
                user_id=user_id,
                contact_id=contact.id,
                contact_name=contact.full_name,
                description=f"Contrato de {contact.full_name} vence em {contract.end_date.strftime('%d/%m/%Y')}.",
            )
        )
    return _unique(matches)


def _goal_matches(data: object, goal_type: str) -> bool:
    if not data:
        return False
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except ValueError:
            pass
    haystack = json.dumps(data, ensure_ascii=False).lower()
    terms = GOAL_TERMS.get(goal_type, [goal_type.lower().replace("_", " ")])
    return any(term in haystack for term in terms)


def _characteristic_contacts(session: Session, rule: CharacteristicMatchRule) -> list[Contact]:
    owned = select(Contact).where(Contact.owner_id.is_not(None)).order_by(Contact.full_name.asc())

    if rule.filter_type == "marital_status":
        return list(session.scalars(owned.where(Contact.marital_status == rule.value)).all())
    if rule.filter_type == "gender":
        return list(session.scalars(owned.where(Contact.gender == rule.value)).all())
    if rule.filter_type == "goal_type":
        collections = session.execute(
            select(ContactDataCollection.contact_id, ContactDataCollection.data_collection)
        ).all()
        contact_ids = {contact_id for contact_id, data in collections if _goal_matches(data, rule.value)}
        if not contact_ids:
            return []
        return list(session.scalars(owned.where(Contact.id.in_(contact_ids))).all())

    try:
        category_id = uuid.UUID(rule.value)
    except ValueError as exc:
        raise RuleConfigError(f"product filter value must be a category id: {rule.value}") from exc

    holders = (
        select(Contract.contact_id)
        .join(Product, Product.id == Contract.product_id)
        .where(and_(Contract.status == "active", Product.category_id == category_id))
    )
    if rule.operator == "not_has":
        return list(session.scalars(owned.where(Contact.id.not_in(holders))).all())
    return list(session.scalars(owned.where(Contact.id.in_(holders))).all())


def match_characteristic(session: Session, rule: CharacteristicMatchRule) -> list[RuleMatch]:
    """One match per owner, listing the matching contacts in the description."""
    by_owner: OrderedDict[uuid.UUID, list[str]] = OrderedDict()
    for contact in _characteristic_contacts(session, rule):
        by_owner.setdefault(contact.owner_id, []).append(contact.full_name)  # type: ignore[arg-type]

    matches: list[RuleMatch] = []
    for owner_id, names in by_owner.items():
        listed = ", ".join(names[:MAX_LISTED_CONTACTS])
        if len(names) > MAX_LISTED_CONTACTS:
            listed += f" (+{len(names) - MAX_LISTED_CONTACTS} outros)"
        matches.append(RuleMatch(user_id=owner_id, description=f"Clientes: {listed}"))
    return matches


def eligible_profiles(session: Session, target_positions: list[str] | None) -> list[UserProfile]:
    stmt = select(UserProfile).where(and_(UserProfile.is_approved.is_(True), UserProfile.is_active.is_(True)))
    if target_positions:
        stmt = stmt.where(UserProfile.position.in_(target_positions))
    return list(session.scalars(stmt.order_by(UserProfile.full_name.asc())).all())


def match_recipients(session: Session, activity: CriticalActivity) -> list[RuleMatch]:
    return [RuleMatch(user_id=profile.user_id) for profile in eligible_profiles(session, activity.target_positions)]
