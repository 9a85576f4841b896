from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime

from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from backoffice.activities.models import ActivityTrigger, CriticalActivity, CriticalActivityAssignment
from backoffice.activities.rules import (
    RuleConfigError,
    RuleMatch,
    match_characteristic,
    match_expiring_contracts,
    match_low_health_scores,
    match_overdue_payments,
    match_recipients,
    parse_rule,
    recurrence_due,
)
from backoffice.activities.schemas import (
    AssignmentStats,
    CharacteristicMatchRule,
    CriticalActivityCreate,
    CriticalActivityCreated,
    CriticalActivityRead,
    CriticalActivitySummary,
    CriticalActivityUpdate,
    EvaluatePerpetualResponse,
    ExpiringContractRule,
    LowHealthScoreRule,
    ManualRecurrenceRule,
    OverduePaymentRule,
    RuleConfig,
)
from backoffice.core.config import get_settings
from backoffice.crm.models import Task
from backoffice.crm.service import ActorUser, utcnow
from backoffice.metrics import observe_rule_evaluation, observe_rule_failure


logger = logging.getLogger("backoffice.activities.evaluator")
tracer = trace.get_tracer("backoffice.activities.evaluator")

TASK_TITLE_PREFIX = "[Atividade Crítica]"


def _default_category_id() -> uuid.UUID | None:
    raw = get_settings().expiring_contract_category_id
    return uuid.UUID(raw) if raw else None


@dataclass(slots=True)
class CriticalActivityEvaluator:
    """Keeps at most one open task per (activity, assignee, contact scope).

    The trigger row is the gate: an unresolved trigger blocks new tasks, a
    resolved one is re-armed, a missing one is inserted. Concurrent runs race
    on the unique constraint or on the conditional re-arm update, and the
    loser creates nothing. Each created task is committed on its own.
    """

    def matches_for(self, session: Session, activity: CriticalActivity, rule: RuleConfig, now: datetime) -> list[RuleMatch]:
        if isinstance(rule, OverduePaymentRule):
            return match_overdue_payments(session, rule)
        if isinstance(rule, LowHealthScoreRule):
            return match_low_health_scores(session, rule)
        if isinstance(rule, ExpiringContractRule):
            return match_expiring_contracts(session, rule, today=now.date(), default_category_id=_default_category_id())
        if isinstance(rule, CharacteristicMatchRule):
            return match_characteristic(session, rule)
        if isinstance(rule, ManualRecurrenceRule):
            return match_recipients(session, activity)
        raise RuleConfigError(f"unsupported rule type: {activity.rule_type}")

    def evaluate_activity(self, session: Session, activity: CriticalActivity, *, now: datetime | None = None) -> int:
        current = now or utcnow()
        rule = parse_rule(activity)
        activity_id = activity.id
        started = time.perf_counter()

        with tracer.start_as_current_span("critical_activity.evaluate") as span:
            span.set_attribute("activity_id", str(activity_id))
            span.set_attribute("rule_type", rule.rule_type)

            if isinstance(rule, ManualRecurrenceRule) and not recurrence_due(rule, activity.last_run_at, current):
                logger.info(
                    "critical_activity_not_due",
                    extra={"activity_id": str(activity_id), "rule_type": rule.rule_type},
                )
                return 0

            matches = self.matches_for(session, activity, rule, current)
            created = self.create_tasks(session, activity, matches, now=current)

            session.execute(
                update(CriticalActivity).where(CriticalActivity.id == activity_id).values(last_run_at=current)
            )
            session.commit()
            span.set_attribute("tasks_created", created)

        observe_rule_evaluation(rule.rule_type, created, time.perf_counter() - started)
        logger.info(
            "critical_activity_evaluated",
            extra={"activity_id": str(activity_id), "rule_type": rule.rule_type, "tasks_created": created},
        )
        return created

    def distribute(self, session: Session, activity: CriticalActivity, *, now: datetime | None = None) -> int:
        return self.create_tasks(session, activity, match_recipients(session, activity), now=now or utcnow())

    def create_tasks(
        self,
        session: Session,
        activity: CriticalActivity,
        matches: list[RuleMatch],
        *,
        now: datetime,
    ) -> int:
        template = {
            "activity_id": activity.id,
            "title": activity.title,
            "description": activity.description,
            "deadline": activity.deadline,
            "created_by": activity.created_by,
        }
        created = 0
        for match in matches:
            if self._claim_and_create(session, template, match, now):
                created += 1
        return created

    def _claim_and_create(self, session: Session, template: dict, match: RuleMatch, now: datetime) -> bool:
        activity_id: uuid.UUID = template["activity_id"]
        trigger = self._find_trigger(session, activity_id, match)

        if trigger is not None:
            if trigger.resolved_at is None:
                return False
            rearmed = session.execute(
                update(ActivityTrigger)
                .where(and_(ActivityTrigger.id == trigger.id, ActivityTrigger.resolved_at.is_not(None)))
                .values(resolved_at=None, triggered_at=now, task_id=None)
            )
            if rearmed.rowcount != 1:
                session.rollback()
                return False
        else:
            trigger = ActivityTrigger(
                activity_id=activity_id,
                user_id=match.user_id,
                contact_id=match.contact_id,
                contact_scope=match.contact_scope,
                triggered_at=now,
            )
            session.add(trigger)
            try:
                session.flush()
            except IntegrityError:
                session.rollback()
                logger.info(
                    "critical_activity_trigger_taken",
                    extra={"activity_id": str(activity_id), "user_id": str(match.user_id)},
                )
                return False

        title = f"{TASK_TITLE_PREFIX} {template['title']}"
        if match.contact_name:
            title = f"{title} - {match.contact_name}"
        task = Task(
            created_by=template["created_by"],
            assigned_to=match.user_id,
            contact_id=match.contact_id,
            title=title,
            description=template["description"] or match.description,
            task_type="other",
            scheduled_at=template["deadline"] or now,
            status="pending",
        )
        session.add(task)
        session.flush()
        trigger.task_id = task.id
        session.add(trigger)
        self._upsert_assignment(session, activity_id, match.user_id)

        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            logger.warning(
                "critical_activity_task_discarded",
                extra={"activity_id": str(activity_id), "user_id": str(match.user_id)},
            )
            return False
        return True

    def _find_trigger(self, session: Session, activity_id: uuid.UUID, match: RuleMatch) -> ActivityTrigger | None:
        return session.scalar(
            select(ActivityTrigger).where(
                and_(
                    ActivityTrigger.activity_id == activity_id,
                    ActivityTrigger.user_id == match.user_id,
                    ActivityTrigger.contact_scope == match.contact_scope,
                )
            )
        )

    def _upsert_assignment(self, session: Session, activity_id: uuid.UUID, user_id: uuid.UUID) -> None:
        assignment = session.scalar(
            select(CriticalActivityAssignment).where(
                and_(
                    CriticalActivityAssignment.activity_id == activity_id,
                    CriticalActivityAssignment.user_id == user_id,
                )
            )
        )
        if assignment is None:
            session.add(CriticalActivityAssignment(activity_id=activity_id, user_id=user_id, status="pending"))
        elif assignment.status != "pending":
            assignment.status = "pending"
            assignment.completed_at = None
            session.add(assignment)

    def evaluate_single(self, session: Session, activity_id: uuid.UUID, *, now: datetime | None = None) -> int:
        activity = session.get(CriticalActivity, activity_id)
        if activity is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Critical activity not found")
        if not activity.is_active:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Critical activity is inactive")
        return self.evaluate_activity(session, activity, now=now)

    def evaluate_perpetual(self, session: Session, *, now: datetime | None = None) -> EvaluatePerpetualResponse:
        rows = session.execute(
            select(CriticalActivity.id, CriticalActivity.title, CriticalActivity.rule_type)
            .where(and_(CriticalActivity.is_perpetual.is_(True), CriticalActivity.is_active.is_(True)))
            .order_by(CriticalActivity.created_at.asc())
        ).all()

        response = EvaluatePerpetualResponse()
        for activity_id, title, rule_type in rows:
            key = title if title not in response.results and title not in response.errors else f"{title} ({activity_id})"
            try:
                activity = session.get(CriticalActivity, activity_id)
                if activity is None:
                    continue
                response.results[key] = self.evaluate_activity(session, activity, now=now)
            except Exception as exc:
                session.rollback()
                observe_rule_failure(rule_type or "unknown")
                logger.exception(
                    "critical_activity_evaluation_failed",
                    extra={"activity_id": str(activity_id), "rule_type": rule_type, "error": str(exc)},
                )
                response.errors[key] = str(exc)
        return response


class CriticalActivityService:
    def __init__(self, evaluator: CriticalActivityEvaluator) -> None:
        self.evaluator = evaluator

    def create_activity(
        self,
        session: Session,
        actor_user: ActorUser,
        dto: CriticalActivityCreate,
    ) -> CriticalActivityCreated:
        activity = CriticalActivity(
            created_by=actor_user.user_uuid,
            title=dto.title,
            description=dto.description,
            urgency=dto.urgency,
            target_positions=dto.target_positions,
            deadline=dto.deadline,
            is_perpetual=dto.is_perpetual,
            is_active=True,
        )
        if dto.rule is not None:
            activity.rule_type = dto.rule.rule_type
            activity.rule_config = dto.rule.model_dump(mode="json", exclude={"rule_type"})
        session.add(activity)
        session.commit()
        session.refresh(activity)

        # perpetual rules other than manual recurrence wait for the scheduled evaluation
        if dto.is_perpetual and not isinstance(dto.rule, ManualRecurrenceRule):
            tasks_created = 0
        elif dto.rule is not None and (dto.use_rule or dto.is_perpetual):
            tasks_created = self.evaluator.evaluate_activity(session, activity)
        else:
            tasks_created = self.evaluator.distribute(session, activity)

        session.refresh(activity)
        return CriticalActivityCreated(
            activity=CriticalActivityRead.model_validate(activity),
            tasks_created=tasks_created,
        )

    def _get(self, session: Session, activity_id: uuid.UUID) -> CriticalActivity:
        activity = session.get(CriticalActivity, activity_id)
        if activity is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Critical activity not found")
        return activity

    def _summaries(self, session: Session, activities: list[CriticalActivity]) -> list[CriticalActivitySummary]:
        ids = [activity.id for activity in activities]
        if not ids:
            return []
        assignment_rows = session.execute(
            select(
                CriticalActivityAssignment.activity_id,
                CriticalActivityAssignment.status,
                func.count(CriticalActivityAssignment.id),
            )
            .where(CriticalActivityAssignment.activity_id.in_(ids))
            .group_by(CriticalActivityAssignment.activity_id, CriticalActivityAssignment.status)
        ).all()
        trigger_rows = session.execute(
            select(ActivityTrigger.activity_id, func.count(ActivityTrigger.id))
            .where(and_(ActivityTrigger.activity_id.in_(ids), ActivityTrigger.resolved_at.is_(None)))
            .group_by(ActivityTrigger.activity_id)
        ).all()

        stats: dict[uuid.UUID, AssignmentStats] = {activity_id: AssignmentStats() for activity_id in ids}
        for activity_id, assignment_status, count in assignment_rows:
            bucket = stats[activity_id]
            bucket.total += count
            if assignment_status == "completed":
                bucket.completed += count
            else:
                bucket.pending += count
        open_triggers = {activity_id: count for activity_id, count in trigger_rows}

        return [
            CriticalActivitySummary(
                **CriticalActivityRead.model_validate(activity).model_dump(),
                stats=stats[activity.id],
                open_triggers=open_triggers.get(activity.id, 0),
            )
            for activity in activities
        ]

    def list_activities(self, session: Session, *, include_inactive: bool = False) -> list[CriticalActivitySummary]:
        stmt = select(CriticalActivity).order_by(CriticalActivity.created_at.desc())
        if not include_inactive:
            stmt = stmt.where(CriticalActivity.is_active.is_(True))
        return self._summaries(session, list(session.scalars(stmt).all()))

    def get_activity(self, session: Session, activity_id: uuid.UUID) -> CriticalActivitySummary:
        return self._summaries(session, [self._get(session, activity_id)])[0]

    def update_activity(
        self,
        session: Session,
        activity_id: uuid.UUID,
        dto: CriticalActivityUpdate,
    ) -> CriticalActivitySummary:
        activity = self._get(session, activity_id)
        changes = dto.model_dump(exclude_unset=True, exclude={"rule"})
        for key, value in changes.items():
            setattr(activity, key, value)
        if dto.rule is not None:
            activity.rule_type = dto.rule.rule_type
            activity.rule_config = dto.rule.model_dump(mode="json", exclude={"rule_type"})
        session.add(activity)
        session.commit()
        session.refresh(activity)
        return self.get_activity(session, activity.id)


evaluator = CriticalActivityEvaluator()
critical_activity_service = CriticalActivityService(evaluator)
