from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from fastapi import HTTPException, status
from opentelemetry import trace
from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backoffice import events
from backoffice.activities.models import ActivityTrigger, CriticalActivityAssignment
from backoffice.contracts.service import contract_service
from backoffice.core.config import Settings, get_settings
from backoffice.crm.models import (
    Contact,
    ContactHistory,
    Funnel,
    FunnelStage,
    LostReason,
    Opportunity,
    OpportunityHistory,
    Task,
)
from backoffice.crm.schemas import (
    AdvanceStageRequest,
    ContactCreate,
    ContactRead,
    FunnelCreate,
    FunnelRead,
    FunnelStageCreate,
    FunnelStageRead,
    HistoryRead,
    LostReasonCreate,
    LostReasonRead,
    MarkLostRequest,
    MarkWonRequest,
    OpportunityCreate,
    OpportunityRead,
    ReactivateRequest,
    TaskRead,
)
from backoffice.metrics import observe_pipeline_transition


logger = logging.getLogger("backoffice.crm.service")
tracer = trace.get_tracer("backoffice.crm.service")

OPEN_TASK_STATUSES = ("pending", "overdue")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def coerce_user_uuid(value: str | uuid.UUID | None) -> uuid.UUID | None:
    if value is None or isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(value)
    except ValueError:
        return uuid.uuid5(uuid.NAMESPACE_URL, f"backoffice-actor:{value}")


@dataclass
class ActorUser:
    user_id: str
    permissions: set[str] = field(default_factory=set)
    acting_user_id: str | None = None
    correlation_id: str | None = None

    @property
    def user_uuid(self) -> uuid.UUID:
        return coerce_user_uuid(self.user_id)  # type: ignore[return-value]

    @property
    def effective_user_uuid(self) -> uuid.UUID:
        return coerce_user_uuid(self.acting_user_id or self.user_id)  # type: ignore[return-value]


@dataclass
class WonResult:
    entity: Any
    successor: OpportunityRead | None = None
    warnings: list[str] = field(default_factory=list)


def _publish(actor_user: ActorUser, event_type: str, payload: dict[str, Any]) -> None:
    events.publish_event(
        event_type,
        payload,
        actor_user_id=actor_user.user_id,
        correlation_id=actor_user.correlation_id,
    )


def _get_stage(session: Session, stage_id: uuid.UUID) -> FunnelStage:
    stage = session.get(FunnelStage, stage_id)
    if stage is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Stage not found")
    return stage


def _get_stage_in_funnel(session: Session, funnel_id: uuid.UUID | None, stage_id: uuid.UUID) -> FunnelStage:
    stage = _get_stage(session, stage_id)
    if funnel_id is None or stage.funnel_id != funnel_id:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Stage does not belong to the funnel",
        )
    return stage


class FunnelService:
    def create_funnel(self, session: Session, dto: FunnelCreate) -> FunnelRead:
        funnel = Funnel(name=dto.name, position=dto.position, generates_contract=dto.generates_contract)
        session.add(funnel)
        session.commit()
        session.refresh(funnel)
        return FunnelRead.model_validate(funnel)

    def list_funnels(self, session: Session, *, include_inactive: bool = False) -> list[FunnelRead]:
        stmt = select(Funnel).order_by(Funnel.position.asc(), Funnel.name.asc())
        if not include_inactive:
            stmt = stmt.where(Funnel.is_active.is_(True))
        return [FunnelRead.model_validate(row) for row in session.scalars(stmt).all()]

    def add_stage(self, session: Session, funnel_id: uuid.UUID, dto: FunnelStageCreate) -> FunnelStageRead:
        if session.get(Funnel, funnel_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Funnel not found")
        duplicate = session.scalar(
            select(FunnelStage).where(and_(FunnelStage.funnel_id == funnel_id, FunnelStage.position == dto.position))
        )
        if duplicate is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Stage position already used")
        stage = FunnelStage(funnel_id=funnel_id, name=dto.name, position=dto.position)
        session.add(stage)
        session.commit()
        session.refresh(stage)
        return FunnelStageRead.model_validate(stage)

    def list_stages(self, session: Session, funnel_id: uuid.UUID) -> list[FunnelStageRead]:
        if session.get(Funnel, funnel_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Funnel not found")
        rows = session.scalars(
            select(FunnelStage).where(FunnelStage.funnel_id == funnel_id).order_by(FunnelStage.position.asc())
        ).all()
        return [FunnelStageRead.model_validate(row) for row in rows]

    def create_lost_reason(self, session: Session, dto: LostReasonCreate) -> LostReasonRead:
        reason = LostReason(name=dto.name)
        session.add(reason)
        session.commit()
        session.refresh(reason)
        return LostReasonRead.model_validate(reason)

    def list_lost_reasons(self, session: Session) -> list[LostReasonRead]:
        rows = session.scalars(
            select(LostReason).where(LostReason.is_active.is_(True)).order_by(LostReason.name.asc())
        ).all()
        return [LostReasonRead.model_validate(row) for row in rows]


class ContactService:
    def create_contact(self, session: Session, actor_user: ActorUser, dto: ContactCreate) -> ContactRead:
        now = utcnow()
        stage_id: uuid.UUID | None = None
        if dto.stage_id is not None:
            stage_id = _get_stage_in_funnel(session, dto.funnel_id, dto.stage_id).id

        contact = Contact(
            full_name=dto.full_name,
            email=dto.email,
            phone=dto.phone,
            owner_id=dto.owner_id or actor_user.effective_user_uuid,
            marital_status=dto.marital_status,
            gender=dto.gender,
            status="active",
            current_funnel_id=dto.funnel_id,
            current_stage_id=stage_id,
            stage_entered_at=now if stage_id is not None else None,
            created_by=actor_user.user_uuid,
        )
        session.add(contact)
        session.flush()
        session.add(
            ContactHistory(
                contact_id=contact.id,
                action="created",
                to_stage_id=stage_id,
                changed_by=actor_user.user_uuid,
            )
        )
        session.commit()
        session.refresh(contact)
        _publish(actor_user, "crm.contact.created", {"contact_id": str(contact.id)})
        return ContactRead.model_validate(contact)

    def get_contact(self, session: Session, contact_id: uuid.UUID) -> ContactRead:
        contact = session.get(Contact, contact_id)
        if contact is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Contact not found")
        return ContactRead.model_validate(contact)

    def list_contacts(
        self,
        session: Session,
        *,
        owner_id: uuid.UUID | None,
        status_filter: str | None = None,
        limit: int = 100,
    ) -> list[ContactRead]:
        stmt = select(Contact)
        if owner_id is not None:
            stmt = stmt.where(Contact.owner_id == owner_id)
        if status_filter:
            stmt = stmt.where(Contact.status == status_filter)
        stmt = stmt.order_by(Contact.created_at.desc()).limit(limit)
        return [ContactRead.model_validate(row) for row in session.scalars(stmt).all()]


class OpportunityService:
    def create_opportunity(self, session: Session, actor_user: ActorUser, dto: OpportunityCreate) -> OpportunityRead:
        if session.get(Contact, dto.contact_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Contact not found")
        funnel = session.get(Funnel, dto.funnel_id)
        if funnel is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Funnel not found")
        stage = _get_stage_in_funnel(session, funnel.id, dto.stage_id)

        opportunity = self._add_opportunity(
            session,
            actor_user,
            contact_id=dto.contact_id,
            funnel_id=funnel.id,
            stage_id=stage.id,
            proposal_value=dto.proposal_value,
            notes=dto.notes,
        )
        session.commit()
        session.refresh(opportunity)
        _publish(actor_user, "crm.opportunity.created", {"opportunity_id": str(opportunity.id)})
        return OpportunityRead.model_validate(opportunity)

    def _add_opportunity(
        self,
        session: Session,
        actor_user: ActorUser,
        *,
        contact_id: uuid.UUID,
        funnel_id: uuid.UUID,
        stage_id: uuid.UUID,
        proposal_value: Any = None,
        notes: str | None = None,
    ) -> Opportunity:
        opportunity = Opportunity(
            contact_id=contact_id,
            current_funnel_id=funnel_id,
            current_stage_id=stage_id,
            status="active",
            stage_entered_at=utcnow(),
            proposal_value=proposal_value,
            created_by=actor_user.user_uuid,
        )
        session.add(opportunity)
        session.flush()
        session.add(
            OpportunityHistory(
                opportunity_id=opportunity.id,
                action="created",
                to_stage_id=stage_id,
                changed_by=actor_user.user_uuid,
                notes=notes,
            )
        )
        return opportunity

    def get_opportunity(self, session: Session, opportunity_id: uuid.UUID) -> OpportunityRead:
        opportunity = session.get(Opportunity, opportunity_id)
        if opportunity is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Opportunity not found")
        return OpportunityRead.model_validate(opportunity)

    def list_opportunities(
        self,
        session: Session,
        *,
        owner_id: uuid.UUID | None,
        funnel_id: uuid.UUID | None = None,
        status_filter: str | None = None,
        limit: int = 100,
    ) -> list[OpportunityRead]:
        stmt = select(Opportunity)
        if owner_id is not None:
            stmt = stmt.join(Contact, Contact.id == Opportunity.contact_id).where(Contact.owner_id == owner_id)
        if funnel_id is not None:
            stmt = stmt.where(Opportunity.current_funnel_id == funnel_id)
        if status_filter:
            stmt = stmt.where(Opportunity.status == status_filter)
        stmt = stmt.order_by(Opportunity.created_at.desc()).limit(limit)
        return [OpportunityRead.model_validate(row) for row in session.scalars(stmt).all()]


@dataclass(frozen=True, slots=True)
class PipelineKind:
    entity_type: str
    model: Any
    history_model: Any
    history_fk: str
    read_schema: Any


CONTACT_KIND = PipelineKind("contact", Contact, ContactHistory, "contact_id", ContactRead)
OPPORTUNITY_KIND = PipelineKind("opportunity", Opportunity, OpportunityHistory, "opportunity_id", OpportunityRead)


class PipelineTransitionService:
    """Stage transitions for one pipeline entity kind.

    Every transition validates before writing, then applies the status change
    and the history record in one commit. The status change is a conditional
    update on the expected source status, so a concurrent transition on the
    same entity fails with 409 instead of double-applying.
    """

    def __init__(self, kind: PipelineKind) -> None:
        self.kind = kind

    def _get_entity(self, session: Session, entity_id: uuid.UUID) -> Any:
        entity = session.get(self.kind.model, entity_id)
        if entity is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"{self.kind.entity_type.capitalize()} not found",
            )
        return entity

    def _require_status(self, entity: Any, expected: str) -> None:
        if entity.status != expected:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"{self.kind.entity_type.capitalize()} is {entity.status}, expected {expected}",
            )

    def _apply(self, session: Session, entity: Any, expected_status: str, **values: Any) -> None:
        model = self.kind.model
        result = session.execute(
            update(model).where(and_(model.id == entity.id, model.status == expected_status)).values(**values)
        )
        if result.rowcount != 1:
            session.rollback()
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"{self.kind.entity_type.capitalize()} was modified concurrently",
            )

    def _append_history(
        self,
        session: Session,
        actor_user: ActorUser,
        entity_id: uuid.UUID,
        action: str,
        *,
        from_stage_id: uuid.UUID | None,
        to_stage_id: uuid.UUID | None,
        notes: str | None,
    ) -> None:
        history = self.kind.history_model(
            action=action,
            from_stage_id=from_stage_id,
            to_stage_id=to_stage_id,
            changed_by=actor_user.user_uuid,
            notes=notes,
        )
        setattr(history, self.kind.history_fk, entity_id)
        session.add(history)

    def _commit_transition(self, session: Session, actor_user: ActorUser, entity: Any, action: str) -> Any:
        session.commit()
        session.refresh(entity)
        observe_pipeline_transition(self.kind.entity_type, action)
        logger.info(
            "pipeline_transition_applied",
            extra={"entity_type": self.kind.entity_type, "entity_id": str(entity.id), "action": action},
        )
        _publish(
            actor_user,
            f"crm.{self.kind.entity_type}.{action}",
            {
                f"{self.kind.entity_type}_id": str(entity.id),
                "status": entity.status,
                "stage_id": str(entity.current_stage_id) if entity.current_stage_id else None,
            },
        )
        return self.kind.read_schema.model_validate(entity)

    def list_history(self, session: Session, entity_id: uuid.UUID) -> list[HistoryRead]:
        self._get_entity(session, entity_id)
        history_model = self.kind.history_model
        fk_column = getattr(history_model, self.kind.history_fk)
        rows = session.scalars(
            select(history_model).where(fk_column == entity_id).order_by(history_model.created_at.asc())
        ).all()
        return [
            HistoryRead(
                id=row.id,
                entity_id=getattr(row, self.kind.history_fk),
                action=row.action,
                from_stage_id=row.from_stage_id,
                to_stage_id=row.to_stage_id,
                changed_by=row.changed_by,
                notes=row.notes,
                created_at=row.created_at,
            )
            for row in rows
        ]

    def advance_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        entity_id: uuid.UUID,
        dto: AdvanceStageRequest,
    ) -> Any:
        entity = self._get_entity(session, entity_id)
        self._require_status(entity, "active")
        stage = _get_stage_in_funnel(session, entity.current_funnel_id, dto.to_stage_id)
        if stage.id == entity.current_stage_id:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=f"{self.kind.entity_type.capitalize()} is already at this stage",
            )

        from_stage_id = entity.current_stage_id
        self._apply(session, entity, "active", current_stage_id=stage.id, stage_entered_at=utcnow())
        self._append_history(
            session,
            actor_user,
            entity.id,
            "stage_change",
            from_stage_id=from_stage_id,
            to_stage_id=stage.id,
            notes=dto.notes,
        )
        return self._commit_transition(session, actor_user, entity, "stage_change")

    def mark_lost(self, session: Session, actor_user: ActorUser, entity_id: uuid.UUID, dto: MarkLostRequest) -> Any:
        entity = self._get_entity(session, entity_id)
        self._require_status(entity, "active")
        reason = session.get(LostReason, dto.lost_reason_id)
        if reason is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Lost reason not found")
        if not reason.is_active:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Lost reason is inactive")

        from_stage_id = entity.current_stage_id
        self._apply(
            session,
            entity,
            "active",
            status="lost",
            lost_at=utcnow(),
            lost_reason_id=reason.id,
            lost_from_stage_id=from_stage_id,
        )
        self._append_history(
            session,
            actor_user,
            entity.id,
            "lost",
            from_stage_id=from_stage_id,
            to_stage_id=None,
            notes=dto.notes,
        )
        return self._commit_transition(session, actor_user, entity, "lost")

    def reactivate(
        self,
        session: Session,
        actor_user: ActorUser,
        entity_id: uuid.UUID,
        dto: ReactivateRequest,
    ) -> Any:
        entity = self._get_entity(session, entity_id)
        self._require_status(entity, "lost")
        stage = _get_stage_in_funnel(session, entity.current_funnel_id, dto.to_stage_id)

        lost_from_stage_id = entity.lost_from_stage_id
        self._apply(
            session,
            entity,
            "lost",
            status="active",
            current_stage_id=stage.id,
            stage_entered_at=utcnow(),
            lost_at=None,
            lost_reason_id=None,
            lost_from_stage_id=None,
        )
        self._append_history(
            session,
            actor_user,
            entity.id,
            "reactivated",
            from_stage_id=lost_from_stage_id,
            to_stage_id=stage.id,
            notes=dto.notes,
        )
        return self._commit_transition(session, actor_user, entity, "reactivated")

    def mark_won(
        self,
        session: Session,
        actor_user: ActorUser,
        entity_id: uuid.UUID,
        dto: MarkWonRequest,
        *,
        settings: Settings | None = None,
    ) -> WonResult:
        resolved_settings = settings or get_settings()
        entity = self._get_entity(session, entity_id)
        self._require_status(entity, "active")

        successor_stage: FunnelStage | None = None
        if dto.next_funnel_id is not None and dto.next_stage_id is not None:
            next_funnel = session.get(Funnel, dto.next_funnel_id)
            if next_funnel is None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Successor funnel not found")
            successor_stage = _get_stage_in_funnel(session, next_funnel.id, dto.next_stage_id)

        from_funnel_id = entity.current_funnel_id
        from_stage_id = entity.current_stage_id
        contact_id = entity.id if self.kind is CONTACT_KIND else entity.contact_id

        self._apply(session, entity, "active", status="won", converted_at=utcnow())
        self._append_history(
            session,
            actor_user,
            entity.id,
            "won",
            from_stage_id=from_stage_id,
            to_stage_id=None,
            notes=dto.notes,
        )
        read = self._commit_transition(session, actor_user, entity, "won")
        result = WonResult(entity=read)

        with tracer.start_as_current_span("crm.mark_won.follow_up") as span:
            span.set_attribute("entity_type", self.kind.entity_type)
            span.set_attribute("entity_id", str(entity_id))
            self._recalculate_commissions(session, entity_id, contact_id, result)
            self._complete_prospecting_task(
                session,
                actor_user,
                contact_id,
                from_funnel_id,
                from_stage_id,
                resolved_settings,
                result,
            )
            if successor_stage is not None:
                self._create_successor(session, actor_user, contact_id, successor_stage, result)
        return result

    def _recalculate_commissions(
        self,
        session: Session,
        entity_id: uuid.UUID,
        contact_id: uuid.UUID,
        result: WonResult,
    ) -> None:
        try:
            if self.kind is OPPORTUNITY_KIND:
                failures = contract_service.recalculate_commissions(session, opportunity_id=entity_id)
            else:
                failures = contract_service.recalculate_commissions(session, contact_id=contact_id)
        except Exception as exc:
            session.rollback()
            logger.exception(
                "commission_recalculation_failed",
                extra={"entity_type": self.kind.entity_type, "entity_id": str(entity_id), "error": str(exc)},
            )
            result.warnings.append("Commission recalculation failed")
            return
        result.warnings.extend(failures)

    def _complete_prospecting_task(
        self,
        session: Session,
        actor_user: ActorUser,
        contact_id: uuid.UUID,
        from_funnel_id: uuid.UUID | None,
        from_stage_id: uuid.UUID | None,
        settings: Settings,
        result: WonResult,
    ) -> None:
        if not settings.prospecting_funnel_id or not settings.prospecting_stage_id:
            return
        if str(from_funnel_id) != settings.prospecting_funnel_id or str(from_stage_id) != settings.prospecting_stage_id:
            return

        try:
            contact = session.get(Contact, contact_id)
            if contact is None or contact.owner_id is None:
                return
            task = session.scalar(
                select(Task)
                .where(
                    and_(
                        Task.assigned_to == contact.owner_id,
                        Task.task_type == settings.prospecting_task_type,
                        Task.status.in_(OPEN_TASK_STATUSES),
                    )
                )
                .order_by(Task.scheduled_at.asc(), Task.created_at.asc())
                .limit(1)
            )
            if task is None:
                return
            task_service.complete(session, task)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception(
                "prospecting_task_completion_failed",
                extra={"entity_type": self.kind.entity_type, "user_id": actor_user.user_id, "error": str(exc)},
            )
            result.warnings.append("Prospecting task could not be completed")

    def _create_successor(
        self,
        session: Session,
        actor_user: ActorUser,
        contact_id: uuid.UUID,
        stage: FunnelStage,
        result: WonResult,
    ) -> None:
        try:
            opportunity = opportunity_service._add_opportunity(
                session,
                actor_user,
                contact_id=contact_id,
                funnel_id=stage.funnel_id,
                stage_id=stage.id,
                notes="Created after conversion",
            )
            session.commit()
            session.refresh(opportunity)
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception(
                "successor_creation_failed",
                extra={"entity_type": self.kind.entity_type, "error": str(exc)},
            )
            result.warnings.append("Successor opportunity could not be created")
            return
        result.successor = OpportunityRead.model_validate(opportunity)
        _publish(actor_user, "crm.opportunity.created", {"opportunity_id": str(opportunity.id)})


class TaskService:
    def list_tasks(
        self,
        session: Session,
        *,
        assigned_to: uuid.UUID,
        status_filter: str | None = None,
        limit: int = 100,
    ) -> list[TaskRead]:
        stmt = select(Task).where(Task.assigned_to == assigned_to)
        if status_filter:
            stmt = stmt.where(Task.status == status_filter)
        stmt = stmt.order_by(Task.scheduled_at.asc()).limit(limit)
        return [TaskRead.model_validate(row) for row in session.scalars(stmt).all()]

    def complete_task(self, session: Session, actor_user: ActorUser, task_id: uuid.UUID) -> TaskRead:
        task = session.get(Task, task_id)
        if task is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
        if task.assigned_to != actor_user.effective_user_uuid and "tasks.complete_any" not in actor_user.permissions:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Task is assigned to another user")
        if task.status != "completed":
            self.complete(session, task)
            session.commit()
            session.refresh(task)
        return TaskRead.model_validate(task)

    def complete(self, session: Session, task: Task) -> None:
        """Completes ``task`` and closes any critical-activity trigger it was created for. Does not commit."""
        now = utcnow()
        task.status = "completed"
        task.completed_at = now
        session.add(task)

        triggers = session.scalars(
            select(ActivityTrigger).where(
                and_(ActivityTrigger.task_id == task.id, ActivityTrigger.resolved_at.is_(None))
            )
        ).all()
        for trigger in triggers:
            trigger.resolved_at = now
            session.add(trigger)
        session.flush()

        for trigger in triggers:
            still_open = session.scalar(
                select(func.count(ActivityTrigger.id)).where(
                    and_(
                        ActivityTrigger.activity_id == trigger.activity_id,
                        ActivityTrigger.user_id == trigger.user_id,
                        ActivityTrigger.resolved_at.is_(None),
                    )
                )
            )
            if still_open:
                continue
            session.execute(
                update(CriticalActivityAssignment)
                .where(
                    and_(
                        CriticalActivityAssignment.activity_id == trigger.activity_id,
                        CriticalActivityAssignment.user_id == trigger.user_id,
                    )
                )
                .values(status="completed", completed_at=now)
            )

    def mark_overdue(self, session: Session, *, now: datetime | None = None) -> int:
        result = session.execute(
            update(Task)
            .where(and_(Task.status == "pending", Task.scheduled_at < (now or utcnow())))
            .values(status="overdue")
        )
        session.commit()
        return int(result.rowcount or 0)


funnel_service = FunnelService()
contact_service = ContactService()
opportunity_service = OpportunityService()
task_service = TaskService()
contact_transitions = PipelineTransitionService(CONTACT_KIND)
opportunity_transitions = PipelineTransitionService(OPPORTUNITY_KIND)
