from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from backoffice.context import get_correlation_id
from backoffice.core.auth import AuthUser, get_current_user as get_auth_user
from backoffice.core.context import request_context
from backoffice.core.database import get_db
from backoffice.crm.schemas import (
    AdvanceStageRequest,
    ContactCreate,
    ContactRead,
    ContactWonResponse,
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
    OpportunityWonResponse,
    ReactivateRequest,
    TaskRead,
)
from backoffice.crm.service import (
    ActorUser,
    PipelineTransitionService,
    contact_service,
    contact_transitions,
    funnel_service,
    opportunity_service,
    opportunity_transitions,
    task_service,
)


logger = logging.getLogger("backoffice.crm.api")

funnels_router = APIRouter(prefix="/api/crm", tags=["crm.funnels"])
contacts_router = APIRouter(prefix="/api/crm", tags=["crm.contacts"])
opportunities_router = APIRouter(prefix="/api/crm", tags=["crm.opportunities"])
tasks_router = APIRouter(prefix="/api/tasks", tags=["tasks"])

IMPERSONATE_PERMISSION = "crm.impersonate"


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or request_context(request).correlation_id
    payload = ErrorEnvelope(code=code, message=message, details=details, correlation_id=correlation_id)
    return JSONResponse(status_code=status_code, content=payload.__dict__)


class ActingUserError(HTTPException):
    """Raised while resolving the actor; rendered through the error envelope by the app handler."""


def acting_user_error_handler(request: Request, exc: ActingUserError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code="crm_acting_user_failed",
        message=str(exc.detail),
    )


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    context = request_context(request)
    correlation_id = get_correlation_id() or context.correlation_id
    acting_user_id = context.acting_user_id
    if acting_user_id and IMPERSONATE_PERMISSION not in auth_user.roles:
        logger.warning("acting_user_header_rejected", extra={"user_id": auth_user.sub})
        raise ActingUserError(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {IMPERSONATE_PERMISSION}")
    if acting_user_id:
        try:
            uuid.UUID(acting_user_id)
        except ValueError as exc:
            raise ActingUserError(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="Invalid acting user id") from exc

    return ActorUser(
        user_id=auth_user.sub,
        permissions=set(auth_user.roles),
        acting_user_id=acting_user_id or None,
        correlation_id=correlation_id,
    )


def require_permission(user: ActorUser, permission: str) -> None:
    if permission not in user.permissions:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {permission}")


def scoped_owner_id(user: ActorUser, read_all_permission: str) -> uuid.UUID | None:
    """Owner filter for list queries: the acting user if one is set, otherwise the caller unless they may read all."""
    if user.acting_user_id:
        return user.effective_user_uuid
    if read_all_permission in user.permissions:
        return None
    return user.user_uuid


def _failed(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


@funnels_router.post("/funnels", response_model=FunnelRead, status_code=status.HTTP_201_CREATED)
def create_funnel(
    request: Request,
    dto: FunnelCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FunnelRead | JSONResponse:
    try:
        require_permission(user, "crm.funnels.manage")
        return funnel_service.create_funnel(db, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_funnel_create_failed")


@funnels_router.get("/funnels", response_model=list[FunnelRead])
def list_funnels(
    request: Request,
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[FunnelRead] | JSONResponse:
    try:
        require_permission(user, "crm.funnels.read")
        return funnel_service.list_funnels(db, include_inactive=include_inactive)
    except HTTPException as exc:
        return _failed(request, exc, "crm_funnel_list_failed")


@funnels_router.post(
    "/funnels/{funnel_id}/stages",
    response_model=FunnelStageRead,
    status_code=status.HTTP_201_CREATED,
)
def add_funnel_stage(
    request: Request,
    funnel_id: uuid.UUID,
    dto: FunnelStageCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FunnelStageRead | JSONResponse:
    try:
        require_permission(user, "crm.funnels.manage")
        return funnel_service.add_stage(db, funnel_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_funnel_stage_create_failed")


@funnels_router.get("/funnels/{funnel_id}/stages", response_model=list[FunnelStageRead])
def list_funnel_stages(
    request: Request,
    funnel_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[FunnelStageRead] | JSONResponse:
    try:
        require_permission(user, "crm.funnels.read")
        return funnel_service.list_stages(db, funnel_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_funnel_stage_list_failed")


@funnels_router.post("/lost-reasons", response_model=LostReasonRead, status_code=status.HTTP_201_CREATED)
def create_lost_reason(
    request: Request,
    dto: LostReasonCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LostReasonRead | JSONResponse:
    try:
        require_permission(user, "crm.funnels.manage")
        return funnel_service.create_lost_reason(db, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_lost_reason_create_failed")


@funnels_router.get("/lost-reasons", response_model=list[LostReasonRead])
def list_lost_reasons(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LostReasonRead] | JSONResponse:
    try:
        require_permission(user, "crm.funnels.read")
        return funnel_service.list_lost_reasons(db)
    except HTTPException as exc:
        return _failed(request, exc, "crm_lost_reason_list_failed")


@contacts_router.post("/contacts", response_model=ContactRead, status_code=status.HTTP_201_CREATED)
def create_contact(
    request: Request,
    dto: ContactCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.create")
        return contact_service.create_contact(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_contact_create_failed")


@contacts_router.get("/contacts", response_model=list[ContactRead])
def list_contacts(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ContactRead] | JSONResponse:
    try:
        require_permission(user, "crm.contacts.read")
        return contact_service.list_contacts(
            db,
            owner_id=scoped_owner_id(user, "crm.contacts.read_all"),
            status_filter=status_filter,
            limit=limit,
        )
    except HTTPException as exc:
        return _failed(request, exc, "crm_contact_list_failed")


@contacts_router.get("/contacts/{contact_id}", response_model=ContactRead)
def get_contact(
    request: Request,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ContactRead | JSONResponse:
    try:
        require_permission(user, "crm.contacts.read")
        return contact_service.get_contact(db, contact_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_contact_get_failed")


@opportunities_router.post("/opportunities", response_model=OpportunityRead, status_code=status.HTTP_201_CREATED)
def create_opportunity(
    request: Request,
    dto: OpportunityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.create")
        return opportunity_service.create_opportunity(db, user, dto)
    except HTTPException as exc:
        return _failed(request, exc, "crm_opportunity_create_failed")


@opportunities_router.get("/opportunities", response_model=list[OpportunityRead])
def list_opportunities(
    request: Request,
    funnel_id: uuid.UUID | None = Query(default=None),
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[OpportunityRead] | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return opportunity_service.list_opportunities(
            db,
            owner_id=scoped_owner_id(user, "crm.opportunities.read_all"),
            funnel_id=funnel_id,
            status_filter=status_filter,
            limit=limit,
        )
    except HTTPException as exc:
        return _failed(request, exc, "crm_opportunity_list_failed")


@opportunities_router.get("/opportunities/{opportunity_id}", response_model=OpportunityRead)
def get_opportunity(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OpportunityRead | JSONResponse:
    try:
        require_permission(user, "crm.opportunities.read")
        return opportunity_service.get_opportunity(db, opportunity_id)
    except HTTPException as exc:
        return _failed(request, exc, "crm_opportunity_get_failed")


def _register_transition_routes(
    router: APIRouter,
    *,
    path: str,
    entity_type: str,
    transitions: PipelineTransitionService,
    read_model: type,
    won_model: type,
) -> None:
    """Registers history and transition endpoints for one pipeline entity kind."""
    plural = f"{entity_type}s"

    def history(
        request: Request,
        entity_id: uuid.UUID,
        db: Session = Depends(get_db),
        user: ActorUser = Depends(get_current_user),
    ) -> Any:
        try:
            require_permission(user, f"crm.{plural}.read")
            return transitions.list_history(db, entity_id)
        except HTTPException as exc:
            return _failed(request, exc, f"crm_{entity_type}_history_failed")

    def move_stage(
        request: Request,
        entity_id: uuid.UUID,
        dto: AdvanceStageRequest,
        db: Session = Depends(get_db),
        user: ActorUser = Depends(get_current_user),
    ) -> Any:
        try:
            require_permission(user, f"crm.{plural}.transition")
            return transitions.advance_stage(db, user, entity_id, dto)
        except HTTPException as exc:
            return _failed(request, exc, f"crm_{entity_type}_move_stage_failed")

    def mark_lost(
        request: Request,
        entity_id: uuid.UUID,
        dto: MarkLostRequest,
        db: Session = Depends(get_db),
        user: ActorUser = Depends(get_current_user),
    ) -> Any:
        try:
            require_permission(user, f"crm.{plural}.transition")
            return transitions.mark_lost(db, user, entity_id, dto)
        except HTTPException as exc:
            return _failed(request, exc, f"crm_{entity_type}_mark_lost_failed")

    def mark_won(
        request: Request,
        entity_id: uuid.UUID,
        dto: MarkWonRequest,
        db: Session = Depends(get_db),
        user: ActorUser = Depends(get_current_user),
    ) -> Any:
        try:
            require_permission(user, f"crm.{plural}.transition")
            result = transitions.mark_won(db, user, entity_id, dto)
        except HTTPException as exc:
            return _failed(request, exc, f"crm_{entity_type}_mark_won_failed")
        return won_model(entity=result.entity, successor=result.successor, warnings=result.warnings)

    def reactivate(
        request: Request,
        entity_id: uuid.UUID,
        dto: ReactivateRequest,
        db: Session = Depends(get_db),
        user: ActorUser = Depends(get_current_user),
    ) -> Any:
        try:
            require_permission(user, f"crm.{plural}.transition")
            return transitions.reactivate(db, user, entity_id, dto)
        except HTTPException as exc:
            return _failed(request, exc, f"crm_{entity_type}_reactivate_failed")

    router.add_api_route(f"{path}/{{entity_id}}/history", history, methods=["GET"], response_model=list[HistoryRead])
    router.add_api_route(f"{path}/{{entity_id}}/move-stage", move_stage, methods=["POST"], response_model=read_model)
    router.add_api_route(f"{path}/{{entity_id}}/mark-lost", mark_lost, methods=["POST"], response_model=read_model)
    router.add_api_route(f"{path}/{{entity_id}}/mark-won", mark_won, methods=["POST"], response_model=won_model)
    router.add_api_route(f"{path}/{{entity_id}}/reactivate", reactivate, methods=["POST"], response_model=read_model)


_register_transition_routes(
    contacts_router,
    path="/contacts",
    entity_type="contact",
    transitions=contact_transitions,
    read_model=ContactRead,
    won_model=ContactWonResponse,
)
_register_transition_routes(
    opportunities_router,
    path="/opportunities",
    entity_type="opportunity",
    transitions=opportunity_transitions,
    read_model=OpportunityRead,
    won_model=OpportunityWonResponse,
)


@tasks_router.get("", response_model=list[TaskRead])
def list_tasks(
    request: Request,
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[TaskRead] | JSONResponse:
    try:
        require_permission(user, "tasks.read")
        return task_service.list_tasks(db, assigned_to=user.effective_user_uuid, status_filter=status_filter, limit=limit)
    except HTTPException as exc:
        return _failed(request, exc, "task_list_failed")


@tasks_router.post("/{task_id}/complete", response_model=TaskRead)
def complete_task(
    request: Request,
    task_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TaskRead | JSONResponse:
    try:
        require_permission(user, "tasks.complete")
        return task_service.complete_task(db, user, task_id)
    except HTTPException as exc:
        return _failed(request, exc, "task_complete_failed")
