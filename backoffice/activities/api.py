from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from backoffice.activities.rules import RuleConfigError
from backoffice.activities.schemas import (
    CriticalActivityCreate,
    CriticalActivityCreated,
    CriticalActivitySummary,
    CriticalActivityUpdate,
    EvaluatePerpetualResponse,
    EvaluateSingleRequest,
    EvaluateSingleResponse,
)
from backoffice.activities.service import critical_activity_service, evaluator
from backoffice.core.database import get_db
from backoffice.crm.api import error_response, get_current_user, require_permission
from backoffice.crm.service import ActorUser


logger = logging.getLogger("backoffice.activities.api")

router = APIRouter(prefix="/api/critical-activities", tags=["critical_activities"])


def _evaluation_failed(exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"error": str(exc)})


@router.post("/evaluate", response_model=EvaluatePerpetualResponse)
def evaluate_perpetual_activities(
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> EvaluatePerpetualResponse | JSONResponse:
    require_permission(user, "activities.evaluate")
    try:
        return evaluator.evaluate_perpetual(db)
    except Exception as exc:
        db.rollback()
        logger.exception("critical_activity_batch_failed", extra={"error": str(exc)})
        return _evaluation_failed(exc)


@router.post("/evaluate-single", response_model=EvaluateSingleResponse)
def evaluate_single_activity(
    dto: EvaluateSingleRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> EvaluateSingleResponse | JSONResponse:
    require_permission(user, "activities.evaluate")
    try:
        return EvaluateSingleResponse(tasks_created=evaluator.evaluate_single(db, dto.activity_id))
    except HTTPException as exc:
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})
    except RuleConfigError as exc:
        return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"error": str(exc)})
    except Exception as exc:
        db.rollback()
        logger.exception(
            "critical_activity_evaluation_failed",
            extra={"activity_id": str(dto.activity_id), "error": str(exc)},
        )
        return _evaluation_failed(exc)


@router.post("", response_model=CriticalActivityCreated, status_code=status.HTTP_201_CREATED)
def create_critical_activity(
    request: Request,
    dto: CriticalActivityCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CriticalActivityCreated | JSONResponse:
    try:
        require_permission(user, "activities.manage")
        return critical_activity_service.create_activity(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="critical_activity_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("", response_model=list[CriticalActivitySummary])
def list_critical_activities(
    request: Request,
    include_inactive: bool = Query(default=False),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[CriticalActivitySummary] | JSONResponse:
    try:
        require_permission(user, "activities.read")
        return critical_activity_service.list_activities(db, include_inactive=include_inactive)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="critical_activity_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("/{activity_id}", response_model=CriticalActivitySummary)
def get_critical_activity(
    request: Request,
    activity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CriticalActivitySummary | JSONResponse:
    try:
        require_permission(user, "activities.read")
        return critical_activity_service.get_activity(db, activity_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="critical_activity_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.patch("/{activity_id}", response_model=CriticalActivitySummary)
def update_critical_activity(
    request: Request,
    activity_id: uuid.UUID,
    dto: CriticalActivityUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> CriticalActivitySummary | JSONResponse:
    try:
        require_permission(user, "activities.manage")
        return critical_activity_service.update_activity(db, activity_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="critical_activity_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
