import logging

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backoffice import __version__
from backoffice.activities.api import router as critical_activities_router
from backoffice.contracts.api import router as contracts_router
from backoffice.core.auth import AuthUser, get_current_user
from backoffice.core.config import get_settings
from backoffice.core.database import get_db
from backoffice.crm.api import contacts_router, funnels_router, opportunities_router, tasks_router
from backoffice.metrics import render_metrics

METRICS_ROLE = "system.metrics.read"

logger = logging.getLogger("backoffice.system")

router = APIRouter()
for domain_router in (
    funnels_router,
    contacts_router,
    opportunities_router,
    tasks_router,
    contracts_router,
    critical_activities_router,
):
    router.include_router(domain_router)


@router.get("/health", tags=["system"])
def health(db: Session = Depends(get_db)) -> dict[str, str]:
    settings = get_settings()
    database = "ok"
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("health_database_unavailable", extra={"error": str(exc)})
        database = "unavailable"
    return {
        "status": "ok" if database == "ok" else "degraded",
        "service": settings.app_name,
        "version": __version__,
        "environment": settings.app_env,
        "database": database,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if METRICS_ROLE not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {METRICS_ROLE}")
    payload, content_type = render_metrics()
    return Response(content=payload, media_type=content_type)
