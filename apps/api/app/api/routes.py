import logging

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.auth import AuthUser, get_current_user
from app.core.database import get_db
from app.core.config import get_settings
from app.metrics import generate_metrics_payload, metrics_content_type
from app.crm.api import (
    clients_router,
    events_router,
    hubs_router,
    important_fields_router,
    managers_router,
    search_router,
    v1_router,
)

logger = logging.getLogger("app.lifecycle")

router = APIRouter()
router.include_router(hubs_router)
router.include_router(clients_router)
router.include_router(events_router)
router.include_router(managers_router)
router.include_router(important_fields_router)
router.include_router(search_router)
router.include_router(v1_router)


@router.get("/health", tags=["system"])
def health(db: Session = Depends(get_db)) -> JSONResponse:
    settings = get_settings()
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError:
        logger.exception("health.database_unavailable")
        database = "unavailable"
    healthy = database == "ok"
    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ok" if healthy else "degraded",
            "service": settings.app_name,
            "environment": settings.app_env,
            "database": database,
        },
    )


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str] | None]:
    return {
        "sub": user.sub,
        "roles": user.roles,
        "email": user.email,
        "hub_id": str(user.hub_id) if user.hub_id else None,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if settings.crm_admin_role not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing role: {settings.crm_admin_role}")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
