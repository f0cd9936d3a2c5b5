from fastapi import APIRouter, Depends
from fastapi.responses import Response

from sales_os.core.auth import AuthUser, get_current_user
from sales_os.core.config import get_settings
from sales_os.errors import ForbiddenError, NotFoundError
from sales_os.metrics import generate_metrics_payload, metrics_content_type
from sales_os.pipeline.api import (
    activities_router,
    leads_router,
    opportunities_router,
    setup_router,
    stage_history_router,
    tasks_router,
    users_router,
    weekly_reviews_router,
)
from sales_os.security.policy import is_admin

router = APIRouter()
router.include_router(leads_router)
router.include_router(opportunities_router)
router.include_router(activities_router)
router.include_router(tasks_router)
router.include_router(weekly_reviews_router)
router.include_router(stage_history_router)
router.include_router(users_router)
router.include_router(setup_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
        "row_store": settings.row_store_backend,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str]:
    return {
        "id": user.sub,
        "role": str(user.role),
        "name": user.name,
        "email": user.email,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise NotFoundError("metrics", "")
    if not is_admin(user.role):
        raise ForbiddenError("metrics", "read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
