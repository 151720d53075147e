from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from crm_api.authz.api import admin_router
from crm_api.authz.context import ActorUser
from crm_api.authz.dependencies import get_current_user
from crm_api.authz.policy import require_role
from crm_api.core.config import get_settings
from crm_api.crm.api import routers as crm_routers
from crm_api.crm.enums import Role
from crm_api.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
for crm_router in crm_routers:
    router.include_router(crm_router)
router.include_router(admin_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
def me(user: ActorUser = Depends(get_current_user)) -> dict[str, str | list[str] | None]:
    return {
        "user_id": str(user.user_id),
        "email": user.email,
        "role": str(user.role),
        "team_ids": [str(team_id) for team_id in user.team_ids],
    }


@router.get("/metrics", tags=["system"])
def metrics(_user: ActorUser = Depends(require_role(Role.ADMIN))) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
