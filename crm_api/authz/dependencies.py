from __future__ import annotations

import logging
import uuid

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from crm_api import audit
from crm_api.authz.context import ActorUser
from crm_api.authz.models import Profile, TeamMember
from crm_api.context import get_correlation_id
from crm_api.core.auth import AuthUser, get_current_user as get_auth_user, login_required_error
from crm_api.core.config import get_settings
from crm_api.core.database import get_db
from crm_api.crm.enums import AuditAction, AuditEntityType, ProfileStatus, Role

logger = logging.getLogger("crm_api.authz")


def get_current_user(
    request: Request,
    auth_user: AuthUser = Depends(get_auth_user),
    db: Session = Depends(get_db),
) -> ActorUser:
    try:
        user_id = uuid.UUID(auth_user.sub)
    except ValueError:
        raise login_required_error(request)

    profile = db.scalar(select(Profile).where(Profile.id == user_id))
    if profile is None:
        profile = _provision_profile(db, user_id, auth_user)

    if profile.status != ProfileStatus.ACTIVE:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "message": f"profile is {profile.status}",
                "redirect_to": get_settings().unauthorized_path,
            },
        )

    team_ids = list(db.scalars(select(TeamMember.team_id).where(TeamMember.user_id == user_id)).all())
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    return ActorUser(
        user_id=user_id,
        role=Role(profile.role),
        email=profile.email,
        team_ids=team_ids,
        correlation_id=correlation_id,
    )


def _provision_profile(db: Session, user_id: uuid.UUID, auth_user: AuthUser) -> Profile:
    profile = Profile(
        id=user_id,
        email=auth_user.email,
        full_name=auth_user.full_name,
        role=Role.USER,
        status=ProfileStatus.ACTIVE,
    )
    db.add(profile)
    db.commit()
    logger.info("profile_provisioned", extra={"actor_user_id": str(user_id)})
    audit.record(
        db,
        actor_user_id=user_id,
        action=AuditAction.USER_SIGNUP,
        entity_type=AuditEntityType.PROFILE,
        entity_id=user_id,
        new_values={"email": auth_user.email, "full_name": auth_user.full_name, "role": str(Role.USER)},
    )
    db.refresh(profile)
    return profile
