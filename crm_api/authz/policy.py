from __future__ import annotations

import uuid
from collections.abc import Callable, Iterable

from fastapi import Depends, HTTPException, status

from crm_api.authz.context import ActorUser
from crm_api.authz.dependencies import get_current_user
from crm_api.core.config import get_settings
from crm_api.crm.enums import Role


def has_role_access(role: Role | str, required: Iterable[Role | str]) -> bool:
    """Route-level gate.

    An empty requirement admits any authenticated user. Admin passes every gate,
    and a manager passes any gate that lists the plain user role.
    """
    required_roles = {Role(item) for item in required}
    if not required_roles:
        return True
    actor_role = Role(role)
    if actor_role == Role.ADMIN or actor_role in required_roles:
        return True
    return actor_role == Role.MANAGER and Role.USER in required_roles


def can_modify_record(actor_user: ActorUser, *owner_ids: uuid.UUID | None) -> bool:
    if actor_user.is_admin or actor_user.is_manager:
        return True
    return any(owner_id is not None and owner_id == actor_user.user_id for owner_id in owner_ids)


def ensure_role(actor_user: ActorUser, *roles: Role) -> None:
    if has_role_access(actor_user.role, roles):
        return
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={
            "message": f"requires role: {' or '.join(str(role) for role in roles)}",
            "redirect_to": get_settings().unauthorized_path,
        },
    )


def ensure_can_modify(actor_user: ActorUser, resource: str, *owner_ids: uuid.UUID | None) -> None:
    if not can_modify_record(actor_user, *owner_ids):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"not allowed to modify {resource}")


def require_role(*roles: Role) -> Callable[[ActorUser], ActorUser]:
    def checker(user: ActorUser = Depends(get_current_user)) -> ActorUser:
        ensure_role(user, *roles)
        return user

    return checker
