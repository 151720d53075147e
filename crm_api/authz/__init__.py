from crm_api.authz.context import ActorUser
from crm_api.authz.dependencies import get_current_user
from crm_api.authz.policy import (
    can_modify_record,
    ensure_can_modify,
    ensure_role,
    has_role_access,
    require_role,
)

__all__ = [
    "ActorUser",
    "can_modify_record",
    "ensure_can_modify",
    "ensure_role",
    "get_current_user",
    "has_role_access",
    "require_role",
]
