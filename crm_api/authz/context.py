from __future__ import annotations

import uuid
from dataclasses import dataclass, field

from crm_api.crm.enums import Role


@dataclass(slots=True)
class ActorUser:
    """The authenticated caller as seen by services and policy checks."""

    user_id: uuid.UUID
    role: Role = Role.USER
    email: str | None = None
    team_ids: list[uuid.UUID] = field(default_factory=list)
    correlation_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_manager(self) -> bool:
        return self.role == Role.MANAGER
