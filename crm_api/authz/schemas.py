from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from crm_api.crm.enums import ProfileStatus, Role, TeamRole


class ProfileRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str | None
    full_name: str | None
    role: Role
    status: ProfileStatus
    created_at: datetime
    updated_at: datetime


class ProfileUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    full_name: str = Field(min_length=1)


class ProfileRoleUpdate(BaseModel):
    role: Role


class ProfileStatusUpdate(BaseModel):
    status: ProfileStatus


class TeamCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str | None = None


class TeamUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1)
    description: str | None = None


class TeamMemberRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    team_id: UUID
    user_id: UUID
    role: TeamRole
    created_at: datetime


class TeamRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    description: str | None
    created_by: UUID | None
    members: list[TeamMemberRead] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class TeamMemberCreate(BaseModel):
    user_id: UUID
    role: TeamRole = TeamRole.MEMBER


class TeamMemberRoleUpdate(BaseModel):
    role: TeamRole
