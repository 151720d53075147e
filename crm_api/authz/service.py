from __future__ import annotations

import logging
import uuid

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from crm_api import audit
from crm_api.authz.context import ActorUser
from crm_api.authz.models import Profile, Team, TeamMember
from crm_api.authz.policy import ensure_role
from crm_api.authz.schemas import (
    ProfileRead,
    ProfileRoleUpdate,
    ProfileStatusUpdate,
    ProfileUpdate,
    TeamCreate,
    TeamMemberCreate,
    TeamMemberRead,
    TeamMemberRoleUpdate,
    TeamRead,
    TeamUpdate,
)
from crm_api.crm.enums import AuditAction, AuditEntityType, Role

logger = logging.getLogger("crm_api.admin")


class ProfileAdminService:
    def get_profile(self, session: Session, profile_id: uuid.UUID) -> ProfileRead:
        return ProfileRead.model_validate(self._get_profile(session, profile_id))

    def list_profiles(self, session: Session) -> list[ProfileRead]:
        rows = session.scalars(select(Profile).order_by(Profile.full_name.asc(), Profile.email.asc())).all()
        return [ProfileRead.model_validate(row) for row in rows]

    def update_own_profile(self, session: Session, actor_user: ActorUser, dto: ProfileUpdate) -> ProfileRead:
        profile = self._get_profile(session, actor_user.user_id)
        old_name = profile.full_name
        profile.full_name = dto.full_name.strip()
        session.commit()

        result = ProfileRead.model_validate(profile)
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            action=AuditAction.USER_UPDATE_PROFILE,
            entity_type=AuditEntityType.PROFILE,
            entity_id=profile.id,
            old_values={"full_name": old_name},
            new_values={"full_name": result.full_name},
        )
        return result

    def update_role(
        self,
        session: Session,
        actor_user: ActorUser,
        profile_id: uuid.UUID,
        dto: ProfileRoleUpdate,
    ) -> ProfileRead:
        ensure_role(actor_user, Role.ADMIN)
        profile = self._get_profile(session, profile_id)
        if profile.id == actor_user.user_id and dto.role != Role.ADMIN:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="admins cannot demote themselves")

        old_role = profile.role
        profile.role = dto.role
        session.commit()

        result = ProfileRead.model_validate(profile)
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            action=AuditAction.USER_UPDATE_ROLE,
            entity_type=AuditEntityType.USER,
            entity_id=profile_id,
            old_values={"role": str(old_role)},
            new_values={"role": str(dto.role)},
        )
        logger.info(
            "profile_role_updated",
            extra={"entity_type": "profile", "entity_id": str(profile_id), "actor_user_id": str(actor_user.user_id)},
        )
        return result

    def update_status(
        self,
        session: Session,
        actor_user: ActorUser,
        profile_id: uuid.UUID,
        dto: ProfileStatusUpdate,
    ) -> ProfileRead:
        ensure_role(actor_user, Role.ADMIN)
        profile = self._get_profile(session, profile_id)
        if profile.id == actor_user.user_id:
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="cannot change own status")

        old_status = profile.status
        profile.status = dto.status
        session.commit()

        result = ProfileRead.model_validate(profile)
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            action=AuditAction.USER_UPDATE_STATUS,
            entity_type=AuditEntityType.USER,
            entity_id=profile_id,
            old_values={"status": str(old_status)},
            new_values={"status": str(dto.status)},
        )
        return result

    def _get_profile(self, session: Session, profile_id: uuid.UUID) -> Profile:
        profile = session.get(Profile, profile_id)
        if profile is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="profile not found")
        return profile


class TeamAdminService:
    def create_team(self, session: Session, actor_user: ActorUser, dto: TeamCreate) -> TeamRead:
        ensure_role(actor_user, Role.MANAGER)
        team = Team(name=dto.name.strip(), description=dto.description, created_by=actor_user.user_id)
        session.add(team)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="team already exists")

        result = self._to_read(session, team.id)
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            action=AuditAction.TEAM_CREATE,
            entity_type=AuditEntityType.TEAM,
            entity_id=team.id,
            new_values={"name": result.name, "description": result.description},
        )
        return result

    def list_teams(self, session: Session) -> list[TeamRead]:
        rows = session.scalars(select(Team).options(selectinload(Team.members)).order_by(Team.name.asc())).all()
        return [TeamRead.model_validate(row) for row in rows]

    def update_team(self, session: Session, actor_user: ActorUser, team_id: uuid.UUID, dto: TeamUpdate) -> TeamRead:
        ensure_role(actor_user, Role.MANAGER)
        team = self._get_team(session, team_id)
        before = {"name": team.name, "description": team.description}

        payload = dto.model_dump(exclude_unset=True)
        if payload.get("name") is not None:
            team.name = payload["name"].strip()
        if "description" in payload:
            team.description = payload["description"]
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="team already exists")

        result = self._to_read(session, team_id)
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            action=AuditAction.TEAM_UPDATE,
            entity_type=AuditEntityType.TEAM,
            entity_id=team_id,
            old_values=before,
            new_values={"name": result.name, "description": result.description},
        )
        return result

    def delete_team(self, session: Session, actor_user: ActorUser, team_id: uuid.UUID) -> None:
        ensure_role(actor_user, Role.MANAGER)
        team = self._get_team(session, team_id)
        before = {"name": team.name, "description": team.description, "member_count": len(team.members)}
        session.delete(team)
        session.commit()

        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            action=AuditAction.TEAM_DELETE,
            entity_type=AuditEntityType.TEAM,
            entity_id=team_id,
            old_values=before,
        )

    def add_member(
        self,
        session: Session,
        actor_user: ActorUser,
        team_id: uuid.UUID,
        dto: TeamMemberCreate,
    ) -> TeamMemberRead:
        ensure_role(actor_user, Role.MANAGER)
        self._get_team(session, team_id)
        if session.get(Profile, dto.user_id) is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="profile not found")

        member = TeamMember(team_id=team_id, user_id=dto.user_id, role=dto.role)
        session.add(member)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="user is already a team member")

        result = TeamMemberRead.model_validate(member)
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            action=AuditAction.TEAM_ADD_MEMBER,
            entity_type=AuditEntityType.TEAM_MEMBER,
            entity_id=result.id,
            new_values={"team_id": str(team_id), "user_id": str(dto.user_id), "role": str(dto.role)},
        )
        return result

    def update_member_role(
        self,
        session: Session,
        actor_user: ActorUser,
        team_id: uuid.UUID,
        user_id: uuid.UUID,
        dto: TeamMemberRoleUpdate,
    ) -> TeamMemberRead:
        ensure_role(actor_user, Role.MANAGER)
        member = self._get_member(session, team_id, user_id)
        old_role = member.role
        member.role = dto.role
        session.commit()

        result = TeamMemberRead.model_validate(member)
        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            action=AuditAction.TEAM_UPDATE_MEMBER_ROLE,
            entity_type=AuditEntityType.TEAM_MEMBER,
            entity_id=result.id,
            old_values={"role": str(old_role)},
            new_values={"role": str(dto.role)},
        )
        return result

    def remove_member(self, session: Session, actor_user: ActorUser, team_id: uuid.UUID, user_id: uuid.UUID) -> None:
        ensure_role(actor_user, Role.MANAGER)
        member = self._get_member(session, team_id, user_id)
        member_id = member.id
        old_role = member.role
        session.delete(member)
        session.commit()

        audit.record(
            session,
            actor_user_id=actor_user.user_id,
            action=AuditAction.TEAM_REMOVE_MEMBER,
            entity_type=AuditEntityType.TEAM_MEMBER,
            entity_id=member_id,
            old_values={"team_id": str(team_id), "user_id": str(user_id), "role": str(old_role)},
        )

    def _get_team(self, session: Session, team_id: uuid.UUID) -> Team:
        team = session.scalar(select(Team).where(Team.id == team_id).options(selectinload(Team.members)))
        if team is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="team not found")
        return team

    def _get_member(self, session: Session, team_id: uuid.UUID, user_id: uuid.UUID) -> TeamMember:
        member = session.scalar(
            select(TeamMember).where(TeamMember.team_id == team_id, TeamMember.user_id == user_id)
        )
        if member is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="team member not found")
        return member

    def _to_read(self, session: Session, team_id: uuid.UUID) -> TeamRead:
        return TeamRead.model_validate(self._get_team(session, team_id))


profile_admin_service = ProfileAdminService()
team_admin_service = TeamAdminService()
