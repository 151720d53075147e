from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from crm_api.authz.context import ActorUser
from crm_api.authz.dependencies import get_current_user
from crm_api.authz.policy import require_role
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
from crm_api.authz.service import profile_admin_service, team_admin_service
from crm_api.core.database import get_db
from crm_api.crm.api import http_error_response
from crm_api.crm.enums import Role

admin_router = APIRouter(prefix="/api/crm", tags=["admin"])


@admin_router.get("/profiles/me", response_model=ProfileRead)
def get_my_profile(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ProfileRead | JSONResponse:
    try:
        return profile_admin_service.get_profile(db, user.user_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "admin_profile_get_failed")


@admin_router.patch("/profiles/me", response_model=ProfileRead)
def update_my_profile(
    request: Request,
    dto: ProfileUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ProfileRead | JSONResponse:
    try:
        return profile_admin_service.update_own_profile(db, user, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "admin_profile_update_failed")


@admin_router.get("/profiles", response_model=list[ProfileRead])
def list_profiles(
    db: Session = Depends(get_db),
    _user: ActorUser = Depends(get_current_user),
) -> list[ProfileRead]:
    return profile_admin_service.list_profiles(db)


@admin_router.patch("/profiles/{profile_id}/role", response_model=ProfileRead)
def update_profile_role(
    request: Request,
    profile_id: uuid.UUID,
    dto: ProfileRoleUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(require_role(Role.ADMIN)),
) -> ProfileRead | JSONResponse:
    try:
        return profile_admin_service.update_role(db, user, profile_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "admin_profile_role_update_failed")


@admin_router.patch("/profiles/{profile_id}/status", response_model=ProfileRead)
def update_profile_status(
    request: Request,
    profile_id: uuid.UUID,
    dto: ProfileStatusUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(require_role(Role.ADMIN)),
) -> ProfileRead | JSONResponse:
    try:
        return profile_admin_service.update_status(db, user, profile_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "admin_profile_status_update_failed")


@admin_router.post("/teams", response_model=TeamRead, status_code=status.HTTP_201_CREATED)
def create_team(
    request: Request,
    dto: TeamCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(require_role(Role.MANAGER)),
) -> TeamRead | JSONResponse:
    try:
        return team_admin_service.create_team(db, user, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "admin_team_create_failed")


@admin_router.get("/teams", response_model=list[TeamRead])
def list_teams(
    db: Session = Depends(get_db),
    _user: ActorUser = Depends(get_current_user),
) -> list[TeamRead]:
    return team_admin_service.list_teams(db)


@admin_router.patch("/teams/{team_id}", response_model=TeamRead)
def update_team(
    request: Request,
    team_id: uuid.UUID,
    dto: TeamUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(require_role(Role.MANAGER)),
) -> TeamRead | JSONResponse:
    try:
        return team_admin_service.update_team(db, user, team_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "admin_team_update_failed")


@admin_router.delete("/teams/{team_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_team(
    request: Request,
    team_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(require_role(Role.MANAGER)),
) -> Response:
    try:
        team_admin_service.delete_team(db, user, team_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return http_error_response(request, exc, "admin_team_delete_failed")


@admin_router.post("/teams/{team_id}/members", response_model=TeamMemberRead, status_code=status.HTTP_201_CREATED)
def add_team_member(
    request: Request,
    team_id: uuid.UUID,
    dto: TeamMemberCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(require_role(Role.MANAGER)),
) -> TeamMemberRead | JSONResponse:
    try:
        return team_admin_service.add_member(db, user, team_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "admin_team_member_add_failed")


@admin_router.patch("/teams/{team_id}/members/{user_id}", response_model=TeamMemberRead)
def update_team_member_role(
    request: Request,
    team_id: uuid.UUID,
    user_id: uuid.UUID,
    dto: TeamMemberRoleUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(require_role(Role.MANAGER)),
) -> TeamMemberRead | JSONResponse:
    try:
        return team_admin_service.update_member_role(db, user, team_id, user_id, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "admin_team_member_update_failed")


@admin_router.delete("/teams/{team_id}/members/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def remove_team_member(
    request: Request,
    team_id: uuid.UUID,
    user_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(require_role(Role.MANAGER)),
) -> Response:
    try:
        team_admin_service.remove_member(db, user, team_id, user_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return http_error_response(request, exc, "admin_team_member_remove_failed")
