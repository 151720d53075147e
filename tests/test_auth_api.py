from __future__ import annotations

import uuid
from collections.abc import Callable

from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import select
from sqlalchemy.orm import Session

from crm_api.authz.models import Profile
from crm_api.core.config import get_settings
from crm_api.crm.enums import ProfileStatus, Role
from crm_api.models.audit import AuditLog


def test_missing_token_returns_login_redirect(client: TestClient) -> None:
    response = client.get("/api/crm/leads")

    assert response.status_code == 401
    detail = response.json()["detail"]
    assert detail["redirect_to"] == "/auth"
    assert detail["next"] == "/api/crm/leads"


def test_invalid_token_is_rejected(client: TestClient) -> None:
    response = client.get("/me", headers={"Authorization": "Bearer not-a-jwt"})

    assert response.status_code == 401
    assert response.json()["detail"]["redirect_to"] == "/auth"


def test_non_uuid_subject_is_rejected(client: TestClient) -> None:
    settings = get_settings()
    token = jwt.encode({"sub": "not-a-uuid"}, settings.jwt_secret, algorithm=settings.jwt_algorithm)

    response = client.get("/me", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 401


def test_first_request_provisions_profile_and_audits_signup(
    client: TestClient,
    db_session: Session,
    token_headers: Callable[..., dict[str, str]],
) -> None:
    user_id = uuid.uuid4()
    headers = token_headers(user_id, email="new.rep@example.com", name="New Rep")

    response = client.get("/me", headers=headers)

    assert response.status_code == 200
    body = response.json()
    assert body["user_id"] == str(user_id)
    assert body["role"] == "user"
    assert body["email"] == "new.rep@example.com"

    profile = db_session.get(Profile, user_id)
    assert profile is not None
    assert profile.full_name == "New Rep"
    assert profile.status == ProfileStatus.ACTIVE

    signups = db_session.scalars(select(AuditLog).where(AuditLog.action == "user.signup")).all()
    assert len(signups) == 1
    assert signups[0].actor_id == user_id
    assert signups[0].entity_id == user_id

    # A second request reuses the profile instead of provisioning again.
    assert client.get("/me", headers=headers).status_code == 200
    assert len(db_session.scalars(select(AuditLog).where(AuditLog.action == "user.signup")).all()) == 1


def test_inactive_profile_is_forbidden(client: TestClient, make_user: Callable[..., tuple[uuid.UUID, dict]]) -> None:
    _, headers = make_user(status=ProfileStatus.SUSPENDED)

    response = client.get("/api/crm/leads", headers=headers)

    assert response.status_code == 403
    assert response.json()["detail"]["redirect_to"] == "/unauthorized"


def test_me_reports_role_and_teams(client: TestClient, make_user: Callable[..., tuple[uuid.UUID, dict]]) -> None:
    manager_id, manager_headers = make_user(role=Role.MANAGER)
    team = client.post("/api/crm/teams", json={"name": "North"}, headers=manager_headers)
    assert team.status_code == 201
    assert client.post(
        f"/api/crm/teams/{team.json()['id']}/members",
        json={"user_id": str(manager_id), "role": "owner"},
        headers=manager_headers,
    ).status_code == 201

    response = client.get("/me", headers=manager_headers)

    assert response.status_code == 200
    assert response.json()["role"] == "manager"
    assert response.json()["team_ids"] == [team.json()["id"]]


def test_health_needs_no_auth(client: TestClient) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
