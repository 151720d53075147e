from __future__ import annotations

import uuid
from collections.abc import Callable

from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.orm import Session

from crm_api.authz.models import TeamMember
from crm_api.crm.enums import Role
from crm_api.models.audit import AuditLog

UserFactory = Callable[..., tuple[uuid.UUID, dict[str, str]]]


def test_own_profile_read_and_rename(client: TestClient, db_session: Session, make_user: UserFactory) -> None:
    user_id, headers = make_user(full_name="Old Name")

    read = client.get("/api/crm/profiles/me", headers=headers)
    renamed = client.patch("/api/crm/profiles/me", json={"full_name": "  New Name "}, headers=headers)

    assert read.json()["full_name"] == "Old Name"
    assert renamed.status_code == 200
    assert renamed.json()["full_name"] == "New Name"
    entry = db_session.scalar(select(AuditLog).where(AuditLog.action == "user.update_profile"))
    assert entry is not None
    assert entry.old_values == {"full_name": "Old Name"}
    assert entry.entity_id == user_id


def test_profile_update_rejects_role_field(client: TestClient, make_user: UserFactory) -> None:
    _, headers = make_user()

    response = client.patch("/api/crm/profiles/me", json={"full_name": "X", "role": "admin"}, headers=headers)

    assert response.status_code == 422


def test_admin_changes_role_and_user_gains_access(client: TestClient, db_session: Session, make_user: UserFactory) -> None:
    _, admin_headers = make_user(role=Role.ADMIN)
    user_id, user_headers = make_user()

    assert client.get("/api/crm/audit-logs", headers=user_headers).status_code == 403

    response = client.patch(f"/api/crm/profiles/{user_id}/role", json={"role": "manager"}, headers=admin_headers)

    assert response.status_code == 200
    assert response.json()["role"] == "manager"
    assert client.get("/api/crm/audit-logs", headers=user_headers).status_code == 200
    entry = db_session.scalar(select(AuditLog).where(AuditLog.action == "user.update_role"))
    assert entry is not None
    assert entry.old_values == {"role": "user"}
    assert entry.new_values == {"role": "manager"}


def test_role_change_requires_admin(client: TestClient, make_user: UserFactory) -> None:
    _, manager_headers = make_user(role=Role.MANAGER)
    user_id, _ = make_user()

    response = client.patch(f"/api/crm/profiles/{user_id}/role", json={"role": "admin"}, headers=manager_headers)

    assert response.status_code == 403
    assert response.json()["detail"]["redirect_to"] == "/unauthorized"


def test_admin_cannot_demote_self_or_change_own_status(client: TestClient, make_user: UserFactory) -> None:
    admin_id, admin_headers = make_user(role=Role.ADMIN)

    demote = client.patch(f"/api/crm/profiles/{admin_id}/role", json={"role": "user"}, headers=admin_headers)
    suspend = client.patch(f"/api/crm/profiles/{admin_id}/status", json={"status": "suspended"}, headers=admin_headers)

    assert demote.status_code == 422
    assert suspend.status_code == 422


def test_suspended_user_is_locked_out(client: TestClient, make_user: UserFactory) -> None:
    _, admin_headers = make_user(role=Role.ADMIN)
    user_id, user_headers = make_user()
    assert client.get("/api/crm/leads", headers=user_headers).status_code == 200

    response = client.patch(f"/api/crm/profiles/{user_id}/status", json={"status": "suspended"}, headers=admin_headers)

    assert response.status_code == 200
    assert response.json()["status"] == "suspended"
    assert client.get("/api/crm/leads", headers=user_headers).status_code == 403


def test_team_lifecycle(client: TestClient, db_session: Session, make_user: UserFactory) -> None:
    _, manager_headers = make_user(role=Role.MANAGER)
    rep_id, _ = make_user()

    created = client.post("/api/crm/teams", json={"name": "Events South", "description": "Chennai"}, headers=manager_headers)
    assert created.status_code == 201
    team_id = created.json()["id"]

    duplicate = client.post("/api/crm/teams", json={"name": "Events South"}, headers=manager_headers)
    assert duplicate.status_code == 409

    added = client.post(f"/api/crm/teams/{team_id}/members", json={"user_id": str(rep_id)}, headers=manager_headers)
    assert added.status_code == 201
    assert added.json()["role"] == "member"
    again = client.post(f"/api/crm/teams/{team_id}/members", json={"user_id": str(rep_id)}, headers=manager_headers)
    assert again.status_code == 409
    ghost = client.post(f"/api/crm/teams/{team_id}/members", json={"user_id": str(uuid.uuid4())}, headers=manager_headers)
    assert ghost.status_code == 404

    promoted = client.patch(
        f"/api/crm/teams/{team_id}/members/{rep_id}",
        json={"role": "manager"},
        headers=manager_headers,
    )
    assert promoted.json()["role"] == "manager"

    renamed = client.patch(f"/api/crm/teams/{team_id}", json={"name": "Events Chennai"}, headers=manager_headers)
    assert renamed.json()["name"] == "Events Chennai"
    assert [member["user_id"] for member in renamed.json()["members"]] == [str(rep_id)]

    assert client.delete(f"/api/crm/teams/{team_id}/members/{rep_id}", headers=manager_headers).status_code == 204
    assert client.delete(f"/api/crm/teams/{team_id}", headers=manager_headers).status_code == 204
    assert client.get("/api/crm/teams", headers=manager_headers).json() == []
    assert db_session.scalars(select(TeamMember)).all() == []

    actions = set(db_session.scalars(select(AuditLog.action)).all())
    assert {
        "team.create",
        "team.add_member",
        "team.update_member_role",
        "team.update",
        "team.remove_member",
        "team.delete",
    } <= actions


def test_plain_user_cannot_manage_teams(client: TestClient, make_user: UserFactory) -> None:
    _, headers = make_user()

    response = client.post("/api/crm/teams", json={"name": "Rogue"}, headers=headers)

    assert response.status_code == 403


def test_list_profiles(client: TestClient, make_user: UserFactory) -> None:
    _, headers = make_user(full_name="Anita")
    make_user(full_name="Bala")

    response = client.get("/api/crm/profiles", headers=headers)

    assert [item["full_name"] for item in response.json()] == ["Anita", "Bala"]
