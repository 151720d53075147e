from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.orm import Session

from crm_api.crm.enums import Role
from crm_api.models.audit import AuditLog

UserFactory = Callable[..., tuple[uuid.UUID, dict[str, str]]]


def _create_task(client: TestClient, headers: dict[str, str], **overrides: object) -> dict:
    payload: dict[str, object] = {"title": "Call venue", "priority": "high"}
    payload.update(overrides)
    response = client.post("/api/crm/tasks", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def test_task_defaults_to_creator_as_assignee(client: TestClient, make_user: UserFactory) -> None:
    user_id, headers = make_user()

    task = _create_task(client, headers)

    assert task["status"] == "pending"
    assert task["assigned_to"] == str(user_id)
    assert task["created_by"] == str(user_id)
    assert task["completed_at"] is None


def test_completing_stamps_and_reopening_clears(
    client: TestClient,
    db_session: Session,
    make_user: UserFactory,
) -> None:
    user_id, headers = make_user()
    task = _create_task(client, headers)

    completed = client.post(f"/api/crm/tasks/{task['id']}/status", json={"status": "completed"}, headers=headers)
    reopened = client.post(f"/api/crm/tasks/{task['id']}/status", json={"status": "in_progress"}, headers=headers)

    assert completed.status_code == 200
    assert completed.json()["completed_at"] is not None
    assert completed.json()["completed_by"] == str(user_id)
    assert reopened.json()["status"] == "in_progress"
    assert reopened.json()["completed_at"] is None
    assert reopened.json()["completed_by"] is None
    assert len(db_session.scalars(select(AuditLog).where(AuditLog.action == "task.status_change")).all()) == 2


def test_assignee_can_update_but_stranger_cannot(client: TestClient, make_user: UserFactory) -> None:
    _, creator_headers = make_user()
    assignee_id, assignee_headers = make_user()
    _, stranger_headers = make_user()
    task = _create_task(client, creator_headers, assigned_to=str(assignee_id))

    by_assignee = client.post(
        f"/api/crm/tasks/{task['id']}/status",
        json={"status": "completed"},
        headers=assignee_headers,
    )
    by_stranger = client.patch(f"/api/crm/tasks/{task['id']}", json={"title": "Hijack"}, headers=stranger_headers)

    assert by_assignee.status_code == 200
    assert by_stranger.status_code == 403


def test_tasks_sort_by_due_date_with_undated_last(client: TestClient, make_user: UserFactory) -> None:
    _, headers = make_user()
    now = datetime.now(timezone.utc)
    _create_task(client, headers, title="Undated")
    _create_task(client, headers, title="Later", due_date=(now + timedelta(days=3)).isoformat())
    _create_task(client, headers, title="Sooner", due_date=(now + timedelta(days=1)).isoformat())

    response = client.get("/api/crm/tasks", headers=headers)

    assert [item["title"] for item in response.json()] == ["Sooner", "Later", "Undated"]


def test_task_filters_and_delete(client: TestClient, make_user: UserFactory) -> None:
    _, headers = make_user()
    _, manager_headers = make_user(role=Role.MANAGER)
    deal = client.post("/api/crm/deals", json={"name": "Gala"}, headers=headers).json()
    linked = _create_task(client, headers, title="Prepare quote", deal_id=deal["id"])
    _create_task(client, headers, title="Unlinked")

    by_deal = client.get("/api/crm/tasks", params={"deal_id": deal["id"]}, headers=headers)
    assert [item["title"] for item in by_deal.json()] == ["Prepare quote"]

    client.post(f"/api/crm/tasks/{linked['id']}/status", json={"status": "completed"}, headers=headers)
    by_status = client.get("/api/crm/tasks", params={"status": "completed"}, headers=headers)
    assert [item["title"] for item in by_status.json()] == ["Prepare quote"]

    assert client.delete(f"/api/crm/tasks/{linked['id']}", headers=manager_headers).status_code == 204
    assert [item["title"] for item in client.get("/api/crm/tasks", headers=headers).json()] == ["Unlinked"]


def test_task_link_must_exist(client: TestClient, make_user: UserFactory) -> None:
    _, headers = make_user()

    response = client.post("/api/crm/tasks", json={"title": "Ghost", "lead_id": str(uuid.uuid4())}, headers=headers)

    assert response.status_code == 404
    assert response.json()["message"] == "lead not found"


def test_task_assignee_must_be_an_active_user(client: TestClient, make_user: UserFactory) -> None:
    _, headers = make_user()
    task = _create_task(client, headers)

    created = client.post("/api/crm/tasks", json={"title": "Nobody", "assigned_to": str(uuid.uuid4())}, headers=headers)
    updated = client.patch(f"/api/crm/tasks/{task['id']}", json={"assigned_to": str(uuid.uuid4())}, headers=headers)

    assert created.status_code == 422
    assert updated.status_code == 422
    assert updated.json()["message"] == "assigned_to must reference an active user"
