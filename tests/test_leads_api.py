from __future__ import annotations

import uuid
from collections.abc import Callable

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from crm_api import events
from crm_api.crm import service as crm_service
from crm_api.crm.enums import LeadStatus, ProfileStatus, Role
from crm_api.crm.models import Contact, Lead
from crm_api.models.audit import AuditLog

UserFactory = Callable[..., tuple[uuid.UUID, dict[str, str]]]


def _create_lead(client: TestClient, headers: dict[str, str], **overrides: object) -> dict:
    payload = {"name": "Asha Rao", "source": "website", "phone": "+91 98450 00000", "email": "asha@example.com"}
    payload.update(overrides)
    response = client.post("/api/crm/leads", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


def test_create_lead_defaults_owner_and_seeds_history(client: TestClient, make_user: UserFactory) -> None:
    user_id, headers = make_user()

    lead = _create_lead(client, headers)

    assert lead["status"] == "new"
    assert lead["owner_id"] == str(user_id)
    assert lead["created_by"] == str(user_id)
    assert lead["converted_to_contact_id"] is None

    history = client.get(f"/api/crm/leads/{lead['id']}/status-history", headers=headers)
    assert history.status_code == 200
    assert [(row["old_status"], row["new_status"]) for row in history.json()] == [(None, "new")]

    created_events = [item for item in events.published_events if item["event_type"] == "crm.lead.created"]
    assert created_events and created_events[-1]["payload"]["lead_id"] == lead["id"]


def test_plain_user_cannot_create_lead_for_someone_else(client: TestClient, make_user: UserFactory) -> None:
    _, headers = make_user()

    response = client.post(
        "/api/crm/leads",
        json={"name": "Other", "source": "call", "owner_id": str(uuid.uuid4())},
        headers=headers,
    )

    assert response.status_code == 403
    assert response.json()["code"] == "crm_lead_create_failed"


def test_list_leads_filters(client: TestClient, make_user: UserFactory) -> None:
    _, headers = make_user()
    _create_lead(client, headers, name="Website Lead", source="website")
    referral = _create_lead(client, headers, name="Referral Lead", source="referral", email="ref@example.com")
    client.post(f"/api/crm/leads/{referral['id']}/status", json={"status": "contacted"}, headers=headers)

    by_source = client.get("/api/crm/leads", params={"source": "referral"}, headers=headers)
    by_status = client.get("/api/crm/leads", params={"status": "contacted"}, headers=headers)
    by_query = client.get("/api/crm/leads", params={"q": "website"}, headers=headers)

    assert [item["name"] for item in by_source.json()] == ["Referral Lead"]
    assert [item["name"] for item in by_status.json()] == ["Referral Lead"]
    assert [item["name"] for item in by_query.json()] == ["Website Lead"]


def test_status_change_appends_history_audit_and_event(
    client: TestClient,
    db_session: Session,
    make_user: UserFactory,
) -> None:
    user_id, headers = make_user()
    lead = _create_lead(client, headers)

    first = client.post(
        f"/api/crm/leads/{lead['id']}/status",
        json={"status": "contacted", "notes": "Called back"},
        headers=headers,
    )
    second = client.post(f"/api/crm/leads/{lead['id']}/status", json={"status": "interested"}, headers=headers)

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["status"] == "interested"

    history = client.get(f"/api/crm/leads/{lead['id']}/status-history", headers=headers).json()
    assert [(row["old_status"], row["new_status"]) for row in history] == [
        (None, "new"),
        ("new", "contacted"),
        ("contacted", "interested"),
    ]
    assert history[1]["notes"] == "Called back"
    assert history[1]["changed_by"] == str(user_id)

    audits = db_session.scalars(select(AuditLog).where(AuditLog.action == "lead.status_change")).all()
    by_new_status = {row.new_values["status"]: row for row in audits}
    assert set(by_new_status) == {"contacted", "interested"}
    assert by_new_status["contacted"].old_values == {"status": "new"}
    assert by_new_status["contacted"].new_values["notes"] == "Called back"

    changed = [item for item in events.published_events if item["event_type"] == "crm.lead.status_changed"]
    assert changed[-1]["payload"] == {"lead_id": lead["id"], "old_status": "contacted", "new_status": "interested"}


def test_same_status_and_direct_conversion_are_rejected(client: TestClient, make_user: UserFactory) -> None:
    _, headers = make_user()
    lead = _create_lead(client, headers)

    same = client.post(f"/api/crm/leads/{lead['id']}/status", json={"status": "new"}, headers=headers)
    converted = client.post(f"/api/crm/leads/{lead['id']}/status", json={"status": "converted"}, headers=headers)

    assert same.status_code == 422
    assert same.json()["code"] == "crm_lead_status_change_failed"
    assert converted.status_code == 422
    assert converted.json()["details"]["requested"] == "converted"


def test_convert_lead_creates_contact_and_links_both_ways(
    client: TestClient,
    db_session: Session,
    make_user: UserFactory,
) -> None:
    user_id, headers = make_user()
    lead = _create_lead(client, headers)
    client.post(f"/api/crm/leads/{lead['id']}/status", json={"status": "interested"}, headers=headers)

    response = client.post(
        f"/api/crm/leads/{lead['id']}/convert",
        json={
            "first_name": "Asha",
            "last_name": "Rao",
            "company": "Rao Events",
            "phones": [{"phone": "+91 98450 00000"}, {"phone": "+91 80 4000 0000", "phone_type": "work", "is_primary": True}],
            "emails": [{"email": "asha@example.com"}],
        },
        headers=headers,
    )

    assert response.status_code == 200, response.text
    body = response.json()
    assert body["lead"]["status"] == "converted"
    assert body["lead"]["converted_to_contact_id"] == body["contact"]["id"]
    assert body["contact"]["lead_id"] == lead["id"]
    assert body["contact"]["owner_id"] == str(user_id)
    assert body["contact"]["primary_phone"] == "+91 80 4000 0000"
    assert body["contact"]["primary_email"] == "asha@example.com"

    history = client.get(f"/api/crm/leads/{lead['id']}/status-history", headers=headers).json()
    assert (history[-1]["old_status"], history[-1]["new_status"]) == ("interested", "converted")
    assert history[-1]["notes"] == "Converted to contact"

    actions = set(db_session.scalars(select(AuditLog.action)).all())
    assert {"lead.convert", "contact.create"} <= actions
    assert any(item["event_type"] == "crm.lead.converted" for item in events.published_events)


def test_reconverting_returns_conflict_without_new_contact(
    client: TestClient,
    db_session: Session,
    make_user: UserFactory,
) -> None:
    _, headers = make_user()
    lead = _create_lead(client, headers)
    first = client.post(f"/api/crm/leads/{lead['id']}/convert", json={"first_name": "Asha"}, headers=headers)
    assert first.status_code == 200

    second = client.post(f"/api/crm/leads/{lead['id']}/convert", json={"first_name": "Asha"}, headers=headers)

    assert second.status_code == 409
    assert second.json()["details"]["contact_id"] == first.json()["contact"]["id"]
    assert db_session.scalar(select(func.count()).select_from(Contact)) == 1

    reopen = client.post(f"/api/crm/leads/{lead['id']}/status", json={"status": "new"}, headers=headers)
    assert reopen.status_code == 422


def test_failed_conversion_leaves_no_partial_rows(
    client: TestClient,
    db_session: Session,
    make_user: UserFactory,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _, headers = make_user()
    lead = _create_lead(client, headers)

    def failing_mark(lead_row: Lead, contact_id: uuid.UUID) -> LeadStatus:
        raise RuntimeError("conversion interrupted")

    monkeypatch.setattr(crm_service, "mark_lead_converted", failing_mark)

    with pytest.raises(RuntimeError):
        client.post(
            f"/api/crm/leads/{lead['id']}/convert",
            json={"first_name": "Asha", "emails": [{"email": "asha@example.com"}]},
            headers=headers,
        )

    assert db_session.scalar(select(func.count()).select_from(Contact)) == 0
    stored = db_session.get(Lead, uuid.UUID(lead["id"]))
    assert stored is not None
    assert stored.status == LeadStatus.NEW
    assert stored.converted_to_contact_id is None


def test_non_owner_user_cannot_modify_but_manager_can(client: TestClient, make_user: UserFactory) -> None:
    _, owner_headers = make_user()
    _, other_headers = make_user()
    _, manager_headers = make_user(role=Role.MANAGER)
    lead = _create_lead(client, owner_headers)

    denied = client.patch(f"/api/crm/leads/{lead['id']}", json={"notes": "mine now"}, headers=other_headers)
    allowed = client.patch(f"/api/crm/leads/{lead['id']}", json={"notes": "checked"}, headers=manager_headers)

    assert denied.status_code == 403
    assert allowed.status_code == 200
    assert allowed.json()["notes"] == "checked"


def test_lead_update_rejects_unknown_fields(client: TestClient, make_user: UserFactory) -> None:
    _, headers = make_user()
    lead = _create_lead(client, headers)

    response = client.patch(f"/api/crm/leads/{lead['id']}", json={"status": "lost"}, headers=headers)

    assert response.status_code == 422


def test_owner_cannot_reassign_but_manager_can(
    client: TestClient,
    db_session: Session,
    make_user: UserFactory,
) -> None:
    _, owner_headers = make_user()
    new_owner_id, _ = make_user()
    _, manager_headers = make_user(role=Role.MANAGER)
    lead = _create_lead(client, owner_headers)

    denied = client.post(
        f"/api/crm/leads/{lead['id']}/reassign",
        json={"owner_id": str(new_owner_id)},
        headers=owner_headers,
    )
    allowed = client.post(
        f"/api/crm/leads/{lead['id']}/reassign",
        json={"owner_id": str(new_owner_id)},
        headers=manager_headers,
    )

    assert denied.status_code == 403
    assert denied.json()["details"]["redirect_to"] == "/unauthorized"
    assert allowed.status_code == 200
    assert allowed.json()["owner_id"] == str(new_owner_id)
    assert db_session.scalar(select(AuditLog).where(AuditLog.action == "lead.reassign")) is not None


def test_unknown_lead_returns_not_found_envelope(client: TestClient, make_user: UserFactory) -> None:
    _, headers = make_user()

    response = client.get(f"/api/crm/leads/{uuid.uuid4()}", headers=headers)

    assert response.status_code == 404
    body = response.json()
    assert body["code"] == "crm_lead_get_failed"
    assert body["message"] == "lead not found"
    assert body["correlation_id"]


def test_lead_activities_are_logged_newest_first(client: TestClient, make_user: UserFactory) -> None:
    user_id, headers = make_user()
    lead = _create_lead(client, headers)

    first = client.post(
        f"/api/crm/leads/{lead['id']}/activities",
        json={"activity_type": "call", "description": "Intro call"},
        headers=headers,
    )
    client.post(
        f"/api/crm/leads/{lead['id']}/activities",
        json={"activity_type": "email", "description": "Sent brochure"},
        headers=headers,
    )

    assert first.status_code == 201
    assert first.json()["user_id"] == str(user_id)
    assert first.json()["lead_id"] == lead["id"]
    listed = client.get(f"/api/crm/leads/{lead['id']}/activities", headers=headers).json()
    assert {item["description"] for item in listed} == {"Intro call", "Sent brochure"}


def test_reassign_requires_an_existing_active_owner(
    client: TestClient,
    db_session: Session,
    make_user: UserFactory,
) -> None:
    owner_id, owner_headers = make_user()
    suspended_id, _ = make_user(status=ProfileStatus.SUSPENDED)
    _, manager_headers = make_user(role=Role.MANAGER)
    lead = _create_lead(client, owner_headers)

    unknown = client.post(
        f"/api/crm/leads/{lead['id']}/reassign",
        json={"owner_id": str(uuid.uuid4())},
        headers=manager_headers,
    )
    suspended = client.post(
        f"/api/crm/leads/{lead['id']}/reassign",
        json={"owner_id": str(suspended_id)},
        headers=manager_headers,
    )

    assert unknown.status_code == 422
    assert unknown.json()["message"] == "owner_id must reference an active user"
    assert suspended.status_code == 422
    db_session.expire_all()
    assert db_session.get(Lead, uuid.UUID(lead["id"])).owner_id == owner_id
    assert db_session.scalar(select(AuditLog).where(AuditLog.action == "lead.reassign")) is None


def test_manager_cannot_create_lead_for_unknown_owner(client: TestClient, make_user: UserFactory) -> None:
    _, manager_headers = make_user(role=Role.MANAGER)

    response = client.post(
        "/api/crm/leads",
        json={"name": "Orphan", "source": "call", "owner_id": str(uuid.uuid4())},
        headers=manager_headers,
    )

    assert response.status_code == 422
    assert response.json()["code"] == "crm_lead_create_failed"


def test_lead_reads_carry_owner_and_actor_names(client: TestClient, make_user: UserFactory) -> None:
    owner_id, headers = make_user(full_name="Asha Owner", email="asha.owner@example.com")
    lead = _create_lead(client, headers)
    client.post(f"/api/crm/leads/{lead['id']}/status", json={"status": "contacted"}, headers=headers)
    client.post(
        f"/api/crm/leads/{lead['id']}/activities",
        json={"activity_type": "call", "description": "Left a voicemail"},
        headers=headers,
    )

    fetched = client.get(f"/api/crm/leads/{lead['id']}", headers=headers).json()
    listed = client.get("/api/crm/leads", headers=headers).json()
    history = client.get(f"/api/crm/leads/{lead['id']}/status-history", headers=headers).json()
    activities = client.get(f"/api/crm/leads/{lead['id']}/activities", headers=headers).json()

    expected_owner = {"id": str(owner_id), "full_name": "Asha Owner", "email": "asha.owner@example.com"}
    assert lead["owner"] == expected_owner
    assert fetched["owner"] == expected_owner
    assert listed[0]["owner"] == expected_owner
    assert {row["changed_by_name"] for row in history} == {"Asha Owner"}
    assert activities[0]["user_name"] == "Asha Owner"


def test_lead_owner_summary_is_empty_without_profile(
    client: TestClient,
    db_session: Session,
    make_user: UserFactory,
) -> None:
    _, headers = make_user()
    lead = _create_lead(client, headers)
    # Legacy rows may point at users whose profile is gone.
    db_session.get(Lead, uuid.UUID(lead["id"])).owner_id = uuid.uuid4()
    db_session.commit()

    fetched = client.get(f"/api/crm/leads/{lead['id']}", headers=headers).json()

    assert fetched["owner"] is None
