from __future__ import annotations

import uuid
from collections.abc import Callable

from fastapi.testclient import TestClient
from sqlalchemy import select
from sqlalchemy.orm import Session

from crm_api import events
from crm_api.middleware.correlation_id import resolve_correlation_id
from crm_api.models.audit import AuditLog

UserFactory = Callable[..., tuple[uuid.UUID, dict[str, str]]]


def test_resolve_correlation_id_keeps_safe_values_only() -> None:
    assert resolve_correlation_id("abc-123:retry.1") == "abc-123:retry.1"
    minted = resolve_correlation_id("bad value with spaces")
    assert minted != "bad value with spaces"
    assert uuid.UUID(minted)
    assert uuid.UUID(resolve_correlation_id(None))
    assert resolve_correlation_id("x" * 129) != "x" * 129


def test_correlation_id_is_echoed_and_generated(client: TestClient) -> None:
    supplied = client.get("/health", headers={"X-Correlation-Id": "corr-health"})
    generated = client.get("/health")

    assert supplied.headers["x-correlation-id"] == "corr-health"
    assert uuid.UUID(generated.headers["x-correlation-id"])
    assert generated.headers["x-request-id"] != generated.headers["x-correlation-id"]


def test_correlation_id_flows_into_audit_events_and_errors(
    client: TestClient,
    db_session: Session,
    make_user: UserFactory,
) -> None:
    _, headers = make_user()
    traced = {**headers, "X-Correlation-Id": "corr-flow-1"}

    created = client.post("/api/crm/deals", json={"name": "Traced"}, headers=traced)
    missing = client.get(f"/api/crm/deals/{uuid.uuid4()}", headers=traced)

    assert created.status_code == 201
    entry = db_session.scalar(select(AuditLog).where(AuditLog.action == "deal.create"))
    assert entry is not None
    assert entry.correlation_id == "corr-flow-1"
    envelope = next(item for item in events.published_events if item["event_type"] == "crm.deal.created")
    assert envelope["correlation_id"] == "corr-flow-1"
    assert missing.json()["correlation_id"] == "corr-flow-1"
