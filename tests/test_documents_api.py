from __future__ import annotations

import uuid
from collections.abc import Callable
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from crm_api import files
from crm_api.core.config import get_settings
from crm_api.crm.models import Document
from crm_api.models.audit import AuditLog

UserFactory = Callable[..., tuple[uuid.UUID, dict[str, str]]]


@pytest.fixture()
def deal_with_headers(client: TestClient, make_user: UserFactory) -> tuple[str, dict[str, str]]:
    _, headers = make_user()
    deal = client.post("/api/crm/deals", json={"name": "Reception"}, headers=headers)
    assert deal.status_code == 201
    return deal.json()["id"], headers


def _upload(
    client: TestClient,
    headers: dict[str, str],
    content: bytes = b"%PDF-1.4 quote",
    filename: str = "quote.pdf",
    **links: str,
) -> httpx.Response:
    return client.post(
        "/api/crm/documents",
        files={"file": (filename, content, "application/pdf")},
        data=links,
        headers=headers,
    )


def test_upload_list_and_download_with_signed_url(
    client: TestClient,
    db_session: Session,
    deal_with_headers: tuple[str, dict[str, str]],
) -> None:
    deal, headers = deal_with_headers

    uploaded = _upload(client, headers, deal_id=deal)

    assert uploaded.status_code == 201, uploaded.text
    document = uploaded.json()
    assert document["name"] == "quote.pdf"
    assert document["file_size"] == len(b"%PDF-1.4 quote")
    assert document["mime_type"] == "application/pdf"
    assert document["storage_path"].startswith(f"deal/{deal}/")
    assert document["storage_path"].endswith(".pdf")

    listed = client.get("/api/crm/documents", params={"deal_id": deal}, headers=headers)
    assert [item["id"] for item in listed.json()] == [document["id"]]

    signed = client.get(f"/api/crm/documents/{document['id']}/url", headers=headers)
    assert signed.status_code == 200
    assert signed.json()["url"].startswith("/api/crm/documents/download?token=")

    # The link itself is the credential: no bearer token.
    downloaded = client.get(signed.json()["url"])
    assert downloaded.status_code == 200
    assert downloaded.content == b"%PDF-1.4 quote"
    assert downloaded.headers["content-type"] == "application/pdf"
    assert db_session.scalar(select(AuditLog).where(AuditLog.action == "document.upload")) is not None


def test_upload_requires_exactly_one_link(client: TestClient, deal_with_headers: tuple[str, dict[str, str]]) -> None:
    deal, headers = deal_with_headers
    contact = client.post("/api/crm/contacts", json={"first_name": "Tara"}, headers=headers).json()

    none_linked = _upload(client, headers)
    two_linked = _upload(client, headers, deal_id=deal, contact_id=contact["id"])

    assert none_linked.status_code == 422
    assert none_linked.json()["code"] == "crm_document_upload_failed"
    assert two_linked.status_code == 422


def test_upload_over_size_limit_is_rejected(
    client: TestClient,
    db_session: Session,
    deal_with_headers: tuple[str, dict[str, str]],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    deal, headers = deal_with_headers
    monkeypatch.setenv("MAX_DOCUMENT_BYTES", "8")
    get_settings.cache_clear()

    response = _upload(client, headers, content=b"0123456789", deal_id=deal)

    assert response.status_code == 413
    assert response.json()["details"]["max_bytes"] == 8
    assert db_session.scalar(select(func.count()).select_from(Document)) == 0


def test_download_of_non_latin_filename_sets_encoded_disposition(
    client: TestClient,
    deal_with_headers: tuple[str, dict[str, str]],
) -> None:
    deal, headers = deal_with_headers
    uploaded = _upload(client, headers, content=b"contract", filename="合同.pdf", deal_id=deal)
    assert uploaded.status_code == 201, uploaded.text
    assert uploaded.json()["name"] == "合同.pdf"

    signed = client.get(f"/api/crm/documents/{uploaded.json()['id']}/url", headers=headers)
    downloaded = client.get(signed.json()["url"])

    assert downloaded.status_code == 200
    assert downloaded.content == b"contract"
    disposition = downloaded.headers["content-disposition"]
    assert disposition.startswith('attachment; filename=".pdf"')
    assert "filename*=UTF-8''%E5%90%88%E5%90%8C.pdf" in disposition


def test_content_disposition_strips_quotes_and_control_characters() -> None:
    header = files.content_disposition('quote "final"\r\n.pdf')

    assert header.startswith('attachment; filename="quote final.pdf";')
    assert "\r" not in header and "\n" not in header
    assert header.endswith("filename*=UTF-8''quote%20%22final%22%0D%0A.pdf")
    assert files.content_disposition("报价单").startswith('attachment; filename="download";')


def test_upload_at_size_limit_is_accepted(
    client: TestClient,
    deal_with_headers: tuple[str, dict[str, str]],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    deal, headers = deal_with_headers
    monkeypatch.setenv("MAX_DOCUMENT_BYTES", "8")
    get_settings.cache_clear()

    at_limit = _upload(client, headers, content=b"01234567", deal_id=deal)
    one_over = _upload(client, headers, content=b"012345678", deal_id=deal)
    far_over = _upload(client, headers, content=b"x" * 4096, deal_id=deal)

    assert at_limit.status_code == 201
    assert at_limit.json()["file_size"] == 8
    assert one_over.status_code == 413
    assert far_over.status_code == 413


def test_tampered_or_foreign_token_is_forbidden(
    client: TestClient,
    deal_with_headers: tuple[str, dict[str, str]],
) -> None:
    _, headers = deal_with_headers
    bearer_token = headers["Authorization"].removeprefix("Bearer ")

    garbage = client.get("/api/crm/documents/download", params={"token": "garbage"})
    access_token = client.get("/api/crm/documents/download", params={"token": bearer_token})

    assert garbage.status_code == 403
    assert access_token.status_code == 403


def test_delete_removes_row_and_bytes(
    client: TestClient,
    db_session: Session,
    deal_with_headers: tuple[str, dict[str, str]],
    make_user: UserFactory,
) -> None:
    deal, headers = deal_with_headers
    _, other_headers = make_user()
    document = _upload(client, headers, deal_id=deal).json()
    stored = Path(get_settings().document_storage_dir) / document["storage_path"]
    assert stored.exists()
    signed_url = client.get(f"/api/crm/documents/{document['id']}/url", headers=headers).json()["url"]

    assert client.delete(f"/api/crm/documents/{document['id']}", headers=other_headers).status_code == 403

    response = client.delete(f"/api/crm/documents/{document['id']}", headers=headers)

    assert response.status_code == 204
    assert not stored.exists()
    assert db_session.scalar(select(func.count()).select_from(Document)) == 0
    assert client.get(signed_url).status_code == 404
    assert db_session.scalar(select(AuditLog).where(AuditLog.action == "document.delete")) is not None
