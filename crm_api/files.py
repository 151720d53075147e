from __future__ import annotations

import tempfile
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from urllib.parse import quote, urlencode

from jose import JWTError, jwt

from crm_api.core.config import get_settings

_DOWNLOAD_PURPOSE = "document_download"
_DOWNLOAD_PATH = "/api/crm/documents/download"


class InvalidDownloadTokenError(Exception):
    pass


def _base_dir() -> Path:
    configured = get_settings().document_storage_dir
    base = Path(configured) if configured else Path(tempfile.gettempdir()) / "crm_documents"
    base.mkdir(parents=True, exist_ok=True)
    return base


def _resolve(storage_path: str) -> Path:
    base = _base_dir().resolve()
    target = (base / storage_path).resolve()
    if base not in target.parents:
        raise FileNotFoundError(f"storage path outside document store: {storage_path}")
    return target


def build_storage_path(entity_type: str, entity_id: uuid.UUID, filename: str) -> str:
    extension = Path(filename or "file.bin").suffix or ".bin"
    return f"{entity_type}/{entity_id}/{uuid.uuid4()}{extension}"


def store_bytes(content: bytes, storage_path: str) -> str:
    target = _resolve(storage_path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(content)
    return storage_path


def get_bytes(storage_path: str) -> bytes:
    target = _resolve(storage_path)
    if not target.exists():
        raise FileNotFoundError(f"document not found: {storage_path}")
    return target.read_bytes()


def delete(storage_path: str) -> None:
    target = _resolve(storage_path)
    if not target.exists():
        raise FileNotFoundError(f"document not found: {storage_path}")
    target.unlink()


def create_signed_url(storage_path: str, ttl_seconds: int | None = None) -> tuple[str, datetime]:
    settings = get_settings()
    expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds or settings.document_url_ttl_seconds)
    token = jwt.encode(
        {"path": storage_path, "purpose": _DOWNLOAD_PURPOSE, "exp": int(expires_at.timestamp())},
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm,
    )
    return f"{_DOWNLOAD_PATH}?{urlencode({'token': token})}", expires_at


def verify_download_token(token: str) -> str:
    settings = get_settings()
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise InvalidDownloadTokenError(str(exc)) from exc
    storage_path = claims.get("path")
    if claims.get("purpose") != _DOWNLOAD_PURPOSE or not isinstance(storage_path, str):
        raise InvalidDownloadTokenError("not a document download token")
    return storage_path


def content_disposition(filename: str) -> str:
    """Attachment header with an ASCII `filename` and the exact name as RFC 5987 `filename*`."""
    fallback = "".join(
        char for char in filename if char.isascii() and char.isprintable() and char not in '"\\'
    ).strip() or "download"
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"
