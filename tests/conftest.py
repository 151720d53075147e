from __future__ import annotations

import uuid
from collections.abc import Callable, Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from crm_api import events
from crm_api.authz.models import Profile
from crm_api.core.config import get_settings
from crm_api.core.database import Base, get_db
from crm_api.crm.enums import ProfileStatus, Role
from crm_api.main import app
from crm_api.middleware.rate_limit import reset_rate_limiter

AuthHeaders = dict[str, str]


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("DOCUMENT_STORAGE_DIR", str(tmp_path / "documents"))
    get_settings.cache_clear()
    reset_rate_limiter()
    events.published_events.clear()
    yield
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()


def make_token(user_id: uuid.UUID, email: str | None = None, name: str | None = None) -> str:
    settings = get_settings()
    claims: dict[str, str] = {"sub": str(user_id)}
    if email:
        claims["email"] = email
    if name:
        claims["name"] = name
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def bearer(user_id: uuid.UUID) -> AuthHeaders:
    return {"Authorization": f"Bearer {make_token(user_id)}"}


@pytest.fixture()
def make_user(db_session: Session) -> Callable[..., tuple[uuid.UUID, AuthHeaders]]:
    def factory(
        role: Role = Role.USER,
        status: ProfileStatus = ProfileStatus.ACTIVE,
        email: str | None = None,
        full_name: str | None = None,
    ) -> tuple[uuid.UUID, AuthHeaders]:
        user_id = uuid.uuid4()
        db_session.add(
            Profile(
                id=user_id,
                email=email or f"{user_id.hex[:8]}@example.com",
                full_name=full_name or f"User {user_id.hex[:6]}",
                role=role,
                status=status,
            )
        )
        db_session.commit()
        return user_id, bearer(user_id)

    return factory


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def token_headers() -> Callable[..., AuthHeaders]:
    """Headers for a subject that may not have a profile yet."""

    def factory(user_id: uuid.UUID, email: str | None = None, name: str | None = None) -> AuthHeaders:
        return {"Authorization": f"Bearer {make_token(user_id, email=email, name=name)}"}

    return factory
