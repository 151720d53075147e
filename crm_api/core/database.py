from collections.abc import Generator
from enum import StrEnum

from sqlalchemy import Enum, create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from crm_api.core.config import get_settings


class Base(DeclarativeBase):
    pass


def enum_type(enum_cls: type[StrEnum]) -> Enum:
    """Closed-vocabulary column stored as its string values, rejected on write when unknown."""
    return Enum(
        enum_cls,
        name=f"{enum_cls.__name__.lower()}_enum",
        native_enum=False,
        create_constraint=True,
        validate_strings=True,
        length=32,
        values_callable=lambda members: [member.value for member in members],
    )


settings = get_settings()

engine = create_engine(settings.database_url, pool_pre_ping=True)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


def get_db() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
