from __future__ import annotations

from collections.abc import Generator
from typing import Any

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from scralytics.config import Settings, get_settings


def build_engine(settings: Settings) -> Engine:
    connect_args: dict[str, Any] = {}
    if settings.database_url.startswith("sqlite"):
        # the API process and a worker may write the same file
        connect_args = {"check_same_thread": False, "timeout": settings.sqlite_busy_timeout_sec}
    return create_engine(settings.database_url, connect_args=connect_args, future=True)


engine = build_engine(get_settings())
# Rows outlive their session: accounts and jobs are handed between short-lived sessions.
SessionLocal = sessionmaker(
    bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True
)


def get_db_session() -> Generator[Session, None, None]:
    with SessionLocal() as db:
        yield db
