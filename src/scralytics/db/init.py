from __future__ import annotations

from pathlib import Path

from scralytics.config import get_settings
from scralytics.db.base import Base
from scralytics.db.session import engine
from scralytics.db import models  # noqa: F401


def ensure_data_directories() -> list[Path]:
    paths: list[Path] = [get_settings().data_dir]
    if engine.url.get_backend_name() == "sqlite" and engine.url.database not in (None, "", ":memory:"):
        paths.append(Path(engine.url.database).parent)
    for path in paths:
        path.mkdir(parents=True, exist_ok=True)
    return paths


def init_database() -> dict[str, list[str]]:
    """Create missing tables; existing ones are left alone."""
    ensure_data_directories()
    Base.metadata.create_all(bind=engine)
    return {"tables": sorted(Base.metadata.tables)}
