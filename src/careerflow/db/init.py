from __future__ import annotations

from pathlib import Path

from careerflow.config import get_settings
from careerflow.db import models  # noqa: F401
from careerflow.db.base import Base
from careerflow.db.session import engine


def ensure_data_directories() -> None:
    settings = get_settings()
    paths: list[Path] = [settings.data_dir]
    for path in paths:
        path.mkdir(parents=True, exist_ok=True)


def init_database() -> dict[str, int]:
    ensure_data_directories()
    Base.metadata.create_all(bind=engine)
    return {"tables": len(Base.metadata.tables)}
