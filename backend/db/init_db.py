from __future__ import annotations

from db.database import DATABASE_URL, Base, engine
from db import models  # noqa: F401 - ensure metadata is registered
from common.config import DEFAULT_DATABASE_PATH


def init_db() -> None:
    if DATABASE_URL == f"sqlite:///{DEFAULT_DATABASE_PATH}":
        DEFAULT_DATABASE_PATH.parent.mkdir(parents=True, exist_ok=True)
    Base.metadata.create_all(bind=engine)
