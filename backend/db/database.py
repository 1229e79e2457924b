from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from common.settings import bootstrap_value

# Read before persisted settings exist, so only the environment can set it.
DATABASE_URL = bootstrap_value("database_url")


class Base(DeclarativeBase):
    pass


def _connect_args(url: str) -> dict:
    # Session hooks write from threads other than the one that created the engine.
    return {"check_same_thread": False} if url.startswith("sqlite") else {}


engine = create_engine(DATABASE_URL, future=True, pool_pre_ping=True, connect_args=_connect_args(DATABASE_URL))
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, class_=Session)
