from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from db.database import Base


class SettingOverride(Base):
    """One persisted pipeline setting, JSON-encoded, applied over environment defaults at startup."""

    __tablename__ = "settings_overrides"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )


class ClientSessionRecord(Base):
    __tablename__ = "client_sessions"

    session_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    stream_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    stream_kinds: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    opened_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    dropped_frames: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_acked: Mapped[int | None] = mapped_column(Integer, nullable=True)
