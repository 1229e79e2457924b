"""Persistent settings overrides and session metadata.

Read once at startup and written on change; nothing here runs per frame.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.orm import sessionmaker

from db.database import SessionLocal
from db.models import ClientSessionRecord, SettingOverride

logger = logging.getLogger(__name__)


class SettingsStore:
    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self._session_factory = session_factory

    def load_overrides(self) -> dict[str, Any]:
        with self._session_factory() as db:
            rows = db.scalars(select(SettingOverride)).all()
            overrides = {}
            for row in rows:
                try:
                    overrides[row.key] = json.loads(row.value)
                except ValueError:
                    logger.warning("Ignoring unreadable persisted setting '%s'", row.key)
            return overrides

    def save_overrides(self, values: Mapping[str, Any]) -> list[str]:
        """Persist values that differ from what is stored. Returns the changed keys."""
        changed = []
        with self._session_factory() as db:
            for key, value in values.items():
                encoded = json.dumps(value, sort_keys=True)
                row = db.get(SettingOverride, key)
                if row is None:
                    db.add(SettingOverride(key=key, value=encoded))
                elif row.value == encoded:
                    continue
                else:
                    row.value = encoded
                changed.append(key)
            if changed:
                db.commit()
                logger.info("Persisted settings: %s", ", ".join(sorted(changed)))
        return changed

    def clear_overrides(self) -> int:
        with self._session_factory() as db:
            rows = db.scalars(select(SettingOverride)).all()
            for row in rows:
                db.delete(row)
            db.commit()
            return len(rows)

    # ---------- Session metadata ----------

    def record_session_open(self, session) -> None:
        with self._session_factory() as db:
            db.add(ClientSessionRecord(
                session_id=session.session_id,
                stream_id=session.stream_id,
                stream_kinds=",".join(sorted(kind.value for kind in session.stream_kinds)),
            ))
            db.commit()

    def record_session_close(self, session) -> None:
        with self._session_factory() as db:
            row = db.get(ClientSessionRecord, session.session_id)
            if row is None:
                return
            row.closed_at = datetime.now(timezone.utc)
            row.stream_kinds = ",".join(sorted(kind.value for kind in session.stream_kinds))
            row.dropped_frames = session.dropped_frames
            row.last_acked = session.last_acked
            db.commit()

    def recent_sessions(self, limit: int = 50) -> list[dict]:
        with self._session_factory() as db:
            rows = db.scalars(
                select(ClientSessionRecord).order_by(ClientSessionRecord.opened_at.desc()).limit(limit)
            ).all()
            return [
                {
                    "session_id": row.session_id,
                    "stream_id": row.stream_id,
                    "stream_kinds": [kind for kind in row.stream_kinds.split(",") if kind],
                    "opened_at": row.opened_at.isoformat() if row.opened_at else None,
                    "closed_at": row.closed_at.isoformat() if row.closed_at else None,
                    "dropped_frames": row.dropped_frames,
                    "last_acked": row.last_acked,
                }
                for row in rows
            ]
