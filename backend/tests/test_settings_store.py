"""SettingsStore against an in-memory SQLite database."""
from __future__ import annotations

from common.settings import PipelineSettings, load_settings
from db.models import SettingOverride
from streaming.messages import StreamKind
from streaming.sessions import ClientSession
from tests.fakes import FakeTransport


class TestOverrides:
    def test_empty_store(self, settings_store):
        assert settings_store.load_overrides() == {}

    def test_save_and_load_roundtrip_types(self, settings_store):
        changed = settings_store.save_overrides({
            "confidence_threshold": 0.4,
            "class_names": ["person", "vehicle"],
            "policy_seed": None,
        })
        assert sorted(changed) == ["class_names", "confidence_threshold", "policy_seed"]
        assert settings_store.load_overrides() == {
            "confidence_threshold": 0.4,
            "class_names": ["person", "vehicle"],
            "policy_seed": None,
        }

    def test_unchanged_values_not_reported(self, settings_store):
        settings_store.save_overrides({"tracker_eviction_frames": 7})
        assert settings_store.save_overrides({"tracker_eviction_frames": 7}) == []
        assert settings_store.save_overrides({"tracker_eviction_frames": 8}) == ["tracker_eviction_frames"]
        assert settings_store.load_overrides()["tracker_eviction_frames"] == 8

    def test_clear(self, settings_store):
        settings_store.save_overrides({"idle_score": 0.1, "target_fps": 5.0})
        assert settings_store.clear_overrides() == 2
        assert settings_store.load_overrides() == {}

    def test_unreadable_row_skipped(self, settings_store, session_factory):
        with session_factory() as db:
            db.add(SettingOverride(key="idle_score", value="{not json"))
            db.commit()
        settings_store.save_overrides({"target_fps": 2.0})
        assert settings_store.load_overrides() == {"target_fps": 2.0}

    def test_persisted_settings_rebuild_identically(self, settings_store, monkeypatch):
        for name in PipelineSettings.model_fields:
            monkeypatch.delenv(f"PIPELINE_{name.upper()}", raising=False)
        original = PipelineSettings().with_updates({
            "policy_variant": "weighted_random",
            "class_names": ("person",),
            "backend": "cpu",
        })
        settings_store.save_overrides(original.persistable())
        assert load_settings(settings_store.load_overrides()) == original


class TestSessionRecords:
    @staticmethod
    def _session(session_id: str, stream_id: str = "cam") -> ClientSession:
        session = ClientSession(session_id, FakeTransport(), stream_id)
        session.subscribe([StreamKind.STATE, StreamKind.EVENTS])
        return session

    def test_open_then_close(self, settings_store):
        session = self._session("abc")
        settings_store.record_session_open(session)
        session.dropped_frames = 4
        session.last_acked = 12
        settings_store.record_session_close(session)

        [record] = settings_store.recent_sessions()
        assert record["session_id"] == "abc"
        assert record["stream_kinds"] == ["events", "state"]
        assert record["dropped_frames"] == 4
        assert record["last_acked"] == 12
        assert record["opened_at"] is not None
        assert record["closed_at"] is not None

    def test_open_session_has_no_close_time(self, settings_store):
        settings_store.record_session_open(self._session("abc"))
        [record] = settings_store.recent_sessions()
        assert record["closed_at"] is None

    def test_close_unknown_session_is_ignored(self, settings_store):
        settings_store.record_session_close(self._session("ghost"))
        assert settings_store.recent_sessions() == []

    def test_limit(self, settings_store):
        for i in range(5):
            settings_store.record_session_open(self._session(f"s{i}"))
        assert len(settings_store.recent_sessions(limit=3)) == 3
