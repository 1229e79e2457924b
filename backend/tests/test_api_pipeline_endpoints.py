"""Tests for HTTP pipeline, settings and session endpoints — status codes, payloads, validation."""
from __future__ import annotations

import cv2
import numpy as np


def _png(width: int = 32, height: int = 24) -> bytes:
    ok, buf = cv2.imencode(".png", np.zeros((height, width, 3), dtype=np.uint8))
    assert ok
    return buf.tobytes()


# ---------- Start pipeline ----------

class TestStartPipeline:
    def test_returns_201(self, app_client):
        resp = app_client.post("/api/pipelines/cam-1/start")
        assert resp.status_code == 201
        body = resp.json()
        assert body["status"] == "started"
        assert body["stream_id"] == "cam-1"
        assert body["source_url"] is None

    def test_invalid_id_returns_400(self, app_client):
        resp = app_client.post("/api/pipelines/bad..id/start")
        assert resp.status_code == 400

    def test_duplicate_returns_409(self, app_client):
        app_client.post("/api/pipelines/dup/start")
        resp = app_client.post("/api/pipelines/dup/start")
        assert resp.status_code == 409

    def test_limit_returns_503(self, app_client):
        import api

        for i in range(api.orchestrator.max_pipelines):
            assert app_client.post(f"/api/pipelines/p{i}/start").status_code == 201
        resp = app_client.post("/api/pipelines/overflow/start")
        assert resp.status_code == 503

    def test_model_failure_returns_500(self, app_client, monkeypatch):
        from cv.exceptions import ModelLoadError

        def _broken_start(**kwargs):
            raise ModelLoadError("Model file not found: missing.onnx")

        monkeypatch.setattr("orchestrator.orchestrator.worker.start", _broken_start)
        resp = app_client.post("/api/pipelines/cam/start")
        assert resp.status_code == 500
        assert "missing.onnx" in resp.json()["detail"]


# ---------- List / stop / resume ----------

class TestPipelineControl:
    def test_list(self, app_client):
        app_client.post("/api/pipelines/a/start")
        app_client.post("/api/pipelines/b/start")
        body = app_client.get("/api/pipelines").json()
        assert sorted(p["stream_id"] for p in body["pipelines"]) == ["a", "b"]
        assert body["max_pipelines"] >= 2

    def test_stop_returns_204_then_404(self, app_client):
        app_client.post("/api/pipelines/cam/start")
        assert app_client.delete("/api/pipelines/cam").status_code == 204
        assert app_client.delete("/api/pipelines/cam").status_code == 404

    def test_resume_healthy_returns_409(self, app_client):
        app_client.post("/api/pipelines/cam/start")
        assert app_client.post("/api/pipelines/cam/resume").status_code == 409

    def test_resume_degraded(self, app_client, fake_worker_start):
        app_client.post("/api/pipelines/cam/start")
        fake_worker_start[0].degraded = True
        assert app_client.get("/health").json()["degraded"] == ["cam"]
        resp = app_client.post("/api/pipelines/cam/resume")
        assert resp.status_code == 200
        assert fake_worker_start[0].resumed == 1

    def test_resume_unknown_returns_404(self, app_client):
        assert app_client.post("/api/pipelines/ghost/resume").status_code == 404


# ---------- Frames ----------

class TestPushFrames:
    def test_accepts_encoded_frame(self, app_client, fake_worker_start):
        app_client.post("/api/pipelines/cam/start")
        resp = app_client.post("/api/pipelines/cam/frames", content=_png())
        assert resp.status_code == 202
        assert resp.json() == {"accepted": True, "sequence_id": 1}
        raw = fake_worker_start[0].submitted[0]
        assert raw.pixel_format == "encoded"
        assert raw.sequence_id == 1

    def test_sequence_ids_assigned_in_order(self, app_client):
        app_client.post("/api/pipelines/cam/start")
        ids = [app_client.post("/api/pipelines/cam/frames", content=_png()).json()["sequence_id"] for _ in range(3)]
        assert ids == [1, 2, 3]

    def test_explicit_sequence_header(self, app_client, fake_worker_start):
        app_client.post("/api/pipelines/cam/start")
        resp = app_client.post("/api/pipelines/cam/frames", content=_png(), headers={"X-Sequence-Id": "40"})
        assert resp.json()["sequence_id"] == 40
        assert fake_worker_start[0].submitted[0].sequence_id == 40

    def test_raw_frame_with_dimensions(self, app_client, fake_worker_start):
        app_client.post("/api/pipelines/cam/start")
        body = np.zeros((8, 8, 3), dtype=np.uint8).tobytes()
        resp = app_client.post(
            "/api/pipelines/cam/frames",
            params={"pixel_format": "rgb", "width": 8, "height": 8},
            content=body,
        )
        assert resp.status_code == 202
        raw = fake_worker_start[0].submitted[0]
        assert (raw.width, raw.height, raw.pixel_format) == (8, 8, "rgb")

    def test_unsupported_format_returns_400(self, app_client):
        app_client.post("/api/pipelines/cam/start")
        resp = app_client.post("/api/pipelines/cam/frames", params={"pixel_format": "cmyk"}, content=b"x")
        assert resp.status_code == 400

    def test_empty_body_returns_400(self, app_client):
        app_client.post("/api/pipelines/cam/start")
        assert app_client.post("/api/pipelines/cam/frames", content=b"").status_code == 400

    def test_unknown_pipeline_returns_404(self, app_client):
        assert app_client.post("/api/pipelines/ghost/frames", content=_png()).status_code == 404

    def test_dead_worker_reports_not_accepted(self, app_client, fake_worker_start):
        app_client.post("/api/pipelines/cam/start")
        fake_worker_start[0].die()
        assert app_client.post("/api/pipelines/cam/frames", content=_png()).json()["accepted"] is False


# ---------- Snapshot ----------

class TestSnapshot:
    def test_no_retained_frame_returns_404(self, app_client):
        app_client.post("/api/pipelines/cam/start")
        assert app_client.get("/api/pipelines/cam/snapshot.png").status_code == 404

    def test_returns_png(self, app_client, fake_worker_start):
        from cv.frames import FrameAdapter
        from cv.types import RawFrame

        app_client.post("/api/pipelines/cam/start")
        frame = FrameAdapter(input_size=32, min_frame_size=8).normalize(
            RawFrame(data=np.zeros((24, 32, 3), dtype=np.uint8), sequence_id=1, timestamp=0.0)
        )
        fake_worker_start[0].pipeline.debug_frame = frame
        resp = app_client.get("/api/pipelines/cam/snapshot.png")
        assert resp.status_code == 200
        assert resp.headers["content-type"] == "image/png"
        assert resp.content[:4] == b"\x89PNG"


# ---------- Settings ----------

class TestSettings:
    def test_get(self, app_client):
        body = app_client.get("/api/settings").json()
        assert "confidence_threshold" in body
        assert body["policy_variant"] in ("deterministic", "weighted_random", "noise_driven")

    def test_put_persists_and_applies(self, app_client, settings_store):
        import api

        resp = app_client.put("/api/settings", json={"confidence_threshold": 0.55, "session_queue_capacity": 3})
        assert resp.status_code == 200
        body = resp.json()
        assert sorted(body["changed"]) == ["confidence_threshold", "session_queue_capacity"]
        assert body["settings"]["confidence_threshold"] == 0.55
        assert settings_store.load_overrides()["confidence_threshold"] == 0.55
        assert api.orchestrator.settings.confidence_threshold == 0.55
        assert api.sessions.capacity == 3

    def test_put_same_value_reports_nothing_changed(self, app_client):
        app_client.put("/api/settings", json={"idle_score": 0.2})
        assert app_client.put("/api/settings", json={"idle_score": 0.2}).json()["changed"] == []

    def test_invalid_value_returns_422(self, app_client, settings_store):
        resp = app_client.put("/api/settings", json={"confidence_threshold": 3})
        assert resp.status_code == 422
        assert settings_store.load_overrides() == {}

    def test_unknown_option_returns_422(self, app_client):
        assert app_client.put("/api/settings", json={"frobnicate": True}).status_code == 422

    def test_bootstrap_field_returns_400(self, app_client):
        resp = app_client.put("/api/settings", json={"database_url": "sqlite:///elsewhere.db"})
        assert resp.status_code == 400


# ---------- Health / sessions ----------

class TestHealthAndSessions:
    def test_root(self, app_client):
        body = app_client.get("/").json()
        assert body["status"] == "ok"
        assert body["endpoints"]["state_ws"] == "/api/state/ws/{stream_id}"

    def test_health(self, app_client):
        app_client.post("/api/pipelines/cam/start")
        body = app_client.get("/health").json()
        assert body["status"] == "ok"
        assert body["pipelines"] == 1
        assert body["sessions"] == 0
        assert body["degraded"] == []

    def test_sessions_empty(self, app_client):
        assert app_client.get("/api/sessions").json() == {"active": [], "recent": []}
