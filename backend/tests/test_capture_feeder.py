"""Tests for source classification and the CaptureFeeder read loop."""
from __future__ import annotations

import time

import cv2
import numpy as np

from cv.capture import DEFAULT_FPS, CaptureFeeder, is_remote_source, sane_fps


class FakeCapture:
    """cv2.VideoCapture stand-in playing a fixed number of frames."""

    def __init__(self, frames: int = 3, opened: bool = True, fps: float = 200.0):
        self.frames = frames
        self.position = 0
        self.opened = opened
        self.fps = fps
        self.released = False

    def isOpened(self):
        return self.opened and not self.released

    def get(self, prop):
        return self.fps if prop == cv2.CAP_PROP_FPS else 0.0

    def set(self, prop, value):
        if prop == cv2.CAP_PROP_POS_FRAMES:
            self.position = int(value)
        return True

    def read(self):
        if self.position >= self.frames:
            return False, None
        self.position += 1
        return True, np.full((8, 8, 3), self.position, dtype=np.uint8)

    def release(self):
        self.released = True


def _wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


# ---------- Source classification ----------

class TestRemoteSources:
    def test_network_schemes(self):
        for url in ("rtsp://192.168.1.1/stream", "http://example.com/feed.m3u8", "https://secure.cam/live",
                    "rtmp://stream.server/live", "udp://239.0.0.1:1234", "tcp://host:5000"):
            assert is_remote_source(url) is True, url

    def test_local_paths(self):
        for path in ("/data/video.mp4", "C:\\Users\\video.mp4", "data/video.mp4", "", "file:///data/video.mp4"):
            assert is_remote_source(path) is False, path


class TestSaneFps:
    def test_valid_fps_kept(self):
        assert sane_fps(30.0) == 30.0

    def test_invalid_fps_replaced(self):
        for raw in (0.0, float("nan"), 1.0, 1000.0):
            assert sane_fps(raw) == DEFAULT_FPS


# ---------- Feeder ----------

class TestCaptureFeeder:
    def test_file_plays_once_without_loop(self):
        frames = []
        capture = FakeCapture(frames=3)
        feeder = CaptureFeeder("clip.mp4", lambda raw: frames.append(raw) or True, loop=False,
                               capture_factory=lambda _: capture)
        feeder.start()
        assert _wait_for(lambda: not feeder.is_alive())
        assert [raw.sequence_id for raw in frames] == [1, 2, 3]
        assert all(raw.pixel_format == "bgr" for raw in frames)
        assert capture.released is True

    def test_file_loops_with_increasing_ids(self):
        frames = []
        feeder = CaptureFeeder("clip.mp4", lambda raw: frames.append(raw) or True, loop=True,
                               capture_factory=lambda _: FakeCapture(frames=2))
        feeder.start()
        try:
            assert _wait_for(lambda: len(frames) >= 5)
        finally:
            feeder.stop()
        ids = [raw.sequence_id for raw in frames]
        assert ids == sorted(ids) and len(set(ids)) == len(ids)
        assert int(frames[2].data[0, 0, 0]) == 1  # rewound to the first frame

    def test_stops_when_sink_refuses(self):
        calls = []

        def _sink(raw):
            calls.append(raw)
            return False

        feeder = CaptureFeeder("clip.mp4", _sink, capture_factory=lambda _: FakeCapture(frames=10))
        feeder.start()
        assert _wait_for(lambda: not feeder.is_alive())
        assert len(calls) == 1

    def test_unopenable_file_exits(self):
        feeder = CaptureFeeder("missing.mp4", lambda raw: True, capture_factory=lambda _: FakeCapture(opened=False))
        feeder.start()
        assert _wait_for(lambda: not feeder.is_alive())
        assert feeder.frames_read == 0

    def test_remote_source_reconnects(self, monkeypatch):
        monkeypatch.setattr("cv.capture.INITIAL_RECONNECT_BACKOFF", 0.01)
        opened = []

        def _factory(_source):
            capture = FakeCapture(frames=2, opened=len(opened) > 0)
            opened.append(capture)
            return capture

        frames = []
        feeder = CaptureFeeder("rtsp://cam/live", lambda raw: frames.append(raw) or True, capture_factory=_factory)
        feeder.start()
        try:
            assert _wait_for(lambda: len(frames) >= 2)
        finally:
            feeder.stop()
        assert len(opened) >= 2
        assert opened[0].released is True
