"""
Video capture feeder: reads a file or network source and pushes frames into a worker.
"""
from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional
from urllib.parse import urlparse

import cv2

from cv.types import RawFrame

logger = logging.getLogger(__name__)

DEFAULT_FPS = 25.0
INITIAL_RECONNECT_BACKOFF = 0.5
MAX_RECONNECT_BACKOFF = 8.0


def is_remote_source(source: str) -> bool:
    scheme = urlparse(source).scheme.lower()
    return scheme in {"rtsp", "http", "https", "rtmp", "udp", "tcp"}


def sane_fps(raw_fps: float) -> float:
    # Some backends report invalid FPS (0/NaN/extreme values).
    if not raw_fps or raw_fps != raw_fps or raw_fps <= 1 or raw_fps > 240:
        return DEFAULT_FPS
    return float(raw_fps)


class CaptureFeeder:
    """
    Reads ``source`` with OpenCV on its own thread and hands each frame to
    ``sink`` as a BGR RawFrame with a monotonically increasing sequence id.

    File playback is paced to the source FPS and loops when ``loop`` is set;
    remote sources reconnect with exponential backoff.
    """

    def __init__(
        self,
        source: str,
        sink: Callable[[RawFrame], bool],
        loop: bool = True,
        capture_factory: Callable[[str], cv2.VideoCapture] = cv2.VideoCapture,
    ):
        self.source = source
        self.sink = sink
        self.loop = loop
        self._open = capture_factory
        self._remote = is_remote_source(source)
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._sequence_id = 0
        self.frames_read = 0

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=f"capture-{self.source}", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _next_frame(self, frame) -> RawFrame:
        self._sequence_id += 1
        return RawFrame(data=frame, sequence_id=self._sequence_id, timestamp=time.time(), pixel_format="bgr")

    def _reconnect(self, cap, backoff: float):
        logger.warning("Source %s unavailable; reconnecting in %.1fs", self.source, backoff)
        cap.release()
        self._stop.wait(backoff)
        return self._open(self.source)

    def _run(self) -> None:
        cap = self._open(self.source)
        if not cap.isOpened() and not self._remote:
            logger.error("Failed to open source: %s", self.source)
            return

        fps = sane_fps(cap.get(cv2.CAP_PROP_FPS)) if cap.isOpened() else DEFAULT_FPS
        read_interval = 1.0 / fps
        next_read_time = time.monotonic()
        backoff = INITIAL_RECONNECT_BACKOFF

        try:
            while not self._stop.is_set():
                if not cap.isOpened():
                    cap = self._reconnect(cap, backoff)
                    backoff = min(backoff * 2.0, MAX_RECONNECT_BACKOFF)
                    continue

                ret, frame = cap.read()
                if not ret:
                    if self._remote:
                        cap = self._reconnect(cap, backoff)
                        backoff = min(backoff * 2.0, MAX_RECONNECT_BACKOFF)
                        if cap.isOpened():
                            backoff = INITIAL_RECONNECT_BACKOFF
                            next_read_time = time.monotonic()
                        continue
                    if self.loop:
                        cap.set(cv2.CAP_PROP_POS_FRAMES, 0)
                        next_read_time = time.monotonic()
                        continue
                    break

                self.frames_read += 1
                if not self.sink(self._next_frame(frame)):
                    logger.info("Sink for %s stopped accepting frames", self.source)
                    break

                # Live sources drive their own cadence.
                if not self._remote:
                    next_read_time += read_interval
                    sleep = next_read_time - time.monotonic()
                    if sleep > 0:
                        self._stop.wait(sleep)
                    elif sleep < -(read_interval * 3):
                        next_read_time = time.monotonic()
        finally:
            cap.release()
