"""Pipeline worker thread with drop-oldest inbound and handoff queues."""
from __future__ import annotations

import logging
import threading
import time
from queue import Empty, Full, Queue
from typing import Optional

from common.settings import PipelineSettings
from cv import engine as engine_module
from cv.exceptions import BackendDegraded
from cv.pipeline import PerceptionPipeline
from cv.types import PipelineEvent, RawFrame, StreamLineage

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 0.1
LATE_LOG_INTERVAL_SECONDS = 5.0
DROP_EVENT_INTERVAL_SECONDS = 1.0


def _offer_latest(queue_obj: Queue, item) -> bool:
    """Keep queue non-blocking and biased toward newest data.

    Returns True when an older item had to be discarded.
    """
    try:
        queue_obj.put_nowait(item)
        return False
    except Full:
        try:
            queue_obj.get_nowait()
            queue_obj.put_nowait(item)
        except (Empty, Full):
            pass
        return True


class PipelineWorker:
    """Owns one PerceptionPipeline and runs it on a dedicated thread."""

    def __init__(
        self,
        stream_id: str,
        settings: PipelineSettings,
        handoff: Queue,
        engines: engine_module.EngineRegistry | None = None,
        lineage: StreamLineage | None = None,
    ):
        self.stream_id = stream_id
        self.lineage = lineage or StreamLineage(stream_id, generation=1)
        self.settings = settings
        self.handoff = handoff
        self.frames: Queue = Queue(maxsize=settings.frame_queue_capacity)
        self._engines = engines or engine_module.engines
        self.pipeline: Optional[PerceptionPipeline] = None
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._wake = threading.Event()
        self.stopped = threading.Event()
        self.degraded = False
        self.degraded_count = 0
        self.dropped_frames = 0
        self.handoff_drops = 0
        self._reported_drops = 0
        self._last_drop_event = 0.0
        self._last_late_log = 0.0

    def start(self) -> None:
        """Load the engine on the caller's thread, so ModelLoadError reaches the caller."""
        engine = self._engines.acquire(self.settings)
        self.pipeline = PerceptionPipeline(self.stream_id, self.settings, engine, lineage=self.lineage)
        if self.lineage.generation > 1:
            self._emit("restarted", {"generation": self.lineage.generation})
        self._thread = threading.Thread(
            target=self._run, name=f"pipeline-{self.stream_id}", daemon=True
        )
        self._thread.start()
        logger.info("[%s] Pipeline worker started (run %d)", self.stream_id, self.lineage.generation)

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def submit(self, raw: RawFrame) -> bool:
        """Queue a frame. Returns False when the worker is not accepting frames."""
        if self._stop.is_set() or self.stopped.is_set():
            return False
        if _offer_latest(self.frames, raw):
            self.dropped_frames += 1
        return True

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        self._wake.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("[%s] Worker did not stop within %.1fs", self.stream_id, timeout)

    def resume(self) -> bool:
        """Leave the degraded state. Returns False if the worker was not degraded."""
        if not self.degraded:
            return False
        if self.pipeline is not None:
            self.pipeline.reset_failures()
        self.degraded = False
        self._wake.set()
        self._emit("resumed", {"degraded_count": self.degraded_count})
        logger.info("[%s] Pipeline resumed", self.stream_id)
        return True

    def stats(self) -> dict:
        stats = self.pipeline.stats.to_dict() if self.pipeline else {}
        stats.update(
            dropped_frames=self.dropped_frames,
            handoff_drops=self.handoff_drops,
            degraded=self.degraded,
            degraded_count=self.degraded_count,
        )
        return stats

    def _emit(self, kind: str, detail: dict) -> None:
        event = PipelineEvent(stream_id=self.stream_id, kind=kind, timestamp=time.time(), detail=detail)
        if _offer_latest(self.handoff, event):
            self.handoff_drops += 1

    def _enter_degraded(self, exc: BackendDegraded) -> None:
        self.degraded = True
        self.degraded_count += 1
        self._wake.clear()
        # Frames queued against a broken backend are stale by the time it recovers.
        while True:
            try:
                self.frames.get_nowait()
            except Empty:
                break
        logger.error("[%s] %s; pausing pipeline", self.stream_id, exc)
        self._emit("backend_degraded", {"failures": exc.failures})

    def _report_drops(self) -> None:
        if self.dropped_frames == self._reported_drops:
            return
        now = time.monotonic()
        if now - self._last_drop_event < DROP_EVENT_INTERVAL_SECONDS:
            return
        self._last_drop_event = now
        self._emit(
            "frames_dropped",
            {"dropped": self.dropped_frames - self._reported_drops, "total": self.dropped_frames},
        )
        self._reported_drops = self.dropped_frames

    def _pace(self, cycle_start: float) -> None:
        if self.settings.target_fps <= 0:
            return
        budget = 1.0 / self.settings.target_fps
        remaining = budget - (time.monotonic() - cycle_start)
        if remaining > 0:
            self._stop.wait(remaining)
            return
        now = time.monotonic()
        if now - self._last_late_log >= LATE_LOG_INTERVAL_SECONDS:
            self._last_late_log = now
            logger.info(
                "[%s] Cycle overran frame budget by %.1fms", self.stream_id, -remaining * 1000.0
            )

    def _run(self) -> None:
        try:
            while not self._stop.is_set():
                if self.degraded:
                    self._wake.wait(POLL_INTERVAL_SECONDS)
                    continue
                try:
                    raw = self.frames.get(timeout=POLL_INTERVAL_SECONDS)
                except Empty:
                    self._report_drops()
                    continue

                cycle_start = time.monotonic()
                try:
                    result = self.pipeline.process(raw)
                except BackendDegraded as exc:
                    self._enter_degraded(exc)
                    continue
                if result is not None and _offer_latest(self.handoff, result):
                    self.handoff_drops += 1
                self._report_drops()
                self._pace(cycle_start)
        except Exception:
            logger.exception("[%s] Pipeline worker crashed", self.stream_id)
        finally:
            self._teardown()

    def _teardown(self) -> None:
        if self.pipeline is not None:
            self._engines.release(self.pipeline.engine)
            self.pipeline.tracker.reset()
        self.stopped.set()
        logger.info("[%s] Pipeline worker stopped", self.stream_id)


def start(
    stream_id: str,
    settings: PipelineSettings,
    handoff: Queue,
    lineage: StreamLineage | None = None,
) -> PipelineWorker:
    worker = PipelineWorker(stream_id, settings, handoff, lineage=lineage)
    worker.start()
    return worker
