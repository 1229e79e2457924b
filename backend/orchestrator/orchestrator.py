"""Pipeline orchestrator for multi-stream lifecycle management."""
from __future__ import annotations

import logging
import threading
import time
from queue import Queue

from common.settings import PipelineSettings
from cv import worker
from cv.capture import CaptureFeeder
from cv.types import RawFrame, StreamLineage
from orchestrator.exceptions import (
    PipelineAlreadyRunningError,
    PipelineNotFoundError,
    ResourceLimitExceededError,
)
from orchestrator.types import PipelineConfig, PipelineHandle

logger = logging.getLogger(__name__)


class PipelineOrchestrator:
    def __init__(
        self,
        settings: PipelineSettings,
        handoff: Queue,
        max_pipelines: int | None = None,
        monitor_interval_seconds: float = 2.0,
        initial_backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 60.0,
    ):
        self.settings = settings
        self.handoff = handoff
        self._pipelines: dict[str, PipelineHandle] = {}
        # Kept after a pipeline stops so a later run of the stream continues its identities.
        self._lineages: dict[str, StreamLineage] = {}
        self._lock = threading.Lock()
        self._max_pipelines = max_pipelines or settings.max_pipelines
        self._monitor_interval_seconds = monitor_interval_seconds
        self._initial_backoff_seconds = initial_backoff_seconds
        self._max_backoff_seconds = max_backoff_seconds
        self._monitor_thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    @property
    def max_pipelines(self) -> int:
        return self._max_pipelines

    def update_settings(self, settings: PipelineSettings) -> None:
        """New and restarted pipelines pick up ``settings``; running ones keep theirs."""
        self.settings = settings

    def _spawn_handle(self, config: PipelineConfig) -> PipelineHandle:
        lineage = self._lineages.setdefault(config.stream_id, StreamLineage(config.stream_id))
        lineage.next_generation()
        pipeline_worker = worker.start(
            stream_id=config.stream_id,
            settings=self.settings,
            handoff=self.handoff,
            lineage=lineage,
        )
        handle = PipelineHandle(
            worker=pipeline_worker,
            config=config,
            lineage=lineage,
            backoff_seconds=self._initial_backoff_seconds,
            resume_backoff_seconds=self._initial_backoff_seconds,
        )
        if config.source_url:
            handle.feeder = CaptureFeeder(config.source_url, handle.submit, loop=config.loop)
            handle.feeder.start()
        return handle

    def start_pipeline(self, config: PipelineConfig) -> PipelineHandle:
        with self._lock:
            if config.stream_id in self._pipelines:
                raise PipelineAlreadyRunningError(f"Pipeline '{config.stream_id}' is already running")
            if len(self._pipelines) >= self._max_pipelines:
                raise ResourceLimitExceededError("Max concurrent pipelines reached")
            handle = self._spawn_handle(config)
            self._pipelines[config.stream_id] = handle
            logger.info("Started pipeline '%s' (source=%s)", config.stream_id, config.source_url or "push")
            return handle

    def stop_pipeline(self, stream_id: str):
        with self._lock:
            handle = self._pipelines.pop(stream_id, None)
        if not handle:
            raise PipelineNotFoundError(f"Pipeline '{stream_id}' not found")

        handle.terminate()
        logger.info("Stopped pipeline '%s'", stream_id)

    def get_pipeline(self, stream_id: str) -> PipelineHandle:
        with self._lock:
            handle = self._pipelines.get(stream_id)
            if not handle:
                raise PipelineNotFoundError(f"Pipeline '{stream_id}' not found")
            return handle

    def submit_frame(self, stream_id: str, raw: RawFrame) -> bool:
        return self.get_pipeline(stream_id).submit(raw)

    def resume_pipeline(self, stream_id: str) -> bool:
        handle = self.get_pipeline(stream_id)
        return self._resume(handle)

    def _resume(self, handle: PipelineHandle) -> bool:
        pipeline = handle.worker.pipeline
        processed = pipeline.stats.processed if pipeline else 0
        if not handle.worker.resume():
            return False
        handle.resume_count += 1
        handle.processed_at_resume = processed
        handle.next_resume_at = 0.0
        return True

    def list_pipelines(self) -> list[dict]:
        with self._lock:
            return [h.to_dict() for h in self._pipelines.values()]

    def start_monitoring(self):
        if self._monitor_thread and self._monitor_thread.is_alive():
            return
        self._stop_event.clear()
        self._monitor_thread = threading.Thread(target=self._monitor_loop, daemon=True)
        self._monitor_thread.start()
        logger.info("Pipeline monitor started")

    def stop_monitoring(self):
        self._stop_event.set()
        if self._monitor_thread:
            self._monitor_thread.join(timeout=5)
            self._monitor_thread = None
        logger.info("Pipeline monitor stopped")

    def shutdown(self):
        self.stop_monitoring()
        with self._lock:
            handles = list(self._pipelines.values())
            self._pipelines.clear()
        for handle in handles:
            handle.terminate()
        logger.info("Pipeline orchestrator shutdown complete")

    def _monitor_loop(self):
        while not self._stop_event.wait(self._monitor_interval_seconds):
            self.check_pipelines()

    def check_pipelines(self, now: float | None = None):
        """One monitor pass: resume degraded pipelines and restart dead workers."""
        now = time.monotonic() if now is None else now
        with self._lock:
            snapshot = list(self._pipelines.items())

        for stream_id, handle in snapshot:
            with self._lock:
                if self._pipelines.get(stream_id) is not handle:
                    # Stopped while we were iterating.
                    continue

            if handle.is_alive:
                handle.next_restart_at = 0.0
                handle.backoff_seconds = self._initial_backoff_seconds
                self._check_degraded(stream_id, handle, now)
                continue

            if handle.next_restart_at == 0.0:
                handle.next_restart_at = now + handle.backoff_seconds
                logger.warning(
                    "Worker dead for pipeline '%s'. Scheduling restart in %.1fs",
                    stream_id,
                    handle.backoff_seconds,
                )
                continue

            if now < handle.next_restart_at:
                continue

            logger.warning("Restarting worker for pipeline '%s' now", stream_id)
            handle.lineage.next_generation()
            try:
                pipeline_worker = worker.start(
                    stream_id=stream_id,
                    settings=self.settings,
                    handoff=self.handoff,
                    lineage=handle.lineage,
                )
            except Exception:
                handle.next_restart_at = now + handle.backoff_seconds
                handle.backoff_seconds = min(handle.backoff_seconds * 2, self._max_backoff_seconds)
                logger.exception("Restart failed for pipeline '%s'", stream_id)
                continue

            with self._lock:
                if self._pipelines.get(stream_id) is not handle:
                    pipeline_worker.stop(timeout=1)
                    continue
                handle.worker = pipeline_worker
                handle.restart_count += 1
                handle.started_at = time.monotonic()
                handle.backoff_seconds = min(handle.backoff_seconds * 2, self._max_backoff_seconds)
                handle.next_restart_at = 0.0

            logger.info("Restarted pipeline '%s' (restart #%d)", stream_id, handle.restart_count)

    def _check_degraded(self, stream_id: str, handle: PipelineHandle, now: float):
        if not handle.worker.degraded:
            pipeline = handle.worker.pipeline
            if pipeline is not None and pipeline.stats.processed > handle.processed_at_resume:
                # Healthy since the last resume; a future degrade starts from the initial delay.
                handle.resume_backoff_seconds = self._initial_backoff_seconds
            return

        if handle.next_resume_at == 0.0:
            handle.next_resume_at = now + handle.resume_backoff_seconds
            logger.warning(
                "Pipeline '%s' degraded. Scheduling resume in %.1fs",
                stream_id,
                handle.resume_backoff_seconds,
            )
            return

        if now < handle.next_resume_at:
            return

        handle.resume_backoff_seconds = min(handle.resume_backoff_seconds * 2, self._max_backoff_seconds)
        if self._resume(handle):
            logger.info("Resumed degraded pipeline '%s'", stream_id)
