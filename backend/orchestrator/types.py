"""Types for pipeline orchestration."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Optional

from pydantic import BaseModel, Field

from cv.capture import CaptureFeeder
from cv.types import StreamLineage
from cv.worker import PipelineWorker


class PipelineConfig(BaseModel):
    """Runtime configuration for one pipeline instance."""

    stream_id: str = Field(..., min_length=1, max_length=64, pattern=r"^[a-zA-Z0-9_-]+$")
    source_url: Optional[str] = Field(None, min_length=1)
    loop: bool = True


@dataclass
class PipelineHandle:
    """Handle for a managed pipeline worker and its optional capture feeder."""

    worker: PipelineWorker
    config: PipelineConfig
    lineage: StreamLineage
    feeder: Optional[CaptureFeeder] = None
    started_at: float = field(default_factory=time.monotonic)
    restart_count: int = 0
    backoff_seconds: float = 1.0
    next_restart_at: float = 0.0
    resume_backoff_seconds: float = 1.0
    next_resume_at: float = 0.0
    resume_count: int = 0
    processed_at_resume: int = 0
    pushed_sequence_id: int = 0

    @property
    def is_alive(self) -> bool:
        return self.worker.is_alive()

    def submit(self, raw) -> bool:
        # Resolved per call so the feeder follows worker restarts.
        return self.worker.submit(raw)

    def next_sequence_id(self) -> int:
        """Sequence id for pushed frames that arrive without one."""
        self.pushed_sequence_id += 1
        return self.pushed_sequence_id

    def terminate(self, timeout: float = 5.0):
        if self.feeder is not None:
            self.feeder.stop()
        self.worker.stop(timeout=timeout)

    def status(self) -> str:
        if self.worker.degraded:
            return "degraded"
        return "running" if self.is_alive else "stopped"

    def to_dict(self) -> dict:
        return {
            "stream_id": self.config.stream_id,
            "source_url": self.config.source_url,
            "loop": self.config.loop,
            "status": self.status(),
            "started_at_monotonic": self.started_at,
            "restart_count": self.restart_count,
            "generation": self.lineage.generation,
            "backoff_seconds": self.backoff_seconds,
            "next_restart_at_monotonic": self.next_restart_at,
            "resume_count": self.resume_count,
            "resume_backoff_seconds": self.resume_backoff_seconds,
            "stats": self.worker.stats(),
        }
