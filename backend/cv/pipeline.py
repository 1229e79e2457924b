"""
One perception -> state -> decision cycle per frame.

Per-frame errors are contained here: format and inference failures drop the
frame and bump a counter. Only a run of consecutive inference failures
escapes, as BackendDegraded.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Optional

from common.settings import PipelineSettings
from cv.engine import InferenceEngine
from cv.exceptions import BackendDegraded, FormatError, InferenceError
from cv.frames import FrameAdapter
from cv.postprocess import DetectionDecoder
from cv.tracker import StateTracker
from cv.types import Frame, PipelineResult, RawFrame, StreamLineage
from decision.policy import DecisionPolicy

logger = logging.getLogger(__name__)


@dataclass
class PipelineStats:
    processed: int = 0
    format_errors: int = 0
    inference_errors: int = 0
    consecutive_failures: int = 0
    discontinuities: int = 0
    clamped_confidences: int = 0
    last_sequence_id: Optional[int] = None

    def to_dict(self) -> dict:
        return asdict(self)


class PerceptionPipeline:
    def __init__(
        self,
        stream_id: str,
        settings: PipelineSettings,
        engine: InferenceEngine,
        policy: DecisionPolicy | None = None,
        lineage: StreamLineage | None = None,
    ):
        self.stream_id = stream_id
        self.lineage = lineage or StreamLineage(stream_id, generation=1)
        self.settings = settings
        self.engine = engine
        self.adapter = FrameAdapter.from_settings(settings)
        self.decoder = DetectionDecoder.from_settings(settings)
        self.tracker = StateTracker.from_settings(
            settings, stream_id, ids=self.lineage.entity_ids, generation=self.lineage.generation
        )
        self.policy = policy or DecisionPolicy.from_settings(settings)
        self.stats = PipelineStats()
        self.debug_frame: Optional[Frame] = None

    def _check_sequence(self, raw: RawFrame) -> None:
        last = self.stats.last_sequence_id
        if last is None:
            return
        if raw.sequence_id <= last:
            raise FormatError(f"Sequence id {raw.sequence_id} does not follow {last}")
        if raw.sequence_id != last + 1:
            self.stats.discontinuities += 1
            logger.info(
                "[%s] Sequence discontinuity: %d -> %d", self.stream_id, last, raw.sequence_id
            )

    def process(self, raw: RawFrame) -> Optional[PipelineResult]:
        """Run one frame to completion. Returns None when the frame is dropped."""
        try:
            self._check_sequence(raw)
            self.stats.last_sequence_id = raw.sequence_id
            frame = self.adapter.normalize(raw)
        except FormatError as exc:
            self.stats.format_errors += 1
            logger.warning("[%s] Dropping frame %s: %s", self.stream_id, raw.sequence_id, exc)
            return None

        try:
            outputs = self.engine.infer(FrameAdapter.to_tensor(frame))
            detections = self.decoder.decode(outputs, frame)
        except InferenceError as exc:
            self.stats.inference_errors += 1
            self.stats.consecutive_failures += 1
            logger.warning(
                "[%s] Inference failed on frame %s (%d consecutive): %s",
                self.stream_id,
                raw.sequence_id,
                self.stats.consecutive_failures,
                exc,
            )
            if self.stats.consecutive_failures >= self.settings.degraded_failure_threshold:
                raise BackendDegraded(self.stream_id, self.stats.consecutive_failures) from exc
            return None

        self.stats.consecutive_failures = 0
        self.stats.clamped_confidences = self.decoder.clamped_confidences
        if self.settings.retain_debug_frame:
            self.debug_frame = frame

        state = self.tracker.update(raw.sequence_id, detections, raw.timestamp)
        action = self.policy.decide(state)
        self.stats.processed += 1
        return PipelineResult(state=state, action=action)

    def reset_failures(self) -> None:
        self.stats.consecutive_failures = 0
