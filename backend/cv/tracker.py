"""
Identity tracking across frames with greedy IoU association.
"""
from __future__ import annotations

import itertools
import logging
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from common.settings import PipelineSettings
from cv.types import Detection, EntityPhase, EnvironmentState, TrackedEntity

logger = logging.getLogger(__name__)


def transition(phase: EntityPhase, matched: bool, unseen: int, eviction_frames: int) -> EntityPhase:
    """Next lifecycle phase from one frame's match outcome.

    ``unseen`` is the consecutive unmatched count after this frame.
    """
    if phase == EntityPhase.EVICTED:
        return EntityPhase.EVICTED
    if matched:
        return EntityPhase.TRACKED
    if unseen > eviction_frames:
        return EntityPhase.EVICTED
    return EntityPhase.STALE


def greedy_assignment(
    entities: Sequence[TrackedEntity],
    detections: Sequence[Detection],
    min_overlap: float,
) -> List[Tuple[int, int]]:
    """
    Pair entities with same-class detections by descending IoU.

    Ties go to the lower entity id, then the lower detection index. Each
    entity and each detection is claimed at most once. Returns
    ``(entity position, detection position)`` pairs.
    """
    pairs = []
    for i, entity in enumerate(entities):
        for j, det in enumerate(detections):
            if det.class_id != entity.class_id:
                continue
            overlap = entity.box.iou(det.box)
            if overlap >= min_overlap:
                pairs.append((-overlap, entity.entity_id, det.index, i, j))
    pairs.sort()

    claimed_entities, claimed_detections = set(), set()
    matches = []
    for _, _, _, i, j in pairs:
        if i in claimed_entities or j in claimed_detections:
            continue
        claimed_entities.add(i)
        claimed_detections.add(j)
        matches.append((i, j))
    return matches


class StateTracker:
    def __init__(self, stream_id: str = "default", match_overlap: float = 0.3,
                 eviction_frames: int = 5, history: int = 10,
                 ids: Optional[Iterator[int]] = None, generation: int = 1):
        self.stream_id = stream_id
        self.match_overlap = match_overlap
        self.eviction_frames = eviction_frames
        self.history = history
        self.generation = generation
        self._entities: Dict[int, TrackedEntity] = {}
        # Shared with earlier runs of the stream when supplied.
        self._ids = ids if ids is not None else itertools.count(1)
        self.evicted = 0

    @classmethod
    def from_settings(cls, settings: PipelineSettings, stream_id: str,
                      ids: Optional[Iterator[int]] = None, generation: int = 1) -> "StateTracker":
        return cls(
            stream_id=stream_id,
            match_overlap=settings.tracker_match_overlap,
            eviction_frames=settings.tracker_eviction_frames,
            history=settings.confidence_history,
            ids=ids,
            generation=generation,
        )

    def __len__(self) -> int:
        return len(self._entities)

    def update(self, sequence_id: int, detections: Sequence[Detection],
               timestamp: Optional[float] = None) -> EnvironmentState:
        entities = list(self._entities.values())
        detections = list(detections or ())
        matches = greedy_assignment(entities, detections, self.match_overlap)
        matched = {i: j for i, j in matches}

        survivors: Dict[int, TrackedEntity] = {}
        for i, entity in enumerate(entities):
            entity.age += 1
            if i in matched:
                det = detections[matched[i]]
                entity.box = det.box
                entity.class_id = det.class_id
                entity.class_name = det.class_name
                entity.confidence_history.append(det.confidence)
                entity.last_seen = sequence_id
                entity.unseen = 0
            else:
                entity.unseen += 1
            entity.phase = transition(entity.phase, i in matched, entity.unseen, self.eviction_frames)
            if entity.phase == EntityPhase.EVICTED:
                self.evicted += 1
                logger.debug("Evicted entity %d after %d unseen frames", entity.entity_id, entity.unseen)
                continue
            survivors[entity.entity_id] = entity

        claimed = set(matched.values())
        for j, det in enumerate(detections):
            if j in claimed:
                continue
            entity = TrackedEntity.spawn(next(self._ids), det, sequence_id, self.history)
            survivors[entity.entity_id] = entity

        self._entities = survivors
        return EnvironmentState(
            stream_id=self.stream_id,
            sequence_id=sequence_id,
            timestamp=timestamp if timestamp is not None else 0.0,
            entities={entity_id: entity.snapshot() for entity_id, entity in survivors.items()},
            generation=self.generation,
        )

    def reset(self) -> None:
        # Id counter survives so identities are never reused.
        self._entities = {}
