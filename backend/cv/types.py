"""
Internal data structures for the perception pipeline.
"""
from __future__ import annotations

import itertools
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Deque, Iterator, Mapping, Optional, Tuple, Union

import numpy as np


@dataclass
class RawFrame:
    """Frame as delivered by a source, before normalization."""
    data: Union[np.ndarray, bytes]
    sequence_id: int
    timestamp: float
    pixel_format: str = "bgr"
    width: Optional[int] = None   # required for raw byte buffers
    height: Optional[int] = None


@dataclass(frozen=True)
class Letterbox:
    """Geometry used to map model-input coordinates back to the source frame."""
    scale: float
    pad_x: int
    pad_y: int


@dataclass
class Frame:
    """Canonical frame: RGB uint8 at model input size plus source geometry."""
    sequence_id: int
    timestamp: float
    width: int         # source width
    height: int        # source height
    pixels: np.ndarray  # (input_size, input_size, 3), RGB, uint8
    letterbox: Letterbox

    @property
    def channels(self) -> int:
        return int(self.pixels.shape[2])


@dataclass(frozen=True)
class Box:
    """Axis-aligned box in source frame coordinates."""
    x1: float
    y1: float
    x2: float
    y2: float

    @property
    def width(self) -> float:
        return max(0.0, self.x2 - self.x1)

    @property
    def height(self) -> float:
        return max(0.0, self.y2 - self.y1)

    @property
    def area(self) -> float:
        return self.width * self.height

    def iou(self, other: "Box") -> float:
        inter_w = max(0.0, min(self.x2, other.x2) - max(self.x1, other.x1))
        inter_h = max(0.0, min(self.y2, other.y2) - max(self.y1, other.y1))
        inter = inter_w * inter_h
        union = self.area + other.area - inter
        return inter / union if union > 0 else 0.0

    def to_dict(self) -> dict:
        return {"x1": self.x1, "y1": self.y1, "x2": self.x2, "y2": self.y2}


@dataclass(frozen=True)
class Detection:
    """One decoded candidate that survived thresholding and suppression."""
    box: Box
    class_id: int
    class_name: str
    confidence: float
    index: int  # position in the raw output tensor


class EntityPhase(str, Enum):
    NEW = "new"
    TRACKED = "tracked"
    STALE = "stale"
    EVICTED = "evicted"


@dataclass
class TrackedEntity:
    """Mutable tracker-owned record. Never leaves the tracker; see EntitySnapshot."""
    entity_id: int
    box: Box
    class_id: int
    class_name: str
    confidence_history: Deque[float]
    last_seen: int
    age: int = 1
    unseen: int = 0
    phase: EntityPhase = EntityPhase.NEW

    @classmethod
    def spawn(cls, entity_id: int, detection: Detection, sequence_id: int, history: int) -> "TrackedEntity":
        return cls(
            entity_id=entity_id,
            box=detection.box,
            class_id=detection.class_id,
            class_name=detection.class_name,
            confidence_history=deque([detection.confidence], maxlen=history),
            last_seen=sequence_id,
        )

    def snapshot(self) -> "EntitySnapshot":
        return EntitySnapshot(
            entity_id=self.entity_id,
            box=self.box,
            class_id=self.class_id,
            class_name=self.class_name,
            confidence=self.confidence_history[-1],
            confidence_history=tuple(self.confidence_history),
            age=self.age,
            unseen=self.unseen,
            last_seen=self.last_seen,
            phase=self.phase,
        )


@dataclass(frozen=True)
class EntitySnapshot:
    entity_id: int
    box: Box
    class_id: int
    class_name: str
    confidence: float
    confidence_history: Tuple[float, ...]
    age: int
    unseen: int
    last_seen: int
    phase: EntityPhase

    def to_dict(self) -> dict:
        return {
            "entity_id": self.entity_id,
            "box": self.box.to_dict(),
            "class_id": self.class_id,
            "class_name": self.class_name,
            "confidence": self.confidence,
            "age": self.age,
            "unseen": self.unseen,
            "last_seen": self.last_seen,
            "phase": self.phase.value,
        }


@dataclass(frozen=True)
class EnvironmentState:
    """Read-only world view produced once per processed frame."""
    stream_id: str
    sequence_id: int
    timestamp: float
    entities: Mapping[int, EntitySnapshot] = field(default_factory=lambda: MappingProxyType({}))
    generation: int = 1

    def __post_init__(self):
        if not isinstance(self.entities, MappingProxyType):
            object.__setattr__(self, "entities", MappingProxyType(dict(self.entities)))


@dataclass(frozen=True)
class Action:
    """Policy output, tagged with the snapshot that produced it."""
    sequence_id: int
    kind: str               # "idle" or "focus"
    target_id: Optional[int]
    score: float
    variant: str

    def to_dict(self) -> dict:
        return {
            "sequence_id": self.sequence_id,
            "kind": self.kind,
            "target_id": self.target_id,
            "score": self.score,
            "variant": self.variant,
        }


@dataclass(frozen=True)
class PipelineResult:
    """Completed cycle handed to the session manager."""
    state: EnvironmentState
    action: Action


@dataclass(frozen=True)
class PipelineEvent:
    """Out-of-band pipeline condition surfaced to clients subscribed to events."""
    stream_id: str
    kind: str               # "backend_degraded", "resumed", "frames_dropped", "restarted"
    timestamp: float
    detail: Mapping[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "stream_id": self.stream_id,
            "kind": self.kind,
            "timestamp": self.timestamp,
            "detail": dict(self.detail),
        }


@dataclass
class StreamLineage:
    """Per-stream identity that outlives any single worker.

    ``generation`` counts worker runs for the stream; ``entity_ids`` is the one
    id counter every run of the stream draws from.
    """
    stream_id: str
    generation: int = 0
    entity_ids: Iterator[int] = field(default_factory=lambda: itertools.count(1))

    def next_generation(self) -> int:
        self.generation += 1
        return self.generation
