"""Wire models for the state websocket."""
from __future__ import annotations

import json
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from cv.types import PipelineEvent, PipelineResult
from streaming.exceptions import ProtocolViolation


class StreamKind(str, Enum):
    STATE = "state"
    ACTIONS = "actions"
    EVENTS = "events"


ALL_STREAM_KINDS = frozenset(StreamKind)


# ---------- Client -> server ----------

class Subscribe(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["subscribe"]
    stream_kinds: list[StreamKind] = Field(default_factory=lambda: list(StreamKind), min_length=1)


class Unsubscribe(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["unsubscribe"]


class Ack(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["ack"]
    sequence_id: int = Field(ge=0)


ControlMessage = Annotated[Union[Subscribe, Unsubscribe, Ack], Field(discriminator="type")]
_control_adapter = TypeAdapter(ControlMessage)


def parse_control(raw: Union[str, bytes, dict]) -> Union[Subscribe, Unsubscribe, Ack]:
    """Validate one control message; anything malformed is a ProtocolViolation."""
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as exc:
            raise ProtocolViolation(f"Control message is not JSON: {exc}") from exc
    try:
        return _control_adapter.validate_python(raw)
    except ValidationError as exc:
        raise ProtocolViolation(f"Invalid control message: {exc.errors(include_url=False)}") from exc


# ---------- Server -> client ----------

class StateUpdate(BaseModel):
    type: Literal["state"] = "state"
    stream_id: str
    sequence_id: int
    generation: int = 1
    timestamp: float
    entities: list[dict[str, Any]] = Field(default_factory=list)
    chosen_action: Optional[dict[str, Any]] = None
    dropped_frames: int = 0

    @classmethod
    def from_result(
        cls,
        result: PipelineResult,
        stream_kinds: frozenset = ALL_STREAM_KINDS,
        dropped_frames: int = 0,
    ) -> "StateUpdate":
        state = result.state
        entities = []
        if StreamKind.STATE in stream_kinds:
            entities = [entity.to_dict() for entity in state.entities.values()]
        action = result.action.to_dict() if StreamKind.ACTIONS in stream_kinds else None
        return cls(
            stream_id=state.stream_id,
            sequence_id=state.sequence_id,
            generation=state.generation,
            timestamp=state.timestamp,
            entities=entities,
            chosen_action=action,
            dropped_frames=dropped_frames,
        )


class EventMessage(BaseModel):
    type: Literal["event"] = "event"
    stream_id: str
    kind: str
    timestamp: float
    detail: dict[str, Any] = Field(default_factory=dict)
    dropped_frames: int = 0

    @classmethod
    def from_event(cls, event: PipelineEvent, dropped_frames: int = 0) -> "EventMessage":
        return cls(dropped_frames=dropped_frames, **event.to_dict())
