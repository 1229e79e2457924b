"""
Pipeline settings.

Values come from three layers, later layers winning:
model defaults, ``PIPELINE_*`` environment variables (``.env`` is loaded by
``common.config.paths``), and overrides persisted in the settings store.
The resulting object is frozen and shared by reference across pipelines.
"""
from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from common.config.paths import BASE_DIR, DEFAULT_DATABASE_PATH, DEFAULT_MODEL_PATH, MODELS_DIR
from common.exceptions import ConfigError

ENV_PREFIX = "PIPELINE_"

# Bootstrap values cannot be changed through the settings store.
NON_PERSISTED_FIELDS = frozenset({"database_url"})


class ComputeBackend(str, Enum):
    AUTO = "auto"
    CUDA = "cuda"
    CPU = "cpu"


class OutputLayout(str, Enum):
    AUTO = "auto"
    CHANNELS_FIRST = "channels_first"  # (1, 4 + classes, N)
    CHANNELS_LAST = "channels_last"    # (1, N, 4 + classes)


class PolicyVariant(str, Enum):
    DETERMINISTIC = "deterministic"
    WEIGHTED_RANDOM = "weighted_random"
    NOISE_DRIVEN = "noise_driven"


class PipelineSettings(BaseModel):
    """Immutable runtime configuration for every pipeline instance."""

    model_config = ConfigDict(frozen=True, extra="forbid", protected_namespaces=())

    # Inference
    model_path: str = str(DEFAULT_MODEL_PATH)
    backend: ComputeBackend = ComputeBackend.AUTO
    input_size: int = Field(640, ge=32, le=4096)
    output_layout: OutputLayout = OutputLayout.AUTO
    class_names: Tuple[str, ...] = ()

    # Frame bounds (each side, source pixels)
    min_frame_size: int = Field(16, ge=1)
    max_frame_size: int = Field(8192, ge=1)

    # Postprocessing
    confidence_threshold: float = Field(0.25, ge=0.0, le=1.0)
    suppression_overlap_threshold: float = Field(0.45, gt=0.0, le=1.0)

    # Tracking
    tracker_match_overlap: float = Field(0.3, gt=0.0, le=1.0)
    tracker_eviction_frames: int = Field(5, ge=0)
    confidence_history: int = Field(10, ge=1)

    # Decision policy
    policy_variant: PolicyVariant = PolicyVariant.DETERMINISTIC
    policy_seed: Optional[int] = Field(None, ge=0)
    idle_score: float = Field(0.05, ge=0.0)
    noise_amplitude: float = Field(0.25, ge=0.0)
    noise_frequency: float = Field(0.1, gt=0.0)

    # Queues and pacing
    session_queue_capacity: int = Field(8, ge=1)
    frame_queue_capacity: int = Field(4, ge=1)
    handoff_queue_capacity: int = Field(64, ge=1)
    degraded_failure_threshold: int = Field(5, ge=1)
    target_fps: float = Field(0.0, ge=0.0)
    retain_debug_frame: bool = False
    max_pipelines: int = Field(4, ge=1)

    # Collaborators
    database_url: str = f"sqlite:///{DEFAULT_DATABASE_PATH}"
    redis_url: Optional[str] = None

    @field_validator("class_names", mode="before")
    @classmethod
    def _split_class_names(cls, value: Any) -> Any:
        if isinstance(value, str):
            return tuple(name.strip() for name in value.split(",") if name.strip())
        return value

    @field_validator("policy_seed", "redis_url", mode="before")
    @classmethod
    def _blank_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("model_path")
    @classmethod
    def _model_path_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("model_path must not be empty")
        return value.strip()

    @model_validator(mode="after")
    def _frame_bounds_ordered(self) -> "PipelineSettings":
        if self.min_frame_size > self.max_frame_size:
            raise ValueError("min_frame_size must not exceed max_frame_size")
        return self

    def resolved_model_path(self) -> Path:
        """Absolute model path; relative paths resolve against the models dir, then the backend dir."""
        path = Path(self.model_path)
        if path.is_absolute():
            return path
        candidate = MODELS_DIR / path
        if candidate.exists():
            return candidate
        return BASE_DIR / path

    def with_updates(self, changes: Mapping[str, Any]) -> "PipelineSettings":
        """Return a validated copy with ``changes`` applied."""
        return _build({**self.model_dump(), **dict(changes)})

    def persistable(self) -> dict[str, Any]:
        return {
            key: value
            for key, value in self.model_dump(mode="json").items()
            if key not in NON_PERSISTED_FIELDS
        }


def _build(values: Mapping[str, Any]) -> PipelineSettings:
    try:
        return PipelineSettings(**values)
    except ValidationError as exc:
        raise ConfigError(f"Invalid pipeline settings: {exc}") from exc


def env_values() -> dict[str, str]:
    """Collect ``PIPELINE_<FIELD>`` overrides from the environment."""
    values: dict[str, str] = {}
    for name in PipelineSettings.model_fields:
        raw = os.getenv(f"{ENV_PREFIX}{name.upper()}")
        if raw is not None and raw.strip():
            values[name] = raw.strip()
    return values


def load_settings(overrides: Mapping[str, Any] | None = None) -> PipelineSettings:
    """Build settings from environment plus ``overrides``; raises ConfigError when invalid."""
    values: dict[str, Any] = env_values()
    if overrides:
        values.update({k: v for k, v in overrides.items() if k not in NON_PERSISTED_FIELDS})
    return _build(values)


def bootstrap_value(name: str) -> Any:
    """Environment value, else the default, of a field read before the settings store exists."""
    if name not in NON_PERSISTED_FIELDS:
        raise KeyError(f"{name} is not a bootstrap setting")
    return env_values().get(name, PipelineSettings.model_fields[name].default)
