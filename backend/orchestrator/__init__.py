"""Pipeline orchestration package."""

from .exceptions import (
    OrchestratorError,
    PipelineAlreadyRunningError,
    PipelineNotFoundError,
    ResourceLimitExceededError,
)
from .orchestrator import PipelineOrchestrator
from .types import PipelineConfig, PipelineHandle

__all__ = [
    "OrchestratorError",
    "PipelineAlreadyRunningError",
    "PipelineNotFoundError",
    "ResourceLimitExceededError",
    "PipelineConfig",
    "PipelineHandle",
    "PipelineOrchestrator",
]
