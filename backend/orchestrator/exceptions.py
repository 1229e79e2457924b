"""Custom exceptions for pipeline orchestration."""


class OrchestratorError(Exception):
    """Base orchestrator exception."""


class ResourceLimitExceededError(OrchestratorError):
    """Raised when max concurrent pipelines is reached."""


class PipelineAlreadyRunningError(OrchestratorError):
    """Raised when attempting to start an already running pipeline."""


class PipelineNotFoundError(OrchestratorError):
    """Raised when a pipeline does not exist in the registry."""
