"""Per-frame and model errors raised inside the perception pipeline."""
from common.exceptions import ConfigError


class FormatError(Exception):
    """Frame cannot be used. The frame is dropped; the pipeline continues."""


class UnsupportedFormat(FormatError):
    """Colour/channel layout cannot be mapped to canonical RGB."""


class DimensionMismatch(FormatError):
    """Frame violates configured size bounds."""


class ModelLoadError(ConfigError):
    """Model weights or compute runtime unusable at startup."""


class InferenceError(Exception):
    """Forward pass failed for one frame."""


class BackendDegraded(Exception):
    """Too many consecutive inference failures; the pipeline pauses."""

    def __init__(self, stream_id: str, failures: int):
        super().__init__(f"Pipeline '{stream_id}' degraded after {failures} consecutive inference failures")
        self.stream_id = stream_id
        self.failures = failures
