"""
Inference engine: owns a loaded model and runs forward passes on canonical tensors.

ONNX models run on onnxruntime, TorchScript models on torch. Both prefer the
CUDA backend and fall back to CPU when it is unavailable.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol, Sequence

import numpy as np
import onnxruntime as ort

from common.settings import ComputeBackend, PipelineSettings
from cv.exceptions import InferenceError, ModelLoadError

logger = logging.getLogger(__name__)

ONNX_SUFFIXES = {".onnx"}
TORCHSCRIPT_SUFFIXES = {".pt", ".pth", ".torchscript"}

CUDA_PROVIDER = "CUDAExecutionProvider"
CPU_PROVIDER = "CPUExecutionProvider"


class ModelRuntime(Protocol):
    reentrant: bool
    device: str
    input_shape: Optional[Sequence]

    def run(self, tensor: np.ndarray) -> List[np.ndarray]:
        ...

    def close(self) -> None:
        ...


def select_providers(backend: ComputeBackend, available: Sequence[str]) -> List[str]:
    """Execution providers in preference order, falling back to CPU."""
    if CPU_PROVIDER not in available:
        raise ModelLoadError(f"{CPU_PROVIDER} missing from onnxruntime (available: {list(available)})")
    if backend == ComputeBackend.CPU:
        return [CPU_PROVIDER]
    if CUDA_PROVIDER in available:
        return [CUDA_PROVIDER, CPU_PROVIDER]
    if backend == ComputeBackend.CUDA:
        logger.warning("CUDA requested but %s unavailable; falling back to CPU", CUDA_PROVIDER)
    return [CPU_PROVIDER]


class OnnxRuntime:
    """onnxruntime sessions accept concurrent ``run`` calls."""

    reentrant = True

    def __init__(self, path: Path, backend: ComputeBackend):
        providers = select_providers(backend, ort.get_available_providers())
        try:
            self.session = ort.InferenceSession(str(path), providers=providers)
        except Exception as exc:
            raise ModelLoadError(f"onnxruntime could not load {path}: {exc}") from exc

        active = self.session.get_providers()
        self.device = "cuda" if CUDA_PROVIDER in active else "cpu"
        model_input = self.session.get_inputs()[0]
        self.input_name = model_input.name
        self.input_shape = tuple(model_input.shape)
        self.output_names = [output.name for output in self.session.get_outputs()]
        logger.info("Loaded ONNX model %s (providers=%s, input=%s)", path, active, self.input_shape)

    def run(self, tensor: np.ndarray) -> List[np.ndarray]:
        outputs = self.session.run(self.output_names, {self.input_name: tensor})
        return [np.asarray(output) for output in outputs]

    def close(self) -> None:
        self.session = None


class TorchScriptRuntime:
    """TorchScript modules share autograd/device state; calls are serialized by the engine."""

    reentrant = False
    input_shape = None

    def __init__(self, path: Path, backend: ComputeBackend):
        import torch

        self._torch = torch
        if backend == ComputeBackend.CPU:
            device = "cpu"
        elif torch.cuda.is_available():
            device = "cuda"
        else:
            if backend == ComputeBackend.CUDA:
                logger.warning("CUDA requested but unavailable to torch; falling back to CPU")
            device = "cpu"
        self.device = device
        logger.info("PyTorch device: %s", device)
        if device == "cuda":
            logger.info("CUDA device: %s", torch.cuda.get_device_name(0))

        try:
            self.module = torch.jit.load(str(path), map_location=device)
        except (RuntimeError, ValueError) as exc:
            raise ModelLoadError(f"torch could not load {path}: {exc}") from exc
        self.module.eval()
        logger.info("Loaded TorchScript model %s on %s", path, device)

    def run(self, tensor: np.ndarray) -> List[np.ndarray]:
        torch = self._torch
        with torch.inference_mode():
            result = self.module(torch.from_numpy(tensor).to(self.device))
        outputs = result if isinstance(result, (list, tuple)) else [result]
        return [output.detach().cpu().numpy() for output in outputs]

    def close(self) -> None:
        self.module = None


def load_runtime(path: Path, backend: ComputeBackend) -> ModelRuntime:
    if not path.is_file():
        raise ModelLoadError(f"Model file not found: {path}")
    suffix = path.suffix.lower()
    if suffix in ONNX_SUFFIXES:
        return OnnxRuntime(path, backend)
    if suffix in TORCHSCRIPT_SUFFIXES:
        return TorchScriptRuntime(path, backend)
    raise ModelLoadError(f"Unsupported model format '{suffix}' for {path}")


class InferenceEngine:
    """Stateless across calls except for the loaded weights."""

    def __init__(
        self,
        model_path: str | Path | None = None,
        backend: ComputeBackend = ComputeBackend.AUTO,
        runtime: ModelRuntime | None = None,
    ):
        if runtime is None:
            if model_path is None:
                raise ModelLoadError("model_path is required when no runtime is supplied")
            runtime = load_runtime(Path(model_path), backend)
        self.runtime = runtime
        self._lock = threading.Lock()
        self._closed = False

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> "InferenceEngine":
        return cls(settings.resolved_model_path(), settings.backend)

    @property
    def reentrant(self) -> bool:
        return bool(getattr(self.runtime, "reentrant", False))

    @property
    def device(self) -> str:
        return getattr(self.runtime, "device", "cpu")

    def _check_input(self, tensor: np.ndarray) -> None:
        if not isinstance(tensor, np.ndarray) or tensor.dtype != np.float32:
            raise InferenceError("Input tensor must be a float32 numpy array")
        expected = self.runtime.input_shape
        if not expected:
            return
        if tensor.ndim != len(expected):
            raise InferenceError(f"Input rank {tensor.ndim} does not match model rank {len(expected)}")
        for actual, wanted in zip(tensor.shape, expected):
            # Symbolic/dynamic dims are strings or None
            if isinstance(wanted, int) and wanted > 0 and actual != wanted:
                raise InferenceError(f"Input shape {tensor.shape} does not match model shape {tuple(expected)}")

    def infer(self, tensor: np.ndarray) -> List[np.ndarray]:
        if self._closed:
            raise InferenceError("Engine is closed")
        self._check_input(tensor)
        try:
            if self.reentrant:
                outputs = self.runtime.run(tensor)
            else:
                with self._lock:
                    outputs = self.runtime.run(tensor)
        except InferenceError:
            raise
        except Exception as exc:
            raise InferenceError(f"Forward pass failed: {exc}") from exc
        if not outputs:
            raise InferenceError("Model returned no outputs")
        return outputs

    def close(self) -> None:
        # Waits for a serialized in-flight call to finish.
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self.runtime.close()


@dataclass
class _SharedEngine:
    engine: InferenceEngine
    refs: int = 1


class EngineRegistry:
    """Shares reentrant engines read-only across pipelines; others get a private copy."""

    def __init__(self, factory=InferenceEngine.from_settings):
        self._factory = factory
        self._lock = threading.Lock()
        self._shared: dict[tuple[str, str], _SharedEngine] = {}

    @staticmethod
    def _key(settings: PipelineSettings) -> tuple[str, str]:
        return str(settings.resolved_model_path()), settings.backend.value

    def acquire(self, settings: PipelineSettings) -> InferenceEngine:
        key = self._key(settings)
        with self._lock:
            entry = self._shared.get(key)
            if entry:
                entry.refs += 1
                return entry.engine

        engine = self._factory(settings)
        if not engine.reentrant:
            return engine

        with self._lock:
            entry = self._shared.get(key)
            if entry:
                # Lost a load race; keep the first copy.
                entry.refs += 1
                duplicate, engine = engine, entry.engine
            else:
                self._shared[key] = _SharedEngine(engine=engine)
                duplicate = None
        if duplicate is not None:
            duplicate.close()
        return engine

    def release(self, engine: InferenceEngine) -> None:
        with self._lock:
            for key, entry in self._shared.items():
                if entry.engine is engine:
                    entry.refs -= 1
                    if entry.refs > 0:
                        return
                    del self._shared[key]
                    break
        engine.close()

    def shared_count(self) -> int:
        with self._lock:
            return len(self._shared)


engines = EngineRegistry()
