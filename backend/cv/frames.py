"""
Frame source adapter: raw frames of any supported layout -> canonical Frame.

Canonical layout is RGB uint8, letterboxed to a square model input with
bilinear resizing and a constant grey pad, so identical input always yields
byte-identical output.
"""
from __future__ import annotations

import logging
from typing import Optional

import cv2
import numpy as np

from cv.exceptions import DimensionMismatch, UnsupportedFormat
from cv.types import Frame, Letterbox, RawFrame

logger = logging.getLogger(__name__)

PAD_VALUE = 114
INTERPOLATION = cv2.INTER_LINEAR

# pixel_format -> (channels in buffer, cv2 conversion code to RGB or None for identity)
_PACKED_FORMATS = {
    "rgb": (3, None),
    "bgr": (3, cv2.COLOR_BGR2RGB),
    "rgba": (4, cv2.COLOR_RGBA2RGB),
    "bgra": (4, cv2.COLOR_BGRA2RGB),
    "gray": (1, cv2.COLOR_GRAY2RGB),
}
_PLANAR_YUV_FORMATS = {
    "nv12": cv2.COLOR_YUV2RGB_NV12,
    "i420": cv2.COLOR_YUV2RGB_I420,
}
SUPPORTED_FORMATS = frozenset(_PACKED_FORMATS) | frozenset(_PLANAR_YUV_FORMATS) | {"encoded"}


def _convert(image: np.ndarray, code: int, fmt: str) -> np.ndarray:
    try:
        return cv2.cvtColor(image, code)
    except cv2.error as exc:
        raise UnsupportedFormat(f"{fmt} frame could not be converted to RGB: {exc}") from exc


class FrameAdapter:
    def __init__(self, input_size: int = 640, min_frame_size: int = 16, max_frame_size: int = 8192):
        self.input_size = input_size
        self.min_frame_size = min_frame_size
        self.max_frame_size = max_frame_size

    @classmethod
    def from_settings(cls, settings) -> "FrameAdapter":
        return cls(
            input_size=settings.input_size,
            min_frame_size=settings.min_frame_size,
            max_frame_size=settings.max_frame_size,
        )

    def normalize(self, raw: RawFrame) -> Frame:
        rgb = self._to_rgb(raw)
        height, width = rgb.shape[:2]
        self._check_bounds(width, height)
        pixels, letterbox = self._letterbox(rgb)
        return Frame(
            sequence_id=raw.sequence_id,
            timestamp=raw.timestamp,
            width=width,
            height=height,
            pixels=pixels,
            letterbox=letterbox,
        )

    @staticmethod
    def to_tensor(frame: Frame) -> np.ndarray:
        """(1, 3, H, W) float32 in [0, 1]."""
        chw = np.transpose(frame.pixels.astype(np.float32) / 255.0, (2, 0, 1))
        return np.ascontiguousarray(chw[np.newaxis, ...])

    def _check_bounds(self, width: int, height: int) -> None:
        if not (self.min_frame_size <= width <= self.max_frame_size) or not (
            self.min_frame_size <= height <= self.max_frame_size
        ):
            raise DimensionMismatch(
                f"Frame {width}x{height} outside bounds "
                f"[{self.min_frame_size}, {self.max_frame_size}]"
            )

    def _to_rgb(self, raw: RawFrame) -> np.ndarray:
        fmt = (raw.pixel_format or "").strip().lower()
        if fmt not in SUPPORTED_FORMATS:
            raise UnsupportedFormat(f"Unsupported pixel format: {raw.pixel_format!r}")

        if fmt == "encoded":
            return self._decode_image(raw.data)

        if fmt in _PLANAR_YUV_FORMATS:
            planes = self._as_array(raw, rows_factor=1.5, channels=1)
            if planes.ndim != 2 or planes.shape[0] % 3 != 0:
                raise UnsupportedFormat(f"{fmt} buffer must be a (H*3/2, W) plane, got {planes.shape}")
            # Chroma is subsampled 2x2; an even height already follows from the row check.
            if planes.shape[1] % 2 != 0:
                raise UnsupportedFormat(f"{fmt} needs an even width, got plane {planes.shape}")
            return _convert(np.ascontiguousarray(planes, dtype=np.uint8), _PLANAR_YUV_FORMATS[fmt], fmt)

        channels, code = _PACKED_FORMATS[fmt]
        image = self._as_array(raw, rows_factor=1.0, channels=channels)
        if channels == 1 and image.ndim == 3 and image.shape[2] == 1:
            image = image[:, :, 0]
        expected_ndim = 2 if channels == 1 else 3
        if image.ndim != expected_ndim or (channels > 1 and image.shape[2] != channels):
            raise UnsupportedFormat(f"{fmt} expects {channels} channel(s), got shape {image.shape}")
        image = np.ascontiguousarray(image, dtype=np.uint8)
        if code is None:
            return image.copy()
        return _convert(image, code, fmt)

    @staticmethod
    def _as_array(raw: RawFrame, rows_factor: float, channels: int) -> np.ndarray:
        if isinstance(raw.data, np.ndarray):
            if raw.data.dtype != np.uint8:
                raise UnsupportedFormat(f"Pixel samples must be uint8, got {raw.data.dtype}")
            return raw.data
        if not raw.width or not raw.height:
            raise UnsupportedFormat("Raw byte buffers need explicit width and height")
        rows = int(raw.height * rows_factor)
        expected = rows * raw.width * channels
        buffer = np.frombuffer(raw.data, dtype=np.uint8)
        if buffer.size != expected:
            raise UnsupportedFormat(
                f"Buffer holds {buffer.size} bytes, expected {expected} for "
                f"{raw.width}x{raw.height} {raw.pixel_format}"
            )
        if channels == 1:
            return buffer.reshape((rows, raw.width))
        return buffer.reshape((rows, raw.width, channels))

    @staticmethod
    def _decode_image(data) -> np.ndarray:
        if isinstance(data, np.ndarray):
            data = data.tobytes()
        try:
            decoded = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_COLOR)
        except cv2.error as exc:
            raise UnsupportedFormat(f"Encoded frame could not be decoded: {exc}") from exc
        if decoded is None:
            raise UnsupportedFormat("Encoded frame could not be decoded")
        return _convert(decoded, cv2.COLOR_BGR2RGB, "encoded")

    def _letterbox(self, rgb: np.ndarray) -> tuple[np.ndarray, Letterbox]:
        size = self.input_size
        height, width = rgb.shape[:2]
        scale = min(size / height, size / width)
        new_w = max(1, int(round(width * scale)))
        new_h = max(1, int(round(height * scale)))
        try:
            resized = cv2.resize(rgb, (new_w, new_h), interpolation=INTERPOLATION)
        except cv2.error as exc:
            raise UnsupportedFormat(f"Frame {width}x{height} could not be resized: {exc}") from exc

        canvas = np.full((size, size, 3), PAD_VALUE, dtype=np.uint8)
        pad_x = (size - new_w) // 2
        pad_y = (size - new_h) // 2
        canvas[pad_y:pad_y + new_h, pad_x:pad_x + new_w] = resized
        return canvas, Letterbox(scale=scale, pad_x=pad_x, pad_y=pad_y)


def encode_png(frame: Optional[Frame]) -> Optional[bytes]:
    """PNG bytes of a retained canonical frame, or None."""
    if frame is None:
        return None
    ok, buffer = cv2.imencode(".png", cv2.cvtColor(frame.pixels, cv2.COLOR_RGB2BGR))
    if not ok:
        logger.warning("PNG encoding failed for frame %s", frame.sequence_id)
        return None
    return buffer.tobytes()
