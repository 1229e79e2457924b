"""
Decode raw YOLO-style head outputs into typed, suppressed detections.

Head layout is ``(1, 4 + num_classes, N)`` (channels first, the usual
ultralytics export) or its transpose ``(1, N, 4 + num_classes)``. The first
four attributes are ``cx, cy, w, h`` in model-input pixels.
"""
from __future__ import annotations

import logging
from typing import List, Sequence

import numpy as np

from common.settings import OutputLayout, PipelineSettings
from cv.exceptions import InferenceError
from cv.types import Box, Detection, Frame

logger = logging.getLogger(__name__)

BOX_ATTRIBUTES = 4


def pairwise_iou(box: np.ndarray, boxes: np.ndarray) -> np.ndarray:
    """IoU of one ``[x1, y1, x2, y2]`` box against an ``(M, 4)`` array."""
    x1 = np.maximum(box[0], boxes[:, 0])
    y1 = np.maximum(box[1], boxes[:, 1])
    x2 = np.minimum(box[2], boxes[:, 2])
    y2 = np.minimum(box[3], boxes[:, 3])
    inter = np.clip(x2 - x1, 0, None) * np.clip(y2 - y1, 0, None)
    area = (box[2] - box[0]) * (box[3] - box[1])
    areas = (boxes[:, 2] - boxes[:, 0]) * (boxes[:, 3] - boxes[:, 1])
    union = area + areas - inter
    return np.where(union > 0, inter / np.where(union > 0, union, 1.0), 0.0)


def suppress(boxes: np.ndarray, scores: np.ndarray, class_ids: np.ndarray,
             indices: np.ndarray, overlap_threshold: float) -> List[int]:
    """
    Greedy class-aware suppression.

    Candidates are visited by descending score, ties by ascending tensor
    index. Each visited survivor is kept and removes every later candidate of
    the same class whose IoU with it exceeds ``overlap_threshold``.
    Returns positions into the input arrays, in keep order.
    """
    order = np.lexsort((indices, -scores))
    suppressed = np.zeros(len(order), dtype=bool)
    keep: List[int] = []
    for rank, position in enumerate(order):
        if suppressed[rank]:
            continue
        keep.append(int(position))
        rest = order[rank + 1:]
        if rest.size == 0:
            break
        same_class = class_ids[rest] == class_ids[position]
        overlaps = pairwise_iou(boxes[position], boxes[rest]) > overlap_threshold
        suppressed[rank + 1:] |= same_class & overlaps
    return keep


class DetectionDecoder:
    def __init__(
        self,
        confidence_threshold: float = 0.25,
        overlap_threshold: float = 0.45,
        layout: OutputLayout = OutputLayout.AUTO,
        class_names: Sequence[str] = (),
    ):
        self.confidence_threshold = confidence_threshold
        self.overlap_threshold = overlap_threshold
        self.layout = layout
        self.class_names = tuple(class_names)
        self.clamped_confidences = 0

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> "DetectionDecoder":
        return cls(
            confidence_threshold=settings.confidence_threshold,
            overlap_threshold=settings.suppression_overlap_threshold,
            layout=settings.output_layout,
            class_names=settings.class_names,
        )

    def class_name(self, class_id: int) -> str:
        if 0 <= class_id < len(self.class_names):
            return self.class_names[class_id]
        return str(class_id)

    def _candidates(self, outputs: Sequence[np.ndarray]) -> np.ndarray:
        """Head output as an ``(N, 4 + num_classes)`` float array."""
        if not outputs:
            raise InferenceError("No output tensors to decode")
        head = np.asarray(outputs[0], dtype=np.float32)
        if head.ndim == 3:
            if head.shape[0] != 1:
                raise InferenceError(f"Expected batch size 1, got output shape {head.shape}")
            head = head[0]
        if head.ndim != 2:
            raise InferenceError(f"Unexpected output rank {head.ndim}")

        layout = self.layout
        if layout == OutputLayout.AUTO:
            layout = self._infer_layout(head.shape)
        candidates = head.T if layout == OutputLayout.CHANNELS_FIRST else head
        if candidates.shape[1] <= BOX_ATTRIBUTES:
            raise InferenceError(f"Output shape {head.shape} carries no class scores")
        return candidates

    def _infer_layout(self, shape: tuple) -> OutputLayout:
        attributes, count = shape
        if self.class_names:
            expected = BOX_ATTRIBUTES + len(self.class_names)
            if attributes == expected:
                return OutputLayout.CHANNELS_FIRST
            if count == expected:
                return OutputLayout.CHANNELS_LAST
        # Proposals outnumber attributes for any realistic head
        return OutputLayout.CHANNELS_FIRST if attributes <= count else OutputLayout.CHANNELS_LAST

    def decode(self, outputs: Sequence[np.ndarray], frame: Frame) -> List[Detection]:
        candidates = self._candidates(outputs)
        if candidates.shape[0] == 0:
            return []

        class_scores = candidates[:, BOX_ATTRIBUTES:]
        class_ids = np.argmax(class_scores, axis=1)
        raw_conf = class_scores[np.arange(len(class_ids)), class_ids]

        out_of_range = ~((raw_conf >= 0.0) & (raw_conf <= 1.0))  # NaN counts too
        clamped = int(out_of_range.sum())
        if clamped:
            self.clamped_confidences += clamped
            logger.debug("Clamped %d out-of-range confidences (frame %s)", clamped, frame.sequence_id)
        confidences = np.clip(np.nan_to_num(raw_conf, nan=0.0), 0.0, 1.0)

        mask = confidences >= self.confidence_threshold
        if not mask.any():
            return []
        indices = np.flatnonzero(mask)
        boxes = self._to_frame_boxes(candidates[indices, :BOX_ATTRIBUTES], frame)
        kept = suppress(
            boxes,
            confidences[indices],
            class_ids[indices],
            indices,
            self.overlap_threshold,
        )

        detections = []
        for position in kept:
            class_id = int(class_ids[indices[position]])
            x1, y1, x2, y2 = (float(v) for v in boxes[position])
            detections.append(Detection(
                box=Box(x1, y1, x2, y2),
                class_id=class_id,
                class_name=self.class_name(class_id),
                confidence=float(confidences[indices[position]]),
                index=int(indices[position]),
            ))
        return detections

    @staticmethod
    def _to_frame_boxes(xywh: np.ndarray, frame: Frame) -> np.ndarray:
        lb = frame.letterbox
        cx = (xywh[:, 0] - lb.pad_x) / lb.scale
        cy = (xywh[:, 1] - lb.pad_y) / lb.scale
        half_w = np.abs(xywh[:, 2]) / lb.scale / 2
        half_h = np.abs(xywh[:, 3]) / lb.scale / 2
        boxes = np.stack([cx - half_w, cy - half_h, cx + half_w, cy + half_h], axis=1)
        boxes[:, [0, 2]] = np.clip(boxes[:, [0, 2]], 0, frame.width)
        boxes[:, [1, 3]] = np.clip(boxes[:, [1, 3]], 0, frame.height)
        return boxes
