"""DetectionDecoder: thresholding, suppression, layouts and letterbox undo."""
from __future__ import annotations

import numpy as np
import pytest

from common.settings import OutputLayout
from cv.exceptions import InferenceError
from cv.postprocess import DetectionDecoder, pairwise_iou, suppress
from cv.types import Frame, Letterbox
from tests.fakes import yolo_head


def _frame(width: int = 64, height: int = 64, letterbox: Letterbox | None = None) -> Frame:
    return Frame(
        sequence_id=1,
        timestamp=0.0,
        width=width,
        height=height,
        pixels=np.zeros((64, 64, 3), dtype=np.uint8),
        letterbox=letterbox or Letterbox(scale=1.0, pad_x=0, pad_y=0),
    )


@pytest.fixture
def decoder() -> DetectionDecoder:
    return DetectionDecoder(confidence_threshold=0.25, overlap_threshold=0.45, class_names=("person", "vehicle"))


# ---------- Suppression primitives ----------

def test_pairwise_iou():
    box = np.array([0, 0, 10, 10], dtype=np.float32)
    boxes = np.array([[0, 0, 10, 10], [5, 0, 15, 10], [20, 20, 30, 30]], dtype=np.float32)
    assert pairwise_iou(box, boxes).tolist() == pytest.approx([1.0, 1 / 3, 0.0])


def test_suppress_keeps_no_overlapping_same_class_pair():
    rng = np.random.default_rng(3)
    xy = rng.uniform(0, 50, size=(40, 2))
    wh = rng.uniform(5, 20, size=(40, 2))
    boxes = np.hstack([xy, xy + wh]).astype(np.float32)
    scores = rng.uniform(0, 1, size=40).astype(np.float32)
    class_ids = rng.integers(0, 2, size=40)
    kept = suppress(boxes, scores, class_ids, np.arange(40), 0.45)

    for a in kept:
        for b in kept:
            if a < b and class_ids[a] == class_ids[b]:
                assert pairwise_iou(boxes[a], boxes[b:b + 1])[0] <= 0.45


# ---------- Decoding ----------

class TestDecode:
    def test_overlapping_candidates_collapse_to_highest(self, decoder):
        head = yolo_head([
            (32.0, 32.0, 20.0, 20.0, 0, 0.9),
            (32.2, 32.0, 20.0, 20.0, 0, 0.6),
            (32.0, 32.2, 20.0, 20.0, 0, 0.8),
        ])
        detections = decoder.decode([head], _frame())
        assert len(detections) == 1
        assert detections[0].confidence == pytest.approx(0.9)
        assert detections[0].index == 0
        assert detections[0].class_name == "person"

    def test_different_classes_not_suppressed(self, decoder):
        head = yolo_head([
            (32.0, 32.0, 20.0, 20.0, 0, 0.9),
            (32.0, 32.0, 20.0, 20.0, 1, 0.7),
        ])
        detections = decoder.decode([head], _frame())
        assert [d.class_name for d in detections] == ["person", "vehicle"]

    def test_equal_scores_keep_lower_index(self, decoder):
        head = yolo_head([
            (32.0, 32.0, 20.0, 20.0, 0, 0.7),
            (32.5, 32.0, 20.0, 20.0, 0, 0.7),
        ])
        detections = decoder.decode([head], _frame())
        assert [d.index for d in detections] == [0]

    def test_threshold_is_inclusive(self, decoder):
        head = yolo_head([
            (10.0, 10.0, 8.0, 8.0, 0, 0.25),
            (50.0, 50.0, 8.0, 8.0, 0, 0.2),
        ])
        detections = decoder.decode([head], _frame())
        assert [d.index for d in detections] == [0]

    def test_no_candidates(self, decoder):
        assert decoder.decode([yolo_head([])], _frame()) == []

    def test_identical_outputs_decode_identically(self, decoder):
        rng = np.random.default_rng(11)
        rows = [
            (float(rng.uniform(10, 54)), float(rng.uniform(10, 54)), 12.0, 12.0, int(rng.integers(0, 2)),
             float(rng.uniform(0, 1)))
            for _ in range(30)
        ]
        head = yolo_head(rows)
        assert decoder.decode([head], _frame()) == decoder.decode([head.copy()], _frame())

    def test_unknown_class_id_uses_number(self):
        decoder = DetectionDecoder(layout=OutputLayout.CHANNELS_FIRST, class_names=())
        head = yolo_head([(32.0, 32.0, 10.0, 10.0, 2, 0.9)], num_classes=3)
        assert decoder.decode([head], _frame())[0].class_name == "2"


class TestConfidenceClamping:
    def test_out_of_range_scores_clamped_and_counted(self, decoder):
        head = yolo_head([
            (10.0, 10.0, 8.0, 8.0, 0, 1.5),
            (50.0, 50.0, 8.0, 8.0, 0, 0.0),
        ])
        head[0, 4:, 1] = (-0.3, -0.5)
        detections = decoder.decode([head], _frame())
        assert [d.confidence for d in detections] == [1.0]
        assert decoder.clamped_confidences == 2

    def test_nan_score_is_dropped_and_counted(self, decoder):
        head = yolo_head([(10.0, 10.0, 8.0, 8.0, 0, 0.9)])
        head[0, 4, 0] = np.nan
        assert decoder.decode([head], _frame()) == []
        assert decoder.clamped_confidences == 1


class TestLayouts:
    def test_channels_last_detected(self, decoder):
        head = yolo_head([(32.0, 32.0, 10.0, 10.0, 1, 0.8)] + [(5.0, 5.0, 4.0, 4.0, 0, 0.1)] * 9)
        transposed = np.ascontiguousarray(head.transpose(0, 2, 1))
        assert transposed.shape == (1, 10, 6)
        first = decoder.decode([head], _frame())
        second = decoder.decode([transposed], _frame())
        assert [(d.class_id, d.index) for d in first] == [(d.class_id, d.index) for d in second]

    def test_explicit_layout_honoured(self):
        decoder = DetectionDecoder(layout=OutputLayout.CHANNELS_LAST)
        head = np.zeros((1, 3, 6), dtype=np.float32)
        head[0, 1] = (32.0, 32.0, 10.0, 10.0, 0.0, 0.9)
        detections = decoder.decode([head], _frame())
        assert [(d.index, d.class_id) for d in detections] == [(1, 1)]

    def test_batch_of_two_rejected(self, decoder):
        with pytest.raises(InferenceError):
            decoder.decode([np.zeros((2, 6, 5), dtype=np.float32)], _frame())

    def test_head_without_class_scores_rejected(self, decoder):
        with pytest.raises(InferenceError):
            decoder.decode([np.zeros((1, 4, 10), dtype=np.float32)], _frame())

    def test_no_outputs_rejected(self, decoder):
        with pytest.raises(InferenceError):
            decoder.decode([], _frame())


class TestCoordinates:
    def test_letterbox_is_undone(self, decoder):
        frame = _frame(width=128, height=64, letterbox=Letterbox(scale=0.5, pad_x=0, pad_y=16))
        head = yolo_head([(32.0, 32.0, 20.0, 10.0, 0, 0.9)])
        box = decoder.decode([head], frame)[0].box
        assert (box.x1, box.y1, box.x2, box.y2) == pytest.approx((44.0, 22.0, 84.0, 42.0))

    def test_boxes_clipped_to_frame(self, decoder):
        head = yolo_head([(60.0, 4.0, 20.0, 20.0, 0, 0.9)])
        box = decoder.decode([head], _frame())[0].box
        assert (box.x1, box.y1, box.x2, box.y2) == pytest.approx((50.0, 0.0, 64.0, 14.0))
