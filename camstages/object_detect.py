"""Interpreting the outputs of a 300x300 single-shot object detection network."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import numpy as np

from camstages.detection import Detection
from camstages.geometry import Rectangle, Size

logger = logging.getLogger(__name__)

WIDTH = 300
HEIGHT = 300


def _div_trunc(numerator: int, denominator: int) -> int:
    quotient = abs(numerator) // abs(denominator)
    return quotient if (numerator >= 0) == (denominator > 0) else -quotient


def _clamp(value: int, low: int, high: int) -> int:
    return min(max(value, low), high)


@dataclass
class ObjectDetectConfig:
    """Detector thresholds and the labels file to read."""

    confidence_threshold: float = 0.5
    overlap_threshold: float = 0.5
    labels_file: str = ""
    verbose: bool = False

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> ObjectDetectConfig:
        return cls(
            confidence_threshold=float(params.get("confidence_threshold", 0.5)),
            overlap_threshold=float(params.get("overlap_threshold", 0.5)),
            labels_file=str(params.get("labels_file", "")),
            verbose=bool(int(params.get("verbose", 0))),
        )


def read_detect_labels(path) -> list[str]:
    """Read a labels file, discarding its first line."""
    try:
        with open(path, encoding="utf-8", newline="") as f:
            text = f.read()
    except OSError as err:
        raise OSError(f"Failed to load labels file {path}") from err
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return lines[1:]


def check_output_dims(dims: Sequence[int]) -> None:
    """Raise ValueError unless the box tensor has shape (1, 10, 4)."""
    if list(dims) != [1, 10, 4]:
        raise ValueError(f"unexpected output dimensions {list(dims)}")


def _area(r: Rectangle) -> int:
    return r.width * r.height


class ObjectDetector:
    """Maps network boxes to main stream coordinates and merges overlaps."""

    NAME = "object_detect_tf"

    def __init__(
        self,
        config: ObjectDetectConfig,
        labels: Sequence[str],
        lores_size: Size,
        main_size: Size | None,
    ) -> None:
        if main_size is None:
            raise ValueError("Main stream is required")
        if lores_size.width <= 0 or lores_size.height <= 0:
            raise ValueError("lores size must be positive")
        self.config = config
        self.labels = list(labels)
        self.lores_size = lores_size
        self.main_size = main_size
        if config.verbose:
            logger.info("Read %d labels", len(self.labels))

    def _box(self, row) -> Rectangle:
        lores, main = self.lores_size, self.main_size
        y = _clamp(int(HEIGHT * float(row[0])), 0, HEIGHT)
        x = _clamp(int(WIDTH * float(row[1])), 0, WIDTH)
        h = _clamp(int(HEIGHT * float(row[2]) - y), 0, HEIGHT)
        w = _clamp(int(WIDTH * float(row[3]) - x), 0, WIDTH)
        # The network sees a centred crop of the lores image.
        y += _div_trunc(lores.height - HEIGHT, 2)
        x += _div_trunc(lores.width - WIDTH, 2)
        # The lores image is a pure scaling of the main image.
        y = _div_trunc(y * main.height, lores.height)
        x = _div_trunc(x * main.width, lores.width)
        h = _div_trunc(h * main.height, lores.height)
        w = _div_trunc(w * main.width, lores.width)
        return Rectangle(x, y, w, h)

    def interpret(self, boxes, classes: Sequence[float], scores: Sequence[float]) -> list[Detection]:
        """Turn box rows ``(ymin, xmin, ymax, xmax)``, classes and scores into detections."""
        rows = np.asarray(boxes, dtype=np.float64).reshape(-1, 4)
        cfg = self.config
        results: list[Detection] = []
        for i, row in enumerate(rows):
            score = float(scores[i])
            if score < cfg.confidence_threshold:
                continue
            c = int(classes[i])
            detection = Detection(c, self.labels[c], score, self._box(row))
            for j, prev in enumerate(results):
                if prev.category != c:
                    continue
                overlap = _area(prev.box.bounded_to(detection.box))
                if (
                    overlap > cfg.overlap_threshold * _area(prev.box)
                    or overlap > cfg.overlap_threshold * _area(detection.box)
                ):
                    if detection.confidence > prev.confidence:
                        results[j] = detection
                    break
            else:
                results.append(detection)
        if cfg.verbose:
            for d in results:
                logger.info("%s", d)
        return results