"""Top-N image classification from a quantised classifier output."""

from __future__ import annotations

import heapq
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_LABELS_FILE = "/home/pi/models/labels.txt"
_LABEL_PADDING = 16


@dataclass
class ObjectClassifyConfig:
    """Result count, confidence thresholds and label display settings."""

    number_of_results: int = 3
    threshold_high: float = 0.2
    threshold_low: float = 0.1
    display_labels: bool = True
    labels_file: str = DEFAULT_LABELS_FILE
    verbose: bool = False

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> ObjectClassifyConfig:
        return cls(
            number_of_results=int(params.get("number_of_results", 3)),
            threshold_high=float(params.get("threshold_high", 0.2)),
            threshold_low=float(params.get("threshold_low", 0.1)),
            display_labels=bool(int(params.get("display_labels", 1))),
            labels_file=str(params.get("labels_file", DEFAULT_LABELS_FILE)),
            verbose=bool(int(params.get("verbose", 0))),
        )


def read_labels_file(path) -> tuple[list[str], int]:
    """Read one label per line, padded with empty labels to a multiple of 16.

    Returns the padded labels and the number actually read.
    """
    try:
        with open(path, encoding="utf-8", newline="") as f:
            text = f.read()
    except OSError as err:
        raise OSError(f"Failed to load labels file {path}") from err
    labels = text.split("\n")
    if labels and labels[-1] == "":
        labels.pop()
    count = len(labels)
    labels.extend([""] * (-count % _LABEL_PADDING))
    return labels, count


def _short_label(label: str) -> str:
    start = label.find(":") + 1
    end = label.find(",")
    if end == -1 or end < start:
        return label[start:]
    return label[start:end]


class ObjectClassifier:
    """Keeps the most likely classes, with hysteresis between two thresholds."""

    NAME = "object_classify_tf"

    def __init__(
        self, config: ObjectClassifyConfig, labels: Sequence[str], label_count: int | None = None
    ) -> None:
        self.config = config
        self.labels = list(labels)
        self.label_count = len(self.labels) if label_count is None else label_count
        self._top: list[tuple[float, int]] = []
        self.output_results: list[tuple[str, float]] = []

    def check_output_size(self, output_size: int) -> None:
        """Raise ValueError if the network's class count differs from the labels'."""
        if output_size != self.label_count:
            raise ValueError(
                f"Label count mismatch: network has {output_size} classes, {self.label_count} labels"
            )

    def top_results(self, prediction) -> list[tuple[float, int]]:
        """The best ``(confidence, index)`` pairs, highest first.

        Classes below the low threshold are ignored; classes between the two
        thresholds are kept only if they were among the previous results.
        """
        cfg = self.config
        values = np.asarray(prediction, dtype=np.uint8).ravel()
        confidences = (values / 255.0).astype(np.float32).tolist()
        high = float(np.float32(cfg.threshold_high))
        low = float(np.float32(cfg.threshold_low))
        previous = {index for _, index in self._top}
        limit = cfg.number_of_results

        heap: list[tuple[float, int]] = []
        for i, confidence in enumerate(confidences):
            if confidence < low:
                continue
            if confidence >= high or i in previous:
                heapq.heappush(heap, (confidence, i))
                if 0 <= limit < len(heap):
                    heapq.heappop(heap)

        self._top = sorted(heap, reverse=True)
        return list(self._top)

    def interpret(self, prediction) -> list[tuple[str, float]]:
        """Label the top results of one network output."""
        self.output_results = [(self.labels[i], c) for c, i in self.top_results(prediction)]
        if self.config.verbose:
            for label, confidence in self.output_results:
                logger.info("%s : %f", label, confidence)
        return list(self.output_results)

    def annotation(self) -> str | None:
        """Text describing the current results, or None when labels are not displayed."""
        if not self.config.display_labels:
            return None
        parts = [f"{_short_label(label)} {confidence:.2g}" for label, confidence in self.output_results]
        return "Detected: " + ", ".join(parts)