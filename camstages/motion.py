"""Simple motion detection by comparing successive low resolution frames."""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import numpy as np

logger = logging.getLogger(__name__)


@dataclass
class MotionDetectConfig:
    """Detector settings; region dimensions are fractions of the lores image."""

    roi_x: float = 0.0
    roi_y: float = 0.0
    roi_width: float = 1.0
    roi_height: float = 1.0
    hskip: int = 1
    vskip: int = 1
    difference_m: float = 0.1
    difference_c: int = 10
    region_threshold: float = 0.005
    frame_period: int = 5
    verbose: bool = False

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> MotionDetectConfig:
        return cls(
            roi_x=float(params.get("roi_x", 0.0)),
            roi_y=float(params.get("roi_y", 0.0)),
            roi_width=float(params.get("roi_width", 1.0)),
            roi_height=float(params.get("roi_height", 1.0)),
            hskip=int(params.get("hskip", 1)),
            vskip=int(params.get("vskip", 1)),
            difference_m=float(params.get("difference_m", 0.1)),
            difference_c=int(params.get("difference_c", 10)),
            region_threshold=float(params.get("region_threshold", 0.005)),
            frame_period=int(params.get("frame_period", 5)),
            verbose=bool(int(params.get("verbose", 0))),
        )


class MotionDetector:
    """Counts lores pixels that changed since the last checked frame."""

    NAME = "motion_detect"

    def __init__(self, config: MotionDetectConfig) -> None:
        self.config = config
        self._lock = threading.Lock()
        self._configured = False
        self.hskip = 1
        self.vskip = 1
        self.lores_stride = 0
        self.roi_x = 0
        self.roi_y = 0
        self.roi_width = 0
        self.roi_height = 0
        self.region_threshold = 0
        self._previous = np.zeros((0, 0), dtype=np.uint8)
        self._first_time = True
        self.motion_detected = False

    def configure(self, width: int, height: int, stride: int) -> None:
        """Set up for a lores Y plane of the given dimensions and row stride."""
        cfg = self.config
        self.hskip = max(cfg.hskip, 1)
        self.vskip = max(cfg.vskip, 1)
        width //= self.hskip
        height //= self.vskip
        self.lores_stride = stride * self.vskip

        roi_x = max(0, int(cfg.roi_x * width))
        roi_y = max(0, int(cfg.roi_y * height))
        roi_width = max(0, int(cfg.roi_width * width))
        roi_height = max(0, int(cfg.roi_height * height))
        threshold = max(0, int(cfg.region_threshold * roi_width * roi_height))

        self.roi_x = min(roi_x, width)
        self.roi_y = min(roi_y, height)
        self.roi_width = min(roi_width, width - self.roi_x)
        self.roi_height = min(roi_height, height - self.roi_y)
        self.region_threshold = min(threshold, self.roi_width * self.roi_height)

        if cfg.verbose:
            logger.info(
                "Lores: %dx%d roi: (%d,%d) %dx%d threshold: %d",
                width, height, self.roi_x, self.roi_y,
                self.roi_width, self.roi_height, self.region_threshold,
            )

        self._previous = np.zeros((self.roi_height, self.roi_width), dtype=np.uint8)
        self._first_time = True
        self.motion_detected = False
        self._configured = True

    def _sample(self, image) -> np.ndarray:
        data = np.frombuffer(image, dtype=np.uint8)
        rows = (self.roi_y + np.arange(self.roi_height)) * self.lores_stride
        cols = self.roi_x * self.hskip + np.arange(self.roi_width) * self.hskip
        index = rows[:, None] + cols[None, :]
        if index.size and index.max() >= data.size:
            raise ValueError(f"image holds {data.size} bytes, too few for the region of interest")
        return data[index]

    def process(self, image, sequence: int) -> bool | None:
        """Check one lores frame.

        Returns None when the frame is skipped, otherwise whether motion is detected.
        """
        if not self._configured:
            return None
        period = self.config.frame_period
        if period and sequence % period:
            return None

        values = self._sample(image)
        with self._lock:
            if self._first_time:
                self._first_time = False
                self._previous = values.copy()
                return self.motion_detected

            new = values.astype(np.float64)
            old = self._previous.astype(np.float64)
            self._previous = values.copy()
            limit = self.config.difference_m * old + self.config.difference_c
            regions = int(np.count_nonzero(np.abs(new - old) > limit))
            detected = values.size > 0 and regions >= self.region_threshold

            if self.config.verbose and detected != self.motion_detected:
                logger.info("Motion %s", "detected" if detected else "stopped")
            self.motion_detected = detected
            return detected