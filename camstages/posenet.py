"""Multi-person pose estimation from the output tensor of an on-sensor PoseNet network."""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

import numpy as np

from camstages.detection import TemporalFilterConfig
from camstages.geometry import (
    FULL_SENSOR_RESOLUTION,
    Point,
    Rectangle,
    Size,
    convert_inference_coordinates,
)
from camstages.posenet_decode import (
    INPUT_TENSOR_HEIGHT,
    INPUT_TENSOR_WIDTH,
    MAP_HEIGHT,
    MAP_WIDTH,
    NUM_HEATMAPS,
    NUM_KEYPOINTS,
    NUM_MID_OFFSETS,
    NUM_SHORT_OFFSETS,
    STRIDE,
    PoseResult,
    decode_all_poses,
    format_tensor,
)

logger = logging.getLogger(__name__)

TENSOR_SIZE = NUM_HEATMAPS + NUM_SHORT_OFFSETS + NUM_MID_OFFSETS


@dataclass
class PoseNetConfig:
    """Decoder settings; ``nms_radius`` is in input image pixels."""

    max_detections: int = 10
    threshold: float = 0.5
    offset_refinement_steps: int = 5
    nms_radius: float = 10.0
    temporal_filter: TemporalFilterConfig | None = None

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> PoseNetConfig:
        return cls(
            max_detections=int(params.get("max_detections", 10)),
            threshold=float(params.get("threshold", 0.5)),
            offset_refinement_steps=int(params.get("offset_refinement_steps", 5)),
            nms_radius=float(params.get("nms_radius", 10)),
            temporal_filter=TemporalFilterConfig.from_params(params),
        )


@dataclass
class _TrackedPose:
    result: PoseResult
    visible: int
    hidden: int
    matched: bool = field(default=True)


class PoseNet:
    """Decodes poses and maps their keypoints to ISP output coordinates."""

    NAME = "imx500_posenet"

    def __init__(self, config: PoseNetConfig, isp_output_size: Size, sensor_output_size: Size) -> None:
        self.config = config
        self.isp_output_size = isp_output_size
        self.sensor_output_size = sensor_output_size
        self.full_sensor_resolution = FULL_SENSOR_RESOLUTION
        self._lock = threading.Lock()
        self._tracked: list[_TrackedPose] = []

    def _translate(self, result: PoseResult, scaler_crop: Rectangle) -> PoseResult:
        keypoints = []
        for y, x in result.keypoints:
            coords = (x / (INPUT_TENSOR_WIDTH - 1), y / (INPUT_TENSOR_HEIGHT - 1), 0.0, 0.0)
            rect = convert_inference_coordinates(
                coords,
                scaler_crop,
                self.isp_output_size,
                self.sensor_output_size,
                self.full_sensor_resolution,
            )
            keypoints.append((float(rect.y), float(rect.x)))
        return replace(result, keypoints=keypoints)

    def _matches(self, tracked: PoseResult, new: PoseResult) -> bool:
        tol = self.config.temporal_filter.tolerance
        tol_w = tol * self.isp_output_size.width
        tol_h = tol * self.isp_output_size.height
        for (ty, tx), (ny, nx) in zip(tracked.keypoints, new.keypoints):
            if abs(tx - nx) > tol_w or abs(ty - ny) > tol_h:
                return False
        return True

    def _filter(self, results: Sequence[PoseResult]) -> None:
        cfg = self.config.temporal_filter
        f = cfg.factor
        for tracked in self._tracked:
            tracked.matched = False

        for r in results:
            for tracked in self._tracked:
                if not self._matches(tracked.result, r):
                    continue
                old = tracked.result
                tracked.result = PoseResult(
                    pose_score=r.pose_score,
                    keypoints=[
                        (f * ny + (1 - f) * oy, f * nx + (1 - f) * ox)
                        for (ny, nx), (oy, ox) in zip(r.keypoints, old.keypoints)
                    ],
                    keypoint_scores=[
                        f * ns + (1 - f) * os for ns, os in zip(r.keypoint_scores, old.keypoint_scores)
                    ],
                )
                tracked.matched = True
                tracked.visible = cfg.visible_frames
                tracked.hidden = max(0, tracked.hidden - 1)
                break
            else:
                self._tracked.append(_TrackedPose(r, cfg.visible_frames, cfg.hidden_frames, True))

        for tracked in self._tracked:
            if not tracked.matched:
                if tracked.hidden:
                    tracked.visible = 0
                else:
                    tracked.visible -= 1

        self._tracked = [t for t in self._tracked if t.matched or t.visible]

    def process(self, output_tensor, scaler_crop: Rectangle | None) -> tuple[list[list[Point]], list[list[float]]]:
        """Decode one frame's output tensor.

        Returns a list of keypoint locations and a list of keypoint confidences,
        one entry per reported pose.
        """
        if scaler_crop is None:
            raise ValueError("a scaler crop is needed to map keypoints to the output")
        if output_tensor is None:
            raise ValueError("No output tensor found in metadata")
        data = np.asarray(output_tensor, dtype=np.float64).ravel()
        if data.size < TENSOR_SIZE:
            raise ValueError(f"Unexpected output tensor size: {data.size}")

        cells = MAP_WIDTH * MAP_HEIGHT
        short_start = NUM_HEATMAPS
        mid_start = NUM_HEATMAPS + NUM_SHORT_OFFSETS
        scores = format_tensor(data[:short_start], NUM_HEATMAPS // cells, 1)
        short_offsets = format_tensor(data[short_start:mid_start], NUM_SHORT_OFFSETS // cells, STRIDE)
        mid_offsets = format_tensor(data[mid_start:TENSOR_SIZE], NUM_MID_OFFSETS // cells, STRIDE)

        cfg = self.config
        results = decode_all_poses(
            scores,
            short_offsets,
            mid_offsets,
            cfg.threshold,
            cfg.max_detections,
            cfg.offset_refinement_steps,
            cfg.nms_radius / STRIDE,
        )
        results = [self._translate(r, scaler_crop) for r in results]

        if cfg.temporal_filter is not None:
            with self._lock:
                self._filter(results)
                chosen = [t.result for t in self._tracked if not t.hidden]
        else:
            chosen = results

        locations = [[Point(int(x), int(y)) for y, x in r.keypoints] for r in chosen]
        confidences = [list(r.keypoint_scores[:NUM_KEYPOINTS]) for r in chosen]
        return locations, confidences