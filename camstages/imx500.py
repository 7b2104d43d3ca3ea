"""Output-tensor handling for object detection networks run on an on-sensor AI accelerator."""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, BinaryIO

import numpy as np

from camstages.detection import Detection, TemporalFilter, TemporalFilterConfig
from camstages.geometry import FULL_SENSOR_RESOLUTION, Rectangle, Size, convert_inference_coordinates

logger = logging.getLogger(__name__)

_DNN_NORM_SIGNED_SHIFT = 8
_DNN_NORM_MASK = 0x01FF


def _wrap16(values):
    """Wrap integers to the signed 16-bit range."""
    return ((values + 32768) % 65536) - 32768


def conv_reg_signed(reg: int) -> int:
    """Interpret a 9-bit sign-magnitude-free register value as a signed number."""
    reg = int(_wrap16(int(reg)))
    if not (reg >> _DNN_NORM_SIGNED_SHIFT) & 1:
        return reg
    return -((~reg + 1) & _DNN_NORM_MASK)


def normalize_input_tensor(
    data,
    norm_val: Sequence[int],
    norm_shift: Sequence[int],
    div_val: Sequence[int],
    div_shift: int,
) -> bytes:
    """Undo the sensor's input normalisation on an interleaved RGB input tensor."""
    if min(len(norm_val), len(norm_shift), len(div_val)) < 3:
        raise ValueError("normalisation parameters need a value for each of three channels")
    if any(int(_wrap16(int(d))) == 0 for d in div_val[:3]):
        raise ValueError("div_val entries must be non-zero")

    raw = np.frombuffer(bytes(data), dtype=np.int8).astype(np.int64)
    channel = np.arange(raw.size) % 3
    shifts = np.array([int(s) & 0xFF for s in norm_shift[:3]], dtype=np.int64)
    offsets = np.array([conv_reg_signed(v) for v in norm_val[:3]], dtype=np.int64)
    divisors = np.array([int(_wrap16(int(d))) for d in div_val[:3]], dtype=np.int64)

    sample = _wrap16((raw << shifts[channel]) - offsets[channel])
    numerator = sample << int(div_shift)
    denominator = divisors[channel]
    quotient = (np.abs(numerator) // np.abs(denominator)) * np.sign(numerator) * np.sign(denominator)
    return (quotient & 0xFF).astype(np.uint8).tobytes()


class InputTensorSaver:
    """Writes a fixed number of de-normalised input tensors to a binary stream."""

    def __init__(
        self,
        stream: BinaryIO,
        num_tensors: int = 1,
        norm_val: Sequence[int] = (0, 0, 0, 0),
        norm_shift: Sequence[int] = (0, 0, 0, 0),
        div_val: Sequence[int] = (1, 1, 1, 1),
        div_shift: int = 0,
    ) -> None:
        if num_tensors < 1:
            raise ValueError("num_tensors must be at least 1")
        self.stream = stream
        self.remaining = num_tensors
        self.norm_val = list(norm_val)
        self.norm_shift = list(norm_shift)
        self.div_val = list(div_val)
        self.div_shift = div_shift
        self._lock = threading.Lock()

    def write(self, data) -> bool:
        """Save one tensor; returns False once the requested number has been saved."""
        with self._lock:
            if self.remaining <= 0:
                return False
            self.stream.write(
                normalize_input_tensor(data, self.norm_val, self.norm_shift, self.div_val, self.div_shift)
            )
            self.remaining -= 1
            if self.remaining == 0:
                self.stream.flush()
            return True


def _leading_ints(text: str) -> list[int]:
    values: list[int] = []
    for token in text.split():
        try:
            value = int(token)
        except ValueError:
            break
        if value < 0:
            break
        values.append(value)
    return values


def parse_fw_progress(fw_text: str, block_text: str) -> tuple[int, int, bool] | None:
    """Read firmware upload progress from the driver's progress reports.

    ``fw_text`` holds the state, bytes sent and total size; ``block_text`` the
    bytes of the chunk in flight. Returns ``(current, total, finished)`` while
    an upload is in progress, otherwise None.
    """
    progress = _leading_ints(fw_text)
    block = _leading_ints(block_text)
    block_progress = block[0] if block else 0
    if len(progress) != 3 or progress[0] != 2:
        return None
    _, sent, total = progress
    current = sent + block_progress
    return current, total, bool(total) and sent == total


@dataclass
class ObjectDetectionOutput:
    """Decoded detection tensor; boxes are ``(x0, y0, x1, y1)`` in normalised units."""

    num_detections: int = 0
    bboxes: list[tuple[float, float, float, float]] = field(default_factory=list)
    scores: list[float] = field(default_factory=list)
    classes: list[float] = field(default_factory=list)


def parse_object_detection_tensor(data: Sequence[float], total_detections: int) -> ObjectDetectionOutput:
    """Split a flat detection tensor into boxes, scores, classes and a count.

    The layout is all y0, then x0, y1, x1, then scores, classes and finally
    the number of valid detections.
    """
    n = total_detections
    needed = 6 * n + 1
    if len(data) < needed:
        raise IndexError(f"tensor holds {len(data)} values, {needed} needed")
    bboxes = [
        (float(data[n + i]), float(data[i]), float(data[3 * n + i]), float(data[2 * n + i]))
        for i in range(n)
    ]
    scores = [float(v) for v in data[4 * n : 5 * n]]
    classes = [float(v) for v in data[5 * n : 6 * n]]
    num = max(0, int(data[6 * n]))
    if num > n:
        logger.info("Unexpected value for num_detections: %d, setting it to %d", num, n)
        num = n
    return ObjectDetectionOutput(num, bboxes, scores, classes)


@dataclass
class ObjectDetectionConfig:
    """Settings for turning detection tensors into labelled objects."""

    max_detections: int
    threshold: float = 0.5
    classes: list[str] = field(default_factory=list)
    temporal_filter: TemporalFilterConfig | None = None

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> ObjectDetectionConfig:
        return cls(
            max_detections=int(params["max_detections"]),
            threshold=float(params.get("threshold", 0.5)),
            classes=[str(c) for c in params.get("classes", [])],
            temporal_filter=TemporalFilterConfig.from_params(params),
        )


class ObjectDetection:
    """Converts detection tensors to Detection objects in ISP output coordinates."""

    NAME = "imx500_object_detection"

    def __init__(
        self,
        config: ObjectDetectionConfig,
        isp_output_size: Size,
        sensor_output_size: Size,
    ) -> None:
        self.config = config
        self.isp_output_size = isp_output_size
        self.sensor_output_size = sensor_output_size
        self.full_sensor_resolution = FULL_SENSOR_RESOLUTION
        self._lock = threading.Lock()
        self._filter = (
            TemporalFilter(config.temporal_filter, isp_output_size, reveal_when_empty=True)
            if config.temporal_filter is not None
            else None
        )
        self._last: list[Detection] = []

    def _detections(
        self, output_tensor: Sequence[float], num_tensors: int, tensor_data_num: int, scaler_crop: Rectangle
    ) -> list[Detection]:
        if num_tensors != 4:
            raise ValueError(f"Invalid number of tensors {num_tensors}, expected 4")
        total = tensor_data_num // 4
        if len(output_tensor) != 6 * total + 1:
            raise ValueError(f"Invalid tensor size {len(output_tensor)}, expected {6 * total + 1}")
        output = parse_object_detection_tensor(output_tensor, total)
        cfg = self.config
        objects: list[Detection] = []
        for i in range(min(output.num_detections, cfg.max_detections)):
            class_index = int(output.classes[i]) & 0xFF
            score = output.scores[i]
            if score < cfg.threshold or class_index >= len(cfg.classes):
                continue
            x0, y0, x1, y1 = output.bboxes[i]
            box = convert_inference_coordinates(
                (x0, y0, x1 - x0, y1 - y0),
                scaler_crop,
                self.isp_output_size,
                self.sensor_output_size,
                self.full_sensor_resolution,
            )
            objects.append(Detection(class_index, cfg.classes[class_index], score, box))
        logger.debug("Number of objects detected: %d", len(objects))
        for i, obj in enumerate(objects):
            logger.debug("[%d] : %s", i, obj)
        return objects

    def process(
        self,
        output_tensor: Sequence[float] | None,
        num_tensors: int,
        tensor_data_num: int,
        scaler_crop: Rectangle | None,
    ) -> list[Detection]:
        """Handle one frame's output tensor, or reuse earlier results when it has none."""
        if scaler_crop is None:
            raise ValueError("a scaler crop is needed to map detections to the output")
        with self._lock:
            if output_tensor is None:
                if self._filter is not None:
                    return self._filter.visible()
                return list(self._last)

            try:
                objects = self._detections(output_tensor, num_tensors, tensor_data_num, scaler_crop)
            except (ValueError, IndexError) as err:
                logger.error("%s", err)
                objects = []

            if self._filter is not None:
                return self._filter.update(objects)
            self._last = list(objects)
            return objects