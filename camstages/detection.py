"""Object detection results, coordinate mapping and temporal filtering."""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from camstages.geometry import Rectangle, Size


def _round_half_away(value: float) -> int:
    return int(math.floor(abs(value) + 0.5)) * (1 if value >= 0 else -1)


@dataclass
class Detection:
    """One detected object: its class, label, confidence and box in output pixels."""

    category: int
    name: str
    confidence: float
    box: Rectangle = field(default_factory=Rectangle)

    def __str__(self) -> str:
        b = self.box
        return f"{self.name}[{self.category}] ({self.confidence:.2f}) @ {b.x},{b.y} {b.width}x{b.height}"


@dataclass
class TemporalFilterConfig:
    """Settings for smoothing detections over successive frames."""

    tolerance: float = 0.05
    factor: float = 0.2
    visible_frames: int = 5
    hidden_frames: int = 2

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> TemporalFilterConfig | None:
        """Read the ``temporal_filter`` section of stage parameters.

        Returns None when the section is absent, meaning no filtering.
        """
        if "temporal_filter" not in params:
            return None
        section = params["temporal_filter"] or {}
        return cls(
            tolerance=float(section.get("tolerance", 0.05)),
            factor=float(section.get("factor", 0.2)),
            visible_frames=int(section.get("visible_frames", 5)),
            hidden_frames=int(section.get("hidden_frames", 2)),
        )


@dataclass
class _Tracked:
    params: Detection
    visible: int
    hidden: int
    matched: bool


class TemporalFilter:
    """Keeps a long term list of objects, smoothing boxes and hiding flicker."""

    def __init__(
        self,
        config: TemporalFilterConfig,
        isp_output_size: Size,
        reveal_when_empty: bool = False,
    ) -> None:
        self.config = config
        self.isp_output_size = isp_output_size
        self.reveal_when_empty = reveal_when_empty
        self._objects: list[_Tracked] = []

    def _matches(self, obj: Detection, tracked: Detection) -> bool:
        tol_w = self.config.tolerance * self.isp_output_size.width
        tol_h = self.config.tolerance * self.isp_output_size.height
        a, b = obj.box, tracked.box
        return (
            obj.category == tracked.category
            and abs(a.x - b.x) < tol_w
            and abs(a.y - b.y) < tol_h
            and abs(a.width - b.width) < tol_w
            and abs(a.height - b.height) < tol_h
        )

    def _blend(self, new: int, old: int) -> int:
        f = self.config.factor
        return int(f * new + (1 - f) * old)

    def update(self, objects: Iterable[Detection]) -> list[Detection]:
        """Feed this frame's detections and return the objects to report."""
        objects = list(objects)
        cfg = self.config
        started_empty = not self._objects

        for tracked in self._objects:
            tracked.matched = False

        for obj in objects:
            for tracked in self._objects:
                if not self._matches(obj, tracked.params):
                    continue
                old = tracked.params.box
                box = Rectangle(
                    self._blend(obj.box.x, old.x),
                    self._blend(obj.box.y, old.y),
                    max(0, self._blend(obj.box.width, old.width)),
                    max(0, self._blend(obj.box.height, old.height)),
                )
                tracked.params = replace(tracked.params, confidence=obj.confidence, box=box)
                tracked.matched = True
                tracked.visible = cfg.visible_frames
                tracked.hidden = max(0, tracked.hidden - 1)
                break
            else:
                hidden = 0 if (self.reveal_when_empty and started_empty) else cfg.hidden_frames
                self._objects.append(_Tracked(obj, cfg.visible_frames, hidden, True))

        for tracked in self._objects:
            if not tracked.matched:
                if tracked.hidden:
                    tracked.visible = 0
                else:
                    tracked.visible -= 1

        self._objects = [t for t in self._objects if t.matched or t.visible]

        if self._objects:
            return self.visible()
        return objects

    def visible(self) -> list[Detection]:
        """Objects in the long term list that are no longer hidden."""
        return [t.params for t in self._objects if not t.hidden]

    def clear(self) -> None:
        self._objects.clear()


def scaler_crops_from_metadata(
    scaler_crop: Rectangle | None, rpi_scaler_crops: Sequence[Rectangle] | None
) -> list[Rectangle]:
    """Crops for the main and low res outputs, taken from frame metadata."""
    if rpi_scaler_crops is not None:
        return list(rpi_scaler_crops)
    if scaler_crop is not None:
        return [scaler_crop, scaler_crop]
    return []


def convert_scaler_crop_coordinates(
    coords: Sequence[float], scaler_crops: Sequence[Rectangle], isp_output_size: Size
) -> Rectangle:
    """Map normalised (x, y, w, h) on the low res crop to main output pixels.

    ``scaler_crops`` holds the main crop then the low res crop. Returns an
    empty rectangle if either argument has the wrong length.
    """
    if len(coords) != 4 or len(scaler_crops) != 2:
        return Rectangle()
    main_crop, low_crop = scaler_crops
    obj = Rectangle(
        _round_half_away(coords[0] * (low_crop.width - 1)),
        _round_half_away(coords[1] * (low_crop.height - 1)),
        max(0, _round_half_away(coords[2] * (low_crop.width - 1))),
        max(0, _round_half_away(coords[3] * (low_crop.height - 1))),
    )
    translated = obj.translated_by(low_crop.top_left())
    bounded = translated.bounded_to(main_crop)
    shifted = bounded.translated_by(-main_crop.top_left())
    return shifted.scaled_by(isp_output_size, main_crop.size())


def translate_detections(
    raw_detections: Iterable[tuple[int, str, float, Sequence[float]]],
    threshold: float,
    max_detections: int,
    scaler_crops: Sequence[Rectangle],
    isp_output_size: Size,
) -> list[Detection]:
    """Turn network detections into output-space Detection objects.

    Each raw detection is ``(class_id, label, confidence, (xmin, ymin, xmax, ymax))``
    in normalised coordinates. Detections below ``threshold`` are dropped and at
    most ``max_detections`` are kept; a limit of 0 keeps them all.
    """
    results: list[Detection] = []
    for class_id, label, confidence, bbox in raw_detections:
        if confidence < threshold:
            continue
        xmin, ymin, xmax, ymax = bbox
        x0, x1 = max(xmin, 0.0), min(xmax, 1.0)
        y0, y1 = max(ymin, 0.0), min(ymax, 1.0)
        box = convert_scaler_crop_coordinates((x0, y0, x1 - x0, y1 - y0), scaler_crops, isp_output_size)
        results.append(Detection(int(class_id), label, float(confidence), box))
        if max_detections and len(results) == max_detections:
            break
    return results