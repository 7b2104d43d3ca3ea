"""Integer image geometry and inference-to-output coordinate mapping."""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass


def _div_trunc(numerator: int, denominator: int) -> int:
    """Integer division that rounds towards zero."""
    if denominator == 0:
        raise ZeroDivisionError("scaling by a zero-sized denominator")
    quotient = abs(numerator) // abs(denominator)
    return quotient if (numerator >= 0) == (denominator > 0) else -quotient


def _round_half_away(value: float) -> int:
    return int(math.floor(abs(value) + 0.5)) * (1 if value >= 0 else -1)


@dataclass(frozen=True)
class Point:
    """A point in integer pixel coordinates."""

    x: int = 0
    y: int = 0

    def __neg__(self) -> Point:
        return Point(-self.x, -self.y)


@dataclass(frozen=True)
class Size:
    """A width and height in pixels."""

    width: int = 0
    height: int = 0

    def bounded_to_aspect_ratio(self, ratio: Size) -> Size:
        """Largest size within this one that has the aspect ratio of ``ratio``."""
        if not ratio.width or not ratio.height:
            raise ValueError("aspect ratio must have non-zero width and height")
        ratio1 = self.width * ratio.height
        ratio2 = ratio.width * self.height
        if ratio1 > ratio2:
            return Size(ratio2 // ratio.height, self.height)
        return Size(self.width, ratio1 // ratio.width)

    def centered_to(self, center: Point) -> Rectangle:
        """A rectangle of this size centred on ``center``."""
        return Rectangle(center.x - self.width // 2, center.y - self.height // 2, self.width, self.height)


@dataclass(frozen=True)
class Rectangle:
    """An axis-aligned rectangle with a signed origin and unsigned size."""

    x: int = 0
    y: int = 0
    width: int = 0
    height: int = 0

    def top_left(self) -> Point:
        return Point(self.x, self.y)

    def size(self) -> Size:
        return Size(self.width, self.height)

    def center(self) -> Point:
        return Point(self.x + self.width // 2, self.y + self.height // 2)

    def bounded_to(self, other: Rectangle) -> Rectangle:
        """The intersection of this rectangle with ``other``."""
        left = max(self.x, other.x)
        top = max(self.y, other.y)
        right = min(self.x + self.width, other.x + other.width)
        bottom = min(self.y + self.height, other.y + other.height)
        return Rectangle(left, top, max(right - left, 0), max(bottom - top, 0))

    def enclosed_in(self, other: Rectangle) -> Rectangle:
        """Shift (and if needed shrink) this rectangle so it lies inside ``other``."""
        result = self.bounded_to(Rectangle(self.x, self.y, other.width, other.height))
        lo_x, hi_x = other.x, other.x + other.width - result.width
        lo_y, hi_y = other.y, other.y + other.height - result.height
        return Rectangle(
            min(max(self.x, lo_x), hi_x),
            min(max(self.y, lo_y), hi_y),
            result.width,
            result.height,
        )

    def translated_by(self, point: Point) -> Rectangle:
        return Rectangle(self.x + point.x, self.y + point.y, self.width, self.height)

    def scaled_by(self, numerator: Size, denominator: Size) -> Rectangle:
        """Scale position and size by ``numerator / denominator``, truncating."""
        return Rectangle(
            _div_trunc(self.x * numerator.width, denominator.width),
            _div_trunc(self.y * numerator.height, denominator.height),
            _div_trunc(self.width * numerator.width, denominator.width),
            _div_trunc(self.height * numerator.height, denominator.height),
        )


FULL_SENSOR_RESOLUTION = Rectangle(0, 0, 4056, 3040)


def convert_inference_coordinates(
    coords: Sequence[float],
    scaler_crop: Rectangle,
    isp_output_size: Size,
    sensor_output_size: Size,
    full_sensor_resolution: Rectangle = FULL_SENSOR_RESOLUTION,
) -> Rectangle:
    """Map normalised (x, y, w, h) inference coordinates to ISP output pixels.

    Returns an empty rectangle unless exactly four coordinates are given.
    """
    full_size = full_sensor_resolution.size()
    sensor_crop = scaler_crop.scaled_by(sensor_output_size, full_size)

    if len(coords) != 4:
        return Rectangle()

    obj = Rectangle(
        _round_half_away(coords[0] * (full_sensor_resolution.width - 1)),
        _round_half_away(coords[1] * (full_sensor_resolution.height - 1)),
        max(0, _round_half_away(coords[2] * (full_sensor_resolution.width - 1))),
        max(0, _round_half_away(coords[3] * (full_sensor_resolution.height - 1))),
    )

    obj_sensor = obj.scaled_by(sensor_output_size, full_size)
    obj_bound = obj_sensor.bounded_to(sensor_crop)
    obj_translated = obj_bound.translated_by(-sensor_crop.top_left())
    return obj_translated.scaled_by(isp_output_size, sensor_crop.size())


def inference_roi_auto(
    width: int, height: int, full_sensor_resolution: Rectangle = FULL_SENSOR_RESOLUTION
) -> Rectangle:
    """The centred sensor region with the aspect ratio ``width:height`` used for inference."""
    size = full_sensor_resolution.size().bounded_to_aspect_ratio(Size(width, height))
    roi = size.centered_to(full_sensor_resolution.center()).enclosed_in(full_sensor_resolution)
    return roi.bounded_to(full_sensor_resolution)