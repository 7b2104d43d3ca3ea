"""Interpreting the heatmap and offset outputs of a single-person pose network."""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np

from camstages.geometry import Point

FEATURE_SIZE = 17
HEATMAP_DIMS = 9
NAME = "pose_estimation_tf"


def check_pose_output_dims(dims: Sequence[int]) -> None:
    """Raise ValueError unless the heatmap tensor has shape (1, 9, 9, 17)."""
    dims = list(dims)
    if len(dims) < 4 or dims[:4] != [1, HEATMAP_DIMS, HEATMAP_DIMS, FEATURE_SIZE]:
        raise ValueError(f"Unexpected output dimensions {dims}")


def _trunc(value: float) -> int:
    return int(value)


def interpret_pose_outputs(
    heatmaps, offsets, main_width: int, main_height: int
) -> tuple[list[Point], list[float]]:
    """Find each keypoint's strongest heatmap cell and refine it by its offsets.

    Returns the keypoint locations in main stream pixels and their confidences.
    """
    cells = HEATMAP_DIMS * HEATMAP_DIMS
    heat = np.asarray(heatmaps, dtype=np.float32).ravel()
    offs = np.asarray(offsets, dtype=np.float32).ravel()
    if heat.size < cells * FEATURE_SIZE:
        raise ValueError(f"heatmaps hold {heat.size} values, {cells * FEATURE_SIZE} needed")
    if offs.size < cells * FEATURE_SIZE * 2:
        raise ValueError(f"offsets hold {offs.size} values, {cells * FEATURE_SIZE * 2} needed")

    grid = heat[: cells * FEATURE_SIZE].reshape(cells, FEATURE_SIZE)
    # argmax keeps the first of equal values, as a strict "greater than" scan does.
    best = np.argmax(grid, axis=0)

    locations: list[Point] = []
    confidences: list[float] = []
    for i, cell in enumerate(best.tolist()):
        y, x = divmod(cell, HEATMAP_DIMS)
        confidences.append(float(grid[cell, i]))
        j = (FEATURE_SIZE * 2) * cell + i
        loc_y = (y * main_height) // (HEATMAP_DIMS - 1) + float(offs[j])
        loc_x = (x * main_width) // (HEATMAP_DIMS - 1) + float(offs[j + FEATURE_SIZE])
        locations.append(Point(_trunc(loc_x), _trunc(loc_y)))
    return locations, confidences