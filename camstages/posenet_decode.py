"""Decoding multi-person poses from heatmap, short-range and mid-range offset tensors."""

from __future__ import annotations

import heapq
import itertools
import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import IntEnum

import numpy as np

INPUT_TENSOR_WIDTH = 481
INPUT_TENSOR_HEIGHT = 353
MAP_WIDTH = 31
MAP_HEIGHT = 23
NUM_KEYPOINTS = 17
# These edges allow the pose graph to be traversed along the mid-range offsets.
NUM_EDGES = 16
STRIDE = 16
NUM_HEATMAPS = NUM_KEYPOINTS * MAP_WIDTH * MAP_HEIGHT
NUM_SHORT_OFFSETS = 2 * NUM_KEYPOINTS * MAP_WIDTH * MAP_HEIGHT
NUM_MID_OFFSETS = 64 * MAP_WIDTH * MAP_HEIGHT

_UNSET_SCORE = -1e5

FloatPoint = tuple[float, float]
"""A point in map space as ``(y, x)``."""


class KeypointType(IntEnum):
    NOSE = 0
    LEFT_EYE = 1
    RIGHT_EYE = 2
    LEFT_EAR = 3
    RIGHT_EAR = 4
    LEFT_SHOULDER = 5
    RIGHT_SHOULDER = 6
    LEFT_ELBOW = 7
    RIGHT_ELBOW = 8
    LEFT_WRIST = 9
    RIGHT_WRIST = 10
    LEFT_HIP = 11
    RIGHT_HIP = 12
    LEFT_KNEE = 13
    RIGHT_KNEE = 14
    LEFT_ANKLE = 15
    RIGHT_ANKLE = 16


_K = KeypointType
_FORWARD_EDGES = (
    (_K.NOSE, _K.LEFT_EYE),
    (_K.LEFT_EYE, _K.LEFT_EAR),
    (_K.NOSE, _K.RIGHT_EYE),
    (_K.RIGHT_EYE, _K.RIGHT_EAR),
    (_K.NOSE, _K.LEFT_SHOULDER),
    (_K.LEFT_SHOULDER, _K.LEFT_ELBOW),
    (_K.LEFT_ELBOW, _K.LEFT_WRIST),
    (_K.LEFT_SHOULDER, _K.LEFT_HIP),
    (_K.LEFT_HIP, _K.LEFT_KNEE),
    (_K.LEFT_KNEE, _K.LEFT_ANKLE),
    (_K.NOSE, _K.RIGHT_SHOULDER),
    (_K.RIGHT_SHOULDER, _K.RIGHT_ELBOW),
    (_K.RIGHT_ELBOW, _K.RIGHT_WRIST),
    (_K.RIGHT_SHOULDER, _K.RIGHT_HIP),
    (_K.RIGHT_HIP, _K.RIGHT_KNEE),
    (_K.RIGHT_KNEE, _K.RIGHT_ANKLE),
)
EDGE_LIST: tuple[tuple[int, int], ...] = tuple(
    (int(a), int(b)) for a, b in _FORWARD_EDGES
) + tuple((int(b), int(a)) for a, b in _FORWARD_EDGES)


@dataclass
class KeypointWithScore:
    """A keypoint position in map space, its type and its score."""

    point: FloatPoint
    id: int
    score: float


@dataclass
class PoseResult:
    """One decoded pose: keypoints as ``(y, x)`` pixels with their scores."""

    pose_score: float
    keypoints: list[FloatPoint] = field(default_factory=list)
    keypoint_scores: list[float] = field(default_factory=list)


def sigmoid(x: float) -> float:
    if x >= 0:
        return 1.0 / (1.0 + math.exp(-x))
    e = math.exp(x)
    return e / (1.0 + e)


def log_odds(x: float) -> float:
    v = 1.0 / (x + 1e-6) - 1.0
    if v > 0:
        return -math.log(v)
    if v == 0:
        return math.inf
    return math.nan


def _squared_distance(a: FloatPoint, b: FloatPoint) -> float:
    dy = b[0] - a[0]
    dx = b[1] - a[1]
    return dy * dy + dx * dx


def _as_list(tensor) -> list[float]:
    if isinstance(tensor, np.ndarray):
        return tensor.ravel().tolist()
    return list(tensor)


def format_tensor(data, size: int, div: float) -> np.ndarray:
    """Reorder a channel-major ``(size, width, height)`` tensor to ``(height, width, size)``, divided by ``div``."""
    needed = size * MAP_WIDTH * MAP_HEIGHT
    arr = np.asarray(data, dtype=np.float64).ravel()
    if arr.size < needed:
        raise ValueError(f"tensor holds {arr.size} values, {needed} needed")
    planes = arr[:needed].reshape(size, MAP_WIDTH, MAP_HEIGHT)
    return planes.transpose(2, 1, 0).ravel() / div


def build_adjacency_list() -> list[list[tuple[int, int]]]:
    """For each keypoint, the ``(child_id, edge_id)`` pairs of edges leaving it."""
    adjacency: list[list[tuple[int, int]]] = [[] for _ in range(NUM_KEYPOINTS)]
    for edge_id, (parent, child) in enumerate(EDGE_LIST):
        adjacency[parent].append((child, edge_id))
    return adjacency


def decreasing_arg_sort(scores: Sequence[float]) -> list[int]:
    """Indices that order ``scores`` from highest to lowest."""
    return sorted(range(len(scores)), key=lambda i: -scores[i])


def _linear(x: float, n: int) -> tuple[int, int, float]:
    x_proj = min(max(x, 0.0), n - 1.0)
    lo = math.floor(x_proj)
    hi = math.ceil(x_proj)
    return lo, hi, x - lo


def sample_tensor(tensor, point: FloatPoint, channels: Sequence[int], num_channels: int) -> list[float]:
    """Bilinearly sample a ``(height, width, num_channels)`` tensor at ``point`` for each channel."""
    y_floor, y_ceil, y_lerp = _linear(point[0], MAP_HEIGHT)
    x_floor, x_ceil, x_lerp = _linear(point[1], MAP_WIDTH)
    top_left = (y_floor * MAP_WIDTH + x_floor) * num_channels
    top_right = (y_floor * MAP_WIDTH + x_ceil) * num_channels
    bottom_left = (y_ceil * MAP_WIDTH + x_floor) * num_channels
    bottom_right = (y_ceil * MAP_WIDTH + x_ceil) * num_channels
    return [
        (1 - y_lerp) * ((1 - x_lerp) * tensor[top_left + c] + x_lerp * tensor[top_right + c])
        + y_lerp * ((1 - x_lerp) * tensor[bottom_left + c] + x_lerp * tensor[bottom_right + c])
        for c in channels
    ]


def build_keypoint_queue(scores, short_offsets, score_threshold: float) -> list[KeypointWithScore]:
    """Local-maximum keypoints scoring at least ``score_threshold``, highest score first."""
    grid = np.asarray(scores, dtype=np.float64).ravel()[:NUM_HEATMAPS].reshape(
        MAP_HEIGHT, MAP_WIDTH, NUM_KEYPOINTS
    )
    offsets = np.asarray(short_offsets, dtype=np.float64).ravel()[:NUM_SHORT_OFFSETS].reshape(
        MAP_HEIGHT, MAP_WIDTH, 2 * NUM_KEYPOINTS
    )
    padded = np.pad(grid, ((1, 1), (1, 1), (0, 0)), constant_values=-np.inf)
    window_max = np.max(
        [padded[dy : dy + MAP_HEIGHT, dx : dx + MAP_WIDTH] for dy in range(3) for dx in range(3)],
        axis=0,
    )
    mask = (grid >= score_threshold) & (grid >= window_max)

    queue: list[KeypointWithScore] = []
    for y, x, j in np.argwhere(mask).tolist():
        dy = float(offsets[y, x, j])
        dx = float(offsets[y, x, NUM_KEYPOINTS + j])
        y_refined = min(max(y + dy, 0.0), MAP_HEIGHT - 1.0)
        x_refined = min(max(x + dx, 0.0), MAP_WIDTH - 1.0)
        queue.append(KeypointWithScore((y_refined, x_refined), j, float(grid[y, x, j])))
    queue.sort(key=lambda k: -k.score)
    return queue


def find_displaced_position(
    short_offsets,
    mid_offsets,
    source: FloatPoint,
    edge_id: int,
    target_id: int,
    offset_refinement_steps: int,
) -> FloatPoint:
    """Follow the mid-range offsets from ``source``, then refine by the short-range offsets."""
    y, x = source
    offsets = sample_tensor(mid_offsets, source, [edge_id, NUM_EDGES + edge_id], 2 * 2 * NUM_EDGES)
    y = min(max(y + offsets[0], 0.0), MAP_HEIGHT - 1.0)
    x = min(max(x + offsets[1], 0.0), MAP_WIDTH - 1.0)

    channels = [target_id, NUM_KEYPOINTS + target_id]
    for _ in range(offset_refinement_steps):
        offsets = sample_tensor(short_offsets, (y, x), channels, 2 * NUM_KEYPOINTS)
        y = min(max(y + offsets[0], 0.0), MAP_HEIGHT - 1.0)
        x = min(max(x + offsets[1], 0.0), MAP_WIDTH - 1.0)
    return (y, x)


def backtrack_decode_pose(
    scores,
    short_offsets,
    mid_offsets,
    root: KeypointWithScore,
    adjacency_list: Sequence[Sequence[tuple[int, int]]],
    offset_refinement_steps: int,
) -> tuple[list[FloatPoint], list[float]]:
    """Decode a whole pose outwards from ``root``, best-scoring keypoints first.

    Returns the keypoint positions and their (logit) scores; keypoints that are
    never reached stay at ``(-1, -1)`` with a very low score.
    """
    keypoints: list[FloatPoint] = [(-1.0, -1.0)] * NUM_KEYPOINTS
    keypoint_scores = [_UNSET_SCORE] * NUM_KEYPOINTS

    # The root's channel and stride are passed in this order by design of the decoder.
    root_score = sample_tensor(scores, root.point, [NUM_KEYPOINTS], root.id)[0]

    counter = itertools.count()
    heap = [(-root_score, next(counter), KeypointWithScore(root.point, root.id, root_score))]
    decoded = [False] * NUM_KEYPOINTS

    while heap:
        _, _, current = heapq.heappop(heap)
        if decoded[current.id]:
            continue
        keypoints[current.id] = current.point
        keypoint_scores[current.id] = current.score
        decoded[current.id] = True

        for child_id, edge_id in adjacency_list[current.id]:
            if decoded[child_id]:
                continue
            # Mid offsets are laid out as [fwd y][fwd x][bwd y][bwd x] blocks.
            if edge_id > NUM_EDGES:
                edge_id += NUM_EDGES
            child_point = find_displaced_position(
                short_offsets, mid_offsets, current.point, edge_id, child_id, offset_refinement_steps
            )
            child_score = sample_tensor(scores, child_point, [child_id], NUM_KEYPOINTS)[0]
            heapq.heappush(
                heap, (-child_score, next(counter), KeypointWithScore(child_point, child_id, child_score))
            )
    return keypoints, keypoint_scores


def soft_keypoint_nms(
    decreasing_indices: Sequence[int],
    all_keypoint_coords: Sequence[Sequence[FloatPoint]],
    all_keypoint_scores: Sequence[Sequence[float]],
    squared_nms_radius: float,
) -> list[float]:
    """Rescore instances, ignoring keypoints that overlap a higher-scoring instance."""
    instance_scores = [0.0] * len(decreasing_indices)
    for i, current in enumerate(decreasing_indices):
        occluded = [False] * NUM_KEYPOINTS
        for previous in decreasing_indices[:i]:
            for k in range(NUM_KEYPOINTS):
                if (
                    _squared_distance(all_keypoint_coords[current][k], all_keypoint_coords[previous][k])
                    <= squared_nms_radius
                ):
                    occluded[k] = True
        scores = all_keypoint_scores[current]
        total = sum(scores[k] for k in decreasing_arg_sort(scores)[:NUM_KEYPOINTS] if not occluded[k])
        instance_scores[current] = total / NUM_KEYPOINTS
    return instance_scores


def decode_all_poses(
    scores,
    short_offsets,
    mid_offsets,
    threshold: float,
    max_detections: int,
    offset_refinement_steps: int,
    nms_radius: float,
) -> list[PoseResult]:
    """Decode up to ``max_detections`` poses, best first, with keypoints in pixels.

    ``nms_radius`` is in map units; tensors are in ``(height, width, channels)`` order.
    """
    scores_list = _as_list(scores)
    short_list = _as_list(short_offsets)
    mid_list = _as_list(mid_offsets)

    queue = build_keypoint_queue(scores_list, short_list, log_odds(threshold))
    adjacency = build_adjacency_list()
    squared_radius = nms_radius * nms_radius

    poses: list[list[FloatPoint]] = []
    pose_keypoint_scores: list[list[float]] = []
    instance_scores: list[float] = []

    for root in queue:
        if len(poses) >= max_detections:
            break
        if any(_squared_distance(root.point, pose[root.id]) <= squared_radius for pose in poses):
            continue
        keypoints, logits = backtrack_decode_pose(
            scores_list, short_list, mid_list, root, adjacency, offset_refinement_steps
        )
        probabilities = [sigmoid(s) for s in logits]
        instance_score = sum(sorted(probabilities, reverse=True)) / NUM_KEYPOINTS
        if instance_score >= threshold:
            poses.append(keypoints)
            pose_keypoint_scores.append(probabilities)
            instance_scores.append(instance_score)

    order = decreasing_arg_sort(instance_scores)
    instance_scores = soft_keypoint_nms(order, poses, pose_keypoint_scores, squared_radius)
    order = decreasing_arg_sort(instance_scores)

    results: list[PoseResult] = []
    for index in order:
        if instance_scores[index] < threshold:
            break
        results.append(
            PoseResult(
                pose_score=instance_scores[index],
                keypoints=[(y * STRIDE, x * STRIDE) for y, x in poses[index]],
                keypoint_scores=list(pose_keypoint_scores[index]),
            )
        )
    return results