import numpy as np
import pytest

from camstages.geometry import Point
from camstages.pose import FEATURE_SIZE, HEATMAP_DIMS, check_pose_output_dims, interpret_pose_outputs

CELLS = HEATMAP_DIMS * HEATMAP_DIMS


def _heat_index(y, x, i):
    return FEATURE_SIZE * (HEATMAP_DIMS * y + x) + i


def _offset_index(y, x, i):
    return 2 * FEATURE_SIZE * (HEATMAP_DIMS * y + x) + i


def test_check_dims_accepts_expected_shape():
    check_pose_output_dims([1, 9, 9, 17])
    with pytest.raises(ValueError):
        check_pose_output_dims([1, 9, 9, 16])


@pytest.mark.parametrize("dims", [[1, 10, 9, 17], [2, 9, 9, 17], [1, 9, 9]])
def test_check_dims_rejects_other_shapes(dims):
    with pytest.raises(ValueError):
        check_pose_output_dims(dims)


def test_zero_outputs_put_every_keypoint_at_origin():
    locations, confidences = interpret_pose_outputs(
        np.zeros(CELLS * FEATURE_SIZE), np.zeros(CELLS * FEATURE_SIZE * 2), 640, 480
    )
    assert locations == [Point(0, 0)] * FEATURE_SIZE
    assert confidences == [0.0] * FEATURE_SIZE


def test_peak_in_far_corner_maps_to_image_size():
    heat = np.zeros(CELLS * FEATURE_SIZE)
    heat[_heat_index(8, 8, 3)] = 0.75
    locations, confidences = interpret_pose_outputs(heat, np.zeros(CELLS * FEATURE_SIZE * 2), 640, 480)
    assert locations[3] == Point(640, 480)
    assert confidences[3] == pytest.approx(0.75)
    assert locations[2] == Point(0, 0)


def test_offsets_are_added_and_truncated():
    heat = np.zeros(CELLS * FEATURE_SIZE)
    heat[_heat_index(0, 0, 5)] = 1.0
    offsets = np.zeros(CELLS * FEATURE_SIZE * 2)
    offsets[_offset_index(0, 0, 5)] = 2.7
    offsets[_offset_index(0, 0, 5) + FEATURE_SIZE] = 7.9
    locations, _ = interpret_pose_outputs(heat, offsets, 640, 480)
    assert locations[5] == Point(7, 2)


def test_first_of_equal_peaks_wins():
    heat = np.zeros(CELLS * FEATURE_SIZE)
    heat[_heat_index(8, 8, 0)] = 0.5
    heat[_heat_index(2, 2, 0)] = 0.5
    locations, confidences = interpret_pose_outputs(heat, np.zeros(CELLS * FEATURE_SIZE * 2), 800, 800)
    assert locations[0] == Point(200, 200)
    assert confidences[0] == pytest.approx(0.5)


def test_short_inputs_raise():
    with pytest.raises(ValueError):
        interpret_pose_outputs(np.zeros(10), np.zeros(CELLS * FEATURE_SIZE * 2), 640, 480)
    with pytest.raises(ValueError):
        interpret_pose_outputs(np.zeros(CELLS * FEATURE_SIZE), np.zeros(10), 640, 480)