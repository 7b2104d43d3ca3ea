import io

import pytest

from camstages.detection import TemporalFilterConfig
from camstages.geometry import FULL_SENSOR_RESOLUTION, Size, convert_inference_coordinates
from camstages.imx500 import (
    InputTensorSaver,
    ObjectDetection,
    ObjectDetectionConfig,
    conv_reg_signed,
    normalize_input_tensor,
    parse_fw_progress,
    parse_object_detection_tensor,
)

FULL = Size(4056, 3040)


def make_tensor(boxes, scores, classes, num):
    """Boxes are (x0, y0, x1, y1)."""
    return (
        [b[1] for b in boxes]
        + [b[0] for b in boxes]
        + [b[3] for b in boxes]
        + [b[2] for b in boxes]
        + list(scores)
        + list(classes)
        + [num]
    )


def make_detector(**kwargs):
    params = dict(max_detections=10, threshold=0.5, classes=["cat", "dog"])
    params.update(kwargs)
    return ObjectDetection(ObjectDetectionConfig(**params), FULL, FULL)


def test_conv_reg_signed_positive_values_unchanged():
    for v in range(256):
        assert conv_reg_signed(v) == v


def test_conv_reg_signed_negative_range():
    for v in range(256, 512):
        result = conv_reg_signed(v)
        assert -256 <= result <= -1
        assert result % 512 == v


def test_normalize_identity():
    data = bytes([0, 1, 127, 128, 200, 255])
    assert normalize_input_tensor(data, [0, 0, 0, 0], [0, 0, 0, 0], [1, 1, 1, 1], 0) == data


def test_normalize_shift():
    assert normalize_input_tensor(bytes([1, 2, 3]), [0] * 4, [1, 1, 1, 1], [1] * 4, 0) == bytes([2, 4, 6])


def test_normalize_rejects_zero_divisor():
    with pytest.raises(ValueError):
        normalize_input_tensor(b"\x01", [0] * 4, [0] * 4, [0, 1, 1, 1], 0)


def test_saver_stops_after_count():
    stream = io.BytesIO()
    saver = InputTensorSaver(stream, 2)
    frame = bytes([5, 6, 7])
    assert saver.write(frame) is True
    assert saver.write(frame) is True
    assert saver.write(frame) is False
    assert stream.getvalue() == frame * 2


def test_saver_rejects_zero_tensors():
    with pytest.raises(ValueError):
        InputTensorSaver(io.BytesIO(), 0)


def test_fw_progress_in_progress():
    assert parse_fw_progress("2 50 100", "10") == (60, 100, False)


def test_fw_progress_finished():
    result = parse_fw_progress("2 100 100\n", "0")
    assert result is not None
    assert result[2] is True


def test_fw_progress_other_state():
    assert parse_fw_progress("1 5 10", "0") is None
    assert parse_fw_progress("2 5", "0") is None


def test_parse_tensor_layout():
    boxes = [(0.1, 0.2, 0.3, 0.4), (0.5, 0.6, 0.7, 0.8)]
    data = make_tensor(boxes, [0.9, 0.8], [1, 0], 2)
    out = parse_object_detection_tensor(data, 2)
    assert out.num_detections == 2
    for got, want in zip(out.bboxes, boxes):
        assert got == pytest.approx(want)
    assert out.scores == pytest.approx([0.9, 0.8])
    assert out.classes == [1.0, 0.0]


def test_parse_tensor_clamps_count():
    data = make_tensor([(0, 0, 1, 1)], [0.9], [0], 7)
    assert parse_object_detection_tensor(data, 1).num_detections == 1


def test_parse_tensor_too_short():
    with pytest.raises(IndexError):
        parse_object_detection_tensor([0.0] * 5, 1)


def test_config_from_params():
    cfg = ObjectDetectionConfig.from_params(
        {"max_detections": 3, "classes": ["a", "b"], "temporal_filter": {"hidden_frames": 4}}
    )
    assert cfg.max_detections == 3
    assert cfg.threshold == 0.5
    assert cfg.classes == ["a", "b"]
    assert cfg.temporal_filter.hidden_frames == 4


def test_config_requires_max_detections():
    with pytest.raises(KeyError):
        ObjectDetectionConfig.from_params({})


def test_threshold_filters_and_labels():
    det = make_detector()
    data = make_tensor([(0.1, 0.1, 0.5, 0.5), (0.2, 0.2, 0.6, 0.6)], [0.9, 0.3], [0, 1], 2)
    result = det.process(data, 4, 8, FULL_SENSOR_RESOLUTION)
    assert [d.name for d in result] == ["cat"]
    assert result[0].confidence == pytest.approx(0.9)


def test_box_matches_coordinate_conversion():
    det = make_detector()
    box = (0.1, 0.2, 0.5, 0.7)
    result = det.process(make_tensor([box], [0.9], [1], 1), 4, 4, FULL_SENSOR_RESOLUTION)
    expected = convert_inference_coordinates(
        (box[0], box[1], box[2] - box[0], box[3] - box[1]), FULL_SENSOR_RESOLUTION, FULL, FULL
    )
    assert result[0].box == expected
    assert result[0].category == 1


def test_unknown_class_skipped_and_limit():
    det = make_detector(max_detections=1)
    boxes = [(0.1, 0.1, 0.2, 0.2), (0.3, 0.3, 0.4, 0.4)]
    assert det.process(make_tensor(boxes, [0.9, 0.9], [5, 0], 2), 4, 8, FULL_SENSOR_RESOLUTION) == []
    det2 = make_detector(max_detections=1)
    result = det2.process(make_tensor(boxes, [0.9, 0.9], [0, 1], 2), 4, 8, FULL_SENSOR_RESOLUTION)
    assert len(result) == 1


def test_bad_tensor_gives_no_objects():
    det = make_detector()
    data = make_tensor([(0.1, 0.1, 0.5, 0.5)], [0.9], [0], 1)
    assert det.process(data, 3, 4, FULL_SENSOR_RESOLUTION) == []
    assert det.process(data[:-1], 4, 4, FULL_SENSOR_RESOLUTION) == []


def test_missing_tensor_reuses_previous():
    det = make_detector()
    data = make_tensor([(0.1, 0.1, 0.5, 0.5)], [0.9], [0], 1)
    first = det.process(data, 4, 4, FULL_SENSOR_RESOLUTION)
    assert det.process(None, 0, 0, FULL_SENSOR_RESOLUTION) == first


def test_missing_scaler_crop_raises():
    with pytest.raises(ValueError):
        make_detector().process(None, 0, 0, None)


def test_temporal_filter_hides_new_objects():
    det = make_detector(temporal_filter=TemporalFilterConfig())
    cat = (0.1, 0.1, 0.3, 0.3)
    dog = (0.6, 0.6, 0.9, 0.9)
    first = det.process(make_tensor([cat], [0.9], [0], 1), 4, 4, FULL_SENSOR_RESOLUTION)
    assert [d.name for d in first] == ["cat"]
    second = det.process(make_tensor([cat, dog], [0.9, 0.9], [0, 1], 2), 4, 8, FULL_SENSOR_RESOLUTION)
    assert [d.name for d in second] == ["cat"]