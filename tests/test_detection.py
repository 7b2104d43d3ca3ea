import pytest

from camstages.detection import (
    Detection,
    TemporalFilter,
    TemporalFilterConfig,
    convert_scaler_crop_coordinates,
    scaler_crops_from_metadata,
    translate_detections,
)
from camstages.geometry import Rectangle, Size

ISP = Size(1000, 1000)


def det(x, y=100, category=1, confidence=0.9):
    return Detection(category, "thing", confidence, Rectangle(x, y, 50, 50))


def test_config_defaults_and_absent():
    cfg = TemporalFilterConfig.from_params({"temporal_filter": {}})
    assert cfg == TemporalFilterConfig(0.05, 0.2, 5, 2)
    assert TemporalFilterConfig.from_params({"threshold": 0.5}) is None


def test_config_reads_values():
    cfg = TemporalFilterConfig.from_params(
        {"temporal_filter": {"tolerance": 0.1, "factor": 0.5, "visible_frames": 3, "hidden_frames": 1}}
    )
    assert (cfg.tolerance, cfg.factor, cfg.visible_frames, cfg.hidden_frames) == (0.1, 0.5, 3, 1)


def test_new_object_hidden_until_seen_enough():
    f = TemporalFilter(TemporalFilterConfig(hidden_frames=2), ISP)
    assert f.update([det(100)]) == []
    assert f.update([det(100)]) == []
    shown = f.update([det(100)])
    assert len(shown) == 1
    assert shown[0].category == 1


def test_reveal_when_empty_shows_immediately():
    f = TemporalFilter(TemporalFilterConfig(hidden_frames=2), ISP, reveal_when_empty=True)
    assert len(f.update([det(100)])) == 1
    # A second distinct object arriving later is still hidden.
    out = f.update([det(100), det(600, category=2)])
    assert [d.category for d in out] == [1]


def test_box_is_smoothed():
    f = TemporalFilter(TemporalFilterConfig(factor=0.5, hidden_frames=0), ISP)
    f.update([det(100)])
    out = f.update([det(110)])
    assert out[0].box.x == 105


def test_unmatched_object_expires():
    f = TemporalFilter(TemporalFilterConfig(visible_frames=2, hidden_frames=0), ISP)
    f.update([det(100)])
    assert len(f.update([])) == 1
    assert f.update([]) == []
    assert f.visible() == []


def test_different_category_not_matched():
    f = TemporalFilter(TemporalFilterConfig(hidden_frames=0), ISP)
    f.update([det(100, category=1)])
    out = f.update([det(100, category=2)])
    assert sorted(d.category for d in out) == [1, 2]


def test_clear():
    f = TemporalFilter(TemporalFilterConfig(hidden_frames=0), ISP)
    f.update([det(100)])
    f.clear()
    assert f.visible() == []


def test_scaler_crops_from_metadata():
    a, b = Rectangle(0, 0, 10, 10), Rectangle(1, 1, 5, 5)
    assert scaler_crops_from_metadata(a, [a, b]) == [a, b]
    assert scaler_crops_from_metadata(a, None) == [a, a]
    assert scaler_crops_from_metadata(None, None) == []


def test_convert_identity_crop():
    crop = Rectangle(0, 0, 1001, 1001)
    r = convert_scaler_crop_coordinates([0.25, 0.5, 0.1, 0.2], [crop, crop], Size(1001, 1001))
    assert (r.x, r.y) == (250, 500)
    assert (r.width, r.height) == (100, 200)


def test_convert_scales_to_output():
    crop = Rectangle(0, 0, 1001, 1001)
    small = convert_scaler_crop_coordinates([0.25, 0.25, 0.25, 0.25], [crop, crop], Size(1001, 1001))
    big = convert_scaler_crop_coordinates([0.25, 0.25, 0.25, 0.25], [crop, crop], Size(2002, 2002))
    assert big.x == 2 * small.x
    assert big.width == 2 * small.width


def test_convert_bad_lengths():
    crop = Rectangle(0, 0, 100, 100)
    assert convert_scaler_crop_coordinates([0.1, 0.1, 0.1], [crop, crop], ISP) == Rectangle()
    assert convert_scaler_crop_coordinates([0.1, 0.1, 0.1, 0.1], [crop], ISP) == Rectangle()


def test_translate_detections_threshold_and_limit():
    crop = Rectangle(0, 0, 1001, 1001)
    raw = [
        (1, "a", 0.9, (0.1, 0.1, 0.2, 0.2)),
        (2, "b", 0.3, (0.1, 0.1, 0.2, 0.2)),
        (3, "c", 0.8, (0.5, 0.5, 0.6, 0.6)),
        (4, "d", 0.7, (0.5, 0.5, 0.6, 0.6)),
    ]
    out = translate_detections(raw, 0.5, 2, [crop, crop], Size(1001, 1001))
    assert [d.name for d in out] == ["a", "c"]
    assert out[0].box.x == 100
    unlimited = translate_detections(raw, 0.5, 0, [crop, crop], Size(1001, 1001))
    assert [d.category for d in unlimited] == [1, 3, 4]


def test_translate_clamps_box():
    crop = Rectangle(0, 0, 1001, 1001)
    out = translate_detections([(1, "a", 1.0, (-0.5, -0.5, 1.5, 1.5))], 0.5, 0, [crop, crop], Size(1001, 1001))
    assert out[0].box.x == 0 and out[0].box.y == 0
    assert out[0].box.width <= 1001