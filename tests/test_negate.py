import pytest

from camstages.negate import negate


def test_negate_bytes():
    assert negate(b"\x00\xff\x0f\xf0") == b"\xff\x00\xf0\x0f"


def test_negate_round_trip():
    data = bytes(range(256))
    assert negate(negate(data)) == data


def test_negate_changes_every_byte():
    data = bytes(range(64))
    out = negate(data)
    assert all(a + b == 255 for a, b in zip(data, out))


def test_negate_empty():
    assert negate(b"") == b""


def test_negate_rejects_odd_length():
    with pytest.raises(ValueError):
        negate(b"\x01\x02\x03")