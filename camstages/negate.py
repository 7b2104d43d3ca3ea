"""Image negative effect."""

from __future__ import annotations

import numpy as np


def negate(buffer) -> bytes:
    """Return the buffer with every bit inverted.

    Image strides keep buffers a multiple of four bytes long; other lengths are rejected.
    """
    data = np.frombuffer(buffer, dtype=np.uint8)
    if data.size % 4:
        raise ValueError(f"buffer length {data.size} is not a multiple of 4")
    return np.bitwise_xor(data, 0xFF).tobytes()