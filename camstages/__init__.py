"""Camera post-processing stages: motion detection, object detection, classification and pose decoding."""

__version__ = "0.1.0"

__all__ = [
    "classify",
    "detection",
    "geometry",
    "imx500",
    "motion",
    "negate",
    "object_detect",
    "pose",
    "posenet",
    "posenet_decode",
]