"""Map points, keyframes, place recognition, two-view initialization and local mapping for keyframe-based visual SLAM."""

__version__ = "0.1.0"