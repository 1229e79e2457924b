"""Perception stages: frame adaptation, inference, decoding, tracking and the worker that runs them."""

import os

# Quiet OpenCV's FFmpeg backend when CaptureFeeder decodes files and network streams.
os.environ.setdefault("OPENCV_FFMPEG_LOGLEVEL", "error")
