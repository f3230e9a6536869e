"""Biometric capture and before/after comparison from a front-camera video.

The extraction pipeline turns a live stream into expression, pulse,
complexion and gaze vectors; a capture session schedules it and yields one
FeatureRecord per stage.
"""

__all__ = [
    "capture",
    "complexion",
    "errors",
    "expression",
    "features",
    "gaze",
    "jitter",
    "landmarks",
    "pipeline",
    "pulse",
    "quality",
    "report",
    "roi",
    "service",
    "session",
    "store",
]

__version__ = "0.1.0"
