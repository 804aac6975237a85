"""Utils module - Image preprocessing and system helpers."""

from .image import ImagePreprocessor, ImageUtils, preprocess
from .system import SystemUtils

__all__ = [
    "ImagePreprocessor",
    "ImageUtils",
    "SystemUtils",
    "preprocess",
]
