"""Core module - Label sets, prediction results and shared constants."""

from acnelens.core.constants import (
    ACNE_LABEL_SET_VERSION,
    ACNE_TYPES,
    IMAGE_SIZE,
    SUPPORTED_IMAGE_EXTENSIONS,
)
from acnelens.core.models import ClassPrediction, LabelSet, PredictionResult

__all__ = [
    # Models
    "ClassPrediction",
    "LabelSet",
    "PredictionResult",
    # Constants
    "ACNE_LABEL_SET_VERSION",
    "ACNE_TYPES",
    "IMAGE_SIZE",
    "SUPPORTED_IMAGE_EXTENSIONS",
]
