"""Exception taxonomy shared by training and inference."""

from __future__ import annotations


class AcneLensError(Exception):
    """Base exception for acne classification errors."""

    def __init__(self, message: str, error_code: str | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code


class DecodeError(AcneLensError):
    """Raised when input cannot be interpreted as an image."""


class ModelLoadError(AcneLensError):
    """Raised when the feature extractor or a classifier artifact fails to load."""


class EmptyDatasetError(AcneLensError):
    """Raised when a dataset build produced no usable samples."""


class TrainingError(AcneLensError):
    """Raised when a training run cannot start or diverges."""


class ModelNotReadyError(AcneLensError):
    """Raised when inference is attempted before models finished loading."""


class AnalysisError(AcneLensError):
    """Raised when an inference call fails after the models are ready."""
