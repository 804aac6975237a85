"""Core data models for acne classification."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Self

import numpy as np
from pydantic import BaseModel, Field, field_validator, model_validator

from acnelens.core.constants import ACNE_LABEL_SET_VERSION, ACNE_TYPES


class LabelSet(BaseModel):
    """Ordered class names; position defines the class index."""

    names: tuple[str, ...] = Field(..., min_length=1, description="Class names")
    version: str = Field(default="1", min_length=1, description="Label set version")

    model_config = {
        "frozen": True,
        "str_strip_whitespace": True,
    }

    @field_validator("names")
    @classmethod
    def validate_names(cls, v: tuple[str, ...]) -> tuple[str, ...]:
        """Ensure class names are non-empty and unique."""
        if any(not name for name in v):
            msg = "Class names must be non-empty strings"
            raise ValueError(msg)
        duplicates = sorted({name for name in v if v.count(name) > 1})
        if duplicates:
            msg = f"Duplicate class names: {duplicates}"
            raise ValueError(msg)
        return v

    @classmethod
    def acne(cls) -> LabelSet:
        """Return the canonical acne label set."""
        return cls(names=ACNE_TYPES, version=ACNE_LABEL_SET_VERSION)

    def __len__(self) -> int:
        """Return the number of classes."""
        return len(self.names)

    def __contains__(self, name: object) -> bool:
        """Check whether a class name belongs to the set."""
        return name in self.names


class ClassPrediction(BaseModel):
    """A class name with its confidence as a percentage."""

    class_name: str = Field(..., alias="className")
    probability: float = Field(..., ge=0.0, le=100.0, description="Percent")

    model_config = {
        "frozen": True,
        "populate_by_name": True,
    }


class PredictionResult(BaseModel):
    """Ranked classification output for one image."""

    top_prediction: ClassPrediction = Field(..., alias="topPrediction")
    all_predictions: list[ClassPrediction] = Field(
        ..., min_length=1, alias="allPredictions"
    )

    model_config = {
        "frozen": True,
        "populate_by_name": True,
    }

    @model_validator(mode="after")
    def validate_ranking(self) -> Self:
        """Top prediction must lead a descending ranking."""
        probs = [p.probability for p in self.all_predictions]
        if any(a < b for a, b in zip(probs, probs[1:], strict=False)):
            msg = "all_predictions must be sorted by descending probability"
            raise ValueError(msg)
        if self.top_prediction != self.all_predictions[0]:
            msg = "top_prediction must equal the first ranked prediction"
            raise ValueError(msg)
        return self

    @classmethod
    def from_probabilities(
        cls, probabilities: Sequence[float] | np.ndarray, label_set: LabelSet
    ) -> PredictionResult:
        """Rank a probability vector aligned with ``label_set``.

        Probabilities are scaled to percentages and clamped to [0, 100].
        Exact ties keep label set order.
        """
        probs = np.asarray(probabilities, dtype=np.float64).reshape(-1)
        if probs.shape[0] != len(label_set):
            msg = (
                f"Probability vector length {probs.shape[0]} does not match "
                f"{len(label_set)} classes"
            )
            raise ValueError(msg)
        if not np.all(np.isfinite(probs)):
            msg = "Probability vector contains non-finite values"
            raise ValueError(msg)

        percentages = np.clip(probs * 100.0, 0.0, 100.0)
        order = sorted(range(len(label_set)), key=lambda i: (-percentages[i], i))
        ranked = [
            ClassPrediction(
                class_name=label_set.names[i], probability=float(percentages[i])
            )
            for i in order
        ]
        return cls(top_prediction=ranked[0], all_predictions=ranked)

    @property
    def total_probability(self) -> float:
        """Sum of all percentages (close to 100 for a softmax output)."""
        return sum(p.probability for p in self.all_predictions)

    def to_response(self) -> dict:
        """Serialize with the camelCase field names used by clients."""
        return self.model_dump(by_alias=True)
