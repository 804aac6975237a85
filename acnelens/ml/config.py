"""Configuration models for ML pipeline components."""

from __future__ import annotations

from pathlib import Path
from typing import Literal, Self

from pydantic import BaseModel, Field, field_validator, model_validator

from acnelens.core.constants import SUPPORTED_IMAGE_EXTENSIONS


class ExtractorConfig(BaseModel):
    """Frozen feature extractor configuration."""

    backbone: str = Field(
        "mobilenet_v2", description="Registered backbone name (see ml.extractor)"
    )
    pretrained: bool = Field(True, description="Use the backbone's released weights")
    weights_path: Path | None = Field(
        None, description="Optional local state dict overriding pretrained weights"
    )
    normalize_input: bool = Field(
        True, description="Apply ImageNet normalization inside the network"
    )
    seed: int = Field(0, description="Seed for random init when not pretrained")

    @field_validator("weights_path")
    @classmethod
    def _to_path(cls, v: Path | None) -> Path | None:
        return None if v is None else Path(v)


class HeadConfig(BaseModel):
    """Tunable classifier head hyperparameters."""

    hidden_units: list[int] = Field(default_factory=lambda: [512, 256])
    dropout: list[float] = Field(default_factory=lambda: [0.5, 0.3])
    batch_norm: bool = True
    activation: Literal["relu", "gelu", "tanh"] = "relu"

    @field_validator("hidden_units")
    @classmethod
    def _positive_widths(cls, v: list[int]) -> list[int]:
        if any(width < 1 for width in v):
            msg = f"hidden_units must be positive, got {v}"
            raise ValueError(msg)
        if any(a < b for a, b in zip(v, v[1:], strict=False)):
            msg = f"hidden_units must not increase, got {v}"
            raise ValueError(msg)
        return v

    @field_validator("dropout")
    @classmethod
    def _dropout_range(cls, v: list[float]) -> list[float]:
        if any(not 0.0 <= rate < 1.0 for rate in v):
            msg = f"dropout rates must be in [0, 1), got {v}"
            raise ValueError(msg)
        return v

    @model_validator(mode="after")
    def _aligned(self) -> Self:
        if len(self.dropout) != len(self.hidden_units):
            msg = (
                "dropout must have one rate per hidden layer: "
                f"{len(self.dropout)} != {len(self.hidden_units)}"
            )
            raise ValueError(msg)
        return self


class HeadArchitecture(HeadConfig):
    """Complete, re-buildable description of a classifier head."""

    input_dim: int = Field(..., ge=1)
    num_classes: int = Field(..., ge=1)

    @classmethod
    def from_config(
        cls, cfg: HeadConfig, input_dim: int, num_classes: int
    ) -> HeadArchitecture:
        """Attach input and output sizes to head hyperparameters."""
        return cls(**cfg.model_dump(), input_dim=input_dim, num_classes=num_classes)


class DataConfig(BaseModel):
    """Dataset-related configuration."""

    data_dir: Path = Field(..., description="Root with one directory per class")
    extensions: frozenset[str] = Field(
        default=SUPPORTED_IMAGE_EXTENSIONS,
        description="Lower-case file suffixes accepted as samples",
    )
    num_workers: int | None = Field(
        None, ge=1, description="Embedding threads; None sizes from available CPUs"
    )

    @field_validator("data_dir")
    @classmethod
    def _to_path(cls, v: Path) -> Path:
        return Path(v)

    @field_validator("extensions")
    @classmethod
    def _normalize_extensions(cls, v: frozenset[str]) -> frozenset[str]:
        return frozenset(
            ext.lower() if ext.startswith(".") else f".{ext.lower()}" for ext in v
        )


class TrainConfig(BaseModel):
    """Training hyperparameters."""

    epochs: int = Field(10, ge=1)
    batch_size: int = Field(32, ge=1)
    learning_rate: float = Field(1e-3, gt=0)
    optimizer: Literal["adam", "adamw", "sgd"] = "adam"
    weight_decay: float = Field(0.0, ge=0)
    clip_grad_norm: float | None = Field(None, gt=0)
    validation_split: float = Field(0.2, ge=0.0, lt=1.0)
    seed: int = 42
    early_stopping_patience: int | None = Field(
        None, ge=1, description="Stop after this many epochs without val_loss gain"
    )
    device: str | None = Field(None, description="Explicit torch device")


class InferenceConfig(BaseModel):
    """Inference service configuration."""

    artifact_path: Path | None = Field(
        None, description="Model artifact directory; resolved via registry if unset"
    )
    registry_path: Path | None = Field(None, description="Model registry JSON file")
    model_name: str = Field("acne-classifier", min_length=1)
    model_version: str | None = None
    allow_passthrough: bool = Field(
        False, description="Fall back to the raw extractor when no artifact exists"
    )
    extractor: ExtractorConfig | None = Field(
        None, description="Extractor used for passthrough or to override the artifact's"
    )
    device: str | None = None

    @field_validator("artifact_path", "registry_path")
    @classmethod
    def _to_path(cls, v: Path | None) -> Path | None:
        return None if v is None else Path(v)


class PipelineConfig(BaseModel):
    """Full pipeline configuration bundle."""

    data: DataConfig
    extractor: ExtractorConfig = ExtractorConfig()
    head: HeadConfig = HeadConfig()
    train: TrainConfig = TrainConfig()
    inference: InferenceConfig = InferenceConfig()

    @classmethod
    def from_json(cls, path: Path) -> PipelineConfig:
        """Load a pipeline configuration from a JSON file."""
        return cls.model_validate_json(Path(path).read_text(encoding="utf-8"))
