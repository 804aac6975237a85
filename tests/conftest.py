"""Shared fixtures: a small deterministic backbone and synthetic image folders."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import numpy as np
import pytest
import torch
from PIL import Image
from torch import nn

from acnelens.core.models import LabelSet
from acnelens.ml.base import TrainedModel
from acnelens.ml.config import ExtractorConfig, HeadConfig, TrainConfig
from acnelens.ml.data import DatasetBuilder, EmbeddingDataset
from acnelens.ml.engine.trainer import train
from acnelens.ml.extractor import Backbone, FeatureExtractor, register_backbone
from acnelens.ml.models import build_head

TINY_BACKBONE = "tiny_pool"
TINY_EMBEDDING_DIM = 48  # 3 channels x 4 x 4 pooled cells
TINY_CATEGORIES = ("apple", "banana", "apple", "cherry", "date")

CLASS_COLORS = {
    "whitehead": (230, 40, 40),
    "blackhead": (40, 200, 60),
    "papule": (50, 60, 220),
    "pustule": (230, 220, 50),
}


def _tiny_backbone(cfg: ExtractorConfig) -> Backbone:
    with torch.random.fork_rng(devices=[]):
        torch.manual_seed(cfg.seed)
        logit_layer = nn.Linear(TINY_EMBEDDING_DIM, len(TINY_CATEGORIES))
    return Backbone(
        trunk=nn.Sequential(nn.AdaptiveAvgPool2d(4), nn.Flatten()),
        logit_layer=logit_layer,
        embedding_dim=TINY_EMBEDDING_DIM,
        categories=TINY_CATEGORIES,
    )


register_backbone(TINY_BACKBONE, _tiny_backbone)


def _write_images(
    root: Path,
    colors: dict[str, tuple[int, int, int]] = CLASS_COLORS,
    per_class: int = 5,
    seed: int = 0,
) -> Path:
    """Write ``per_class`` noisy solid-color PNGs into ``root/<class>/``."""
    rng = np.random.default_rng(seed)
    for class_name, color in colors.items():
        class_dir = root / class_name
        class_dir.mkdir(parents=True, exist_ok=True)
        for i in range(per_class):
            height, width = 32 + 4 * i, 40
            noise = rng.integers(-8, 9, size=(height, width, 3))
            pixels = np.clip(np.array(color) + noise, 0, 255).astype(np.uint8)
            Image.fromarray(pixels).save(class_dir / f"img_{i:02d}.png")
    return root


@pytest.fixture
def write_images() -> Callable[..., Path]:
    """Factory writing synthetic class folders."""
    return _write_images


@pytest.fixture
def extractor_config() -> ExtractorConfig:
    return ExtractorConfig(backbone=TINY_BACKBONE, pretrained=False)


@pytest.fixture
def extractor(extractor_config: ExtractorConfig) -> FeatureExtractor:
    return FeatureExtractor(extractor_config, device="cpu")


@pytest.fixture
def image_dir(tmp_path: Path) -> Path:
    """Four acne classes with five images each."""
    return _write_images(tmp_path / "data")


@pytest.fixture
def color_dataset(image_dir: Path, extractor: FeatureExtractor) -> EmbeddingDataset:
    builder = DatasetBuilder(extractor, num_workers=2)
    return builder.build(image_dir, LabelSet.acne())


@pytest.fixture
def small_head_config() -> HeadConfig:
    return HeadConfig(hidden_units=[64], dropout=[0.1], batch_norm=False)


@pytest.fixture
def fast_train_config() -> TrainConfig:
    return TrainConfig(epochs=5, batch_size=4, learning_rate=1e-2, device="cpu")


@pytest.fixture
def trained_artifact(
    tmp_path: Path,
    color_dataset: EmbeddingDataset,
    extractor: FeatureExtractor,
    small_head_config: HeadConfig,
    fast_train_config: TrainConfig,
) -> tuple[TrainedModel, Path]:
    """A head trained on the color dataset and persisted to disk."""
    head = build_head(
        color_dataset.embedding_dim, len(color_dataset.label_set), small_head_config
    )
    output_dir = tmp_path / "models" / "acne"
    result = train(
        color_dataset,
        head,
        fast_train_config,
        output_dir=output_dir,
        extractor=extractor,
    )
    return result, output_dir
