"""Frozen pretrained feature extractors.

A backbone is split into a trunk that produces the pre-logit embedding and the
final classification layer. Only the trunk is used for transfer learning; the
classification layer is kept for the raw passthrough classifier.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass

import numpy as np
import torch
import torchvision
from torch import nn

from acnelens.core.constants import IMAGE_CHANNELS
from acnelens.core.errors import ModelLoadError
from acnelens.ml.config import ExtractorConfig
from acnelens.utils.system import SystemUtils

logger = logging.getLogger(__name__)

IMAGENET_MEAN = (0.485, 0.456, 0.406)
IMAGENET_STD = (0.229, 0.224, 0.225)


@dataclass(frozen=True)
class Backbone:
    """A loaded network split at its final classification layer."""

    trunk: nn.Module  # (N, 3, H, W) -> (N, embedding_dim)
    logit_layer: nn.Module  # (N, embedding_dim) -> (N, len(categories))
    embedding_dim: int
    categories: tuple[str, ...]


BackboneFactory = Callable[[ExtractorConfig], Backbone]

_BACKBONES: dict[str, BackboneFactory] = {}


def register_backbone(name: str, factory: BackboneFactory) -> None:
    """Register a backbone factory under ``name``."""
    _BACKBONES[name.lower()] = factory


def available_backbones() -> list[str]:
    """List registered backbone names."""
    return sorted(_BACKBONES)


def _generic_categories(count: int) -> tuple[str, ...]:
    return tuple(f"class_{i}" for i in range(count))


def _build_torchvision(
    cfg: ExtractorConfig,
    builder: Callable[..., nn.Module],
    weights_enum: torchvision.models.WeightsEnum,
) -> tuple[nn.Module, torchvision.models.WeightsEnum | None]:
    """Instantiate a torchvision classifier with the configured weights."""
    weights = weights_enum if cfg.pretrained and cfg.weights_path is None else None
    if weights is None:
        # Random init must not disturb the caller's RNG state
        with torch.random.fork_rng(devices=[]):
            torch.manual_seed(cfg.seed)
            model = builder(weights=None)
    else:
        model = builder(weights=weights)

    if cfg.weights_path is not None:
        state = torch.load(cfg.weights_path, map_location="cpu", weights_only=True)
        model.load_state_dict(state)
        logger.info("Loaded backbone weights from %s", cfg.weights_path)
    return model, weights


def _categories(
    weights: torchvision.models.WeightsEnum | None, count: int
) -> tuple[str, ...]:
    if weights is not None and "categories" in weights.meta:
        return tuple(weights.meta["categories"])
    return _generic_categories(count)


def _mobilenet_v2(cfg: ExtractorConfig) -> Backbone:
    model, weights = _build_torchvision(
        cfg,
        torchvision.models.mobilenet_v2,
        torchvision.models.MobileNet_V2_Weights.DEFAULT,
    )
    logit_layer = model.classifier[-1]
    trunk = nn.Sequential(model.features, nn.AdaptiveAvgPool2d(1), nn.Flatten())
    return Backbone(
        trunk=trunk,
        logit_layer=logit_layer,
        embedding_dim=logit_layer.in_features,
        categories=_categories(weights, logit_layer.out_features),
    )


def _mobilenet_v3(
    builder: Callable[..., nn.Module], weights_enum: torchvision.models.WeightsEnum
) -> BackboneFactory:
    def factory(cfg: ExtractorConfig) -> Backbone:
        model, weights = _build_torchvision(cfg, builder, weights_enum)
        # classifier = Linear -> Hardswish -> Dropout -> Linear(logits)
        logit_layer = model.classifier[-1]
        trunk = nn.Sequential(
            model.features,
            model.avgpool,
            nn.Flatten(),
            *list(model.classifier.children())[:-1],
        )
        return Backbone(
            trunk=trunk,
            logit_layer=logit_layer,
            embedding_dim=logit_layer.in_features,
            categories=_categories(weights, logit_layer.out_features),
        )

    return factory


register_backbone("mobilenet_v2", _mobilenet_v2)
register_backbone(
    "mobilenet_v3_small",
    _mobilenet_v3(
        torchvision.models.mobilenet_v3_small,
        torchvision.models.MobileNet_V3_Small_Weights.DEFAULT,
    ),
)
register_backbone(
    "mobilenet_v3_large",
    _mobilenet_v3(
        torchvision.models.mobilenet_v3_large,
        torchvision.models.MobileNet_V3_Large_Weights.DEFAULT,
    ),
)


class FeatureExtractor:
    """Frozen network mapping preprocessed images to embedding vectors."""

    def __init__(
        self, config: ExtractorConfig | None = None, device: str | None = None
    ) -> None:
        self.config = config or ExtractorConfig()
        self.device = SystemUtils.select_device(device)
        self._backbone: Backbone | None = None
        self._lock = threading.Lock()
        self._mean = torch.tensor(IMAGENET_MEAN).view(1, 3, 1, 1)
        self._std = torch.tensor(IMAGENET_STD).view(1, 3, 1, 1)

    # -- Lifecycle ----------------------------------------------------------

    @property
    def is_loaded(self) -> bool:
        """Whether the network has been loaded."""
        return self._backbone is not None

    def load(self) -> FeatureExtractor:
        """Load the backbone once; later calls are no-ops."""
        with self._lock:
            if self._backbone is None:
                self._backbone = self._load_backbone()
        return self

    def reload(self) -> FeatureExtractor:
        """Discard the loaded backbone and load it again."""
        with self._lock:
            self._backbone = None
            self._backbone = self._load_backbone()
        return self

    def _load_backbone(self) -> Backbone:
        name = self.config.backbone.lower()
        factory = _BACKBONES.get(name)
        if factory is None:
            msg = (
                f"Unknown backbone: {self.config.backbone}. "
                f"Available: {available_backbones()}"
            )
            raise ModelLoadError(msg, "UNKNOWN_BACKBONE")

        try:
            backbone = factory(self.config)
            for module in (backbone.trunk, backbone.logit_layer):
                module.to(self.device)
                module.eval()
                for p in module.parameters():
                    p.requires_grad = False
        except Exception as e:
            msg = f"Failed to load backbone {name}: {e}"
            raise ModelLoadError(msg, "BACKBONE_LOAD_FAILED") from e

        self._mean = self._mean.to(self.device)
        self._std = self._std.to(self.device)
        logger.info(
            "Loaded feature extractor %s (embedding_dim=%d, pretrained=%s, device=%s)",
            name,
            backbone.embedding_dim,
            self.config.pretrained,
            self.device,
        )
        return backbone

    def _require(self) -> Backbone:
        if self._backbone is None:
            self.load()
        return self._backbone  # type: ignore[return-value]

    # -- Properties ---------------------------------------------------------

    @property
    def embedding_dim(self) -> int:
        """Width of the embedding vector."""
        return self._require().embedding_dim

    @property
    def categories(self) -> tuple[str, ...]:
        """Class names of the backbone's own classification layer."""
        return self._require().categories

    def describe(self) -> dict:
        """Record of the extractor, stored with trained artifacts."""
        return {
            **self.config.model_dump(mode="json"),
            "embedding_dim": self.embedding_dim,
        }

    # -- Inference ----------------------------------------------------------

    def embed(self, tensor: np.ndarray) -> np.ndarray:
        """Embed one preprocessed (H, W, 3) tensor into a 1-D vector."""
        return self.embed_batch([tensor])[0]

    def embed_batch(self, tensors: Sequence[np.ndarray]) -> np.ndarray:
        """Embed preprocessed tensors into an (N, embedding_dim) matrix."""
        backbone = self._require()
        if len(tensors) == 0:
            return np.zeros((0, backbone.embedding_dim), dtype=np.float32)
        for t in tensors:
            if t.ndim != 3 or t.shape[2] != IMAGE_CHANNELS:
                msg = f"Expected an (H, W, 3) tensor, got shape {t.shape}"
                raise ValueError(msg)

        batch = np.stack(tensors).astype(np.float32, copy=False)
        with torch.inference_mode():
            x = torch.from_numpy(batch).permute(0, 3, 1, 2).to(self.device)
            if self.config.normalize_input:
                x = (x - self._mean) / self._std
            features = backbone.trunk(x)
            return features.reshape(len(tensors), -1).cpu().numpy().astype(np.float32)

    def logits(self, embeddings: np.ndarray) -> np.ndarray:
        """Apply the backbone's own classification layer to embeddings."""
        backbone = self._require()
        with torch.inference_mode():
            x = torch.from_numpy(np.atleast_2d(embeddings).astype(np.float32))
            return backbone.logit_layer(x.to(self.device)).cpu().numpy()


_SHARED: dict[tuple[str, str | None], FeatureExtractor] = {}
_SHARED_LOCK = threading.Lock()


def get_extractor(
    config: ExtractorConfig | None = None, device: str | None = None
) -> FeatureExtractor:
    """Return the process-wide extractor for a configuration, loading it once."""
    config = config or ExtractorConfig()
    key = (config.model_dump_json(), device)
    with _SHARED_LOCK:
        extractor = _SHARED.get(key)
        if extractor is None:
            extractor = FeatureExtractor(config, device=device)
            _SHARED[key] = extractor
    return extractor.load()
