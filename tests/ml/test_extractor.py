"""Tests for the frozen feature extractor."""

from __future__ import annotations

import threading

import numpy as np
import pytest

from acnelens.core.errors import ModelLoadError
from acnelens.ml.config import ExtractorConfig
from acnelens.ml.extractor import (
    _BACKBONES,
    FeatureExtractor,
    available_backbones,
    get_extractor,
    register_backbone,
)

TINY = "tiny_pool"


def _tensor(value: float = 0.5, size: int = 32) -> np.ndarray:
    return np.full((size, size, 3), value, dtype=np.float32)


class TestBackboneRegistry:
    """Test backbone registration."""

    def test_builtin_backbones(self):
        names = available_backbones()
        for name in ("mobilenet_v2", "mobilenet_v3_small", "mobilenet_v3_large"):
            assert name in names

    def test_unknown_backbone(self):
        extractor = FeatureExtractor(ExtractorConfig(backbone="resnet9000"), "cpu")
        with pytest.raises(ModelLoadError, match="Unknown backbone") as exc_info:
            extractor.load()
        assert exc_info.value.error_code == "UNKNOWN_BACKBONE"
        assert extractor.is_loaded is False

    def test_factory_failure_wrapped(self):
        def broken(_cfg):
            msg = "weights file truncated"
            raise RuntimeError(msg)

        register_backbone("broken_backbone", broken)
        extractor = FeatureExtractor(ExtractorConfig(backbone="broken_backbone"), "cpu")
        with pytest.raises(ModelLoadError, match="truncated") as exc_info:
            extractor.load()
        assert exc_info.value.error_code == "BACKBONE_LOAD_FAILED"
        assert isinstance(exc_info.value.__cause__, RuntimeError)


class TestFeatureExtractor:
    """Test embedding extraction with the test backbone."""

    def test_lazy_load(self, extractor):
        assert extractor.is_loaded is False
        embedding = extractor.embed(_tensor())
        assert extractor.is_loaded is True
        assert embedding.shape == (48,)
        assert embedding.dtype == np.float32

    def test_embedding_dim(self, extractor):
        assert extractor.embedding_dim == 48

    def test_deterministic(self, extractor_config):
        """Same input gives the same output across calls and instances."""
        first = FeatureExtractor(extractor_config, "cpu")
        second = FeatureExtractor(extractor_config, "cpu")
        tensor = np.random.default_rng(1).random((40, 40, 3), dtype=np.float32)
        np.testing.assert_array_equal(first.embed(tensor), first.embed(tensor))
        np.testing.assert_array_equal(first.embed(tensor), second.embed(tensor))

    def test_embed_batch(self, extractor):
        batch = extractor.embed_batch([_tensor(0.1), _tensor(0.9)])
        assert batch.shape == (2, 48)
        np.testing.assert_allclose(batch[0], extractor.embed(_tensor(0.1)))

    def test_embed_batch_empty(self, extractor):
        assert extractor.embed_batch([]).shape == (0, 48)

    def test_rejects_wrong_shape(self, extractor):
        with pytest.raises(ValueError, match=r"\(H, W, 3\)"):
            extractor.embed(np.zeros((32, 32), dtype=np.float32))

    def test_normalization_configurable(self):
        """ImageNet normalization is applied inside the extractor."""
        normalized = FeatureExtractor(ExtractorConfig(backbone=TINY), "cpu")
        raw = FeatureExtractor(
            ExtractorConfig(backbone=TINY, normalize_input=False), "cpu"
        )
        tensor = _tensor(0.5)
        np.testing.assert_allclose(raw.embed(tensor), 0.5, atol=1e-6)
        assert not np.allclose(normalized.embed(tensor), raw.embed(tensor))

    def test_parameters_frozen(self, extractor):
        extractor.load()
        backbone = extractor._backbone
        assert all(not p.requires_grad for p in backbone.logit_layer.parameters())
        assert backbone.logit_layer.training is False

    def test_load_once_under_concurrency(self, extractor_config):
        calls = []

        def counting(cfg):
            calls.append(cfg)
            return _BACKBONES[TINY](cfg)

        register_backbone("counting_backbone", counting)
        extractor = FeatureExtractor(
            ExtractorConfig(backbone="counting_backbone", pretrained=False), "cpu"
        )
        threads = [threading.Thread(target=extractor.load) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(calls) == 1
        extractor.reload()
        assert len(calls) == 2

    def test_logits_and_categories(self, extractor):
        logits = extractor.logits(extractor.embed(_tensor()))
        assert logits.shape == (1, len(extractor.categories))

    def test_describe(self, extractor):
        record = extractor.describe()
        assert record["backbone"] == TINY
        assert record["embedding_dim"] == 48
        assert ExtractorConfig.model_validate(record) == extractor.config

    def test_shared_extractor(self, extractor_config):
        first = get_extractor(extractor_config, device="cpu")
        second = get_extractor(extractor_config, device="cpu")
        assert first is second
        assert first.is_loaded


class TestTorchvisionBackbones:
    """Builtin backbones with random init, so no weights are downloaded."""

    @pytest.mark.parametrize(
        ("backbone", "dim"),
        [("mobilenet_v3_small", 1024), ("mobilenet_v2", 1280)],
    )
    def test_embedding_width(self, backbone, dim):
        config = ExtractorConfig(backbone=backbone, pretrained=False, seed=3)
        extractor = FeatureExtractor(config, "cpu")
        embedding = extractor.embed(_tensor(0.3, size=224))
        assert extractor.embedding_dim == dim
        assert embedding.shape == (dim,)
        assert len(extractor.categories) == 1000

    def test_seeded_random_init_is_reproducible(self):
        config = ExtractorConfig(backbone="mobilenet_v3_small", pretrained=False)
        tensor = np.random.default_rng(0).random((224, 224, 3), dtype=np.float32)
        first = FeatureExtractor(config, "cpu").embed(tensor)
        second = FeatureExtractor(config, "cpu").embed(tensor)
        np.testing.assert_allclose(first, second, rtol=1e-6, atol=1e-6)
