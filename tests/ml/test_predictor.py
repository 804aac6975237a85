"""Tests for the inference service."""

from __future__ import annotations

import asyncio
import io
import shutil
from pathlib import Path
from unittest.mock import patch

import numpy as np
import pytest
import torch
from PIL import Image

from acnelens.core.errors import (
    AnalysisError,
    DecodeError,
    ModelLoadError,
    ModelNotReadyError,
)
from acnelens.core.models import LabelSet
from acnelens.ml.config import ExtractorConfig, InferenceConfig
from acnelens.ml.engine.predictor import (
    InferenceService,
    RawExtractorPassthrough,
    ServiceState,
    TrainedHead,
)
from acnelens.ml.registry import register_model
from acnelens.utils.image import ImagePreprocessor


def _png(color: tuple[int, int, int] = (230, 40, 40), size: int = 36) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (size, size), color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def ready_service(trained_artifact) -> InferenceService:
    _, output_dir = trained_artifact
    service = InferenceService(InferenceConfig(artifact_path=output_dir, device="cpu"))
    service.load_sync()
    return service


class TestReadiness:
    """Test the loading state machine."""

    def test_analyze_before_load(self, trained_artifact):
        _, output_dir = trained_artifact
        service = InferenceService(InferenceConfig(artifact_path=output_dir))
        assert service.state is ServiceState.UNLOADED
        with pytest.raises(ModelNotReadyError) as exc_info:
            service.analyze(_png())
        assert exc_info.value.error_code == "NOT_READY"

    def test_load_sync(self, ready_service, trained_artifact):
        _, output_dir = trained_artifact
        assert ready_service.state is ServiceState.READY
        assert ready_service.is_ready
        status = ready_service.status()
        assert status["state"] == "ready"
        assert status["classifier"] == TrainedHead.kind
        assert status["artifact"] == str(output_dir)
        assert status["classes"] == list(LabelSet.acne().names)

    def test_missing_artifact_fails(self, tmp_path: Path):
        service = InferenceService(InferenceConfig(artifact_path=tmp_path / "none"))
        with pytest.raises(ModelLoadError) as exc_info:
            service.load_sync()
        assert exc_info.value.error_code == "ARTIFACT_NOT_FOUND"
        assert service.state is ServiceState.FAILED
        assert "passthrough is disabled" in service.error

        with pytest.raises(ModelNotReadyError, match="failed to load"):
            service.analyze(_png())

    def test_failed_load_can_be_retried(self, trained_artifact, tmp_path: Path):
        _, output_dir = trained_artifact
        target = tmp_path / "later"
        service = InferenceService(InferenceConfig(artifact_path=target, device="cpu"))
        with pytest.raises(ModelLoadError):
            service.load_sync()

        shutil.copytree(output_dir, target)
        service.load_sync()

        assert service.state is ServiceState.READY
        assert service.error is None

    def test_unexpected_load_error_wrapped(self, trained_artifact):
        _, output_dir = trained_artifact
        service = InferenceService(InferenceConfig(artifact_path=output_dir))
        with patch(
            "acnelens.ml.engine.predictor.load_model", side_effect=RuntimeError("oom")
        ):
            with pytest.raises(ModelLoadError) as exc_info:
                service.load_sync()
        assert exc_info.value.error_code == "LOAD_FAILED"
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert service.state is ServiceState.FAILED

    def test_async_load_shared(self, trained_artifact):
        """Concurrent load() callers share a single load."""
        _, output_dir = trained_artifact
        service = InferenceService(InferenceConfig(artifact_path=output_dir, device="cpu"))

        async def run():
            with patch.object(
                service, "_build_models", wraps=service._build_models
            ) as mock_build:
                await asyncio.gather(service.load(), service.load(), service.load())
                return mock_build.call_count

        assert asyncio.run(run()) == 1
        assert service.state is ServiceState.READY

    def test_async_load_failure_then_retry(self, trained_artifact, tmp_path: Path):
        _, output_dir = trained_artifact
        target = tmp_path / "async-later"
        service = InferenceService(InferenceConfig(artifact_path=target, device="cpu"))

        async def first():
            with pytest.raises(ModelLoadError):
                await service.load()

        asyncio.run(first())
        assert service.state is ServiceState.FAILED

        shutil.copytree(output_dir, target)
        asyncio.run(service.load())
        assert service.state is ServiceState.READY

    def test_width_mismatch(self, trained_artifact):
        """A 1024-d extractor cannot feed a head trained on 48-d embeddings."""
        _, output_dir = trained_artifact
        config = InferenceConfig(
            artifact_path=output_dir,
            extractor=ExtractorConfig(backbone="mobilenet_v3_small", pretrained=False),
            device="cpu",
        )
        service = InferenceService(config)
        with pytest.raises(ModelLoadError) as exc_info:
            service.load_sync()
        assert exc_info.value.error_code == "DIMENSION_MISMATCH"

    def test_resolves_through_registry(self, trained_artifact, tmp_path: Path):
        _, output_dir = trained_artifact
        registry = tmp_path / "registry.json"
        register_model("acne", "1", output_dir, registry_path=registry)
        service = InferenceService(
            InferenceConfig(registry_path=registry, model_name="acne", device="cpu")
        )
        service.load_sync()
        assert service.status()["artifact"] == str(output_dir.resolve())


class TestAnalyze:
    """Test classification results."""

    def test_result_shape(self, ready_service):
        result = ready_service.analyze(_png())
        probs = [p.probability for p in result.all_predictions]

        assert len(probs) == 7
        assert probs == sorted(probs, reverse=True)
        assert sum(probs) == pytest.approx(100.0, abs=1e-3)
        assert {p.class_name for p in result.all_predictions} == set(LabelSet.acne().names)
        assert result.top_prediction == result.all_predictions[0]

    def test_matches_in_memory_model(self, ready_service, trained_artifact, extractor):
        """Round trip: persisted and in-memory heads agree on an image."""
        result, _ = trained_artifact
        tensor = ImagePreprocessor().preprocess(_png((40, 200, 60)))
        embedding = extractor.embed(tensor)
        with torch.no_grad():
            expected = result.model(torch.from_numpy(embedding[None]))[0].numpy()

        served = ready_service.analyze(_png((40, 200, 60)))

        by_name = {p.class_name: p.probability for p in served.all_predictions}
        for i, name in enumerate(LabelSet.acne().names):
            assert by_name[name] == pytest.approx(expected[i] * 100, abs=1e-3)

    def test_classifies_training_colors(self, ready_service):
        assert ready_service.analyze(_png((230, 40, 40))).top_prediction.class_name == (
            "whitehead"
        )
        assert ready_service.analyze(_png((50, 60, 220))).top_prediction.class_name == (
            "papule"
        )

    def test_accepts_array_and_path(self, ready_service, tmp_path: Path):
        path = tmp_path / "lesion.png"
        path.write_bytes(_png())
        array = np.asarray(Image.open(path))

        from_path = ready_service.analyze(path)
        from_array = ready_service.analyze(array)

        assert from_path.top_prediction.class_name == from_array.top_prediction.class_name

    def test_decode_failure_isolated(self, ready_service):
        with pytest.raises(AnalysisError) as exc_info:
            ready_service.analyze(b"not an image")
        assert isinstance(exc_info.value.__cause__, DecodeError)
        assert exc_info.value.error_code == "DECODE_FAILED"

        assert ready_service.state is ServiceState.READY
        assert ready_service.analyze(_png()).all_predictions

    def test_internal_failure_isolated(self, ready_service):
        source = ready_service._models.source
        with patch.object(source, "predict_proba", side_effect=RuntimeError("boom")):
            with pytest.raises(AnalysisError) as exc_info:
                ready_service.analyze(_png())
        assert exc_info.value.error_code == "ANALYSIS_FAILED"
        assert ready_service.is_ready
        assert ready_service.analyze(_png()).all_predictions

    def test_analyze_async(self, ready_service):
        result = asyncio.run(ready_service.analyze_async(_png()))
        assert len(result.all_predictions) == 7


class TestPassthrough:
    """Test the raw extractor classifier source."""

    def test_used_only_when_allowed(self, tmp_path: Path, extractor_config):
        config = InferenceConfig(
            artifact_path=tmp_path / "none",
            allow_passthrough=True,
            extractor=extractor_config,
            device="cpu",
        )
        service = InferenceService(config)
        service.load_sync()

        assert service.status()["classifier"] == RawExtractorPassthrough.kind
        result = service.analyze(_png())
        names = [p.class_name for p in result.all_predictions]
        assert sorted(names) == sorted(
            ["apple (0)", "banana", "apple (2)", "cherry", "date"]
        )
        assert result.total_probability == pytest.approx(100.0, abs=1e-3)

    def test_artifact_preferred_over_passthrough(
        self, trained_artifact, extractor_config
    ):
        _, output_dir = trained_artifact
        service = InferenceService(
            InferenceConfig(
                artifact_path=output_dir,
                allow_passthrough=True,
                extractor=extractor_config,
                device="cpu",
            )
        )
        service.load_sync()
        assert service.status()["classifier"] == TrainedHead.kind

    def test_stale_registry_entry_falls_back(self, tmp_path: Path, extractor_config):
        """A registered directory that was deleted counts as no artifact."""
        registry = tmp_path / "registry.json"
        register_model("acne", "1", tmp_path / "deleted", registry_path=registry)
        service = InferenceService(
            InferenceConfig(
                registry_path=registry,
                model_name="acne",
                allow_passthrough=True,
                extractor=extractor_config,
                device="cpu",
            )
        )
        service.load_sync()

        assert service.state is ServiceState.READY
        assert service.status()["classifier"] == RawExtractorPassthrough.kind
        assert service.status()["artifact"] is None

    def test_stale_registry_entry_without_passthrough(self, tmp_path: Path):
        registry = tmp_path / "registry.json"
        register_model("acne", "1", tmp_path / "deleted", registry_path=registry)
        service = InferenceService(
            InferenceConfig(registry_path=registry, model_name="acne", device="cpu")
        )
        with pytest.raises(ModelLoadError) as exc_info:
            service.load_sync()
        assert exc_info.value.error_code == "ARTIFACT_NOT_FOUND"
        assert "passthrough is disabled" in str(exc_info.value)
