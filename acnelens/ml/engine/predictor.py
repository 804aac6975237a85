"""Inference service: readiness gate, one-time loading and ``analyze``."""

from __future__ import annotations

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

import numpy as np
import torch

from acnelens.core.constants import IMAGE_SIZE, RESIZE_INTERPOLATION
from acnelens.core.errors import (
    AnalysisError,
    DecodeError,
    ModelLoadError,
    ModelNotReadyError,
)
from acnelens.core.models import LabelSet, PredictionResult
from acnelens.ml.artifact import ClassifierHandle, load_model
from acnelens.ml.config import ExtractorConfig, InferenceConfig
from acnelens.ml.extractor import FeatureExtractor
from acnelens.ml.registry import resolve_model
from acnelens.utils.image import ImageInput, ImagePreprocessor

logger = logging.getLogger(__name__)


class ServiceState(str, Enum):
    """Lifecycle of the inference service."""

    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


# -- Classifier sources -----------------------------------------------------


class ClassifierSource(ABC):
    """Maps one embedding to a probability vector over ``label_set``."""

    kind: str = "abstract"

    @property
    @abstractmethod
    def label_set(self) -> LabelSet:
        """Classes the probability vector is aligned with."""

    @property
    @abstractmethod
    def input_dim(self) -> int:
        """Embedding width the source accepts."""

    @abstractmethod
    def predict_proba(self, embedding: np.ndarray) -> np.ndarray:
        """Return a 1-D probability vector."""


class TrainedHead(ClassifierSource):
    """Classifier head loaded from a persisted artifact."""

    kind = "trained_head"

    def __init__(self, handle: ClassifierHandle) -> None:
        self.handle = handle

    @property
    def label_set(self) -> LabelSet:
        return self.handle.label_set

    @property
    def input_dim(self) -> int:
        return self.handle.input_dim

    def predict_proba(self, embedding: np.ndarray) -> np.ndarray:
        return self.handle.predict_proba(embedding)[0]


class RawExtractorPassthrough(ClassifierSource):
    """The backbone's own classification layer over its category names."""

    kind = "raw_extractor_passthrough"

    def __init__(self, extractor: FeatureExtractor) -> None:
        self.extractor = extractor
        categories = extractor.categories
        # Some released category lists repeat names
        counts = Counter(categories)
        self._label_set = LabelSet(
            names=tuple(
                f"{name} ({i})" if counts[name] > 1 else name
                for i, name in enumerate(categories)
            ),
            version=extractor.config.backbone,
        )

    @property
    def label_set(self) -> LabelSet:
        return self._label_set

    @property
    def input_dim(self) -> int:
        return self.extractor.embedding_dim

    def predict_proba(self, embedding: np.ndarray) -> np.ndarray:
        logits = torch.from_numpy(self.extractor.logits(embedding))
        return torch.softmax(logits, dim=-1).numpy()[0]


@dataclass
class _LoadedModels:
    preprocessor: ImagePreprocessor
    extractor: FeatureExtractor
    source: ClassifierSource
    artifact_path: Path | None = None


def _preprocessor_from(record: dict[str, Any]) -> ImagePreprocessor:
    try:
        return ImagePreprocessor(
            image_size=int(record.get("image_size", IMAGE_SIZE)),
            interpolation=str(record.get("interpolation", RESIZE_INTERPOLATION)),
        )
    except (TypeError, ValueError) as e:
        msg = f"Artifact preprocessing record is not usable: {record}"
        raise ModelLoadError(msg, "INVALID_PREPROCESSING") from e


# -- Service ----------------------------------------------------------------


class InferenceService:
    """Load the extractor and classifier once, then serve ``analyze`` calls.

    ``analyze`` fails fast with :class:`ModelNotReadyError` until loading has
    succeeded. A failed load leaves the service in ``FAILED`` with the error
    message retained and can be retried. After loading, ``analyze`` is
    reentrant: every call owns its arrays and tensors.
    """

    def __init__(self, config: InferenceConfig | None = None) -> None:
        self.config = config or InferenceConfig()
        self._state = ServiceState.UNLOADED
        self._models: _LoadedModels | None = None
        self._load_error: ModelLoadError | None = None
        self._load_lock = threading.Lock()
        self._load_task: asyncio.Task | None = None

    # -- State --------------------------------------------------------------

    @property
    def state(self) -> ServiceState:
        """Current lifecycle state."""
        return self._state

    @property
    def is_ready(self) -> bool:
        """Whether ``analyze`` can be called."""
        return self._state is ServiceState.READY

    @property
    def error(self) -> str | None:
        """Message of the last load failure, if any."""
        return None if self._load_error is None else str(self._load_error)

    @property
    def label_set(self) -> LabelSet | None:
        """Classes reported by ``analyze`` once ready."""
        return None if self._models is None else self._models.source.label_set

    def status(self) -> dict[str, Any]:
        """Health summary."""
        models = self._models
        return {
            "state": self._state.value,
            "error": self.error,
            "classifier": None if models is None else models.source.kind,
            "artifact": None
            if models is None or models.artifact_path is None
            else str(models.artifact_path),
            "classes": None if models is None else list(models.source.label_set.names),
        }

    # -- Loading ------------------------------------------------------------

    def start_loading(self) -> asyncio.Task:
        """Schedule loading on the running loop without waiting for it."""
        if self._load_task is None or self._load_task.done():
            if self._state is not ServiceState.READY:
                self._state = ServiceState.LOADING
            self._load_task = asyncio.create_task(self._run_load())
        return self._load_task

    async def load(self) -> None:
        """Load models once; concurrent callers share one loading task."""
        if self._state is ServiceState.READY:
            return
        await asyncio.shield(self.start_loading())
        if self._state is ServiceState.FAILED and self._load_error is not None:
            raise self._load_error

    async def _run_load(self) -> None:
        try:
            await asyncio.to_thread(self._load_blocking)
        except ModelLoadError:
            # State and error were recorded by _load_blocking
            logger.debug("Asynchronous model load failed")

    def load_sync(self) -> None:
        """Blocking variant of :meth:`load` for scripts and tests."""
        self._load_blocking()

    def _load_blocking(self) -> None:
        with self._load_lock:
            if self._state is ServiceState.READY:
                return
            self._state = ServiceState.LOADING
            self._load_error = None
            try:
                models = self._build_models()
            except ModelLoadError as e:
                self._fail(e)
                raise
            except Exception as e:
                msg = f"Model failed to load: {e}"
                error = ModelLoadError(msg, "LOAD_FAILED")
                self._fail(error)
                raise error from e
            self._models = models
            self._state = ServiceState.READY
        logger.info(
            "Inference service ready (%s, %d classes)",
            models.source.kind,
            len(models.source.label_set),
        )

    def _fail(self, error: ModelLoadError) -> None:
        self._load_error = error
        self._models = None
        self._state = ServiceState.FAILED
        logger.error("Model failed to load: %s", error)

    def _resolve_artifact(self) -> Path | None:
        cfg = self.config
        if cfg.artifact_path is not None:
            path = cfg.artifact_path
        elif cfg.registry_path is not None:
            path = resolve_model(
                cfg.model_name, cfg.model_version, registry_path=cfg.registry_path
            )
        else:
            path = None
        if path is not None and not path.exists():
            logger.warning("Model artifact %s does not exist", path)
            return None
        return path

    def _build_models(self) -> _LoadedModels:
        cfg = self.config
        artifact_path = self._resolve_artifact()

        if artifact_path is None:
            if not cfg.allow_passthrough:
                msg = (
                    f"No model artifact available for {cfg.model_name!r} and "
                    "passthrough is disabled"
                )
                raise ModelLoadError(msg, "ARTIFACT_NOT_FOUND")
            extractor = FeatureExtractor(
                cfg.extractor or ExtractorConfig(), device=cfg.device
            ).load()
            logger.warning(
                "No trained classifier found; serving the %s backbone's own classes",
                extractor.config.backbone,
            )
            return _LoadedModels(
                preprocessor=ImagePreprocessor(),
                extractor=extractor,
                source=RawExtractorPassthrough(extractor),
            )

        handle = load_model(artifact_path, device=cfg.device)
        extractor = FeatureExtractor(
            cfg.extractor or handle.extractor_config, device=cfg.device
        ).load()
        if extractor.embedding_dim != handle.input_dim:
            msg = (
                f"Extractor {extractor.config.backbone} produces "
                f"{extractor.embedding_dim}-d embeddings but the classifier at "
                f"{artifact_path} expects {handle.input_dim}"
            )
            raise ModelLoadError(msg, "DIMENSION_MISMATCH")
        return _LoadedModels(
            preprocessor=_preprocessor_from(handle.preprocessing),
            extractor=extractor,
            source=TrainedHead(handle),
            artifact_path=artifact_path,
        )

    # -- Inference ----------------------------------------------------------

    def analyze(self, image: ImageInput) -> PredictionResult:
        """Classify one image into a ranked prediction result."""
        models = self._models
        if self._state is not ServiceState.READY or models is None:
            msg = f"Model is not ready (state={self._state.value})"
            if self._state is ServiceState.FAILED and self._load_error is not None:
                msg = f"Model failed to load: {self._load_error}"
            raise ModelNotReadyError(msg, "NOT_READY")

        try:
            tensor = models.preprocessor.preprocess(image)
            embedding = models.extractor.embed(tensor)
            probabilities = models.source.predict_proba(embedding)
            return PredictionResult.from_probabilities(
                probabilities, models.source.label_set
            )
        except DecodeError as e:
            msg = f"Could not decode image: {e}"
            raise AnalysisError(msg, "DECODE_FAILED") from e
        except Exception as e:
            logger.exception("Analysis failed")
            msg = f"Analysis failed: {e}"
            raise AnalysisError(msg, "ANALYSIS_FAILED") from e

    async def analyze_async(self, image: ImageInput) -> PredictionResult:
        """Run :meth:`analyze` in a worker thread."""
        return await asyncio.to_thread(self.analyze, image)
