"""Machine Learning submodule.

Provides the frozen feature extractor, embedding datasets, the trainable
classifier head, its training workflow, persisted artifacts and the
inference service that ties them together.
"""

from acnelens.ml.artifact import ClassifierHandle, load_model, save_artifact
from acnelens.ml.base import EpochMetrics, EvalReport, TrainedModel
from acnelens.ml.config import (
    DataConfig,
    ExtractorConfig,
    HeadArchitecture,
    HeadConfig,
    InferenceConfig,
    PipelineConfig,
    TrainConfig,
)
from acnelens.ml.data import DatasetBuilder, EmbeddingDataset, build_dataset
from acnelens.ml.engine.predictor import (
    ClassifierSource,
    InferenceService,
    RawExtractorPassthrough,
    ServiceState,
    TrainedHead,
)
from acnelens.ml.engine.trainer import HeadTrainer, evaluate, train
from acnelens.ml.extractor import FeatureExtractor, get_extractor, register_backbone
from acnelens.ml.models import ClassifierHead, build_head, count_parameters
from acnelens.ml.registry import list_models, register_model, resolve_model

__all__ = [
    # Configs
    "DataConfig",
    "ExtractorConfig",
    "HeadConfig",
    "HeadArchitecture",
    "TrainConfig",
    "InferenceConfig",
    "PipelineConfig",
    # Components
    "FeatureExtractor",
    "get_extractor",
    "register_backbone",
    "EmbeddingDataset",
    "DatasetBuilder",
    "build_dataset",
    "ClassifierHead",
    "build_head",
    "count_parameters",
    # Training
    "HeadTrainer",
    "train",
    "evaluate",
    "EpochMetrics",
    "EvalReport",
    "TrainedModel",
    # Artifacts
    "ClassifierHandle",
    "save_artifact",
    "load_model",
    "register_model",
    "resolve_model",
    "list_models",
    # Inference
    "InferenceService",
    "ServiceState",
    "ClassifierSource",
    "TrainedHead",
    "RawExtractorPassthrough",
]
