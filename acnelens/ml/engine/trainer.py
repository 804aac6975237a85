"""Training workflow for classifier heads on precomputed embeddings."""

from __future__ import annotations

import copy
import logging
import math
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import numpy as np
import torch
import torch.nn.functional as F
from torch.utils.data import DataLoader, TensorDataset

from acnelens.core.errors import EmptyDatasetError, TrainingError
from acnelens.ml.artifact import save_artifact
from acnelens.ml.base import EpochMetrics, EvalReport, TrainedModel
from acnelens.ml.config import TrainConfig
from acnelens.ml.data import EmbeddingDataset
from acnelens.ml.extractor import FeatureExtractor
from acnelens.ml.models import ClassifierHead, count_parameters
from acnelens.utils.image import ImagePreprocessor
from acnelens.utils.system import SystemUtils

logger = logging.getLogger(__name__)

EVAL_BATCH_SIZE = 256
MIN_BATCH_NORM_SAMPLES = 2

_ACTIVE_RUNS: set[object] = set()
_ACTIVE_LOCK = threading.Lock()


@contextmanager
def _exclusive_run(*keys: object) -> Iterator[None]:
    """Hold the model and output path for the duration of one run."""
    with _ACTIVE_LOCK:
        busy = [k for k in keys if k in _ACTIVE_RUNS]
        if busy:
            msg = f"A training run is already in progress for {busy}"
            raise TrainingError(msg, "RUN_IN_PROGRESS")
        _ACTIVE_RUNS.update(keys)
    try:
        yield
    finally:
        with _ACTIVE_LOCK:
            _ACTIVE_RUNS.difference_update(keys)


def _tensors(dataset: EmbeddingDataset) -> TensorDataset:
    return TensorDataset(
        torch.from_numpy(dataset.features), torch.from_numpy(dataset.labels)
    )


@torch.no_grad()
def evaluate(
    model: ClassifierHead,
    dataset: EmbeddingDataset,
    device: str | torch.device | None = None,
) -> EvalReport:
    """Compute loss, accuracy, per-class accuracy and confusion matrix."""
    if len(dataset) == 0:
        msg = "Cannot evaluate on an empty dataset"
        raise ValueError(msg)
    device = torch.device(device) if device is not None else next(
        model.parameters()
    ).device
    model.eval()

    num_classes = model.num_classes
    confusion = np.zeros((num_classes, num_classes), dtype=np.int64)
    total_loss = 0.0
    for x, y in DataLoader(_tensors(dataset), batch_size=EVAL_BATCH_SIZE):
        x, y = x.to(device), y.to(device)
        logits = model.logits(x)
        total_loss += float(F.cross_entropy(logits, y, reduction="sum").item())
        preds = logits.argmax(dim=-1).cpu().numpy()
        np.add.at(confusion, (y.cpu().numpy(), preds), 1)

    support = confusion.sum(axis=1)
    per_class = {
        name: (float(confusion[i, i] / support[i]) if support[i] else None)
        for i, name in enumerate(dataset.label_set.names)
    }
    return EvalReport(
        loss=total_loss / len(dataset),
        accuracy=float(np.trace(confusion) / len(dataset)),
        num_samples=len(dataset),
        per_class=per_class,
        confusion=confusion.tolist(),
    )


class HeadTrainer:
    """Train a classifier head with a validation split and persist the result."""

    def __init__(
        self,
        model: ClassifierHead,
        config: TrainConfig | None = None,
        extractor: FeatureExtractor | None = None,
        preprocessor: ImagePreprocessor | None = None,
    ) -> None:
        self.model = model
        self.config = config or TrainConfig()
        self.extractor = extractor
        self.preprocessor = preprocessor or ImagePreprocessor()
        self.device = SystemUtils.select_device(self.config.device)

    def _validate(self, dataset: EmbeddingDataset) -> None:
        if len(dataset) == 0:
            msg = "Training dataset is empty"
            raise EmptyDatasetError(msg, "NO_SAMPLES")
        if dataset.embedding_dim != self.model.input_dim:
            msg = (
                f"Dataset embedding dimension {dataset.embedding_dim} does not "
                f"match model input dimension {self.model.input_dim}"
            )
            raise TrainingError(msg, "DIMENSION_MISMATCH")
        if len(dataset.label_set) != self.model.num_classes:
            msg = (
                f"Dataset has {len(dataset.label_set)} classes but the model "
                f"outputs {self.model.num_classes}"
            )
            raise TrainingError(msg, "LABEL_MISMATCH")

    def _build_optimizer(self) -> torch.optim.Optimizer:
        params = [p for p in self.model.parameters() if p.requires_grad]
        cfg = self.config
        if cfg.optimizer == "adamw":
            return torch.optim.AdamW(
                params, lr=cfg.learning_rate, weight_decay=cfg.weight_decay
            )
        if cfg.optimizer == "sgd":
            return torch.optim.SGD(
                params,
                lr=cfg.learning_rate,
                momentum=0.9,
                weight_decay=cfg.weight_decay,
            )
        return torch.optim.Adam(
            params, lr=cfg.learning_rate, weight_decay=cfg.weight_decay
        )

    def _make_loader(self, train: EmbeddingDataset) -> DataLoader:
        batch_size = self.config.batch_size
        uses_batch_norm = self.model.architecture.batch_norm
        if uses_batch_norm and len(train) < MIN_BATCH_NORM_SAMPLES:
            msg = "Batch normalization needs at least 2 training samples"
            raise TrainingError(msg, "TOO_FEW_SAMPLES")
        if uses_batch_norm and batch_size < MIN_BATCH_NORM_SAMPLES:
            msg = f"Batch normalization needs batch_size >= 2, got {batch_size}"
            raise TrainingError(msg, "BATCH_TOO_SMALL")
        # A trailing batch of one sample cannot be batch-normalized
        drop_last = uses_batch_norm and len(train) % batch_size == 1
        return DataLoader(
            _tensors(train),
            batch_size=batch_size,
            shuffle=True,
            drop_last=drop_last,
            generator=torch.Generator().manual_seed(self.config.seed),
        )

    def _step(
        self, optimizer: torch.optim.Optimizer, x: torch.Tensor, y: torch.Tensor
    ) -> tuple[float, int]:
        """Train one mini-batch; returns summed loss and correct count."""
        x, y = x.to(self.device), y.to(self.device)
        logits = self.model.logits(x)
        targets = F.one_hot(y, num_classes=self.model.num_classes).float()
        loss = F.cross_entropy(logits, targets)
        if not torch.isfinite(loss):
            msg = f"Training diverged: loss is {loss.item()}"
            raise TrainingError(msg, "NON_FINITE_LOSS")

        optimizer.zero_grad(set_to_none=True)
        loss.backward()
        if self.config.clip_grad_norm:
            torch.nn.utils.clip_grad_norm_(
                self.model.parameters(), self.config.clip_grad_norm
            )
        optimizer.step()
        correct = int((logits.argmax(dim=-1) == y).sum().item())
        return float(loss.detach().item()) * len(y), correct

    def _run_epoch(
        self, optimizer: torch.optim.Optimizer, loader: DataLoader
    ) -> tuple[float, float]:
        self.model.train()
        total_loss, total_correct, seen = 0.0, 0, 0
        for x, y in loader:
            loss, correct = self._step(optimizer, x, y)
            total_loss += loss
            total_correct += correct
            seen += len(y)
        return total_loss / max(seen, 1), total_correct / max(seen, 1)

    def fit(
        self, dataset: EmbeddingDataset, output_dir: Path | None = None
    ) -> TrainedModel:
        """Train on ``dataset`` and optionally persist to ``output_dir``."""
        self._validate(dataset)
        if output_dir is not None and self.extractor is None:
            msg = "An extractor is required to persist a trained artifact"
            raise ValueError(msg)
        keys: list[object] = [("model", id(self.model))]
        if output_dir is not None:
            keys.append(("artifact", str(Path(output_dir).resolve())))

        with _exclusive_run(*keys):
            return self._fit(dataset, output_dir)

    def _fit(
        self, dataset: EmbeddingDataset, output_dir: Path | None
    ) -> TrainedModel:
        cfg = self.config
        torch.manual_seed(cfg.seed)
        train_ds, val_ds = dataset.split(cfg.validation_split, seed=cfg.seed)
        logger.info(
            "Training on %d samples, validating on %d (device=%s, params=%s)",
            len(train_ds),
            len(val_ds),
            self.device,
            count_parameters(self.model),
        )

        self.model.to(self.device)
        optimizer = self._build_optimizer()
        loader = self._make_loader(train_ds)

        history: list[EpochMetrics] = []
        best_loss = math.inf
        best_epoch: int | None = None
        best_state: dict | None = None
        stale_epochs = 0

        for epoch in range(1, cfg.epochs + 1):
            train_loss, train_acc = self._run_epoch(optimizer, loader)
            metrics = EpochMetrics(
                epoch=epoch, train_loss=train_loss, train_accuracy=train_acc
            )
            if len(val_ds):
                report = evaluate(self.model, val_ds, self.device)
                metrics.val_loss = report.loss
                metrics.val_accuracy = report.accuracy
            history.append(metrics)
            logger.info(
                "Epoch %s/%s - loss: %.4f - acc: %.4f - val_loss: %s - val_acc: %s",
                epoch,
                cfg.epochs,
                train_loss,
                train_acc,
                "n/a" if metrics.val_loss is None else f"{metrics.val_loss:.4f}",
                "n/a"
                if metrics.val_accuracy is None
                else f"{metrics.val_accuracy:.4f}",
            )

            if metrics.val_loss is None:
                best_epoch = epoch
                continue
            if metrics.val_loss < best_loss:
                best_loss = metrics.val_loss
                best_epoch = epoch
                best_state = copy.deepcopy(self.model.state_dict())
                stale_epochs = 0
            else:
                stale_epochs += 1
            patience = cfg.early_stopping_patience
            if patience is not None and stale_epochs >= patience:
                logger.info(
                    "Early stopping at epoch %s (best epoch %s)", epoch, best_epoch
                )
                break

        if cfg.early_stopping_patience is not None and best_state is not None:
            self.model.load_state_dict(best_state)

        self.model.eval()
        result = TrainedModel(
            model=self.model,
            label_set=dataset.label_set,
            history=history,
            train_report=evaluate(self.model, train_ds, self.device),
            val_report=evaluate(self.model, val_ds, self.device) if len(val_ds) else None,
            best_epoch=best_epoch,
            params=count_parameters(self.model),
        )
        logger.info(
            "Training finished: train_acc=%.4f val_acc=%s",
            result.train_report.accuracy,
            "n/a" if result.val_report is None else f"{result.val_report.accuracy:.4f}",
        )

        if output_dir is not None:
            result.artifact_path = self._persist(result, Path(output_dir))
        return result

    def _persist(self, result: TrainedModel, output_dir: Path) -> Path:
        try:
            return save_artifact(
                result.model,
                result.label_set,
                output_dir,
                extractor=self.extractor.describe(),  # type: ignore[union-attr]
                preprocessing=self.preprocessor.describe(),
                metrics=result.metrics(),
            )
        except (OSError, RuntimeError, ValueError) as e:
            msg = f"Failed to persist model to {output_dir}: {e}"
            raise TrainingError(msg, "PERSIST_FAILED") from e


def train(
    dataset: EmbeddingDataset,
    model: ClassifierHead,
    config: TrainConfig | None = None,
    output_dir: Path | None = None,
    extractor: FeatureExtractor | None = None,
    preprocessor: ImagePreprocessor | None = None,
) -> TrainedModel:
    """Train ``model`` on ``dataset`` and persist it when ``output_dir`` is set."""
    trainer = HeadTrainer(model, config, extractor=extractor, preprocessor=preprocessor)
    return trainer.fit(dataset, output_dir=output_dir)
