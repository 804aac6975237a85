"""Training and evaluation result structures."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from acnelens.core.models import LabelSet
from acnelens.ml.models import ClassifierHead


@dataclass
class EpochMetrics:
    """Loss and accuracy for one training epoch."""

    epoch: int
    train_loss: float
    train_accuracy: float
    val_loss: float | None = None
    val_accuracy: float | None = None


@dataclass
class EvalReport:
    """Evaluation of a head on a set of labeled embeddings."""

    loss: float
    accuracy: float
    num_samples: int
    per_class: dict[str, float | None]  # None when the class has no samples
    confusion: list[list[int]]  # rows: true class, columns: predicted class

    def summary(self) -> dict[str, Any]:
        """JSON-friendly view of the report."""
        return asdict(self)


@dataclass
class TrainedModel:
    """Outcome of a training run."""

    model: ClassifierHead
    label_set: LabelSet
    history: list[EpochMetrics]
    train_report: EvalReport
    val_report: EvalReport | None = None
    best_epoch: int | None = None
    artifact_path: Path | None = None
    params: dict[str, Any] = field(default_factory=dict)

    @property
    def train_accuracy(self) -> float:
        """Accuracy of the final model on the training split."""
        return self.train_report.accuracy

    def metrics(self) -> dict[str, Any]:
        """Metrics persisted alongside the artifact."""
        return {
            "best_epoch": self.best_epoch,
            "epochs_run": len(self.history),
            "train": self.train_report.summary(),
            "val": self.val_report.summary() if self.val_report else None,
            "history": [asdict(m) for m in self.history],
        }
