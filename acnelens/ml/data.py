"""Embedding datasets built from a labeled image directory tree."""

from __future__ import annotations

import logging
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

from acnelens.core.constants import SUPPORTED_IMAGE_EXTENSIONS
from acnelens.core.errors import EmptyDatasetError
from acnelens.core.models import LabelSet
from acnelens.ml.extractor import FeatureExtractor
from acnelens.utils.image import ImagePreprocessor, ImageUtils
from acnelens.utils.system import SystemUtils

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingDataset:
    """In-memory (features, labels) pair aligned with a label set."""

    features: np.ndarray  # (N, D) float32
    labels: np.ndarray  # (N,) int64
    label_set: LabelSet
    sources: list[Path] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.features = np.asarray(self.features, dtype=np.float32)
        self.labels = np.asarray(self.labels, dtype=np.int64).reshape(-1)
        if self.features.ndim != 2:
            msg = f"features must be a 2-D matrix, got shape {self.features.shape}"
            raise ValueError(msg)
        if self.features.shape[0] != self.labels.shape[0]:
            msg = (
                f"features/labels length mismatch: "
                f"{self.features.shape[0]} != {self.labels.shape[0]}"
            )
            raise ValueError(msg)
        if self.labels.size and (
            self.labels.min() < 0 or self.labels.max() >= len(self.label_set)
        ):
            msg = f"labels must be in [0, {len(self.label_set)})"
            raise ValueError(msg)
        if self.sources and len(self.sources) != len(self.labels):
            msg = "sources must be empty or have one entry per sample"
            raise ValueError(msg)

    def __len__(self) -> int:
        """Number of samples."""
        return int(self.labels.shape[0])

    @property
    def embedding_dim(self) -> int:
        """Width of every embedding row."""
        return int(self.features.shape[1])

    def class_counts(self) -> dict[str, int]:
        """Samples per class name, in label set order."""
        counts = Counter(self.labels.tolist())
        return {name: counts.get(i, 0) for i, name in enumerate(self.label_set.names)}

    def subset(self, indices: np.ndarray) -> EmbeddingDataset:
        """Return the samples at ``indices``."""
        indices = np.asarray(indices, dtype=np.int64)
        return EmbeddingDataset(
            features=self.features[indices],
            labels=self.labels[indices],
            label_set=self.label_set,
            sources=[self.sources[i] for i in indices] if self.sources else [],
        )

    def split(
        self, validation_fraction: float, seed: int = 42
    ) -> tuple[EmbeddingDataset, EmbeddingDataset]:
        """Randomly split into (train, validation), reproducible under ``seed``."""
        if not 0.0 <= validation_fraction < 1.0:
            msg = f"validation_fraction must be in [0, 1), got {validation_fraction}"
            raise ValueError(msg)
        n = len(self)
        n_val = round(n * validation_fraction)
        if validation_fraction > 0 and n > 1:
            n_val = min(max(n_val, 1), n - 1)
        else:
            n_val = 0
        order = np.random.default_rng(seed).permutation(n)
        return self.subset(order[n_val:]), self.subset(order[:n_val])

    def save(self, path: Path) -> Path:
        """Cache the embeddings as a compressed ``.npz`` file."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        np.savez_compressed(
            path,
            features=self.features,
            labels=self.labels,
            label_names=np.array(self.label_set.names),
            label_version=np.array(self.label_set.version),
            sources=np.array([str(s) for s in self.sources]),
        )
        logger.info("Saved %d embeddings to %s", len(self), path)
        return path

    @classmethod
    def load(cls, path: Path) -> EmbeddingDataset:
        """Load embeddings cached with :meth:`save`."""
        with np.load(Path(path), allow_pickle=False) as data:
            return cls(
                features=data["features"],
                labels=data["labels"],
                label_set=LabelSet(
                    names=tuple(str(n) for n in data["label_names"]),
                    version=str(data["label_version"]),
                ),
                sources=[Path(str(s)) for s in data["sources"]],
            )


class DatasetBuilder:
    """Walk ``<root>/<class name>/*`` and embed every image found.

    Classes are looked up by the label set, never by directory listing, so the
    class index always matches the label set order. Missing class directories
    and unreadable files are logged and skipped.
    """

    def __init__(
        self,
        extractor: FeatureExtractor,
        preprocessor: ImagePreprocessor | None = None,
        extensions: frozenset[str] = SUPPORTED_IMAGE_EXTENSIONS,
        num_workers: int | None = None,
    ) -> None:
        self.extractor = extractor
        self.preprocessor = preprocessor or ImagePreprocessor()
        self.extensions = frozenset(ext.lower() for ext in extensions)
        self.num_workers = SystemUtils.embedding_workers(num_workers)

    def collect(self, root_dir: Path, label_set: LabelSet) -> list[tuple[Path, int]]:
        """List (image path, class index) candidates under ``root_dir``."""
        root_dir = Path(root_dir)
        candidates: list[tuple[Path, int]] = []
        for index, class_name in enumerate(label_set.names):
            class_dir = root_dir / class_name
            if not class_dir.is_dir():
                logger.warning("Directory %s does not exist. Skipping...", class_dir)
                continue
            files = sorted(
                p
                for p in class_dir.iterdir()
                if ImageUtils.is_supported_image(p, self.extensions)
            )
            candidates.extend((p, index) for p in files)
        return candidates

    def build(self, root_dir: Path, label_set: LabelSet) -> EmbeddingDataset:
        """Preprocess and embed every candidate image into a dataset."""
        root_dir = Path(root_dir)
        if not root_dir.is_dir():
            msg = f"Data directory not found: {root_dir}"
            raise EmptyDatasetError(msg, "DATA_DIR_NOT_FOUND")

        # Load failures are fatal and must surface before per-file handling
        self.extractor.load()
        candidates = self.collect(root_dir, label_set)
        logger.info(
            "Embedding %d images from %s with %d workers",
            len(candidates),
            root_dir,
            self.num_workers,
        )

        samples: list[tuple[int, Path, np.ndarray]] = []
        with ThreadPoolExecutor(
            max_workers=self.num_workers, thread_name_prefix="embed"
        ) as pool:
            futures = {
                pool.submit(self._embed_file, path): (path, index)
                for path, index in candidates
            }
            for future in as_completed(futures):
                path, index = futures[future]
                try:
                    samples.append((index, path, future.result()))
                except Exception:
                    logger.exception("Failed to process %s. Skipping...", path)

        if not samples:
            msg = f"No usable images found under {root_dir}"
            raise EmptyDatasetError(msg, "NO_SAMPLES")

        samples.sort(key=lambda s: (s[0], str(s[1])))
        dataset = EmbeddingDataset(
            features=np.stack([s[2] for s in samples]),
            labels=np.array([s[0] for s in samples], dtype=np.int64),
            label_set=label_set,
            sources=[s[1] for s in samples],
        )
        logger.info(
            "Built dataset: %d samples, embedding_dim=%d, per class %s",
            len(dataset),
            dataset.embedding_dim,
            dataset.class_counts(),
        )
        return dataset

    def _embed_file(self, path: Path) -> np.ndarray:
        tensor = self.preprocessor.preprocess(path)
        return self.extractor.embed(tensor)


def build_dataset(
    root_dir: Path,
    label_set: LabelSet | None = None,
    extractor: FeatureExtractor | None = None,
    num_workers: int | None = None,
) -> EmbeddingDataset:
    """Build an embedding dataset for ``label_set`` (acne classes by default)."""
    builder = DatasetBuilder(
        extractor=extractor or FeatureExtractor(), num_workers=num_workers
    )
    return builder.build(root_dir, label_set or LabelSet.acne())
