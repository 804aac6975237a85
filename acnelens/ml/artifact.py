"""Persisted classifier artifacts.

An artifact is a directory holding a declarative manifest (``model.json``),
the head's weights (``weights.pt``) and the label set it was trained against
(``labels.json``). Artifacts are assembled in a hidden sibling directory and
renamed into place; the manifest is written last, so a directory without it
is never loaded.
"""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
import tempfile
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import numpy as np
import torch
from pydantic import ValidationError

from acnelens.core.constants import (
    ARTIFACT_FORMAT,
    ARTIFACT_FORMAT_VERSION,
    ARTIFACT_LABELS,
    ARTIFACT_MANIFEST,
    ARTIFACT_WEIGHTS,
)
from acnelens.core.errors import ModelLoadError
from acnelens.core.models import LabelSet
from acnelens.ml.config import ExtractorConfig, HeadArchitecture
from acnelens.ml.models import ClassifierHead, freeze
from acnelens.utils.system import SystemUtils

logger = logging.getLogger(__name__)


@dataclass
class ClassifierHandle:
    """A loaded, read-only classifier head with its label set."""

    head: ClassifierHead
    label_set: LabelSet
    extractor_config: ExtractorConfig
    preprocessing: dict[str, Any]
    path: Path
    device: torch.device = field(default_factory=lambda: torch.device("cpu"))
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def architecture(self) -> HeadArchitecture:
        """Architecture the head was rebuilt from."""
        return self.head.architecture

    @property
    def input_dim(self) -> int:
        """Embedding width the head expects."""
        return self.head.input_dim

    def predict_proba(self, embeddings: np.ndarray) -> np.ndarray:
        """Class probabilities for one embedding or a batch of them."""
        batch = np.atleast_2d(np.asarray(embeddings, dtype=np.float32))
        with torch.inference_mode():
            probs = self.head(torch.from_numpy(batch).to(self.device))
            return probs.cpu().numpy()


def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1 << 20), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _swap_into_place(staged: Path, target: Path) -> None:
    """Replace ``target`` with ``staged`` using directory renames."""
    if not target.exists():
        staged.rename(target)
        return
    backup = target.with_name(f".{target.name}.old-{uuid.uuid4().hex[:8]}")
    target.rename(backup)
    try:
        staged.rename(target)
    except OSError:
        backup.rename(target)
        raise
    shutil.rmtree(backup, ignore_errors=True)


def save_artifact(
    head: ClassifierHead,
    label_set: LabelSet,
    output_dir: Path,
    extractor: dict[str, Any],
    preprocessing: dict[str, Any],
    metrics: dict[str, Any] | None = None,
) -> Path:
    """Persist a trained head atomically and return the artifact directory."""
    if len(label_set) != head.num_classes:
        msg = (
            f"Label set has {len(label_set)} classes but the head outputs "
            f"{head.num_classes}"
        )
        raise ValueError(msg)

    output_dir = Path(output_dir)
    output_dir.parent.mkdir(parents=True, exist_ok=True)
    staged = Path(
        tempfile.mkdtemp(prefix=f".{output_dir.name}.tmp-", dir=output_dir.parent)
    )
    try:
        state = {k: v.detach().cpu() for k, v in head.state_dict().items()}
        torch.save(state, staged / ARTIFACT_WEIGHTS)
        (staged / ARTIFACT_LABELS).write_text(
            json.dumps(label_set.model_dump(mode="json"), indent=2), encoding="utf-8"
        )
        manifest = {
            "format": ARTIFACT_FORMAT,
            "format_version": ARTIFACT_FORMAT_VERSION,
            "created_at": datetime.now(UTC).isoformat(),
            "architecture": head.architecture.model_dump(mode="json"),
            "weights": {
                "path": ARTIFACT_WEIGHTS,
                "sha256": _sha256(staged / ARTIFACT_WEIGHTS),
            },
            "labels": {"path": ARTIFACT_LABELS, "version": label_set.version},
            "extractor": extractor,
            "preprocessing": preprocessing,
            "metrics": metrics or {},
        }
        (staged / ARTIFACT_MANIFEST).write_text(
            json.dumps(manifest, indent=2), encoding="utf-8"
        )
        _swap_into_place(staged, output_dir)
    except Exception:
        shutil.rmtree(staged, ignore_errors=True)
        raise

    logger.info("Saved classifier artifact to %s", output_dir)
    return output_dir


def read_manifest(path: Path) -> dict[str, Any]:
    """Read and validate the manifest of a complete artifact."""
    path = Path(path)
    if not path.is_dir():
        msg = f"Model artifact not found: {path}"
        raise ModelLoadError(msg, "ARTIFACT_NOT_FOUND")
    manifest_path = path / ARTIFACT_MANIFEST
    if not manifest_path.is_file():
        msg = f"Incomplete model artifact (no {ARTIFACT_MANIFEST}): {path}"
        raise ModelLoadError(msg, "INCOMPLETE_ARTIFACT")
    try:
        manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        msg = f"Unreadable manifest {manifest_path}: {e}"
        raise ModelLoadError(msg, "INVALID_MANIFEST") from e

    if manifest.get("format") != ARTIFACT_FORMAT:
        msg = f"Not a classifier artifact: format={manifest.get('format')!r}"
        raise ModelLoadError(msg, "INVALID_FORMAT")
    if manifest.get("format_version") != ARTIFACT_FORMAT_VERSION:
        msg = (
            f"Unsupported artifact format version {manifest.get('format_version')}, "
            f"expected {ARTIFACT_FORMAT_VERSION}"
        )
        raise ModelLoadError(msg, "UNSUPPORTED_VERSION")
    return manifest


def load_model(path: Path, device: str | None = None) -> ClassifierHandle:
    """Load a persisted classifier head for inference."""
    path = Path(path)
    manifest = read_manifest(path)
    try:
        architecture = HeadArchitecture.model_validate(manifest["architecture"])
        extractor_config = ExtractorConfig.model_validate(manifest["extractor"])
        label_set = LabelSet.model_validate_json(
            (path / manifest["labels"]["path"]).read_text(encoding="utf-8")
        )
        weights_path = path / manifest["weights"]["path"]
        expected_checksum = manifest["weights"]["sha256"]
    except (KeyError, TypeError, OSError, ValidationError) as e:
        msg = f"Malformed model artifact {path}: {e}"
        raise ModelLoadError(msg, "INVALID_MANIFEST") from e

    if len(label_set) != architecture.num_classes:
        msg = (
            f"Label set has {len(label_set)} classes but the architecture declares "
            f"{architecture.num_classes}"
        )
        raise ModelLoadError(msg, "LABEL_MISMATCH")
    embedding_dim = manifest["extractor"].get("embedding_dim")
    if embedding_dim is not None and embedding_dim != architecture.input_dim:
        msg = (
            f"Extractor width {embedding_dim} does not match head input "
            f"{architecture.input_dim}"
        )
        raise ModelLoadError(msg, "DIMENSION_MISMATCH")
    if not weights_path.is_file() or _sha256(weights_path) != expected_checksum:
        msg = f"Weights missing or checksum mismatch: {weights_path}"
        raise ModelLoadError(msg, "CHECKSUM_MISMATCH")

    torch_device = SystemUtils.select_device(device)
    head = ClassifierHead(architecture)
    try:
        state = torch.load(weights_path, map_location="cpu", weights_only=True)
        head.load_state_dict(state)
    except (RuntimeError, OSError, KeyError) as e:
        msg = f"Weights do not match the declared architecture: {e}"
        raise ModelLoadError(msg, "ARCHITECTURE_MISMATCH") from e
    freeze(head.to(torch_device))

    logger.info(
        "Loaded classifier %s (%d classes, label set v%s)",
        path,
        len(label_set),
        label_set.version,
    )
    return ClassifierHandle(
        head=head,
        label_set=label_set,
        extractor_config=extractor_config,
        preprocessing=dict(manifest.get("preprocessing", {})),
        path=path,
        device=torch_device,
        metadata={
            "created_at": manifest.get("created_at"),
            "metrics": manifest.get("metrics", {}),
        },
    )
