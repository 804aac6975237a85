"""Simple standardized model registry on filesystem."""

from __future__ import annotations

import json
import os
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

DEFAULT_REGISTRY = Path("models/registry.json")

_REGISTRY_LOCK = threading.Lock()


@dataclass
class ModelRecord:
    """Registered classifier artifact."""

    name: str
    version: str
    path: Path
    metadata: dict[str, Any]
    registered_at: str = ""


def _load_registry(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {"models": []}
    return json.loads(path.read_text(encoding="utf-8"))


def _save_registry(data: dict[str, Any], path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.with_suffix(".tmp")
    temp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    os.replace(temp_path, path)


def register_model(
    name: str,
    version: str,
    model_dir: Path,
    metadata: dict[str, Any] | None = None,
    registry_path: Path = DEFAULT_REGISTRY,
) -> ModelRecord:
    """Register an artifact directory under (name, version)."""
    entry = {
        "name": name,
        "version": version,
        "path": str(Path(model_dir).resolve()),
        "metadata": metadata or {},
        "registered_at": datetime.now(UTC).isoformat(),
    }
    with _REGISTRY_LOCK:
        reg = _load_registry(registry_path)
        # replace if exists
        reg["models"] = [
            m
            for m in reg["models"]
            if not (m["name"] == name and m["version"] == version)
        ]
        reg["models"].append(entry)
        _save_registry(reg, registry_path)
    return _to_record(entry)


def resolve_model(
    name: str, version: str | None = None, registry_path: Path = DEFAULT_REGISTRY
) -> Path | None:
    """Resolve an artifact path; the latest registration wins without a version."""
    reg = _load_registry(registry_path)
    candidates = [m for m in reg.get("models", []) if m.get("name") == name]
    if not candidates:
        return None
    if version is None:
        # later entries win ties on registered_at
        latest = max(
            enumerate(candidates), key=lambda im: (im[1].get("registered_at", ""), im[0])
        )
        return Path(latest[1]["path"])
    for m in candidates:
        if m.get("version") == version:
            return Path(m["path"])
    return None


def list_models(registry_path: Path = DEFAULT_REGISTRY) -> list[ModelRecord]:
    """List all registered artifacts."""
    reg = _load_registry(registry_path)
    return [_to_record(m) for m in reg.get("models", [])]


def next_version(name: str, registry_path: Path = DEFAULT_REGISTRY) -> str:
    """Next integer version string for ``name``."""
    versions = [
        int(m.version)
        for m in list_models(registry_path)
        if m.name == name and m.version.isdigit()
    ]
    return str(max(versions, default=0) + 1)


def _to_record(m: dict[str, Any]) -> ModelRecord:
    return ModelRecord(
        name=m.get("name", "unknown"),
        version=m.get("version", "unknown"),
        path=Path(m.get("path", ".")),
        metadata=m.get("metadata", {}),
        registered_at=m.get("registered_at", ""),
    )
