"""System utilities for device selection and worker sizing."""

from __future__ import annotations

import logging
import os
import platform
import sys
from typing import Any

import psutil
import torch

logger = logging.getLogger(__name__)

# Upper bound for per-file embedding threads; torch already parallelizes
# inside each forward pass.
MAX_EMBEDDING_WORKERS = 8


class SystemUtils:
    """Utilities for compute resources used by training and inference."""

    @staticmethod
    def select_device(preferred: str | None = None) -> torch.device:
        """Select the torch device for a single-device run."""
        if preferred is not None:
            return torch.device(preferred)
        if torch.cuda.is_available():
            return torch.device("cuda")
        # MPS may not exist on all builds
        if getattr(torch.backends, "mps", None) and torch.backends.mps.is_available():
            return torch.device("mps")
        return torch.device("cpu")

    @staticmethod
    def available_cpus() -> int:
        """Count CPUs usable by this process."""
        try:
            affinity = psutil.Process().cpu_affinity()
        except (AttributeError, NotImplementedError, psutil.Error):
            affinity = None
        if affinity:
            return len(affinity)
        return psutil.cpu_count(logical=True) or os.cpu_count() or 1

    @staticmethod
    def embedding_workers(requested: int | None = None) -> int:
        """Size the per-file embedding thread pool."""
        if requested is not None:
            return max(1, requested)
        return max(1, min(MAX_EMBEDDING_WORKERS, SystemUtils.available_cpus()))

    @staticmethod
    def get_runtime_info() -> dict[str, Any]:
        """Describe the runtime for training summaries."""
        memory = psutil.virtual_memory()
        return {
            "python": sys.version.split()[0],
            "platform": platform.platform(),
            "torch": torch.__version__,
            "cpus": SystemUtils.available_cpus(),
            "memory_total": memory.total,
            "cuda_available": torch.cuda.is_available(),
        }
