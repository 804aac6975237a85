"""Classifier head builder utilities."""

from __future__ import annotations

import logging
from typing import Any

import torch
from torch import nn

from acnelens.ml.config import HeadArchitecture, HeadConfig

logger = logging.getLogger(__name__)

_ACTIVATIONS: dict[str, type[nn.Module]] = {
    "relu": nn.ReLU,
    "gelu": nn.GELU,
    "tanh": nn.Tanh,
}


class ClassifierHead(nn.Module):
    """Feed-forward head mapping embeddings to class probabilities."""

    def __init__(self, architecture: HeadArchitecture) -> None:
        super().__init__()
        self.architecture = architecture

        layers: list[nn.Module] = []
        width = architecture.input_dim
        for units, rate in zip(
            architecture.hidden_units, architecture.dropout, strict=True
        ):
            layers.append(nn.Linear(width, units))
            if architecture.batch_norm:
                layers.append(nn.BatchNorm1d(units))
            layers.append(_ACTIVATIONS[architecture.activation]())
            if rate > 0:
                layers.append(nn.Dropout(rate))
            width = units
        self.body = nn.Sequential(*layers)
        self.output = nn.Linear(width, architecture.num_classes)

    @property
    def input_dim(self) -> int:
        """Expected embedding width."""
        return self.architecture.input_dim

    @property
    def num_classes(self) -> int:
        """Number of output classes."""
        return self.architecture.num_classes

    def logits(self, x: torch.Tensor) -> torch.Tensor:
        """Unnormalized class scores."""
        return self.output(self.body(x))

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """Class probabilities (softmax over the last dimension)."""
        return torch.softmax(self.logits(x), dim=-1)


def build_head(
    input_dim: int, num_classes: int, cfg: HeadConfig | None = None
) -> ClassifierHead:
    """Create an untrained classifier head."""
    architecture = HeadArchitecture.from_config(
        cfg or HeadConfig(), input_dim=input_dim, num_classes=num_classes
    )
    head = ClassifierHead(architecture)
    logger.info(
        "Built classifier head %s -> %s -> %s (%s trainable parameters)",
        input_dim,
        architecture.hidden_units,
        num_classes,
        count_parameters(head)["trainable"],
    )
    return head


def freeze(model: nn.Module) -> nn.Module:
    """Switch a model to inference: eval mode and no gradients."""
    model.eval()
    for p in model.parameters():
        p.requires_grad = False
    return model


def count_parameters(model: nn.Module) -> dict[str, Any]:
    """Count the number of parameters in the model."""
    total = sum(p.numel() for p in model.parameters())
    trainable = sum(p.numel() for p in model.parameters() if p.requires_grad)
    return {"total": total, "trainable": trainable}
