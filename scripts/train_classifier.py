"""Train an acne classifier head on a labeled image directory."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from acnelens.core.errors import AcneLensError
from acnelens.core.models import LabelSet
from acnelens.ml.config import (
    DataConfig,
    ExtractorConfig,
    PipelineConfig,
    TrainConfig,
)
from acnelens.ml.data import DatasetBuilder, EmbeddingDataset
from acnelens.ml.engine.trainer import train
from acnelens.ml.extractor import FeatureExtractor, get_extractor
from acnelens.ml.models import build_head
from acnelens.ml.registry import DEFAULT_REGISTRY, next_version, register_model
from acnelens.utils.system import SystemUtils

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--data-dir", type=Path, help="Root with one folder per class")
    parser.add_argument("--output", type=Path, required=True, help="Artifact directory")
    parser.add_argument("--config", type=Path, help="PipelineConfig JSON file")
    parser.add_argument("--epochs", type=int)
    parser.add_argument("--batch-size", type=int)
    parser.add_argument("--learning-rate", type=float)
    parser.add_argument("--seed", type=int)
    parser.add_argument("--device", type=str)
    parser.add_argument("--backbone", type=str, help="Registered backbone name")
    parser.add_argument(
        "--no-pretrained",
        action="store_true",
        help="Use a randomly initialized backbone (offline runs)",
    )
    parser.add_argument("--num-workers", type=int, help="Embedding threads")
    parser.add_argument(
        "--embeddings-cache",
        type=Path,
        help="Reuse embeddings from this .npz file, creating it when missing",
    )
    parser.add_argument("--register", metavar="NAME", help="Register under this name")
    parser.add_argument("--version", help="Registry version (next integer by default)")
    parser.add_argument("--registry", type=Path, default=DEFAULT_REGISTRY)
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> PipelineConfig:
    """Merge the optional JSON config with command line overrides."""
    if args.config is not None:
        cfg = PipelineConfig.from_json(args.config)
    elif args.data_dir is not None:
        cfg = PipelineConfig(data=DataConfig(data_dir=args.data_dir))
    else:
        msg = "Either --data-dir or --config is required"
        raise SystemExit(msg)

    data = cfg.data.model_dump()
    if args.data_dir is not None:
        data["data_dir"] = args.data_dir
    if args.num_workers is not None:
        data["num_workers"] = args.num_workers

    train_overrides = {
        "epochs": args.epochs,
        "batch_size": args.batch_size,
        "learning_rate": args.learning_rate,
        "seed": args.seed,
        "device": args.device,
    }
    train_cfg = cfg.train.model_dump()
    train_cfg.update({k: v for k, v in train_overrides.items() if v is not None})

    extractor = cfg.extractor.model_dump()
    if args.backbone is not None:
        extractor["backbone"] = args.backbone
    if args.no_pretrained:
        extractor["pretrained"] = False

    return cfg.model_copy(
        update={
            "data": DataConfig.model_validate(data),
            "train": TrainConfig.model_validate(train_cfg),
            "extractor": ExtractorConfig.model_validate(extractor),
        }
    )


def load_or_build_dataset(
    cfg: PipelineConfig,
    extractor: FeatureExtractor,
    label_set: LabelSet,
    cache_path: Path | None,
) -> EmbeddingDataset:
    """Embed the data directory, reusing a compatible cache when given."""
    if cache_path is not None and cache_path.is_file():
        cached = EmbeddingDataset.load(cache_path)
        if (
            cached.label_set == label_set
            and cached.embedding_dim == extractor.embedding_dim
        ):
            logger.info("Using %d cached embeddings from %s", len(cached), cache_path)
            return cached
        logger.warning("Embedding cache %s is stale. Rebuilding...", cache_path)

    builder = DatasetBuilder(
        extractor,
        extensions=cfg.data.extensions,
        num_workers=cfg.data.num_workers,
    )
    dataset = builder.build(cfg.data.data_dir, label_set)
    if cache_path is not None:
        dataset.save(cache_path)
    return dataset


def main(argv: list[str] | None = None) -> int:
    """Run training from the command line."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    args = parse_args(argv)
    cfg = build_config(args)
    label_set = LabelSet.acne()
    logger.info("Runtime: %s", SystemUtils.get_runtime_info())

    try:
        extractor = get_extractor(cfg.extractor, device=cfg.train.device)
        dataset = load_or_build_dataset(
            cfg, extractor, label_set, args.embeddings_cache
        )
        head = build_head(dataset.embedding_dim, len(label_set), cfg.head)
        result = train(
            dataset, head, cfg.train, output_dir=args.output, extractor=extractor
        )
    except AcneLensError:
        logger.exception("Training failed")
        return 1

    logger.info("Saved model to %s", result.artifact_path)
    if args.register:
        version = args.version or next_version(args.register, args.registry)
        record = register_model(
            args.register,
            version,
            args.output,
            metadata={
                "train_accuracy": result.train_report.accuracy,
                "val_accuracy": None
                if result.val_report is None
                else result.val_report.accuracy,
                "best_epoch": result.best_epoch,
            },
            registry_path=args.registry,
        )
        logger.info("Registered %s v%s -> %s", record.name, record.version, record.path)
    return 0


if __name__ == "__main__":
    sys.exit(main())
