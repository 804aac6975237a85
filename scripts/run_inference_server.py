"""Startup script for the acne analysis server."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from acnelens.ml.config import ExtractorConfig, InferenceConfig
from acnelens.web.app import run_dev_server


def main() -> None:
    """Run the inference server."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--model", type=Path, help="Model artifact directory")
    parser.add_argument("--registry", type=Path, help="Model registry JSON file")
    parser.add_argument("--model-name", default="acne-classifier")
    parser.add_argument("--model-version")
    parser.add_argument(
        "--allow-passthrough",
        action="store_true",
        help="Serve the backbone's own classes when no trained model exists",
    )
    parser.add_argument("--backbone", help="Override the extractor backbone")
    parser.add_argument("--device")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger = logging.getLogger(__name__)

    config = InferenceConfig(
        artifact_path=args.model,
        registry_path=args.registry,
        model_name=args.model_name,
        model_version=args.model_version,
        allow_passthrough=args.allow_passthrough,
        extractor=ExtractorConfig(backbone=args.backbone) if args.backbone else None,
        device=args.device,
    )
    logger.info("Access the API at: http://%s:%d/api/analyze", args.host, args.port)
    logger.info("API docs at: http://%s:%d/docs", args.host, args.port)

    try:
        run_dev_server(config, host=args.host, port=args.port)
    except KeyboardInterrupt:
        logger.info("Server stopped by user")
    except (OSError, RuntimeError, ImportError) as e:
        msg = f"Error: {e}"
        logger.exception(msg)
        sys.exit(1)


if __name__ == "__main__":
    main()
