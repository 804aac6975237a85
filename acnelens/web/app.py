"""FastAPI web application for acne lesion analysis."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from acnelens import __version__
from acnelens.ml.config import InferenceConfig
from acnelens.ml.engine.predictor import InferenceService
from acnelens.web.routers.analysis import router as analysis_router

logger = logging.getLogger(__name__)


def create_app(
    config: InferenceConfig | None = None,
    service: InferenceService | None = None,
) -> FastAPI:
    """Create the FastAPI app around one inference service."""
    service = service or InferenceService(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # Startup does not wait for the models; /health reports progress
        app.state.service.start_loading()
        yield

    app = FastAPI(
        title="Acne Lesion Classifier",
        description="Classifies facial skin-lesion images into acne types",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.service = service

    # CORS middleware for browser access
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:8000",
            "http://127.0.0.1:8000",
        ],
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    app.include_router(analysis_router, prefix="/api", tags=["analysis"])

    @app.get("/health")
    async def health_check(request: Request) -> dict:
        """Health check endpoint with the model loading state."""
        svc: InferenceService = request.app.state.service
        return {
            "status": "healthy" if svc.is_ready else svc.state.value,
            "service": "acnelens",
            "version": __version__,
            **svc.status(),
        }

    return app


def run_dev_server(
    config: InferenceConfig | None = None,
    host: str = "127.0.0.1",
    port: int = 8000,
) -> None:
    """Run the inference server."""
    logger.info("Starting inference server at http://%s:%d", host, port)
    uvicorn.run(create_app(config), host=host, port=port, log_level="info")
