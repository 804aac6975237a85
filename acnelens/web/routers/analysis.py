"""Analysis API router over the inference service."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile

from acnelens.core.errors import AnalysisError, DecodeError, ModelNotReadyError
from acnelens.ml.engine.predictor import InferenceService

logger = logging.getLogger(__name__)

# Security constants
MAX_UPLOAD_SIZE = 20 * 1024 * 1024  # 20MB per image

router = APIRouter()


def get_service(request: Request) -> InferenceService:
    """Inference service bound to the running app."""
    return request.app.state.service


@router.post("/analyze")
async def analyze_image(
    file: UploadFile = File(...),
    service: InferenceService = Depends(get_service),
) -> dict:
    """Classify an uploaded image and return the ranked predictions."""
    too_large = HTTPException(
        status_code=413,
        detail=f"File too large. Maximum size: {MAX_UPLOAD_SIZE // (1024 * 1024)}MB",
    )
    if file.size and file.size > MAX_UPLOAD_SIZE:
        raise too_large
    # Size may be unknown up front; never read past the limit
    data = await file.read(MAX_UPLOAD_SIZE + 1)
    if len(data) > MAX_UPLOAD_SIZE:
        raise too_large

    try:
        result = await service.analyze_async(data)
    except ModelNotReadyError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    except AnalysisError as e:
        if isinstance(e.__cause__, DecodeError):
            raise HTTPException(status_code=422, detail=str(e)) from e
        logger.error("Analysis of %s failed: %s", file.filename, e)
        raise HTTPException(status_code=500, detail="Image analysis failed") from e

    logger.info(
        "Analyzed %s: %s (%.1f%%)",
        file.filename,
        result.top_prediction.class_name,
        result.top_prediction.probability,
    )
    return result.to_response()
