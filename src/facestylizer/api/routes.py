"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, Query, Request, Response, UploadFile, status
from fastapi.responses import JSONResponse

from facestylizer.api.middleware import get_settings_from_request, limit_upload_size, verify_api_key
from facestylizer.api.schemas import ErrorResponse, HealthResponse, ModelInfo, ModelsResponse
from facestylizer.errors import DegenerateTransformError, InvalidArgumentError, LandmarkCountError
from facestylizer.ml.codec import decode_image, encode_png
from facestylizer.ml.geometry import NormalizedRect
from facestylizer.ml.model_manager import MODEL_REGISTRY

if TYPE_CHECKING:
    from facestylizer.ml.inference import InferencePool
    from facestylizer.ml.model_manager import ModelManager
    from facestylizer.ml.stylizer import FaceStylizer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

FACE_FOUND_HEADER = "X-Face-Found"


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_stylizer(request: Request) -> FaceStylizer:
    stylizer: FaceStylizer = request.app.state.stylizer
    return stylizer


def _get_model_manager(request: Request) -> ModelManager:
    manager: ModelManager = request.app.state.model_manager
    return manager


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


def _region(
    x_center: float | None,
    y_center: float | None,
    width: float | None,
    height: float | None,
    rotation: float,
) -> NormalizedRect | None:
    given = [v is not None for v in (x_center, y_center, width, height)]
    if not any(given):
        return None
    if not all(given):
        raise InvalidArgumentError("Region requires x_center, y_center, width and height together")
    return NormalizedRect(
        x_center=x_center,  # type: ignore[arg-type]
        y_center=y_center,  # type: ignore[arg-type]
        width=width,  # type: ignore[arg-type]
        height=height,  # type: ignore[arg-type]
        rotation=rotation,
    )


@router.post(
    "/stylize",
    response_class=Response,
    responses={
        status.HTTP_200_OK: {"content": {"image/png": {}}, "description": "Stylized image"},
        status.HTTP_204_NO_CONTENT: {"description": "No face found"},
        status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
        status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    dependencies=[Depends(limit_upload_size)],
    summary="Stylize the face in an image",
)
async def stylize(
    request: Request,
    file: UploadFile,
    x_center: Annotated[float | None, Query(ge=0.0, le=1.0)] = None,
    y_center: Annotated[float | None, Query(ge=0.0, le=1.0)] = None,
    width: Annotated[float | None, Query(gt=0.0)] = None,
    height: Annotated[float | None, Query(gt=0.0)] = None,
    rotation: float = 0.0,
) -> Response:
    """Stylize the single face in an uploaded image and return it as PNG.

    An optional region (normalized coordinates) restricts face detection.
    """
    settings = get_settings_from_request(request)
    payload = await file.read()
    if len(payload) > settings.max_file_size:
        return _error(status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, f"Upload exceeds the {settings.max_file_size} byte limit")

    try:
        region = _region(x_center, y_center, width, height, rotation)
        image = decode_image(payload, settings.max_image_pixels)
    except InvalidArgumentError as exc:
        return _error(status.HTTP_400_BAD_REQUEST, str(exc))

    stylizer = _get_stylizer(request)
    try:
        result = await _get_inference_pool(request).run(stylizer.stylize, image, region)
    except TimeoutError:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Server busy, try again later")
    except (LandmarkCountError, DegenerateTransformError, InvalidArgumentError) as exc:
        logger.warning("Stylization failed for %s: %s", file.filename, exc)
        return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, str(exc))

    if result.stylized_image is None:
        return Response(status_code=status.HTTP_204_NO_CONTENT, headers={FACE_FOUND_HEADER: "false"})
    return Response(
        content=encode_png(result.stylized_image),
        media_type="image/png",
        headers={FACE_FOUND_HEADER: "true"},
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    pool = _get_inference_pool(request)
    settings = get_settings_from_request(request)
    return HealthResponse(
        status="ok",
        gpu=_get_stylizer(request).use_gpu,
        model_bundle=settings.model_bundle,
        output_face_crop=settings.output_face_crop,
        models_loaded=_get_model_manager(request).get_loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available stylizer bundles",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return the registered stylizer bundles and which one is active."""
    active = get_settings_from_request(request).model_bundle
    return ModelsResponse(
        models=[
            ModelInfo(
                name=spec.name,
                style=spec.style,
                repo_id=spec.repo_id,
                status="active" if spec.name == active else "available",
                license=spec.license,
            )
            for spec in MODEL_REGISTRY.values()
        ]
    )
