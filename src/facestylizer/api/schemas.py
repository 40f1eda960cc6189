"""Pydantic response schemas for the FaceStylizer API.

The stylize endpoint answers with a PNG body (or an empty 204), so only the
JSON endpoints and error bodies have schemas here.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool = Field(description="Whether image operators run on the GPU path")
    model_bundle: str
    output_face_crop: bool = Field(description="True when results are model-native face crops")
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """A stylizer bundle from the registry."""

    name: str
    style: str = Field(description="Artistic style the bundle renders, e.g. 'color_sketch'")
    repo_id: str
    status: Literal["active", "available"]
    license: str


class ModelsResponse(BaseModel):
    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Error body returned with 4xx/5xx statuses."""

    detail: str
