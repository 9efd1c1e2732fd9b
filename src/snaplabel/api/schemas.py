"""Pydantic request/response schemas for the SnapLabel API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ClassifyRequest(BaseModel):
    """Image reference picked on the client (content://, file path, or http(s) URL)."""

    uri: str | None = Field(default=None, description="Image URI; null when the picker was cancelled")


class PredictionItem(BaseModel):
    """A single ranked label."""

    label: str
    probability: float = Field(ge=0.0, le=1.0)


class ClassifyImageResponse(BaseModel):
    """Response for the classification endpoints."""

    predictions: list[PredictionItem]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="'ok', 'starting', or 'unavailable'")
    state: str
    platform: str | None = None
    backend: str | None = None
    model_variant: str | None = None
    target_edge: int | None = None
    busy: bool


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    variant: str = Field(description="Model variant: 'light' or 'standard'")
    input_edge: int
    width_multiplier: float = Field(description="MobileNetV2 width multiplier (alpha)")
    status: str = Field(description="Model status: 'active' or 'available'")
    loaded: bool = Field(description="Whether an inference session for the model is open")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
    category: str | None = None
