"""Pydantic request/response schemas for the AttendX API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class EmbeddingIn(BaseModel):
    """A pre-extracted face embedding."""

    vector: list[float] = Field(min_length=1, description="Embedding values")
    extractor_version: str = Field(min_length=1, description="Extractor (model) that produced the vector")


class IdentityIn(BaseModel):
    display_name: str = Field(min_length=1, max_length=255)


class IdentityOut(BaseModel):
    identity_id: str
    display_name: str
    status: str = Field(description="'unenrolled' or 'enrolled'")


class EnrollRequest(BaseModel):
    """Ordered enrollment samples, one per capture."""

    samples: list[EmbeddingIn] = Field(min_length=1)


class TemplateOut(BaseModel):
    identity_id: str
    version: int
    sample_count: int
    dimensionality: int
    extractor_version: str
    created_at: datetime


class VerifyRequest(BaseModel):
    sample: EmbeddingIn


class AttendanceOut(BaseModel):
    record_id: str
    identity_id: str
    recorded_at: datetime
    score: float = Field(ge=0.0, le=1.0)


class VerifyResponse(BaseModel):
    matched: bool
    score: float = Field(ge=0.0, le=1.0, description="Similarity in [0, 1]")
    already_recorded: bool = Field(description="True if attendance was already on file for this cooldown window")
    attendance: AttendanceOut | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    store: str
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available recognition model."""

    name: str
    embedding_dim: int
    status: str = Field(description="Model status: 'active', 'available', or 'requires_license'")
    license: str


class ModelsResponse(BaseModel):
    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
    kind: str | None = None
    field: str | None = None
