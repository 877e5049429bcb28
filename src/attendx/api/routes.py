"""API route definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, HTTPException, Request, UploadFile, status

from attendx.api.middleware import verify_api_key
from attendx.api.schemas import (
    AttendanceOut,
    EmbeddingIn,
    EnrollRequest,
    ErrorResponse,
    HealthResponse,
    IdentityIn,
    IdentityOut,
    ModelInfo,
    ModelsResponse,
    TemplateOut,
    VerifyRequest,
    VerifyResponse,
)
from attendx.domain import Embedding
from attendx.errors import ExtractionError, ExtractorUnavailable
from attendx.ml.model_manager import MODEL_REGISTRY, model_status

if TYPE_CHECKING:
    from collections.abc import Sequence

    from attendx.config import Settings
    from attendx.domain import AttendanceRecord, Identity, Template
    from attendx.ml.face_recognizer import FeatureExtractor
    from attendx.ml.model_manager import ModelManager
    from attendx.service import AttendanceService, VerificationOutcome
    from attendx.workers import WorkerPool

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_ERRORS = {
    status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
    status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_service(request: Request) -> AttendanceService:
    service: AttendanceService = request.app.state.service
    return service


def _get_pool(request: Request) -> WorkerPool:
    pool: WorkerPool = request.app.state.worker_pool
    return pool


def _get_extractor(request: Request) -> FeatureExtractor:
    extractor: FeatureExtractor | None = getattr(request.app.state, "extractor", None)
    if extractor is None:
        raise ExtractorUnavailable("No feature extractor configured")
    return extractor


def _to_embedding(sample: EmbeddingIn) -> Embedding:
    return Embedding.from_values(sample.vector, sample.extractor_version)


def _extract_samples(extractor: FeatureExtractor, images: Sequence[bytes]) -> list[Embedding]:
    embeddings = []
    for i, image in enumerate(images):
        try:
            embeddings.append(extractor.extract(image))
        except ExtractionError as exc:
            exc.field = f"samples[{i}]"
            raise
    return embeddings


async def _read_upload(file: UploadFile, settings: Settings) -> bytes:
    data = await file.read(settings.max_file_size + 1)
    if len(data) > settings.max_file_size:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"{file.filename or 'upload'} exceeds {settings.max_file_size} bytes",
        )
    return data


def _identity_out(identity: Identity) -> IdentityOut:
    return IdentityOut(identity_id=identity.identity_id, display_name=identity.display_name, status=identity.status)


def _template_out(template: Template) -> TemplateOut:
    return TemplateOut(
        identity_id=template.identity_id,
        version=template.version,
        sample_count=template.sample_count,
        dimensionality=template.dimensionality,
        extractor_version=template.extractor_version,
        created_at=template.created_at,
    )


def _attendance_out(record: AttendanceRecord) -> AttendanceOut:
    return AttendanceOut(
        record_id=record.record_id,
        identity_id=record.identity_id,
        recorded_at=record.recorded_at,
        score=record.score,
    )


def _verify_out(outcome: VerificationOutcome) -> VerifyResponse:
    return VerifyResponse(
        matched=outcome.matched,
        score=outcome.score,
        already_recorded=outcome.already_recorded,
        attendance=_attendance_out(outcome.attendance.record) if outcome.attendance is not None else None,
    )


# ---------------------------------------------------------------------------
# Identities and enrollment
# ---------------------------------------------------------------------------


@router.put("/identities/{identity_id}", response_model=IdentityOut, summary="Provision an identity")
async def provision_identity(identity_id: str, body: IdentityIn, request: Request) -> IdentityOut:
    service = _get_service(request)
    identity = await _get_pool(request).run(service.provision, identity_id, body.display_name)
    return _identity_out(identity)


@router.get("/identities/{identity_id}", response_model=IdentityOut, responses=_ERRORS, summary="Get an identity")
async def get_identity(identity_id: str, request: Request) -> IdentityOut:
    service = _get_service(request)
    return _identity_out(await _get_pool(request).run(service.get_identity, identity_id))


@router.post(
    "/identities/{identity_id}/enroll",
    response_model=TemplateOut,
    status_code=status.HTTP_201_CREATED,
    responses={**_ERRORS, status.HTTP_409_CONFLICT: {"model": ErrorResponse}},
    summary="Enroll from pre-extracted embeddings",
)
async def enroll(identity_id: str, body: EnrollRequest, request: Request) -> TemplateOut:
    """Quality-gate the samples and replace the identity's template."""
    samples = [_to_embedding(s) for s in body.samples]
    service = _get_service(request)
    template = await _get_pool(request).run(service.enroll, identity_id, samples)
    return _template_out(template)


@router.post(
    "/identities/{identity_id}/enroll-images",
    response_model=TemplateOut,
    status_code=status.HTTP_201_CREATED,
    responses={**_ERRORS, status.HTTP_409_CONFLICT: {"model": ErrorResponse}},
    summary="Enroll from cropped face images",
)
async def enroll_images(identity_id: str, files: list[UploadFile], request: Request) -> TemplateOut:
    """Embed each uploaded face crop, in order, then enroll."""
    settings = _get_settings(request)
    extractor = _get_extractor(request)
    images = [await _read_upload(f, settings) for f in files]

    pool = _get_pool(request)
    samples = await pool.run(_extract_samples, extractor, images)
    template = await pool.run(_get_service(request).enroll, identity_id, samples)
    return _template_out(template)


@router.get(
    "/identities/{identity_id}/template",
    response_model=TemplateOut,
    responses=_ERRORS,
    summary="Get template metadata",
)
async def get_template(identity_id: str, request: Request) -> TemplateOut:
    service = _get_service(request)
    return _template_out(await _get_pool(request).run(service.get_template, identity_id))


# ---------------------------------------------------------------------------
# Verification and attendance
# ---------------------------------------------------------------------------


@router.post(
    "/identities/{identity_id}/verify",
    response_model=VerifyResponse,
    responses=_ERRORS,
    summary="Verify an embedding and record attendance",
)
async def verify(identity_id: str, body: VerifyRequest, request: Request) -> VerifyResponse:
    candidate = _to_embedding(body.sample)
    service = _get_service(request)
    outcome = await _get_pool(request).run(service.verify, identity_id, candidate)
    return _verify_out(outcome)


@router.post(
    "/identities/{identity_id}/verify-image",
    response_model=VerifyResponse,
    responses=_ERRORS,
    summary="Verify a cropped face image and record attendance",
)
async def verify_image(identity_id: str, file: UploadFile, request: Request) -> VerifyResponse:
    settings = _get_settings(request)
    extractor = _get_extractor(request)
    image = await _read_upload(file, settings)

    pool = _get_pool(request)
    candidate = await pool.run(extractor.extract, image)
    outcome = await pool.run(_get_service(request).verify, identity_id, candidate)
    return _verify_out(outcome)


@router.get(
    "/identities/{identity_id}/attendance/latest",
    response_model=AttendanceOut | None,
    responses=_ERRORS,
    summary="Latest attendance record",
)
async def latest_attendance(identity_id: str, request: Request) -> AttendanceOut | None:
    service = _get_service(request)
    record = await _get_pool(request).run(service.latest_attendance, identity_id)
    return _attendance_out(record) if record is not None else None


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_pool(request)
    models: ModelManager | None = getattr(request.app.state, "model_manager", None)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        store=type(_get_service(request).store).__name__,
        models_loaded=models.get_loaded_models() if models is not None else [],
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get("/models", response_model=ModelsResponse, summary="List recognition models")
async def list_models(request: Request) -> ModelsResponse:
    """Return recognition models and their status under the current configuration."""
    settings = _get_settings(request)
    return ModelsResponse(
        models=[
            ModelInfo(
                name=spec.name,
                embedding_dim=spec.embedding_dim,
                status=model_status(spec, settings),
                license=spec.license,
            )
            for spec in MODEL_REGISTRY.values()
        ]
    )
