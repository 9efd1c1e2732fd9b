"""API route definitions."""

from __future__ import annotations

import secrets
from http import HTTPStatus
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, UploadFile, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

from snaplabel.api.schemas import (
    ClassifyImageResponse,
    ClassifyRequest,
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
    PredictionItem,
)
from snaplabel.ml.errors import ErrorCategory
from snaplabel.ml.model_manager import MODEL_REGISTRY, VARIANT_MODELS
from snaplabel.ml.resolver import HandleScheme, ImageHandle, to_local_path
from snaplabel.ml.session import OutcomeStatus, SessionState

if TYPE_CHECKING:
    from snaplabel.config import Settings
    from snaplabel.ml.session import ClassificationOutcome, SessionController

_bearer_scheme = HTTPBearer(auto_error=False)
_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


async def require_client_key(
    request: Request,
    bearer: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
    header_key: Annotated[str | None, Depends(_key_header)],
) -> None:
    """Gate the classification API behind SNAPLABEL_API_KEY when it is set.

    Front ends send the key either as ``Authorization: Bearer <key>`` or as an
    ``X-API-Key`` header.
    """
    expected: str | None = request.app.state.settings.api_key
    if expected is None:
        return

    supplied = bearer.credentials if bearer is not None else header_key
    if supplied is None or not secrets.compare_digest(supplied.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )


router = APIRouter(prefix="/api/v1", dependencies=[Depends(require_client_key)])

_ERROR_STATUS: dict[ErrorCategory, int] = {
    ErrorCategory.NO_IMAGE: status.HTTP_400_BAD_REQUEST,
    ErrorCategory.REFERENCE: HTTPStatus.UNPROCESSABLE_ENTITY.value,
    ErrorCategory.DECODE: HTTPStatus.UNPROCESSABLE_ENTITY.value,
    ErrorCategory.INFERENCE: status.HTTP_500_INTERNAL_SERVER_ERROR,
    ErrorCategory.BUSY: status.HTTP_409_CONFLICT,
    ErrorCategory.MODEL_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}

_CLASSIFY_RESPONSES: dict[int | str, dict[str, object]] = {
    code: {"model": ErrorResponse} for code in sorted(set(_ERROR_STATUS.values()))
}

_UPLOAD_SUFFIXES = {".jpg", ".jpeg", ".jpe", ".jfif"}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_controller(request: Request) -> SessionController:
    controller: SessionController = request.app.state.controller
    return controller


def _outcome_response(outcome: ClassificationOutcome) -> JSONResponse:
    if outcome.status is OutcomeStatus.SUCCEEDED:
        body = ClassifyImageResponse(
            predictions=[PredictionItem(label=p.label, probability=p.probability) for p in outcome.predictions]
        )
        return JSONResponse(status_code=status.HTTP_200_OK, content=body.model_dump())

    category = outcome.error or ErrorCategory.INFERENCE
    error = ErrorResponse(detail=outcome.detail or "Classification failed", category=category.value)
    return JSONResponse(status_code=_ERROR_STATUS[category], content=error.model_dump())


def _reference_allowed(handle: ImageHandle, settings: Settings) -> bool:
    """Whether a client-supplied reference points somewhere the service may read.

    Content URIs are confined by the provider itself. File paths must resolve
    inside the content root or the cache directory, and remote URLs are only
    fetched when SNAPLABEL_ALLOW_REMOTE_URLS is on.
    """
    if handle.scheme is HandleScheme.CONTENT_PROVIDER:
        return True
    if handle.scheme is HandleScheme.REMOTE_URL:
        return settings.allow_remote_urls

    try:
        target = Path(to_local_path(handle.raw)).resolve()
    except (OSError, ValueError):
        return False
    roots = (Path(settings.content_root).resolve(), Path(settings.cache_dir).resolve())
    return any(target.is_relative_to(root) and target != root for root in roots)


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    responses={**_CLASSIFY_RESPONSES, HTTPStatus.REQUEST_ENTITY_TOO_LARGE.value: {"model": ErrorResponse}},
    summary="Classify an uploaded photo",
)
async def classify_image(request: Request, file: UploadFile) -> JSONResponse:
    """Store the upload with the content provider and classify it like a picked photo.

    The stored upload and its cache copy are deleted once the request ends.
    """
    settings = _get_settings(request)
    controller = _get_controller(request)

    data = await file.read(settings.max_file_size + 1)
    if len(data) > settings.max_file_size:
        error = ErrorResponse(
            detail=f"Upload exceeds {settings.max_file_size} bytes",
            category=ErrorCategory.DECODE.value,
        )
        return JSONResponse(status_code=HTTPStatus.REQUEST_ENTITY_TOO_LARGE.value, content=error.model_dump())
    if not data:
        return _outcome_response(await controller.select_and_classify(None))

    suffix = PurePosixPath(file.filename or "").suffix.lower()
    uri = await run_in_threadpool(
        controller.content_provider.put,
        data,
        "uploads",
        suffix if suffix in _UPLOAD_SUFFIXES else ".jpg",
    )
    try:
        outcome = await controller.select_and_classify(ImageHandle.from_uri(uri))
    finally:
        await run_in_threadpool(controller.discard_content, uri)
    return _outcome_response(outcome)


@router.post(
    "/classify",
    response_model=ClassifyImageResponse,
    responses=_CLASSIFY_RESPONSES,
    summary="Classify an image by reference",
)
async def classify_reference(request: Request, body: ClassifyRequest) -> JSONResponse:
    """Classify a content:// URI, a file under the service's own storage, or (if enabled) an http(s) URL."""
    controller = _get_controller(request)
    if not body.uri:
        return _outcome_response(await controller.select_and_classify(None))

    handle = ImageHandle.from_uri(body.uri)
    if not _reference_allowed(handle, _get_settings(request)):
        error = ErrorResponse(detail="Image reference is not accessible", category=ErrorCategory.REFERENCE.value)
        return JSONResponse(status_code=_ERROR_STATUS[ErrorCategory.REFERENCE], content=error.model_dump())
    return _outcome_response(await controller.select_and_classify(handle))


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return session readiness and the active capability profile."""
    controller = _get_controller(request)
    state = controller.state
    if state in (SessionState.READY, SessionState.BUSY):
        health_status = "ok"
    elif state is SessionState.INIT_FAILED:
        health_status = "unavailable"
    else:
        health_status = "starting"

    profile = controller.profile
    return HealthResponse(
        status=health_status,
        state=state.value,
        platform=profile.platform.value if profile else None,
        backend=profile.backend.value if profile else None,
        model_variant=profile.model_variant.value if profile else None,
        target_edge=profile.target_edge if profile else None,
        busy=controller.is_busy,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return the classifier registry, marking the model the session runs and the ones with open sessions."""
    controller = _get_controller(request)
    profile = controller.profile
    active_model = VARIANT_MODELS[profile.model_variant] if profile else None
    loaded = set(controller.model_manager.get_loaded_models())

    models: list[ModelInfo] = []
    for name, spec in MODEL_REGISTRY.items():
        models.append(
            ModelInfo(
                name=name,
                variant=spec.variant.value,
                input_edge=spec.input_edge,
                width_multiplier=spec.width_multiplier,
                status="active" if name == active_model else "available",
                loaded=name in loaded,
                license=spec.license,
            )
        )

    return ModelsResponse(models=models)
