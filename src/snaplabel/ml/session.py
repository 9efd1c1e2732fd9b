"""Session controller.

Owns the capability profile, the loaded classifier and the worker thread for
one process, and drives each user selection through
resolve -> decode -> classify -> publish.

States:
    UNINITIALIZED -> INITIALIZING -> READY -> BUSY -> READY
                                  \\-> INIT_FAILED (terminal)

Requests are never queued: a selection that arrives while another is in
flight is rejected.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from snaplabel.ml.errors import (
    ErrorCategory,
    InitializationError,
    SnapLabelError,
)
from snaplabel.ml.inference import InferenceWorker
from snaplabel.ml.model_manager import OnnxModelManager
from snaplabel.ml.preprocessing import TensorBuilder
from snaplabel.ml.profile import resolve_profile
from snaplabel.ml.resolver import ContentProvider, ImageResolver, LocalByteAccess

if TYPE_CHECKING:
    from snaplabel.config import Settings
    from snaplabel.ml.image_classifier import ImageClassifier, Prediction
    from snaplabel.ml.model_manager import ModelManager
    from snaplabel.ml.profile import CapabilityProfile
    from snaplabel.ml.resolver import ImageHandle

logger = logging.getLogger(__name__)


class SessionState(StrEnum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    BUSY = "busy"
    INIT_FAILED = "init_failed"


class OutcomeStatus(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REJECTED = "rejected"


@dataclass(frozen=True)
class ClassificationOutcome:
    """Result of one selection, as published to the front end."""

    status: OutcomeStatus
    predictions: tuple[Prediction, ...] = ()
    error: ErrorCategory | None = None
    detail: str | None = None

    @classmethod
    def failed(cls, error: ErrorCategory, detail: str) -> ClassificationOutcome:
        return cls(status=OutcomeStatus.FAILED, error=error, detail=detail)

    @classmethod
    def rejected(cls, error: ErrorCategory, detail: str) -> ClassificationOutcome:
        return cls(status=OutcomeStatus.REJECTED, error=error, detail=detail)


class SessionController:
    """One classification session per process."""

    def __init__(
        self,
        settings: Settings,
        *,
        model_manager: ModelManager | None = None,
        content_provider: ContentProvider | None = None,
        resolver: ImageResolver | None = None,
        tensor_builder: TensorBuilder | None = None,
        worker: InferenceWorker | None = None,
    ) -> None:
        self._settings = settings
        self._worker = worker or InferenceWorker()
        self._model_manager = model_manager or OnnxModelManager(settings)
        self.content_provider = content_provider or ContentProvider(settings.content_root)

        byte_access = LocalByteAccess(self.content_provider)
        self._resolver = resolver or ImageResolver(byte_access, settings.cache_dir, self._worker)
        self._tensor_builder = tensor_builder or TensorBuilder(
            byte_access,
            self._worker,
            max_image_pixels=settings.max_image_pixels,
            max_file_size=settings.max_file_size,
            remote_timeout=settings.remote_timeout,
        )

        self._state = SessionState.UNINITIALIZED
        self._profile: CapabilityProfile | None = None
        self._classifier: ImageClassifier | None = None
        self._init_error: InitializationError | None = None
        self._published: ClassificationOutcome | None = None

    # -- Properties ---------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def profile(self) -> CapabilityProfile | None:
        return self._profile

    @property
    def is_busy(self) -> bool:
        return self._state is SessionState.BUSY

    @property
    def published(self) -> ClassificationOutcome | None:
        """Last completed outcome, or None while nothing has been classified."""
        return self._published

    @property
    def model_manager(self) -> ModelManager:
        return self._model_manager

    # -- Lifecycle ----------------------------------------------------------

    async def start(self) -> CapabilityProfile:
        """Resolve the capability profile and load the classifier once.

        Raises:
            InitializationError: If the profile or the model cannot be set up. The
                session then stays unavailable; later calls re-raise the same error.
        """
        if self._init_error is not None:
            raise self._init_error
        if self._state is SessionState.INITIALIZING:
            raise InitializationError("Session is already initializing")
        if self._profile is not None:
            return self._profile

        self._state = SessionState.INITIALIZING
        try:
            profile = resolve_profile(self._settings.platform)
            for directory in (self._settings.cache_dir, self._settings.content_root):
                Path(directory).mkdir(parents=True, exist_ok=True)
            classifier = await self._worker.run(self._model_manager.load_classifier, profile)
        except InitializationError as exc:
            self._fail_initialization(exc)
            raise
        except Exception as exc:
            error = InitializationError(f"Session setup failed: {exc}")
            self._fail_initialization(error)
            raise error from exc

        self._profile = profile
        self._classifier = classifier
        self._state = SessionState.READY
        logger.info(
            "Session ready (platform=%s, backend=%s, variant=%s, edge=%d)",
            profile.platform,
            profile.backend,
            profile.model_variant,
            profile.target_edge,
        )
        return profile

    def _fail_initialization(self, error: InitializationError) -> None:
        self._init_error = error
        self._state = SessionState.INIT_FAILED
        logger.exception("Session initialisation failed; classification unavailable")

    def shutdown(self) -> None:
        """Stop the worker and release model sessions."""
        self._worker.shutdown()
        self._model_manager.shutdown()

    # -- Requests -----------------------------------------------------------

    async def select_and_classify(self, handle: ImageHandle | None) -> ClassificationOutcome:
        """Classify the selected image and publish the outcome.

        Per-request failures never raise; they come back as a FAILED outcome with
        the error category. Calls made while the session is not READY are
        REJECTED without touching the image.
        """
        if self._state is SessionState.BUSY:
            logger.warning("Selection rejected: a classification is already running")
            return ClassificationOutcome.rejected(ErrorCategory.BUSY, "A classification is already running")
        if self._state is not SessionState.READY:
            logger.warning("Selection rejected: session is %s", self._state)
            return ClassificationOutcome.rejected(
                ErrorCategory.MODEL_UNAVAILABLE, f"Classification unavailable (session {self._state})"
            )
        if handle is None:
            outcome = ClassificationOutcome.failed(ErrorCategory.NO_IMAGE, "No image selected")
            self._published = outcome
            return outcome

        self._state = SessionState.BUSY
        self._published = None
        try:
            outcome = await self._run_pipeline(handle)
        finally:
            self._state = SessionState.READY
        self._published = outcome
        return outcome

    async def _run_pipeline(self, handle: ImageHandle) -> ClassificationOutcome:
        profile, classifier = self._profile, self._classifier
        try:
            if profile is None or classifier is None:
                raise InitializationError("Session is not initialised")
            resolved = await self._resolver.resolve(handle)
            tensor = await self._tensor_builder.build_tensor(resolved, profile)
            with tensor:
                predictions = await self._worker.run(classifier.classify, tensor.data)
        except SnapLabelError as exc:
            logger.warning("Classification of %s failed (%s): %s", handle.raw, exc.category, exc)
            return ClassificationOutcome.failed(exc.category, str(exc))

        logger.info(
            "Classified %s: %s",
            handle.raw,
            ", ".join(f"{p.label}={p.probability:.2f}" for p in predictions),
        )
        return ClassificationOutcome(status=OutcomeStatus.SUCCEEDED, predictions=tuple(predictions))

    def discard_content(self, uri: str) -> None:
        """Delete provider content and its cache copy once a request is done with them."""
        self.content_provider.remove(uri)
        self._resolver.cache_path_for(uri).unlink(missing_ok=True)
        logger.debug("Discarded %s", uri)
