"""Model manager: download, load, and cache ONNX classifier models.

Handles downloading models and label files from HuggingFace, mapping the
capability profile's backend onto ONNX Runtime execution providers, and
creating the single classifier a session uses for its whole lifetime.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from snaplabel.ml.errors import InitializationError
from snaplabel.ml.image_classifier import OnnxImageClassifier
from snaplabel.ml.profile import Backend, ModelVariant

if TYPE_CHECKING:
    from snaplabel.config import Settings
    from snaplabel.ml.image_classifier import ImageClassifier
    from snaplabel.ml.profile import CapabilityProfile

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """Protocol for model lifecycle management."""

    def load_classifier(self, profile: CapabilityProfile) -> ImageClassifier:
        """Initialise the backend and load the classifier for a profile."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Return names of currently loaded models."""
        ...

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX classifier."""

    name: str
    filename: str
    labels_filename: str
    variant: ModelVariant
    input_edge: int
    width_multiplier: float
    license: str
    outputs_logits: bool = True


MODEL_REGISTRY: dict[str, ModelSpec] = {
    "mobilenet_v2_035_96": ModelSpec(
        name="mobilenet_v2_035_96",
        filename="mobilenet_v2_0.35_96.onnx",
        labels_filename="imagenet_labels.txt",
        variant=ModelVariant.LIGHT,
        input_edge=96,
        width_multiplier=0.35,
        license="Apache-2.0",
    ),
    "mobilenet_v2_100_224": ModelSpec(
        name="mobilenet_v2_100_224",
        filename="mobilenet_v2_1.0_224.onnx",
        labels_filename="imagenet_labels.txt",
        variant=ModelVariant.STANDARD,
        input_edge=224,
        width_multiplier=1.0,
        license="Apache-2.0",
    ),
}

VARIANT_MODELS: dict[ModelVariant, str] = {
    ModelVariant.LIGHT: "mobilenet_v2_035_96",
    ModelVariant.STANDARD: "mobilenet_v2_100_224",
}


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelManager:
    """Downloads ONNX classifiers and creates their inference sessions."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)

        self._lock = threading.Lock()
        self._sessions: dict[str, InferenceSession] = {}
        self._model_paths: dict[str, Path] = {}

    # -- Public API ---------------------------------------------------------

    def load_classifier(self, profile: CapabilityProfile) -> ImageClassifier:
        """Load the classifier matching the profile's model variant.

        Raises:
            InitializationError: If download, session creation, or label loading fails,
                or the model's input size does not match the profile.
        """
        spec = self.get_spec(VARIANT_MODELS[profile.model_variant])
        if spec.input_edge != profile.target_edge:
            raise InitializationError(
                f"Model '{spec.name}' takes {spec.input_edge}px input, profile needs {profile.target_edge}px"
            )

        try:
            session = self.get_session(spec.name, profile.backend)
            labels = self.load_labels(spec)
            classifier = OnnxImageClassifier(
                spec.name,
                session,
                labels,
                top_k=self._settings.top_k,
                outputs_logits=spec.outputs_logits,
            )
        except InitializationError:
            raise
        except Exception as exc:
            raise InitializationError(f"Could not load model '{spec.name}': {exc}") from exc

        if classifier.input_edge not in (None, profile.target_edge):
            raise InitializationError(
                f"Model '{spec.name}' declares {classifier.input_edge}px input, profile needs {profile.target_edge}px"
            )
        logger.info(
            "Classifier %s ready (backend=%s, providers=%s)",
            spec.name,
            profile.backend,
            session.get_providers(),
        )
        return classifier

    def ensure_downloaded(self, filename: str) -> Path:
        """Download a file from the model repository if not already present locally."""
        cached = self._model_paths.get(filename)
        if cached is not None and cached.exists():
            return cached

        self._models_dir.mkdir(parents=True, exist_ok=True)
        downloaded = Path(
            hf_hub_download(
                repo_id=self._settings.model_repo_id,
                filename=filename,
                local_dir=str(self._models_dir),
            )
        )
        self._model_paths[filename] = downloaded
        logger.info("Downloaded %s to %s", filename, downloaded)
        return downloaded

    def get_session(self, model_name: str, backend: Backend) -> InferenceSession:
        """Return the cached InferenceSession for a model, creating one if needed."""
        with self._lock:
            cached = self._sessions.get(model_name)
            if cached is not None:
                return cached

        spec = self.get_spec(model_name)
        model_path = self.ensure_downloaded(spec.filename)
        session = InferenceSession(
            str(model_path),
            sess_options=self._build_session_options(),
            providers=self._build_providers(backend),
        )

        with self._lock:
            # Double-check: another thread may have created it while we loaded.
            existing = self._sessions.get(model_name)
            if existing is not None:
                return existing
            self._sessions[model_name] = session
            logger.info("Loaded session for %s", model_name)
            return session

    def load_labels(self, spec: ModelSpec) -> list[str]:
        """Read the model's label file, one label per line."""
        path = self.ensure_downloaded(spec.labels_filename)
        labels = [line.strip() for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]
        if not labels:
            raise InitializationError(f"Label file {spec.labels_filename} is empty")
        return labels

    def get_loaded_models(self) -> list[str]:
        """Return names of models with active sessions."""
        with self._lock:
            return list(self._sessions.keys())

    def shutdown(self) -> None:
        """Clear all cached sessions."""
        with self._lock:
            self._sessions.clear()
            logger.info("All model sessions cleared")

    @staticmethod
    def get_spec(model_name: str) -> ModelSpec:
        try:
            return MODEL_REGISTRY[model_name]
        except KeyError:
            raise KeyError(f"Unknown model: {model_name}") from None

    # -- Internal -----------------------------------------------------------

    def _build_providers(self, backend: Backend) -> list[str | tuple[str, dict[str, object]]]:
        if backend is Backend.GPU_WEB:
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if backend is Backend.GPU_NATIVE:
            return [
                ("CoreMLExecutionProvider", {"MLComputeUnits": "ALL"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True
        return opts
