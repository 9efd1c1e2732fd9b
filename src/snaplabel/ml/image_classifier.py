"""Image classification service.

Consumes ``[1, H, W, 3]`` float32 tensors with raw 0..255 RGB values and returns
ranked labels. MobileNet input normalisation (``x / 127.5 - 1``) happens here,
not in preprocessing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

from snaplabel.ml.errors import InferenceError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Prediction:
    """A single classification prediction."""

    label: str
    probability: float


class ImageClassifier(Protocol):
    """Protocol for image classification models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def classify(self, tensor: NDArray[np.float32]) -> list[Prediction]:
        """Classify an image tensor and return ranked labels.

        Args:
            tensor: 1xHxWx3 float32 array, RGB, values 0..255.

        Returns:
            Predictions sorted by probability (descending).

        Raises:
            InferenceError: If the tensor is incompatible or inference fails.
        """
        ...


class OnnxImageClassifier:
    """MobileNet-style classifier backed by an ONNX Runtime session."""

    def __init__(
        self,
        model_name: str,
        session: InferenceSession,
        labels: Sequence[str],
        *,
        top_k: int = 3,
        outputs_logits: bool = True,
    ) -> None:
        self._model_name = model_name
        self._session = session
        self._labels = list(labels)
        self._top_k = top_k
        self._outputs_logits = outputs_logits

        model_input = session.get_inputs()[0]
        self._input_name: str = model_input.name
        self._input_shape = list(model_input.shape)

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def input_edge(self) -> int | None:
        """Static spatial size the model expects, or None if it is dynamic."""
        height = self._input_shape[1] if len(self._input_shape) == 4 else None
        return height if isinstance(height, int) else None

    def classify(self, tensor: NDArray[np.float32]) -> list[Prediction]:
        self._check_input(tensor)
        model_input = (tensor / np.float32(127.5) - np.float32(1.0)).astype(np.float32)

        try:
            outputs = self._session.run(None, {self._input_name: model_input})
        except Exception as exc:
            raise InferenceError(f"{self._model_name} inference failed: {exc}") from exc

        scores = np.asarray(outputs[0], dtype=np.float32).reshape(-1)
        # TF-slim MobileNets emit an extra leading "background" class.
        if scores.size == len(self._labels) + 1:
            scores = scores[1:]
        if scores.size != len(self._labels):
            raise InferenceError(f"{self._model_name} produced {scores.size} scores for {len(self._labels)} labels")

        probabilities = _softmax(scores) if self._outputs_logits else scores
        top = np.argsort(-probabilities, kind="stable")[: self._top_k]
        return [Prediction(label=self._labels[i], probability=float(probabilities[i])) for i in top]

    def _check_input(self, tensor: NDArray[np.float32]) -> None:
        if tensor.dtype != np.float32:
            raise InferenceError(f"Expected float32 tensor, got {tensor.dtype}")
        if tensor.ndim != 4 or tensor.shape[0] != 1 or tensor.shape[3] != 3:
            raise InferenceError(f"Expected tensor shape [1, H, W, 3], got {list(tensor.shape)}")
        for axis, expected in ((1, self._input_shape[1:2]), (2, self._input_shape[2:3])):
            if expected and isinstance(expected[0], int) and tensor.shape[axis] != expected[0]:
                raise InferenceError(
                    f"{self._model_name} expects {self._input_shape[1]}x{self._input_shape[2]} input, "
                    f"got {tensor.shape[1]}x{tensor.shape[2]}"
                )


def _softmax(scores: NDArray[np.float32]) -> NDArray[np.float32]:
    shifted = np.exp(scores - scores.max())
    return shifted / shifted.sum()
