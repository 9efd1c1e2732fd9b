"""Failure taxonomy for the classification pipeline.

Each error carries a coarse ``category`` that survives up to the published
outcome and the HTTP response, so callers can tell "model unavailable" apart
from "decode failed" without inspecting messages.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorCategory(StrEnum):
    NO_IMAGE = "no_image"
    REFERENCE = "reference"
    DECODE = "decode"
    INFERENCE = "inference"
    MODEL_UNAVAILABLE = "model_unavailable"
    BUSY = "busy"


class SnapLabelError(Exception):
    """Base class for pipeline failures."""

    category: ErrorCategory = ErrorCategory.INFERENCE


class InitializationError(SnapLabelError):
    """Backend setup or model load failed. Fatal for the session."""

    category = ErrorCategory.MODEL_UNAVAILABLE


class ImageReferenceError(SnapLabelError):
    """A platform image handle could not be turned into a readable source."""

    category = ErrorCategory.REFERENCE


class DecodeError(SnapLabelError):
    """Image bytes were malformed, unsupported, or could not be read."""

    category = ErrorCategory.DECODE


class InferenceError(SnapLabelError):
    """The classifier rejected the tensor or failed internally."""

    category = ErrorCategory.INFERENCE
