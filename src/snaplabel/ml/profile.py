"""Platform capability profiles.

The profile is resolved once at startup and fixes the numeric backend, the
model variant and the input resolution for the lifetime of the process.
Resource-constrained devices get a narrower model fed with smaller images.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class Platform(StrEnum):
    ANDROID = "android"
    IOS = "ios"
    WEB = "web"


class Backend(StrEnum):
    CPU = "cpu"
    GPU_NATIVE = "gpu_native"
    GPU_WEB = "gpu_web"


class ModelVariant(StrEnum):
    LIGHT = "light"
    STANDARD = "standard"


@dataclass(frozen=True)
class CapabilityProfile:
    """Execution policy for one platform."""

    platform: Platform
    backend: Backend
    model_variant: ModelVariant
    target_edge: int


_PROFILES: dict[Platform, CapabilityProfile] = {
    Platform.ANDROID: CapabilityProfile(
        platform=Platform.ANDROID,
        backend=Backend.CPU,
        model_variant=ModelVariant.LIGHT,
        target_edge=96,
    ),
    Platform.IOS: CapabilityProfile(
        platform=Platform.IOS,
        backend=Backend.GPU_NATIVE,
        model_variant=ModelVariant.STANDARD,
        target_edge=224,
    ),
    Platform.WEB: CapabilityProfile(
        platform=Platform.WEB,
        backend=Backend.GPU_WEB,
        model_variant=ModelVariant.STANDARD,
        target_edge=224,
    ),
}


def resolve_profile(platform: Platform | str) -> CapabilityProfile:
    """Return the capability profile for a platform.

    Raises:
        ValueError: If the platform is not one of android, ios or web.
    """
    try:
        return _PROFILES[Platform(platform)]
    except ValueError:
        raise ValueError(f"Unknown platform: {platform}") from None
