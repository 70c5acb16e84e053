"""Build and launch Intel TDX guest images."""

from .builder import BuildResult, GuestImageBuilder
from .errors import (
    ChecksumError,
    CloudInitError,
    CustomizationError,
    DownloadError,
    ErrorCode,
    InitrdError,
    LaunchError,
    PreconditionError,
    ResizeError,
    TdGuestError,
    ValidationError,
)
from .launch import TdLauncher
from .manifest import BuildManifest
from .models import BuildConfig, LaunchConfig, RuntimePaths

__all__ = [
    "BuildConfig",
    "BuildManifest",
    "BuildResult",
    "ChecksumError",
    "CloudInitError",
    "CustomizationError",
    "DownloadError",
    "ErrorCode",
    "GuestImageBuilder",
    "InitrdError",
    "LaunchConfig",
    "LaunchError",
    "PreconditionError",
    "ResizeError",
    "RuntimePaths",
    "TdGuestError",
    "TdLauncher",
    "ValidationError",
]
