"""Typed error model with stable, machine-readable error codes."""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum


class ErrorCode(StrEnum):
    """Stable error identifiers used across CLI and API surfaces."""

    VALIDATION = "E_VALIDATION"
    PRECONDITION = "E_PRECONDITION"
    DOWNLOAD = "E_DOWNLOAD"
    CHECKSUM = "E_CHECKSUM"
    RESIZE = "E_RESIZE"
    CLOUD_INIT = "E_CLOUD_INIT"
    CUSTOMIZATION = "E_CUSTOMIZATION"
    INITRD = "E_INITRD"
    LAUNCH = "E_LAUNCH"


class TdGuestError(Exception):
    """Base error class that carries code, optional hint, and context."""

    code: str
    hint: str | None
    context: Mapping[str, str]
    default_code: ErrorCode = ErrorCode.VALIDATION

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode | None = None,
        hint: str | None = None,
        context: Mapping[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = (code or self.default_code).value
        self.hint = hint
        self.context = dict(context or {})

    @property
    def message(self) -> str:
        return super().__str__()

    def __str__(self) -> str:
        parts = [self.message]
        if self.hint:
            parts.append(f"Hint: {self.hint}")
        if self.context:
            for k, v in self.context.items():
                if v:
                    parts.append(f"  {k}: {v}")
        return "\n".join(parts)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "code": self.code,
            "message": self.message,
            "context": dict(self.context),
        }
        if self.hint is not None:
            payload["hint"] = self.hint
        return payload


class ValidationError(TdGuestError):
    default_code = ErrorCode.VALIDATION


class PreconditionError(TdGuestError):
    default_code = ErrorCode.PRECONDITION


class DownloadError(TdGuestError):
    default_code = ErrorCode.DOWNLOAD


class ChecksumError(TdGuestError):
    default_code = ErrorCode.CHECKSUM


class ResizeError(TdGuestError):
    default_code = ErrorCode.RESIZE


class CloudInitError(TdGuestError):
    default_code = ErrorCode.CLOUD_INIT


class CustomizationError(TdGuestError):
    default_code = ErrorCode.CUSTOMIZATION


class InitrdError(TdGuestError):
    default_code = ErrorCode.INITRD


class LaunchError(TdGuestError):
    default_code = ErrorCode.LAUNCH


__all__ = [
    "ChecksumError",
    "CloudInitError",
    "CustomizationError",
    "DownloadError",
    "ErrorCode",
    "InitrdError",
    "LaunchError",
    "PreconditionError",
    "ResizeError",
    "TdGuestError",
    "ValidationError",
]
