"""Error taxonomy for remote playback.

Every failure that leaves the adapter or the token layer is a ``PlaybackError``
carrying a stable ``code`` so callers can present it without inspecting
provider-specific exceptions.
"""

from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    """Stable error codes surfaced to callers."""

    TOKEN_REVOKED = "TOKEN_REVOKED"
    NO_REFRESH_TOKEN = "NO_REFRESH_TOKEN"
    NO_ACTIVE_DEVICE = "NO_ACTIVE_DEVICE"
    VALIDATION = "VALIDATION"
    TRANSIENT = "TRANSIENT"
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    NO_PLAYABLE_TRACKS = "NO_PLAYABLE_TRACKS"
    PROVIDER_ERROR = "PROVIDER_ERROR"


class PlaybackError(Exception):
    """Base class for all normalized playback failures.

    Attributes:
        message: Human-readable description.
        code: Stable error code.
        requires_reauth: Whether the user must connect the provider account again.
    """

    code: ErrorCode = ErrorCode.PROVIDER_ERROR
    requires_reauth: bool = False

    def __init__(self, message: str, *, code: ErrorCode | None = None, requires_reauth: bool | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if requires_reauth is not None:
            self.requires_reauth = requires_reauth

    def to_dict(self) -> dict[str, Any]:
        """Return the ``{message, code}`` shape handed to callers."""
        payload: dict[str, Any] = {"message": self.message, "code": str(self.code)}
        if self.requires_reauth:
            payload["requiresReauth"] = True
        return payload


class TokenRevokedError(PlaybackError):
    code = ErrorCode.TOKEN_REVOKED
    requires_reauth = True


class NoRefreshTokenError(PlaybackError):
    code = ErrorCode.NO_REFRESH_TOKEN
    requires_reauth = True


class NoActiveDeviceError(PlaybackError):
    code = ErrorCode.NO_ACTIVE_DEVICE


class PlaybackValidationError(PlaybackError):
    code = ErrorCode.VALIDATION


class TransientError(PlaybackError):
    code = ErrorCode.TRANSIENT


class RateLimitExceededError(PlaybackError):
    code = ErrorCode.RATE_LIMIT_EXCEEDED


class NoPlayableTracksError(PlaybackError):
    code = ErrorCode.NO_PLAYABLE_TRACKS


class ProviderError(PlaybackError):
    """Any other non-2xx answer from the provider."""

    code = ErrorCode.PROVIDER_ERROR

    def __init__(self, message: str, *, http_status: int | None = None) -> None:
        super().__init__(message)
        self.http_status = http_status


class TokenDecryptionError(ValueError):
    """Raised when an encrypted refresh token is malformed or fails authentication."""
