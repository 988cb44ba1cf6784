# aliyundrive_fuse/errors.py
"""Exception hierarchy and HTTP error mapping for the drive adapter."""

from __future__ import annotations

from typing import Any, Optional


class DriveError(Exception):
    """
    Base exception for aliyundrive_fuse.

    Attributes:
        details: Optional structured information (HTTP status, remote error code).
        cause: Optional original exception that triggered this error.
    """

    def __init__(
        self,
        message: str,
        *,
        details: Optional[dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.details = details or {}
        self.cause = cause


class UnauthorizedError(DriveError):
    """Access token rejected by the remote API (HTTP 401)."""


class NotFoundError(DriveError):
    """Remote object or path component does not exist."""


class NotADirectoryFault(DriveError):
    """A non-terminal path component resolved to a file."""


class ConflictError(DriveError):
    """Target name already exists (HTTP 409, AlreadyExist.*)."""


class RateLimitedError(DriveError):
    """Remote API asked us to slow down (HTTP 429)."""


class TransientError(DriveError):
    """Network failure, timeout or 5xx; worth retrying."""


class FatalError(DriveError):
    """Malformed response or unclassified failure; never retried."""


class RefreshTokenRevokedError(FatalError):
    """The refresh token is invalid or revoked. Ends the session."""


class LoginFailedError(DriveError):
    """QR login did not produce a refresh token."""


class LoginCancelledError(LoginFailedError):
    """QR login was abandoned by the caller."""


class ConfigError(DriveError):
    """Invalid or inconsistent settings."""


RETRYABLE_ERRORS = (TransientError, RateLimitedError)


def map_http_error(
    status_code: int,
    code: Optional[str] = None,
    message: Optional[str] = None,
    *,
    cause: Optional[BaseException] = None,
) -> DriveError:
    """
    Map an HTTP status and remote error code to a DriveError.

    Policy:
        - 401 or AccessTokenInvalid/AccessTokenExpired -> UnauthorizedError
        - 404 or NotFound.* -> NotFoundError
        - 409 or AlreadyExist.* -> ConflictError
        - 429 or TooManyRequests -> RateLimitedError
        - 5xx -> TransientError
        - otherwise -> FatalError
    """
    details: dict[str, Any] = {"status_code": status_code, "code": code}
    text = message or f"HTTP error {status_code}"
    code = code or ""

    if status_code == 401 or code.startswith("AccessToken"):
        return UnauthorizedError(text, details=details, cause=cause)
    if status_code == 404 or code.startswith("NotFound"):
        return NotFoundError(text, details=details, cause=cause)
    if status_code == 409 or code.startswith("AlreadyExist"):
        return ConflictError(text, details=details, cause=cause)
    if status_code == 429 or code == "TooManyRequests":
        return RateLimitedError(text, details=details, cause=cause)
    if 500 <= status_code <= 599:
        return TransientError(text, details=details, cause=cause)

    return FatalError(text, details=details, cause=cause)
