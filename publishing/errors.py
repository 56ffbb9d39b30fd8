"""
Crosspost Publish Errors
========================
Centralized error taxonomy for the publishing pipeline.

Every failure a platform adapter can produce is normalized into a PublishError
subclass so the orchestrator can record it on the PostPlatform row and the API
can map it onto an HTTP status.
"""

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Standardized error codes for debugging and frontend display."""
    # Generic
    UNKNOWN = "UNKNOWN"
    INTERNAL = "INTERNAL"
    TIMEOUT = "TIMEOUT"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    NOT_FOUND = "NOT_FOUND"
    INVALID_STATE = "INVALID_STATE"

    # Auth
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"

    # Credentials
    NOT_CONNECTED = "NOT_CONNECTED"
    TOKEN_REFRESH_FAILED = "TOKEN_REFRESH_FAILED"
    SCOPE_INSUFFICIENT = "SCOPE_INSUFFICIENT"

    # Platform
    PLATFORM_TRANSIENT = "PLATFORM_TRANSIENT"
    PLATFORM_FAILED = "PLATFORM_FAILED"
    UNSUPPORTED = "UNSUPPORTED"
    UPLOAD_TOO_LARGE = "UPLOAD_TOO_LARGE"
    UPLOAD_IN_PROGRESS = "UPLOAD_IN_PROGRESS"

    # Storage
    BLOB_NOT_FOUND = "BLOB_NOT_FOUND"
    STORAGE_FAILED = "STORAGE_FAILED"

    # Database / network
    DB_ERROR = "DB_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"


class PublishError(Exception):
    """
    Error raised while publishing to a platform.

    Attributes:
        code: Standardized error code
        message: Human-readable error message
        details: Optional additional context
        retryable: Whether this error can be retried unchanged
        platform: Which platform raised the error (if any)
    """

    default_code = ErrorCode.UNKNOWN
    default_retryable = False

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        details: Optional[dict] = None,
        retryable: Optional[bool] = None,
        platform: Optional[str] = None,
    ):
        self.code = code or self.default_code
        self.message = message
        self.details = details or {}
        self.retryable = self.default_retryable if retryable is None else retryable
        self.platform = platform
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to dictionary for logging/API response."""
        return {
            "error_code": self.code.value,
            "error_message": self.message,
            "details": self.details,
            "retryable": self.retryable,
            "platform": self.platform,
        }


class NotConnected(PublishError):
    """No credential row exists for (user, platform)."""
    default_code = ErrorCode.NOT_CONNECTED


class TokenRefreshFailed(PublishError):
    """Refresh call failed. Soft: the token manager logs it and keeps the old token."""
    default_code = ErrorCode.TOKEN_REFRESH_FAILED


class TransientPlatformError(PublishError):
    """The vendor flagged the failure as safe to retry unchanged."""
    default_code = ErrorCode.PLATFORM_TRANSIENT
    default_retryable = True


class PermanentPlatformError(PublishError):
    """Invalid file, policy violation, bad request - retrying will not help."""
    default_code = ErrorCode.PLATFORM_FAILED


class ScopeInsufficient(PublishError):
    """The stored token lacks a permission the call needs."""
    default_code = ErrorCode.SCOPE_INSUFFICIENT


class UnsupportedOperation(PublishError):
    """The platform API cannot perform this operation (e.g. TikTok metadata edit)."""
    default_code = ErrorCode.UNSUPPORTED


class BlobNotFound(PublishError):
    """The transient video is gone; the caller must supply a fresh file."""
    default_code = ErrorCode.BLOB_NOT_FOUND


# Substrings the vendors use for missing-permission failures
SCOPE_ERROR_MARKERS = (
    "insufficient authentication scopes",
    "insufficientPermissions",
    "ACCESS_TOKEN_SCOPE_INSUFFICIENT",
)


def is_scope_error(message: str) -> bool:
    return any(marker in (message or "") for marker in SCOPE_ERROR_MARKERS)


def reconnect_hint(platform: str) -> str:
    return (
        f"Permission error - please disconnect and reconnect your {platform} account "
        f"to get updated permissions"
    )


def user_facing_message(platform: str, error: BaseException) -> str:
    """Normalize any adapter failure into the string stored on the PostPlatform row."""
    message = getattr(error, "message", None) or str(error) or error.__class__.__name__
    if isinstance(error, ScopeInsufficient) or is_scope_error(message):
        return reconnect_hint(platform)
    return message


def error_from_exception(e: Exception, platform: Optional[str] = None) -> PublishError:
    """Convert a generic exception to a PublishError."""
    if isinstance(e, PublishError):
        return e

    error_msg = str(e)
    lowered = error_msg.lower()

    if is_scope_error(error_msg):
        return ScopeInsufficient(error_msg, platform=platform)
    if "timeout" in lowered or "timed out" in lowered:
        return TransientPlatformError(error_msg, code=ErrorCode.TIMEOUT, platform=platform)
    if "connection" in lowered or "network" in lowered:
        return TransientPlatformError(error_msg, code=ErrorCode.NETWORK_ERROR, platform=platform)

    return PublishError(error_msg, platform=platform)


# HTTP status code mapping
ERROR_HTTP_STATUS = {
    ErrorCode.UNKNOWN: 500,
    ErrorCode.INTERNAL: 500,
    ErrorCode.TIMEOUT: 504,
    ErrorCode.VALIDATION_FAILED: 400,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.INVALID_STATE: 409,
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.NOT_CONNECTED: 400,
    ErrorCode.TOKEN_REFRESH_FAILED: 502,
    ErrorCode.SCOPE_INSUFFICIENT: 403,
    ErrorCode.PLATFORM_TRANSIENT: 503,
    ErrorCode.PLATFORM_FAILED: 502,
    ErrorCode.UNSUPPORTED: 501,
    ErrorCode.UPLOAD_TOO_LARGE: 413,
    ErrorCode.UPLOAD_IN_PROGRESS: 409,
    ErrorCode.BLOB_NOT_FOUND: 404,
    ErrorCode.STORAGE_FAILED: 500,
    ErrorCode.DB_ERROR: 500,
    ErrorCode.NETWORK_ERROR: 502,
}


def get_http_status(code: ErrorCode) -> int:
    """Get HTTP status code for an error code."""
    return ERROR_HTTP_STATUS.get(code, 500)
