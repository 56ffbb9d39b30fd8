"""
Crosspost publishing package.

Keep this module intentionally lightweight: it only re-exports the error
primitives. Import the heavier modules directly
(e.g. `from publishing.orchestrator import PublishOrchestrator`).
"""

from .errors import (
    PublishError,
    ErrorCode,
    NotConnected,
    TokenRefreshFailed,
    TransientPlatformError,
    PermanentPlatformError,
    ScopeInsufficient,
    UnsupportedOperation,
    BlobNotFound,
)

__all__ = [
    "PublishError",
    "ErrorCode",
    "NotConnected",
    "TokenRefreshFailed",
    "TransientPlatformError",
    "PermanentPlatformError",
    "ScopeInsufficient",
    "UnsupportedOperation",
    "BlobNotFound",
]
