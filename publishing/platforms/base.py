"""
Crosspost Platform Adapter Base
===============================
Common contract every vendor adapter implements, plus response classification.

Classification of a vendor error response:
  - scope markers in the body       -> ScopeInsufficient
  - 429 / 5xx / Graph is_transient  -> TransientPlatformError (retried)
  - anything else                   -> PermanentPlatformError
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Callable, Awaitable

import httpx

from ..config import PlatformSettings
from ..errors import (
    ScopeInsufficient,
    TransientPlatformError,
    PermanentPlatformError,
    UnsupportedOperation,
    is_scope_error,
)
from ..models import Platform, UploadRequest, UploadResult, MetadataUpdate
from ..retry import phase_policy, RetryPolicy

logger = logging.getLogger("crosspost")

API_TIMEOUT = httpx.Timeout(30.0)


def _body_is_transient(resp: httpx.Response) -> bool:
    try:
        body = resp.json()
    except ValueError:
        return False
    error = body.get("error") if isinstance(body, dict) else None
    return isinstance(error, dict) and bool(error.get("is_transient"))


def check_response(resp: httpx.Response, action: str, platform: Platform) -> dict:
    """Return the JSON body of a successful response or raise a classified error."""
    if resp.status_code < 400:
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            return {}

    text = resp.text[:500]
    message = f"{action} failed: {text}"
    details = {"http_status": resp.status_code}

    if is_scope_error(text):
        logger.warning(f"{platform.value}: {action} rejected for missing permissions")
        raise ScopeInsufficient(message, details=details, platform=platform.value)
    if resp.status_code == 429 or resp.status_code >= 500 or _body_is_transient(resp):
        raise TransientPlatformError(message, details=details, platform=platform.value)
    raise PermanentPlatformError(message, details=details, platform=platform.value)


class PlatformAdapter(ABC):
    """One vendor. Unsupported operations raise UnsupportedOperation."""

    platform: Platform
    supports_metadata_update = True
    supports_reschedule = False

    def __init__(
        self,
        tokens,
        settings: PlatformSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.tokens = tokens
        self.settings = settings
        self.transport = transport
        self.sleep = sleep

    def client(self, timeout: httpx.Timeout = API_TIMEOUT) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self.transport, timeout=timeout)

    def policy(self, total_size: int = 0) -> RetryPolicy:
        return phase_policy(total_size, sleep=self.sleep)

    def check(self, resp: httpx.Response, action: str) -> dict:
        return check_response(resp, action, self.platform)

    async def access_token(self, user_id: str) -> str:
        return await self.tokens.get_valid_access_token(user_id, self.platform)

    @abstractmethod
    async def upload_video(self, user_id: str, request: UploadRequest) -> UploadResult:
        ...

    async def update_metadata(self, user_id: str, video_id: str, update: MetadataUpdate) -> None:
        raise UnsupportedOperation(
            f"{self.platform.value} does not support metadata updates",
            platform=self.platform.value,
        )

    async def update_schedule(self, user_id: str, video_id: str, when: datetime) -> None:
        raise UnsupportedOperation(
            f"{self.platform.value} does not support rescheduling",
            platform=self.platform.value,
        )
