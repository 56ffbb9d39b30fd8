"""
Platform adapter registry.

    adapters = build_adapters(token_manager, settings.platforms)
    await adapters[Platform.YOUTUBE].upload_video(user_id, request)
"""

import asyncio
from typing import Dict, Optional, Callable, Awaitable

import httpx

from ..config import PlatformSettings
from ..models import Platform
from .base import PlatformAdapter
from .youtube import YouTubeAdapter
from .facebook import FacebookAdapter
from .instagram import InstagramAdapter
from .tiktok import TikTokAdapter

ADAPTER_CLASSES = {
    Platform.YOUTUBE: YouTubeAdapter,
    Platform.FACEBOOK: FacebookAdapter,
    Platform.INSTAGRAM: InstagramAdapter,
    Platform.TIKTOK: TikTokAdapter,
}


def build_adapters(
    tokens,
    settings: PlatformSettings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> Dict[Platform, PlatformAdapter]:
    return {
        platform: cls(tokens, settings, transport=transport, sleep=sleep)
        for platform, cls in ADAPTER_CLASSES.items()
    }


__all__ = [
    "PlatformAdapter",
    "YouTubeAdapter",
    "FacebookAdapter",
    "InstagramAdapter",
    "TikTokAdapter",
    "ADAPTER_CLASSES",
    "build_adapters",
]
