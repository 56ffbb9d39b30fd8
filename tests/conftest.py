"""
Pytest configuration and fixtures for Crosspost tests.

In-memory stand-ins for PostStore and BlobStore, a recording sleep and fixed
platform settings. Vendor HTTP is faked per test with httpx.MockTransport.
"""

import base64
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple
from unittest.mock import AsyncMock

import pytest

from publishing.config import OAuthClient, PlatformSettings
from publishing.errors import BlobNotFound
from publishing.models import (
    Platform,
    PlatformConnection,
    PlatformStatus,
    PostPlatform,
    ScheduledPost,
)

FIXED_NOW = datetime(2024, 12, 19, 18, 0, tzinfo=timezone.utc)


class FakeStore:
    """Mirrors PostStore; hands out copies so callers can't mutate stored rows."""

    def __init__(self):
        self.connections: Dict[Tuple[str, Platform], PlatformConnection] = {}
        self.posts: Dict[str, ScheduledPost] = {}
        self.rows: Dict[Tuple[str, Platform], PostPlatform] = {}
        self.saved_connections: List[PlatformConnection] = []

    # --- connections ---

    async def get_connection(self, user_id, platform) -> Optional[PlatformConnection]:
        conn = self.connections.get((user_id, Platform(platform)))
        return replace(conn) if conn else None

    async def save_connection(self, connection: PlatformConnection) -> PlatformConnection:
        stored = replace(connection, id=connection.id or str(uuid.uuid4()))
        self.connections[(stored.user_id, Platform(stored.platform))] = stored
        self.saved_connections.append(replace(stored))
        return replace(stored)

    async def delete_connection(self, user_id, platform) -> bool:
        return self.connections.pop((user_id, Platform(platform)), None) is not None

    async def list_connections(self, user_id) -> List[PlatformConnection]:
        return [replace(c) for (uid, _), c in self.connections.items() if uid == user_id]

    # --- posts ---

    async def create_post(self, post: ScheduledPost, platforms):
        stored = replace(post, id=str(uuid.uuid4()), created_at=FIXED_NOW, tags=list(post.tags))
        self.posts[stored.id] = stored
        rows = []
        for platform in platforms:
            row = PostPlatform(post_id=stored.id, platform=Platform(platform), id=str(uuid.uuid4()))
            self.rows[(stored.id, Platform(platform))] = row
            rows.append(replace(row))
        return replace(stored), rows

    async def get_post(self, post_id, user_id=None) -> Optional[ScheduledPost]:
        post = self.posts.get(post_id)
        if post is None or (user_id is not None and post.user_id != user_id):
            return None
        return replace(post, tags=list(post.tags))

    async def update_post(self, post_id, **fields):
        post = self.posts[post_id]
        for key, value in fields.items():
            setattr(post, key, value)

    async def release_video_path(self, post_id, path) -> bool:
        post = self.posts.get(post_id)
        if post is None or post.video_file_path != path:
            return False
        post.video_file_path = None
        return True

    async def delete_post(self, post_id, user_id) -> bool:
        post = self.posts.get(post_id)
        if post is None or post.user_id != user_id:
            return False
        del self.posts[post_id]
        for key in [k for k in self.rows if k[0] == post_id]:
            del self.rows[key]
        return True

    async def list_posts(self, user_id, limit=50, offset=0) -> List[ScheduledPost]:
        posts = [replace(p) for p in self.posts.values() if p.user_id == user_id]
        return posts[offset:offset + limit]

    async def list_blob_paths(self, user_id) -> List[str]:
        return [p.video_file_path for p in self.posts.values() if p.user_id == user_id and p.video_file_path]

    # --- per-platform rows ---

    async def list_post_platforms(self, post_id) -> List[PostPlatform]:
        rows = [replace(r) for (pid, _), r in self.rows.items() if pid == post_id]
        return sorted(rows, key=lambda r: Platform(r.platform).value)

    async def get_post_platform(self, post_id, platform) -> Optional[PostPlatform]:
        row = self.rows.get((post_id, Platform(platform)))
        return replace(row) if row else None

    async def update_post_platform(self, post_id, platform, **fields):
        row = self.rows[(post_id, Platform(platform))]
        for key, value in fields.items():
            setattr(row, key, value)

    # --- test helpers ---

    def row(self, post_id, platform) -> PostPlatform:
        return self.rows[(post_id, Platform(platform))]

    def set_row(self, post_id, platform, status: PlatformStatus, video_id: Optional[str] = None):
        row = self.row(post_id, platform)
        row.status = status
        row.platform_video_id = video_id


class FakeBlobStore:
    def __init__(self):
        self.objects: Dict[str, Tuple[bytes, datetime]] = {}
        self.deleted: List[str] = []

    async def put(self, path, data, content_type="video/mp4"):
        self.objects[path] = (data, FIXED_NOW)
        return path

    async def get(self, path) -> bytes:
        if path not in self.objects:
            raise BlobNotFound(f"Video file not found in storage: {path}")
        return self.objects[path][0]

    async def delete(self, path):
        self.objects.pop(path, None)
        self.deleted.append(path)

    async def list(self, prefix):
        return [(k, modified) for k, (_, modified) in self.objects.items() if k.startswith(prefix)]


class FakeAdapter:
    """Adapter double with AsyncMock operations."""

    def __init__(self, platform: Platform, supports_reschedule: bool = False):
        self.platform = platform
        self.supports_reschedule = supports_reschedule
        self.upload_video = AsyncMock()
        self.update_metadata = AsyncMock()
        self.update_schedule = AsyncMock()


class RecordingSleep:
    """Drop-in for asyncio.sleep that records delays instead of waiting."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def blobs():
    return FakeBlobStore()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def platform_settings():
    return PlatformSettings(
        youtube=OAuthClient("yt-client", "yt-secret"),
        facebook=OAuthClient("fb-app", "fb-secret"),
        tiktok=OAuthClient("tt-key", "tt-secret"),
        meta_api_version="v18.0",
        redirect_base_url="https://api.example.com",
    )


@pytest.fixture
def tokens():
    """Token provider double for adapter tests."""
    provider = AsyncMock()
    provider.get_valid_access_token.return_value = "user-token"
    return provider


@pytest.fixture
def enc_keys():
    k1 = base64.b64encode(b"1" * 32).decode()
    k2 = base64.b64encode(b"2" * 32).decode()
    return f"v1:{k1},v2:{k2}"
