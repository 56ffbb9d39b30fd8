"""
Crosspost Database Functions
============================
asyncpg pool, schema migrations and the post/connection store.

Tokens are stored encrypted (AES-GCM envelope from publishing.crypto) inside
a JSONB column; everything else is plain columns.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from typing import Optional, List, Tuple, Iterable

import asyncpg

from .crypto import TokenCipher
from .models import (
    Platform,
    PostStatus,
    PlatformStatus,
    PlatformConnection,
    ScheduledPost,
    PostPlatform,
)

logger = logging.getLogger("crosspost")


# ============================================================
# Migrations
# ============================================================

MIGRATIONS: List[Tuple[int, str]] = [
    (1, """
        CREATE EXTENSION IF NOT EXISTS pgcrypto;
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INTEGER PRIMARY KEY,
            applied_at TIMESTAMPTZ DEFAULT NOW()
        );
    """),
    (2, """
        CREATE TABLE IF NOT EXISTS platform_connections (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id TEXT NOT NULL,
            platform TEXT NOT NULL CHECK (platform IN ('youtube','facebook','instagram','tiktok')),
            token_blob JSONB NOT NULL,
            expires_at TIMESTAMPTZ,
            platform_user_id TEXT,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW(),
            UNIQUE (user_id, platform)
        );
    """),
    (3, """
        CREATE TABLE IF NOT EXISTS scheduled_posts (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            user_id TEXT NOT NULL,
            title TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            tags TEXT[] NOT NULL DEFAULT '{}',
            scheduled_at TIMESTAMPTZ NOT NULL,
            timezone TEXT NOT NULL DEFAULT 'UTC',
            status TEXT NOT NULL DEFAULT 'uploading'
                CHECK (status IN ('uploading','pending','published','failed')),
            youtube_category_id TEXT,
            video_file_path TEXT,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            updated_at TIMESTAMPTZ DEFAULT NOW()
        );
        CREATE INDEX IF NOT EXISTS idx_scheduled_posts_user ON scheduled_posts(user_id, created_at DESC);
    """),
    (4, """
        CREATE TABLE IF NOT EXISTS post_platforms (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            post_id UUID NOT NULL REFERENCES scheduled_posts(id) ON DELETE CASCADE,
            platform TEXT NOT NULL CHECK (platform IN ('youtube','facebook','instagram','tiktok')),
            platform_video_id TEXT,
            thumbnail_url TEXT,
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK (status IN ('pending','uploaded','published','failed')),
            error_message TEXT,
            uploaded_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ DEFAULT NOW(),
            UNIQUE (post_id, platform)
        );
        CREATE INDEX IF NOT EXISTS idx_post_platforms_post ON post_platforms(post_id);
    """),
]


async def apply_migrations(conn: asyncpg.Connection):
    await conn.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")
    await conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INTEGER PRIMARY KEY,
            applied_at TIMESTAMPTZ DEFAULT NOW()
        );
    """)

    applied = await conn.fetch("SELECT version FROM schema_migrations")
    applied_set = {r["version"] for r in applied}

    for version, sql in MIGRATIONS:
        if version in applied_set:
            continue
        logger.info(f"[MIGRATION] Applying v{version}")
        await conn.execute(sql)
        await conn.execute("INSERT INTO schema_migrations(version) VALUES($1)", version)
        logger.info(f"[MIGRATION] Applied v{version}")


async def create_pool(database_url: str) -> asyncpg.Pool:
    pool = await asyncpg.create_pool(
        database_url,
        min_size=1,
        max_size=10,
        command_timeout=30,
        max_inactive_connection_lifetime=300,
    )
    async with pool.acquire() as conn:
        async with conn.transaction():
            await apply_migrations(conn)
    logger.info("Database initialized and migrations applied")
    return pool


# ============================================================
# Row mapping
# ============================================================

def _load_blob(value) -> dict:
    if isinstance(value, dict):
        return value
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    if isinstance(value, str):
        return json.loads(value)
    return {}


def connection_from_row(row, cipher: TokenCipher) -> PlatformConnection:
    tokens = cipher.decrypt(_load_blob(row["token_blob"]))
    return PlatformConnection(
        id=str(row["id"]),
        user_id=row["user_id"],
        platform=Platform(row["platform"]),
        access_token=tokens.get("access_token", ""),
        refresh_token=tokens.get("refresh_token"),
        expires_at=row["expires_at"],
        platform_user_id=row["platform_user_id"],
        created_at=row["created_at"],
    )


def post_from_row(row) -> ScheduledPost:
    return ScheduledPost(
        id=str(row["id"]),
        user_id=row["user_id"],
        title=row["title"],
        description=row["description"],
        tags=list(row["tags"] or []),
        scheduled_at=row["scheduled_at"],
        timezone=row["timezone"],
        status=PostStatus(row["status"]),
        youtube_category_id=row["youtube_category_id"],
        video_file_path=row["video_file_path"],
        created_at=row["created_at"],
    )


def post_platform_from_row(row) -> PostPlatform:
    return PostPlatform(
        id=str(row["id"]),
        post_id=str(row["post_id"]),
        platform=Platform(row["platform"]),
        status=PlatformStatus(row["status"]),
        platform_video_id=row["platform_video_id"],
        thumbnail_url=row["thumbnail_url"],
        error_message=row["error_message"],
        uploaded_at=row["uploaded_at"],
    )


def _is_uuid(value) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def _db_value(value):
    if isinstance(value, (PostStatus, PlatformStatus, Platform)):
        return value.value
    return value


# Columns callers may set through update_post / update_post_platform
POST_UPDATABLE = frozenset({
    "title", "description", "tags", "scheduled_at", "timezone",
    "status", "youtube_category_id", "video_file_path",
})
POST_PLATFORM_UPDATABLE = frozenset({
    "status", "platform_video_id", "thumbnail_url", "error_message", "uploaded_at",
})


def _set_clause(fields: dict, allowed: Iterable[str], start: int) -> Tuple[str, list]:
    parts = []
    params = []
    idx = start
    for key, value in fields.items():
        if key not in allowed:
            raise ValueError(f"Column not updatable: {key}")
        parts.append(f"{key} = ${idx}")
        params.append(_db_value(value))
        idx += 1
    return ", ".join(parts), params


# ============================================================
# Store
# ============================================================

class PostStore:
    """CRUD over connections, posts and per-platform rows, scoped by user."""

    def __init__(self, pool: asyncpg.Pool, cipher: TokenCipher):
        self.pool = pool
        self.cipher = cipher

    # --- connections ---

    async def get_connection(self, user_id: str, platform: Platform) -> Optional[PlatformConnection]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM platform_connections WHERE user_id=$1 AND platform=$2",
                user_id, Platform(platform).value,
            )
        return connection_from_row(row, self.cipher) if row else None

    async def save_connection(self, connection: PlatformConnection) -> PlatformConnection:
        blob = self.cipher.encrypt({
            "access_token": connection.access_token,
            "refresh_token": connection.refresh_token,
        })
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """INSERT INTO platform_connections
                       (user_id, platform, token_blob, expires_at, platform_user_id, updated_at)
                     VALUES ($1,$2,$3,$4,$5,NOW())
                     ON CONFLICT (user_id, platform) DO UPDATE SET
                       token_blob=EXCLUDED.token_blob,
                       expires_at=EXCLUDED.expires_at,
                       platform_user_id=COALESCE(EXCLUDED.platform_user_id, platform_connections.platform_user_id),
                       updated_at=NOW()
                     RETURNING *""",
                connection.user_id, Platform(connection.platform).value, json.dumps(blob),
                connection.expires_at, connection.platform_user_id,
            )
        return connection_from_row(row, self.cipher)

    async def delete_connection(self, user_id: str, platform: Platform) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM platform_connections WHERE user_id=$1 AND platform=$2",
                user_id, Platform(platform).value,
            )
        return result.endswith(" 1")

    async def list_connections(self, user_id: str) -> List[PlatformConnection]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM platform_connections WHERE user_id=$1 ORDER BY platform",
                user_id,
            )
        return [connection_from_row(r, self.cipher) for r in rows]

    # --- posts ---

    async def create_post(
        self, post: ScheduledPost, platforms: List[Platform]
    ) -> Tuple[ScheduledPost, List[PostPlatform]]:
        """Insert the post and one pending row per platform atomically."""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """INSERT INTO scheduled_posts
                           (user_id, title, description, tags, scheduled_at, timezone,
                            status, youtube_category_id, video_file_path)
                         VALUES ($1,$2,$3,$4,$5,$6,$7,$8,$9)
                         RETURNING *""",
                    post.user_id, post.title, post.description, list(post.tags),
                    post.scheduled_at, post.timezone, PostStatus(post.status).value,
                    post.youtube_category_id, post.video_file_path,
                )
                platform_rows = []
                for platform in platforms:
                    pr = await conn.fetchrow(
                        """INSERT INTO post_platforms (post_id, platform, status)
                             VALUES ($1,$2,'pending')
                             RETURNING *""",
                        row["id"], Platform(platform).value,
                    )
                    platform_rows.append(post_platform_from_row(pr))
        return post_from_row(row), platform_rows

    async def get_post(self, post_id: str, user_id: Optional[str] = None) -> Optional[ScheduledPost]:
        if not _is_uuid(post_id):
            return None
        async with self.pool.acquire() as conn:
            if user_id is None:
                row = await conn.fetchrow("SELECT * FROM scheduled_posts WHERE id=$1", post_id)
            else:
                row = await conn.fetchrow(
                    "SELECT * FROM scheduled_posts WHERE id=$1 AND user_id=$2", post_id, user_id
                )
        return post_from_row(row) if row else None

    async def update_post(self, post_id: str, **fields) -> None:
        if not fields:
            return
        clause, params = _set_clause(fields, POST_UPDATABLE, 2)
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"UPDATE scheduled_posts SET {clause}, updated_at = NOW() WHERE id = $1",
                post_id, *params,
            )

    async def release_video_path(self, post_id: str, path: str) -> bool:
        """Clear video_file_path only while it still equals path; True for the caller that cleared it."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """UPDATE scheduled_posts SET video_file_path = NULL, updated_at = NOW()
                   WHERE id=$1 AND video_file_path=$2 RETURNING id""",
                post_id, path,
            )
        return row is not None

    async def delete_post(self, post_id: str, user_id: str) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM scheduled_posts WHERE id=$1 AND user_id=$2", post_id, user_id
            )
        return result.endswith(" 1")

    async def list_posts(self, user_id: str, limit: int = 50, offset: int = 0) -> List[ScheduledPost]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """SELECT * FROM scheduled_posts WHERE user_id=$1
                   ORDER BY created_at DESC LIMIT $2 OFFSET $3""",
                user_id, limit, offset,
            )
        return [post_from_row(r) for r in rows]

    async def list_blob_paths(self, user_id: str) -> List[str]:
        """Blob paths still referenced by the user's posts."""
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """SELECT video_file_path FROM scheduled_posts
                   WHERE user_id=$1 AND video_file_path IS NOT NULL""",
                user_id,
            )
        return [r["video_file_path"] for r in rows]

    # --- per-platform rows ---

    async def list_post_platforms(self, post_id: str) -> List[PostPlatform]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM post_platforms WHERE post_id=$1 ORDER BY platform", post_id
            )
        return [post_platform_from_row(r) for r in rows]

    async def get_post_platform(self, post_id: str, platform: Platform) -> Optional[PostPlatform]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM post_platforms WHERE post_id=$1 AND platform=$2",
                post_id, Platform(platform).value,
            )
        return post_platform_from_row(row) if row else None

    async def update_post_platform(self, post_id: str, platform: Platform, **fields) -> None:
        if not fields:
            return
        clause, params = _set_clause(fields, POST_PLATFORM_UPDATABLE, 3)
        async with self.pool.acquire() as conn:
            await conn.execute(
                f"UPDATE post_platforms SET {clause} WHERE post_id = $1 AND platform = $2",
                post_id, Platform(platform).value, *params,
            )
