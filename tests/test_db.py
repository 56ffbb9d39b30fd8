"""
Tests for migrations, SQL building and token encryption in PostStore.

The asyncpg pool is a MagicMock; no database is needed.
"""

import json
import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from publishing.crypto import TokenCipher
from publishing.db import MIGRATIONS, PostStore, _set_clause, apply_migrations
from publishing.models import Platform, PlatformConnection, PlatformStatus, PostStatus


def _pool(conn):
    pool = MagicMock()
    pool.acquire.return_value.__aenter__.return_value = conn
    pool.acquire.return_value.__aexit__.return_value = False
    return pool


def _conn():
    conn = MagicMock()
    conn.fetch = AsyncMock(return_value=[])
    conn.fetchrow = AsyncMock(return_value=None)
    conn.execute = AsyncMock(return_value="UPDATE 1")
    conn.transaction.return_value.__aenter__.return_value = None
    conn.transaction.return_value.__aexit__.return_value = False
    return conn


class TestMigrations:

    def test_versions_are_ordered_and_unique(self):
        versions = [v for v, _ in MIGRATIONS]
        assert versions == sorted(set(versions))

    @pytest.mark.asyncio
    async def test_only_missing_versions_applied(self):
        conn = _conn()
        conn.fetch.return_value = [{"version": 1}, {"version": 2}]

        await apply_migrations(conn)

        inserted = [c.args[1] for c in conn.execute.await_args_list if "INSERT INTO schema_migrations" in c.args[0]]
        assert inserted == [3, 4]


class TestSetClause:

    def test_numbers_placeholders_and_unwraps_enums(self):
        clause, params = _set_clause(
            {"status": PlatformStatus.FAILED, "error_message": "boom"},
            {"status", "error_message"},
            3,
        )
        assert clause == "status = $3, error_message = $4"
        assert params == ["failed", "boom"]

    def test_rejects_unknown_columns(self):
        with pytest.raises(ValueError, match="not updatable"):
            _set_clause({"user_id": "u2"}, {"status"}, 2)


class TestPostStore:

    @pytest.mark.asyncio
    async def test_tokens_encrypted_at_rest(self, enc_keys):
        conn = _conn()
        cipher = TokenCipher.from_env_value(enc_keys)

        async def fetchrow(sql, user_id, platform, blob, expires_at, platform_user_id):
            return {
                "id": uuid.uuid4(),
                "user_id": user_id,
                "platform": platform,
                "token_blob": blob,
                "expires_at": expires_at,
                "platform_user_id": platform_user_id,
                "created_at": None,
            }

        conn.fetchrow.side_effect = fetchrow
        store = PostStore(_pool(conn), cipher)
        expires = datetime(2025, 1, 1, tzinfo=timezone.utc)

        saved = await store.save_connection(PlatformConnection(
            user_id="u1", platform=Platform.TIKTOK, access_token="secret-access",
            refresh_token="secret-refresh", expires_at=expires,
        ))

        stored_blob = conn.fetchrow.await_args.args[3]
        assert "secret-access" not in stored_blob
        assert json.loads(stored_blob)["kid"] == "v2"
        assert saved.access_token == "secret-access"
        assert saved.refresh_token == "secret-refresh"
        assert saved.platform == Platform.TIKTOK
        assert saved.expires_at == expires

    @pytest.mark.asyncio
    async def test_get_post_ignores_malformed_id(self, enc_keys):
        conn = _conn()
        store = PostStore(_pool(conn), TokenCipher.from_env_value(enc_keys))

        assert await store.get_post("not-a-uuid", "u1") is None
        conn.fetchrow.assert_not_called()

    @pytest.mark.asyncio
    async def test_update_post_platform_sql(self, enc_keys):
        conn = _conn()
        store = PostStore(_pool(conn), TokenCipher.from_env_value(enc_keys))

        await store.update_post_platform("p1", Platform.YOUTUBE, status=PlatformStatus.UPLOADED, platform_video_id="v1")

        sql, *params = conn.execute.await_args.args
        assert sql == (
            "UPDATE post_platforms SET status = $3, platform_video_id = $4 "
            "WHERE post_id = $1 AND platform = $2"
        )
        assert params == ["p1", "youtube", "uploaded", "v1"]

    @pytest.mark.asyncio
    async def test_update_post_converts_status(self, enc_keys):
        conn = _conn()
        store = PostStore(_pool(conn), TokenCipher.from_env_value(enc_keys))

        await store.update_post("p1", status=PostStatus.PENDING, video_file_path=None)

        sql, *params = conn.execute.await_args.args
        assert "status = $2, video_file_path = $3, updated_at = NOW()" in sql
        assert params == ["p1", "pending", None]

    @pytest.mark.asyncio
    async def test_delete_connection_reports_rowcount(self, enc_keys):
        conn = _conn()
        conn.execute.return_value = "DELETE 0"
        store = PostStore(_pool(conn), TokenCipher.from_env_value(enc_keys))

        assert await store.delete_connection("u1", Platform.YOUTUBE) is False

    @pytest.mark.asyncio
    async def test_release_video_path_is_conditional(self, enc_keys):
        conn = _conn()
        conn.fetchrow.side_effect = [{"id": "p1"}, None]
        store = PostStore(_pool(conn), TokenCipher.from_env_value(enc_keys))

        assert await store.release_video_path("p1", "u1/p1-1.mp4") is True
        assert await store.release_video_path("p1", "u1/p1-1.mp4") is False

        sql, *params = conn.fetchrow.await_args.args
        assert "WHERE id=$1 AND video_file_path=$2 RETURNING id" in sql
        assert params == ["p1", "u1/p1-1.mp4"]
