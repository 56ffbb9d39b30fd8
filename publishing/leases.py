"""
Crosspost Upload Leases
=======================
Redis lease per (post, platform) so two retries of the same row cannot upload
concurrently. Without Redis (or when Redis errors) the lease is skipped and
the last write to the row wins.
"""

import logging
import secrets
from contextlib import asynccontextmanager
from typing import Optional

import redis.asyncio as redis

from .errors import PublishError, ErrorCode

logger = logging.getLogger("crosspost")

# Delete only if we still own it
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class UploadLease:

    def __init__(self, client: Optional[redis.Redis] = None, ttl_sec: int = 900):
        self.client = client
        self.ttl_sec = ttl_sec

    @staticmethod
    def key(post_id: str, platform: str) -> str:
        return f"crosspost:lease:{post_id}:{platform}"

    @asynccontextmanager
    async def hold(self, post_id: str, platform: str):
        if self.client is None:
            yield
            return

        key = self.key(post_id, platform)
        token = secrets.token_hex(16)
        try:
            acquired = await self.client.set(key, token, nx=True, ex=self.ttl_sec)
        except redis.RedisError as e:
            logger.warning(f"Lease acquire failed for {key} (continuing without lease): {e}")
            yield
            return

        if not acquired:
            raise PublishError(
                f"An upload to {platform} is already in progress for this post",
                code=ErrorCode.UPLOAD_IN_PROGRESS,
                platform=platform,
            )

        try:
            yield
        finally:
            try:
                await self.client.eval(_RELEASE_SCRIPT, 1, key, token)
            except redis.RedisError as e:
                logger.warning(f"Lease release failed for {key} (expires in {self.ttl_sec}s): {e}")
