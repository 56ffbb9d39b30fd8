"""
Crosspost Blob Storage
======================
Cloudflare R2 (S3 API) holding the transient video bytes between upload and
the last successful platform publish.

Paths are namespaced per user: <user_id>/<post_id>-<epoch_ms>.<ext>
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Optional, List, Tuple

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from .config import StorageSettings
from .errors import BlobNotFound, PublishError, ErrorCode

logger = logging.getLogger("crosspost")

_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}


def object_path(user_id: str, post_id: str, filename: str, now_ms: Optional[int] = None) -> str:
    ext = filename.rsplit(".", 1)[-1].lower() if "." in (filename or "") else "mp4"
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{user_id}/{post_id}-{stamp}.{ext}"


def owned_by(user_id: str, path: str) -> bool:
    return bool(path) and path.startswith(f"{user_id}/")


class BlobStore:
    """put/get/delete/list over one bucket. boto3 calls run in the default executor."""

    def __init__(self, settings: StorageSettings, client=None):
        self.settings = settings
        self.bucket = settings.r2_bucket_name
        self._client = client

    def _get_client(self):
        if self._client is not None:
            return self._client
        self._client = boto3.client(
            "s3",
            endpoint_url=self.settings.endpoint_url,
            aws_access_key_id=self.settings.r2_access_key_id,
            aws_secret_access_key=self.settings.r2_secret_access_key,
            config=Config(
                signature_version="s3v4",
                retries={"max_attempts": 3, "mode": "adaptive"},
            ),
            region_name="auto",
        )
        return self._client

    async def _run(self, fn):
        return await asyncio.get_running_loop().run_in_executor(None, fn)

    async def put(self, path: str, data: bytes, content_type: str = "video/mp4") -> str:
        logger.info(f"R2 upload: {path} ({len(data)} bytes, {content_type})")

        def _put():
            self._get_client().put_object(
                Bucket=self.bucket, Key=path, Body=data, ContentType=content_type,
            )

        try:
            await self._run(_put)
        except ClientError as e:
            raise PublishError(f"Failed to upload video to storage: {e}", code=ErrorCode.STORAGE_FAILED)
        return path

    async def get(self, path: str) -> bytes:
        def _get():
            obj = self._get_client().get_object(Bucket=self.bucket, Key=path)
            return obj["Body"].read()

        try:
            data = await self._run(_get)
        except ClientError as e:
            code = str(e.response.get("Error", {}).get("Code", ""))
            if code in _MISSING_CODES:
                raise BlobNotFound(f"Video file not found in storage: {path}")
            raise PublishError(f"Failed to download video from storage: {e}", code=ErrorCode.STORAGE_FAILED)
        logger.info(f"R2 download complete: {path} ({len(data)} bytes)")
        return data

    async def delete(self, path: str) -> None:
        logger.info(f"R2 delete: {path}")

        def _delete():
            self._get_client().delete_object(Bucket=self.bucket, Key=path)

        await self._run(_delete)

    async def list(self, prefix: str) -> List[Tuple[str, datetime]]:
        """(key, last_modified) for every object under prefix."""
        def _list():
            out = []
            paginator = self._get_client().get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                for obj in page.get("Contents", []) or []:
                    out.append((obj["Key"], obj["LastModified"]))
            return out

        return await self._run(_list)
