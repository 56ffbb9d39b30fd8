"""
TikTok Adapter
==============
TikTok Content Posting API v2, FILE_UPLOAD source.

Flow: init (post_info + chunk plan) -> PUT each chunk to upload_url with
Content-Range -> status fetch. The publish_id stands in for the video id.

TikTok has no scheduling, metadata edit or reschedule endpoint; scheduled_at
is advisory and the post goes out when TikTok finishes processing.
"""

import logging

import httpx

from ..chunked import (
    ChunkedProtocol,
    ChunkedUploader,
    UploadSession,
    START_TIMEOUT,
    TRANSFER_TIMEOUT,
    FINISH_TIMEOUT,
    chunk_count,
    content_range,
)
from ..errors import PermanentPlatformError, TransientPlatformError, UnsupportedOperation
from ..models import Platform, UploadRequest, UploadResult, MetadataUpdate
from .base import PlatformAdapter, check_response

logger = logging.getLogger("crosspost")

INIT_URL = "https://open.tiktokapis.com/v2/post/publish/video/init/"
STATUS_URL = "https://open.tiktokapis.com/v2/post/publish/status/fetch/"

TITLE_MAX = 150
TRANSIENT_ERROR_CODES = {"rate_limit_exceeded", "internal_error"}

METADATA_UNSUPPORTED = (
    "TikTok API does not currently support updating metadata for published videos. "
    "Metadata can only be set during upload."
)


def _check_body(data: dict, action: str) -> dict:
    """TikTok returns 200 with error.code != 'ok' for logical failures."""
    error = data.get("error") or {}
    code = error.get("code")
    if code and code != "ok":
        message = f"{action} failed: {error.get('message') or code}"
        if code in TRANSIENT_ERROR_CODES:
            raise TransientPlatformError(message, platform="tiktok")
        raise PermanentPlatformError(message, details={"tiktok_code": code}, platform="tiktok")
    return data.get("data") or {}


class TikTokUploadProtocol(ChunkedProtocol):
    name = "tiktok"

    def __init__(self, access_token: str, request: UploadRequest):
        self.access_token = access_token
        self.request = request

    @property
    def headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json; charset=UTF-8",
        }

    async def start(self, client: httpx.AsyncClient, total_size: int, chunk_size: int) -> UploadSession:
        request = self.request
        resp = await client.post(
            INIT_URL,
            headers=self.headers,
            json={
                "post_info": {
                    "title": (request.title or "")[:TITLE_MAX],
                    "description": request.description,
                    "privacy_level": request.options.tiktok_privacy_level or "PUBLIC_TO_EVERYONE",
                    "disable_duet": False,
                    "disable_comment": False,
                    "disable_stitch": False,
                    "video_cover_timestamp_ms": 1000,
                },
                "source_info": {
                    "source": "FILE_UPLOAD",
                    "video_size": total_size,
                    "chunk_size": chunk_size,
                    "total_chunk_count": chunk_count(total_size, chunk_size),
                },
            },
            timeout=START_TIMEOUT,
        )
        data = _check_body(check_response(resp, "TikTok init", Platform.TIKTOK), "TikTok init")
        publish_id = data.get("publish_id")
        upload_url = data.get("upload_url")
        if not publish_id or not upload_url:
            raise PermanentPlatformError("Invalid response from TikTok API", platform="tiktok")
        return UploadSession(session_id=publish_id, upload_url=upload_url, video_id=publish_id)

    async def transfer(self, client, session, index, offset, chunk, total_size) -> None:
        resp = await client.put(
            session.upload_url,
            content=chunk,
            headers={
                "Content-Type": "video/mp4",
                "Content-Range": content_range(offset, len(chunk), total_size),
            },
            timeout=TRANSFER_TIMEOUT,
        )
        check_response(resp, f"Upload TikTok chunk {index + 1}", Platform.TIKTOK)

    async def finish(self, client: httpx.AsyncClient, session: UploadSession) -> UploadResult:
        resp = await client.post(
            STATUS_URL,
            headers=self.headers,
            json={"publish_id": session.session_id},
            timeout=FINISH_TIMEOUT,
        )
        data = _check_body(check_response(resp, "TikTok status", Platform.TIKTOK), "TikTok status")
        if data.get("status") == "FAILED":
            raise PermanentPlatformError(
                f"TikTok processing failed: {data.get('fail_reason') or 'unknown'}",
                platform="tiktok",
            )
        return UploadResult(video_id=session.session_id, thumbnail_url=None)


class TikTokAdapter(PlatformAdapter):
    platform = Platform.TIKTOK
    supports_metadata_update = False
    supports_reschedule = False

    async def upload_video(self, user_id: str, request: UploadRequest) -> UploadResult:
        access_token = await self.access_token(user_id)
        protocol = TikTokUploadProtocol(access_token, request)
        result = await ChunkedUploader(transport=self.transport, sleep=self.sleep).upload(protocol, request.video)
        logger.info(f"TikTok publish accepted: publish_id={result.video_id}")
        return result

    async def update_metadata(self, user_id: str, video_id: str, update: MetadataUpdate) -> None:
        raise UnsupportedOperation(METADATA_UNSUPPORTED, platform="tiktok")
