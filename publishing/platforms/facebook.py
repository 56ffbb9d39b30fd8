"""
Facebook Adapter
================
Meta Graph API, page-scoped.

Upload flow (Graph resumable upload on /{page_id}/videos):
  upload_phase=start    -> upload_session_id, video_id
  upload_phase=transfer -> one call per chunk with start_offset
  upload_phase=finish   -> title/description, published=false,
                           scheduled_publish_time (epoch seconds)

The user token is only used to resolve the page and its page token; every
video call uses the page token.
"""

import logging
from typing import List, Optional

import httpx

from ..chunked import (
    ChunkedProtocol,
    ChunkedUploader,
    UploadSession,
    START_TIMEOUT,
    TRANSFER_TIMEOUT,
    FINISH_TIMEOUT,
)
from ..errors import PermanentPlatformError, ErrorCode
from ..models import Platform, UploadRequest, UploadResult, MetadataUpdate
from ..retry import MB
from .base import PlatformAdapter, check_response

logger = logging.getLogger("crosspost")

MAX_VIDEO_BYTES = {
    "VIDEO": 4096 * MB,
    "REELS": 1000 * MB,
}


class FacebookGraphProtocol(ChunkedProtocol):
    name = "facebook"

    def __init__(self, graph_url: str, page_id: str, page_token: str, request: UploadRequest):
        self.graph_url = graph_url
        self.page_id = page_id
        self.page_token = page_token
        self.request = request

    @property
    def videos_url(self) -> str:
        return f"{self.graph_url}/{self.page_id}/videos"

    async def start(self, client: httpx.AsyncClient, total_size: int, chunk_size: int) -> UploadSession:
        resp = await client.post(
            self.videos_url,
            data={
                "access_token": self.page_token,
                "upload_phase": "start",
                "file_size": str(total_size),
            },
            timeout=START_TIMEOUT,
        )
        data = check_response(resp, "Start Facebook upload", Platform.FACEBOOK)
        session_id = data.get("upload_session_id")
        if not session_id:
            raise PermanentPlatformError("No upload session ID received from Facebook", platform="facebook")
        return UploadSession(session_id=str(session_id), video_id=str(data.get("video_id") or "") or None)

    async def transfer(self, client, session, index, offset, chunk, total_size) -> None:
        resp = await client.post(
            self.videos_url,
            data={
                "access_token": self.page_token,
                "upload_phase": "transfer",
                "upload_session_id": session.session_id,
                "start_offset": str(offset),
            },
            files={"video_file_chunk": ("chunk", chunk, "application/octet-stream")},
            timeout=TRANSFER_TIMEOUT,
        )
        check_response(resp, f"Upload Facebook chunk {index + 1}", Platform.FACEBOOK)

    async def finish(self, client: httpx.AsyncClient, session: UploadSession) -> UploadResult:
        data = {
            "access_token": self.page_token,
            "upload_phase": "finish",
            "upload_session_id": session.session_id,
            "title": self.request.title,
            "description": self.request.description,
            "published": "false",
            "scheduled_publish_time": str(int(self.request.scheduled_at.timestamp())),
        }
        if self.request.options.facebook_video_type == "REELS":
            data["video_type"] = "REELS"
        resp = await client.post(self.videos_url, data=data, timeout=FINISH_TIMEOUT)
        body = check_response(resp, "Finalize Facebook upload", Platform.FACEBOOK)
        video_id = body.get("video_id") or session.video_id
        if not video_id:
            raise PermanentPlatformError("No video ID received from Facebook", platform="facebook")
        # Facebook has no thumbnail until processing completes
        return UploadResult(video_id=str(video_id), thumbnail_url=None)


class FacebookAdapter(PlatformAdapter):
    platform = Platform.FACEBOOK
    supports_metadata_update = True
    supports_reschedule = False

    async def list_pages(self, user_id: str) -> List[dict]:
        """Every page the user manages, following Graph pagination."""
        access_token = await self.access_token(user_id)
        pages: List[dict] = []
        next_url: Optional[str] = f"{self.settings.graph_url}/me/accounts"
        params = {
            "access_token": access_token,
            "fields": "id,name,category,picture,tasks,access_token",
            "limit": "100",
        }
        async with self.client() as client:
            while next_url:
                resp = await client.get(next_url, params=params)
                data = self.check(resp, "Fetch Facebook pages")
                for page in data.get("data") or []:
                    pages.append({
                        "id": page.get("id"),
                        "name": page.get("name"),
                        "category": page.get("category"),
                        "picture": ((page.get("picture") or {}).get("data") or {}).get("url"),
                        "tasks": page.get("tasks") or [],
                    })
                # "next" already carries every query parameter
                next_url = (data.get("paging") or {}).get("next")
                params = None
        return pages

    async def resolve_page(self, client: httpx.AsyncClient, access_token: str, page_id: Optional[str]) -> str:
        if page_id:
            return page_id
        resp = await client.get(f"{self.settings.graph_url}/me/accounts", params={"access_token": access_token})
        data = self.check(resp, "Fetch Facebook pages")
        pages = data.get("data") or []
        if not pages:
            raise PermanentPlatformError("No Facebook Page found. Please create a page first.", platform="facebook")
        return pages[0]["id"]

    async def page_token(self, client: httpx.AsyncClient, access_token: str, page_id: str) -> str:
        resp = await client.get(
            f"{self.settings.graph_url}/{page_id}",
            params={"fields": "access_token", "access_token": access_token},
        )
        data = self.check(resp, "Fetch Facebook page token")
        token = data.get("access_token")
        if not token:
            raise PermanentPlatformError(f"No page access token for page {page_id}", platform="facebook")
        return token

    async def upload_video(self, user_id: str, request: UploadRequest) -> UploadResult:
        video_type = (request.options.facebook_video_type or "VIDEO").upper()
        limit = MAX_VIDEO_BYTES.get(video_type)
        if limit is None:
            raise PermanentPlatformError(f"Unknown Facebook video type: {video_type}", platform="facebook")
        if request.size > limit:
            raise PermanentPlatformError(
                f"Video is too large for Facebook {video_type} ({request.size // MB}MB > {limit // MB}MB)",
                code=ErrorCode.UPLOAD_TOO_LARGE,
                platform="facebook",
            )

        access_token = await self.access_token(user_id)
        policy = self.policy(request.size)
        async with self.client() as client:
            page_id = await policy.run(
                lambda: self.resolve_page(client, access_token, request.options.facebook_page_id),
                label="facebook page lookup",
            )
            token = await policy.run(
                lambda: self.page_token(client, access_token, page_id),
                label="facebook page token",
            )

        protocol = FacebookGraphProtocol(self.settings.graph_url, page_id, token, request)
        result = await ChunkedUploader(transport=self.transport, sleep=self.sleep).upload(protocol, request.video)
        logger.info(f"Facebook upload accepted: page_id={page_id} video_id={result.video_id}")
        return result

    async def update_metadata(self, user_id: str, video_id: str, update: MetadataUpdate) -> None:
        access_token = await self.access_token(user_id)
        async with self.client() as client:
            resp = await client.post(
                f"{self.settings.graph_url}/{video_id}",
                data={
                    "access_token": access_token,
                    "name": update.title,
                    "description": update.description,
                },
            )
            self.check(resp, "Update Facebook video metadata")
        logger.info(f"Facebook metadata updated: video_id={video_id}")
