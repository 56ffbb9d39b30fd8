"""
YouTube Adapter
===============
YouTube Data API v3.

Upload flow: POST metadata (resumable session, Location header) -> single PUT
of the whole file -> GET snippet for the best thumbnail.

Tag rules (YouTube rejects the whole request otherwise):
  - letters, digits, spaces, hyphens and underscores only
  - each tag <= 30 chars
  - combined length <= 500, where multi-word tags count two extra for the
    quotes YouTube adds and every tag after the first counts one comma
  - case-insensitive duplicates dropped
"""

import logging
import re
from datetime import datetime, timezone
from typing import List, Optional

import httpx

from ..errors import PermanentPlatformError
from ..models import Platform, UploadRequest, UploadResult, MetadataUpdate
from .base import PlatformAdapter

logger = logging.getLogger("crosspost")

UPLOAD_URL = "https://www.googleapis.com/upload/youtube/v3/videos"
VIDEOS_URL = "https://www.googleapis.com/youtube/v3/videos"

DEFAULT_CATEGORY_ID = "22"  # People & Blogs
MAX_TAG_LENGTH = 30
MAX_TAGS_TOTAL = 500

UPLOAD_TIMEOUT = httpx.Timeout(600.0, connect=30.0)

_PUNCTUATION = re.compile(r"[‘’“”'\"?!.,;:()\[\]{}@#$%^&*+=|\\/<>~`]")
_INVALID = re.compile(r"[^A-Za-z0-9_\s\-]")
_SPACES = re.compile(r"\s+")
_EDGE_HYPHENS = re.compile(r"^-+|-+$")


def sanitize_tag(tag: str) -> str:
    if not tag or not isinstance(tag, str):
        return ""
    cleaned = _PUNCTUATION.sub("", tag)
    cleaned = _INVALID.sub("", cleaned)
    cleaned = _SPACES.sub(" ", cleaned).strip()
    cleaned = _EDGE_HYPHENS.sub("", cleaned)
    if not cleaned.replace(" ", ""):
        return ""
    return cleaned


def validate_youtube_tags(tags: Optional[List[str]]) -> List[str]:
    if not tags:
        return []

    valid: List[str] = []
    seen = set()
    total = 0

    for tag in tags:
        processed = sanitize_tag((tag or "").strip())
        if not processed:
            continue

        if len(processed) > MAX_TAG_LENGTH:
            processed = processed[:MAX_TAG_LENGTH].strip()
            if not processed:
                continue

        lowered = processed.lower()
        if lowered in seen:
            continue

        cost = len(processed) + (2 if " " in processed else 0)
        cost += 1 if valid else 0
        if total + cost > MAX_TAGS_TOTAL:
            break

        valid.append(processed)
        seen.add(lowered)
        total += cost

    return valid


def _iso_utc(when: datetime) -> str:
    return when.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")


def pick_thumbnail(video_id: str, thumbnails: Optional[dict]) -> str:
    thumbnails = thumbnails or {}
    for key in ("maxres", "standard", "high", "medium", "default"):
        url = (thumbnails.get(key) or {}).get("url")
        if url:
            return url
    return f"https://img.youtube.com/vi/{video_id}/maxresdefault.jpg"


class YouTubeAdapter(PlatformAdapter):
    platform = Platform.YOUTUBE
    supports_metadata_update = True
    supports_reschedule = True

    async def upload_video(self, user_id: str, request: UploadRequest) -> UploadResult:
        access_token = await self.access_token(user_id)
        policy = self.policy(request.size)

        metadata = {
            "snippet": {
                "title": request.title,
                "description": request.description,
                "tags": validate_youtube_tags(request.tags),
                "categoryId": request.category_id or DEFAULT_CATEGORY_ID,
            },
            "status": {
                "privacyStatus": request.options.youtube_privacy_status or "private",
                "publishAt": _iso_utc(request.scheduled_at),
                "selfDeclaredMadeForKids": False,
            },
        }

        async with self.client(UPLOAD_TIMEOUT) as client:

            async def _init() -> str:
                resp = await client.post(
                    UPLOAD_URL,
                    params={"uploadType": "resumable", "part": "snippet,status"},
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Content-Type": "application/json",
                        "X-Upload-Content-Type": "video/*",
                        "X-Upload-Content-Length": str(request.size),
                    },
                    json=metadata,
                    timeout=httpx.Timeout(30.0),
                )
                self.check(resp, "Initialize YouTube upload")
                location = resp.headers.get("Location")
                if not location:
                    raise PermanentPlatformError("No upload URL received from YouTube", platform="youtube")
                return location

            upload_url = await policy.run(_init, label="youtube init")

            async def _put() -> dict:
                resp = await client.put(
                    upload_url,
                    content=request.video,
                    headers={"Content-Type": "video/*", "Content-Length": str(request.size)},
                )
                return self.check(resp, "Upload video to YouTube")

            uploaded = await policy.run(_put, label="youtube upload")
            video_id = uploaded.get("id")
            if not video_id:
                raise PermanentPlatformError("No video ID received from YouTube", platform="youtube")

            logger.info(f"YouTube upload accepted: video_id={video_id}")
            thumbnail_url = await self._thumbnail(client, access_token, video_id)

        return UploadResult(video_id=video_id, thumbnail_url=thumbnail_url)

    async def _thumbnail(self, client: httpx.AsyncClient, access_token: str, video_id: str) -> str:
        try:
            resp = await client.get(
                VIDEOS_URL,
                params={"id": video_id, "part": "snippet"},
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=httpx.Timeout(30.0),
            )
        except httpx.HTTPError as e:
            logger.warning(f"YouTube thumbnail lookup failed for {video_id}: {e}")
            return pick_thumbnail(video_id, None)
        if resp.status_code >= 400:
            return pick_thumbnail(video_id, None)
        items = resp.json().get("items") or []
        thumbnails = items[0].get("snippet", {}).get("thumbnails") if items else None
        return pick_thumbnail(video_id, thumbnails)

    async def _get_video(self, client: httpx.AsyncClient, access_token: str, video_id: str, part: str) -> dict:
        resp = await client.get(
            VIDEOS_URL,
            params={"part": part, "id": video_id},
            headers={"Authorization": f"Bearer {access_token}"},
        )
        data = self.check(resp, "Get video details")
        items = data.get("items") or []
        if not items:
            raise PermanentPlatformError("Video not found", platform="youtube")
        return items[0]

    async def update_schedule(self, user_id: str, video_id: str, when: datetime) -> None:
        access_token = await self.access_token(user_id)
        async with self.client() as client:
            video = await self._get_video(client, access_token, video_id, "snippet,status")
            status = dict(video.get("status") or {})
            status["publishAt"] = _iso_utc(when)
            # YouTube requires snippet alongside status on update
            resp = await client.put(
                VIDEOS_URL,
                params={"part": "snippet,status"},
                headers={"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"},
                json={"id": video_id, "snippet": video.get("snippet"), "status": status},
            )
            self.check(resp, "Update YouTube video schedule")
        logger.info(f"YouTube schedule updated: video_id={video_id} publishAt={status['publishAt']}")

    async def update_metadata(self, user_id: str, video_id: str, update: MetadataUpdate) -> None:
        access_token = await self.access_token(user_id)
        async with self.client() as client:
            video = await self._get_video(client, access_token, video_id, "snippet")
            existing = video.get("snippet") or {}

            # Only writable fields; YouTube rejects read-only ones like thumbnails/channelId
            snippet = {
                "title": update.title,
                "description": update.description,
                "categoryId": update.category_id or existing.get("categoryId") or DEFAULT_CATEGORY_ID,
            }
            if existing.get("defaultLanguage"):
                snippet["defaultLanguage"] = existing["defaultLanguage"]
            if not update.skip_tags and update.tags is not None:
                snippet["tags"] = validate_youtube_tags(update.tags)
            elif existing.get("tags"):
                # Omitting tags on PUT would clear them
                snippet["tags"] = existing["tags"]

            resp = await client.put(
                VIDEOS_URL,
                params={"part": "snippet"},
                headers={"Authorization": f"Bearer {access_token}", "Content-Type": "application/json"},
                json={"id": video_id, "snippet": snippet},
            )
            self.check(resp, "Update YouTube video metadata")
        logger.info(f"YouTube metadata updated: video_id={video_id}")
