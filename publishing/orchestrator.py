"""
Crosspost Publish Orchestrator
==============================
Coordinates one post across its platforms.

Rules:
  - every platform attempt is independent; a failure is caught at the adapter
    boundary, written to that platform's row and never reaches its siblings
  - the post status is re-derived from the rows after every attempt
  - the transient blob is deleted (and its path cleared) only once every row
    is uploaded/published; otherwise it is kept for retry
  - a (post, platform) row is only uploaded by one caller at a time when a
    lease backend is configured
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Dict, Union, Callable, Iterable, Tuple

from .errors import (
    PublishError,
    ErrorCode,
    BlobNotFound,
    error_from_exception,
    user_facing_message,
)
from .leases import UploadLease
from .models import (
    Platform,
    PostStatus,
    PlatformStatus,
    ScheduledPost,
    PostPlatform,
    UploadOptions,
    UploadRequest,
    MetadataUpdate,
    PlatformResult,
    PublishSummary,
    can_transition,
    derive_post_status,
)
from .platforms.base import PlatformAdapter
from .storage import object_path, owned_by
from .timeutil import resolve_scheduled_at, format_in_timezone

logger = logging.getLogger("crosspost")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def normalize_tags(tags: Union[str, List[str], None]) -> List[str]:
    """Tags arrive either as a list or as one comma-separated string."""
    if not tags:
        return []
    if isinstance(tags, str):
        tags = tags.split(",")
    return [t.strip() for t in tags if t and t.strip()]


def parse_platforms(platforms: Iterable[str]) -> List[Platform]:
    out: List[Platform] = []
    for p in platforms or []:
        try:
            platform = Platform.parse(p)
        except ValueError as e:
            raise PublishError(str(e), code=ErrorCode.VALIDATION_FAILED)
        if platform not in out:
            out.append(platform)
    return out


class PublishOrchestrator:

    def __init__(
        self,
        store,
        blobs,
        adapters: Dict[Platform, PlatformAdapter],
        lease: Optional[UploadLease] = None,
        clock: Callable[[], datetime] = _now_utc,
        orphan_max_age_hours: int = 24,
    ):
        self.store = store
        self.blobs = blobs
        self.adapters = adapters
        self.lease = lease or UploadLease(None)
        self.clock = clock
        self.orphan_max_age = timedelta(hours=orphan_max_age_hours)

    # ------------------------------------------------------------
    # Lookup helpers
    # ------------------------------------------------------------

    async def get_owned_post(self, user_id: str, post_id: str) -> ScheduledPost:
        post = await self.store.get_post(post_id, user_id)
        if post is None:
            raise PublishError("Post not found", code=ErrorCode.NOT_FOUND)
        return post

    def adapter_for(self, platform: Platform) -> PlatformAdapter:
        adapter = self.adapters.get(Platform(platform))
        if adapter is None:
            raise PublishError(f"Unknown platform: {platform}", code=ErrorCode.VALIDATION_FAILED)
        return adapter

    # ------------------------------------------------------------
    # Create
    # ------------------------------------------------------------

    async def create_post(
        self,
        user_id: str,
        title: str,
        description: str,
        scheduled_at: str,
        platforms: List[str],
        tags: Union[str, List[str], None] = None,
        timezone_name: Optional[str] = None,
        youtube_category_id: Optional[str] = None,
    ) -> Tuple[ScheduledPost, List[PostPlatform]]:
        if not title or not description or not scheduled_at or not platforms:
            raise PublishError("Missing required fields", code=ErrorCode.VALIDATION_FAILED)

        selected = parse_platforms(platforms)
        tz_name = timezone_name or "UTC"
        try:
            when = resolve_scheduled_at(scheduled_at, tz_name)
        except ValueError as e:
            raise PublishError(str(e), code=ErrorCode.VALIDATION_FAILED)

        post = ScheduledPost(
            user_id=user_id,
            title=title,
            description=description,
            tags=normalize_tags(tags),
            scheduled_at=when,
            timezone=tz_name,
            status=PostStatus.UPLOADING,
            youtube_category_id=youtube_category_id or None,
        )
        post, rows = await self.store.create_post(post, selected)
        logger.info(
            f"Post {post.id} created for user {user_id}: "
            f"{[p.value for p in selected]} at {when.isoformat()} ({tz_name})"
        )
        return post, rows

    async def upload_to_storage(
        self,
        user_id: str,
        post_id: str,
        filename: str,
        data: bytes,
        content_type: str = "video/mp4",
    ) -> str:
        """Store the video under <user_id>/<post_id>-<epoch_ms>.<ext> and record the path."""
        await self.get_owned_post(user_id, post_id)
        if not data:
            raise PublishError("Missing video file", code=ErrorCode.VALIDATION_FAILED)
        path = object_path(user_id, post_id, filename, now_ms=int(self.clock().timestamp() * 1000))
        await self.blobs.put(path, data, content_type=content_type or "video/mp4")
        await self.store.update_post(post_id, video_file_path=path)
        return path

    # ------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------

    def _build_request(self, post: ScheduledPost, video: bytes, options: UploadOptions) -> UploadRequest:
        return UploadRequest(
            video=video,
            title=post.title,
            description=post.description,
            scheduled_at=post.scheduled_at,
            tags=list(post.tags or []),
            category_id=post.youtube_category_id,
            options=options,
        )

    async def _attempt(
        self, post: ScheduledPost, platform: Platform, video: bytes, options: UploadOptions
    ) -> PlatformResult:
        """Run one adapter upload and write the outcome to the row. Never raises for adapter failures."""
        adapter = self.adapter_for(platform)
        request = self._build_request(post, video, options)

        try:
            result = await adapter.upload_video(post.user_id, request)
        except Exception as e:
            err = error_from_exception(e, platform.value)
            message = user_facing_message(platform.value, err)
            logger.error(f"Error uploading post {post.id} to {platform.value}: [{err.code.value}] {err.message}")
            await self.store.update_post_platform(
                post.id, platform,
                status=PlatformStatus.FAILED,
                error_message=message,
            )
            return PlatformResult(
                platform=platform,
                success=False,
                error_code=err.code.value,
                error_message=message,
            )

        await self.store.update_post_platform(
            post.id, platform,
            status=PlatformStatus.UPLOADED,
            platform_video_id=result.video_id,
            thumbnail_url=result.thumbnail_url,
            uploaded_at=self.clock(),
            error_message=None,
        )
        logger.info(f"Post {post.id} uploaded to {platform.value}: video_id={result.video_id}")
        return PlatformResult(
            platform=platform,
            success=True,
            video_id=result.video_id,
            thumbnail_url=result.thumbnail_url,
        )

    async def _leased_attempt(
        self, post: ScheduledPost, platform: Platform, video: bytes, options: UploadOptions
    ) -> PlatformResult:
        try:
            async with self.lease.hold(post.id, platform.value):
                return await self._attempt(post, platform, video, options)
        except PublishError as e:
            if e.code != ErrorCode.UPLOAD_IN_PROGRESS:
                raise
            # Someone else owns the row; leave it alone
            logger.warning(f"Post {post.id} {platform.value}: {e.message}")
            return PlatformResult(platform=platform, success=False, error_code=e.code.value, error_message=e.message)

    async def _settle_post(self, post: ScheduledPost, blob_path: Optional[str]) -> Tuple[PostStatus, bool]:
        """
        Re-derive the post status; delete the blob once every row succeeded.

        Concurrent settles of the same post race for the stored path and only
        the one that clears it deletes the blob. A failed delete leaves the
        blob unreferenced for cleanup_orphaned_blobs.
        """
        rows = await self.store.list_post_platforms(post.id)
        status = derive_post_status(rows)
        deleted = False

        if status == PostStatus.PENDING and blob_path:
            if await self.store.release_video_path(post.id, blob_path):
                post.video_file_path = None
                try:
                    await self.blobs.delete(blob_path)
                    deleted = True
                except Exception as e:
                    logger.error(f"Error deleting video {blob_path} from storage: {e}")

        await self.store.update_post(post.id, status=status)
        post.status = status
        if deleted:
            logger.info(f"Post {post.id}: all platforms uploaded, deleted {blob_path}")
        return status, deleted

    async def _load_video(self, path: Optional[str]) -> bytes:
        if not path:
            raise BlobNotFound("No video file available. Please provide a video file.")
        try:
            return await self.blobs.get(path)
        except BlobNotFound:
            raise BlobNotFound("Video file not found in storage. Please provide a new video file.")

    # ------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------

    async def publish_to_all(
        self,
        user_id: str,
        post_id: str,
        platforms: Optional[List[str]] = None,
        blob_path: Optional[str] = None,
        options: Optional[UploadOptions] = None,
    ) -> PublishSummary:
        """Upload to every selected platform concurrently and settle the post once all are done."""
        post = await self.get_owned_post(user_id, post_id)
        options = options or UploadOptions()
        path = blob_path or post.video_file_path
        if path and not owned_by(user_id, path):
            raise PublishError("Unauthorized", code=ErrorCode.FORBIDDEN)

        rows = {Platform(r.platform): r for r in await self.store.list_post_platforms(post.id)}
        selected = parse_platforms(platforms) if platforms else list(rows.keys())
        missing = [p.value for p in selected if p not in rows]
        if missing:
            raise PublishError(f"Post has no row for: {', '.join(missing)}", code=ErrorCode.VALIDATION_FAILED)

        targets = []
        for platform in selected:
            if PlatformStatus(rows[platform].status) == PlatformStatus.PENDING:
                targets.append(platform)
            else:
                logger.warning(f"Post {post.id} {platform.value} is {rows[platform].status}; skipping")

        video = await self._load_video(path)
        if path != post.video_file_path:
            await self.store.update_post(post.id, video_file_path=path)
            post.video_file_path = path

        outcomes = await asyncio.gather(
            *(self._leased_attempt(post, p, video, options) for p in targets),
            return_exceptions=True,
        )

        results: List[PlatformResult] = []
        for platform, outcome in zip(targets, outcomes):
            if isinstance(outcome, BaseException):
                err = error_from_exception(outcome, platform.value)
                logger.error(f"Post {post.id} {platform.value} attempt crashed: {outcome!r}")
                results.append(PlatformResult(
                    platform=platform,
                    success=False,
                    error_code=err.code.value,
                    error_message=user_facing_message(platform.value, err),
                ))
            else:
                results.append(outcome)

        status, deleted = await self._settle_post(post, path)
        summary = PublishSummary(post_id=post.id, results=results, post_status=status, blob_deleted=deleted)
        if summary.failed:
            logger.warning(
                f"Post {post.id}: {len(summary.failed)}/{len(results)} platforms failed; "
                f"keeping {path} for retry"
            )
        return summary

    async def process_upload(
        self,
        user_id: str,
        post_id: str,
        platform: str,
        blob_path: Optional[str] = None,
        options: Optional[UploadOptions] = None,
    ) -> PlatformResult:
        """Upload the stored video to a single platform."""
        await self.get_owned_post(user_id, post_id)
        selected = parse_platforms([platform])[0]
        row = await self.store.get_post_platform(post_id, selected)
        if row is None:
            raise PublishError("Platform record not found", code=ErrorCode.NOT_FOUND)
        if PlatformStatus(row.status) != PlatformStatus.PENDING:
            raise PublishError(
                f"{selected.value} is not pending for this post",
                code=ErrorCode.INVALID_STATE,
                platform=selected.value,
            )
        summary = await self.publish_to_all(
            user_id, post_id, platforms=[selected.value], blob_path=blob_path, options=options,
        )
        if not summary.results:
            # Another caller moved the row between the check and the fan-out
            raise PublishError(f"{selected.value} is not pending for this post", code=ErrorCode.INVALID_STATE)
        return summary.results[0]

    # ------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------

    async def retry(
        self,
        user_id: str,
        post_id: str,
        platform: str,
        blob_path: Optional[str] = None,
        options: Optional[UploadOptions] = None,
    ) -> PublishSummary:
        """Re-run one platform with the retained (or a newly uploaded) blob."""
        post = await self.get_owned_post(user_id, post_id)
        platform = parse_platforms([platform])[0]
        options = options or UploadOptions()

        row = await self.store.get_post_platform(post.id, platform)
        if row is None:
            raise PublishError("Platform record not found", code=ErrorCode.NOT_FOUND)
        status = PlatformStatus(row.status)
        if status not in (PlatformStatus.FAILED, PlatformStatus.PENDING):
            raise PublishError(
                f"{platform.value} is already {status.value}; nothing to retry",
                code=ErrorCode.INVALID_STATE,
                platform=platform.value,
            )
        if blob_path and not owned_by(user_id, blob_path):
            raise PublishError("Unauthorized", code=ErrorCode.FORBIDDEN)

        path = blob_path or post.video_file_path

        async with self.lease.hold(post.id, platform.value):
            video = await self._load_video(path)

            if blob_path and blob_path != post.video_file_path:
                await self.store.update_post(post.id, video_file_path=blob_path)
                post.video_file_path = blob_path

            if status == PlatformStatus.FAILED and can_transition(status, PlatformStatus.PENDING):
                await self.store.update_post_platform(
                    post.id, platform, status=PlatformStatus.PENDING, error_message=None,
                )

            logger.info(f"Retrying post {post.id} on {platform.value}")
            result = await self._attempt(post, platform, video, options)

        post_status, deleted = await self._settle_post(post, path)
        return PublishSummary(post_id=post.id, results=[result], post_status=post_status, blob_deleted=deleted)

    # ------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------

    async def update_metadata(
        self,
        user_id: str,
        post_id: str,
        title: str,
        description: str,
        tags: Union[str, List[str], None] = None,
        youtube_category_id: Optional[str] = None,
        platforms: Optional[List[str]] = None,
        skip_youtube_tags: bool = False,
    ) -> List[str]:
        """Update the post and push to every uploaded platform. Returns per-platform warnings."""
        if not title or not description:
            raise PublishError("Missing title or description", code=ErrorCode.VALIDATION_FAILED)

        post = await self.get_owned_post(user_id, post_id)
        if PostStatus(post.status) == PostStatus.FAILED:
            raise PublishError("Cannot edit metadata for failed posts", code=ErrorCode.INVALID_STATE)

        tag_list = normalize_tags(tags)
        fields = {"title": title, "description": description, "tags": tag_list}
        if youtube_category_id:
            fields["youtube_category_id"] = youtube_category_id
        await self.store.update_post(post.id, **fields)

        selected = set(parse_platforms(platforms)) if platforms else set()
        rows = [
            r for r in await self.store.list_post_platforms(post.id)
            if r.platform_video_id
            and PlatformStatus(r.status) in (PlatformStatus.UPLOADED, PlatformStatus.PUBLISHED)
            and (not selected or Platform(r.platform) in selected)
        ]

        category = youtube_category_id or post.youtube_category_id

        async def _push(row: PostPlatform):
            platform = Platform(row.platform)
            update = MetadataUpdate(
                title=title,
                description=description,
                tags=None if (skip_youtube_tags and platform == Platform.YOUTUBE) else tag_list,
                category_id=category,
                skip_tags=skip_youtube_tags and platform == Platform.YOUTUBE,
            )
            await self.adapter_for(platform).update_metadata(user_id, row.platform_video_id, update)

        return await self._fan_out_edits(rows, _push, "metadata")

    async def update_schedule(
        self,
        user_id: str,
        post_id: str,
        scheduled_at: str,
        timezone_name: Optional[str] = None,
    ) -> List[str]:
        """Move the post and reschedule where the platform allows it. Returns per-platform warnings."""
        if not scheduled_at:
            raise PublishError("Missing scheduledAt", code=ErrorCode.VALIDATION_FAILED)

        post = await self.get_owned_post(user_id, post_id)
        if PostStatus(post.status) not in (PostStatus.PENDING, PostStatus.UPLOADING):
            raise PublishError("Cannot edit schedule for published or failed posts", code=ErrorCode.INVALID_STATE)

        tz_name = timezone_name or post.timezone or "UTC"
        try:
            when = resolve_scheduled_at(scheduled_at, tz_name)
        except ValueError as e:
            raise PublishError(str(e), code=ErrorCode.VALIDATION_FAILED)
        if when <= self.clock():
            raise PublishError("Scheduled time must be in the future", code=ErrorCode.VALIDATION_FAILED)

        await self.store.update_post(post.id, scheduled_at=when, timezone=tz_name)

        rows = []
        for r in await self.store.list_post_platforms(post.id):
            if not r.platform_video_id or PlatformStatus(r.status) != PlatformStatus.UPLOADED:
                continue
            if not self.adapter_for(r.platform).supports_reschedule:
                logger.warning(
                    f"Rescheduling not supported for {Platform(r.platform).value}. "
                    f"Video will publish at original time."
                )
                continue
            rows.append(r)

        async def _push(row: PostPlatform):
            await self.adapter_for(row.platform).update_schedule(user_id, row.platform_video_id, when)

        return await self._fan_out_edits(rows, _push, "schedule")

    async def _fan_out_edits(self, rows: List[PostPlatform], push, what: str) -> List[str]:
        outcomes = await asyncio.gather(*(push(r) for r in rows), return_exceptions=True)
        errors = []
        for row, outcome in zip(rows, outcomes):
            if isinstance(outcome, BaseException):
                platform = Platform(row.platform).value
                logger.error(f"Error updating {what} for {platform}: {outcome}")
                errors.append(f"{platform}: {user_facing_message(platform, outcome)}")
        return errors

    # ------------------------------------------------------------
    # Blob housekeeping
    # ------------------------------------------------------------

    async def delete_post(self, user_id: str, post_id: str) -> None:
        """Remove the post (rows cascade) and its blob if one is still stored."""
        post = await self.get_owned_post(user_id, post_id)
        if post.video_file_path and owned_by(user_id, post.video_file_path):
            try:
                await self.blobs.delete(post.video_file_path)
            except Exception as e:
                logger.error(f"Error deleting video {post.video_file_path} for post {post.id}: {e}")
        await self.store.delete_post(post.id, user_id)
        logger.info(f"Post {post.id} deleted for user {user_id}")

    async def delete_blob(self, user_id: str, path: str) -> None:
        if not path:
            raise PublishError("Missing filePath", code=ErrorCode.VALIDATION_FAILED)
        if not owned_by(user_id, path):
            raise PublishError("Unauthorized", code=ErrorCode.FORBIDDEN)
        await self.blobs.delete(path)

    async def cleanup_orphaned_blobs(self, user_id: str) -> List[str]:
        """Delete the user's blobs older than the cutoff that no post references any more."""
        cutoff = self.clock() - self.orphan_max_age
        referenced = set(await self.store.list_blob_paths(user_id))
        deleted = []
        for path, modified in await self.blobs.list(f"{user_id}/"):
            if path in referenced or modified is None or modified >= cutoff:
                continue
            await self.blobs.delete(path)
            deleted.append(path)
        if deleted:
            logger.info(f"Cleaned up {len(deleted)} orphaned blobs for user {user_id}")
        return deleted

    # ------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------

    async def post_detail(self, user_id: str, post_id: str) -> dict:
        post = await self.get_owned_post(user_id, post_id)
        rows = await self.store.list_post_platforms(post.id)
        return self.render_post(post, rows)

    async def list_posts(self, user_id: str, limit: int = 50, offset: int = 0) -> List[dict]:
        posts = await self.store.list_posts(user_id, limit=limit, offset=offset)
        out = []
        for post in posts:
            rows = await self.store.list_post_platforms(post.id)
            out.append(self.render_post(post, rows))
        return out

    @staticmethod
    def render_post(post: ScheduledPost, rows: List[PostPlatform]) -> dict:
        data = post.to_dict()
        data["scheduled_display"] = format_in_timezone(post.scheduled_at, post.timezone)
        data["platforms"] = [r.to_dict() for r in rows]
        return data
