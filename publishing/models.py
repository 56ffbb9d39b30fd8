"""
Crosspost Models
================
Records flowing between the store, the adapters and the orchestrator, plus the
per-platform status state machine.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, List, Dict, Any, Iterable


class Platform(str, Enum):
    YOUTUBE = "youtube"
    FACEBOOK = "facebook"
    INSTAGRAM = "instagram"
    TIKTOK = "tiktok"

    @classmethod
    def parse(cls, value: str) -> "Platform":
        try:
            return cls(str(value).lower().strip())
        except ValueError:
            raise ValueError(f"Unknown platform: {value}")


class PostStatus(str, Enum):
    UPLOADING = "uploading"
    PENDING = "pending"
    PUBLISHED = "published"
    FAILED = "failed"


class PlatformStatus(str, Enum):
    PENDING = "pending"
    UPLOADED = "uploaded"
    PUBLISHED = "published"
    FAILED = "failed"


SUCCESS_STATUSES = frozenset({PlatformStatus.UPLOADED, PlatformStatus.PUBLISHED})

# failed -> pending only happens through an explicit retry
ALLOWED_TRANSITIONS: Dict[PlatformStatus, frozenset] = {
    PlatformStatus.PENDING: frozenset({PlatformStatus.UPLOADED, PlatformStatus.FAILED}),
    PlatformStatus.FAILED: frozenset({PlatformStatus.PENDING}),
    PlatformStatus.UPLOADED: frozenset({PlatformStatus.PUBLISHED}),
    PlatformStatus.PUBLISHED: frozenset(),
}


def can_transition(current: PlatformStatus, target: PlatformStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(PlatformStatus(current), frozenset())


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PlatformConnection:
    """OAuth credentials for one (user, platform)."""
    user_id: str
    platform: Platform
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    platform_user_id: Optional[str] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    def expires_within(self, window: timedelta, now: Optional[datetime] = None) -> bool:
        """True when the token is expired or expires inside `window`. Unknown expiry counts as expired."""
        if self.expires_at is None:
            return True
        now = now or _now_utc()
        return self.expires_at - now < window


@dataclass
class ScheduledPost:
    """A video plus metadata targeted at one or more platforms."""
    user_id: str
    title: str
    description: str
    scheduled_at: datetime
    tags: List[str] = field(default_factory=list)
    timezone: str = "UTC"
    status: PostStatus = PostStatus.UPLOADING
    youtube_category_id: Optional[str] = None
    video_file_path: Optional[str] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "description": self.description,
            "tags": list(self.tags),
            "scheduled_at": self.scheduled_at.isoformat() if self.scheduled_at else None,
            "timezone": self.timezone,
            "status": PostStatus(self.status).value,
            "youtube_category_id": self.youtube_category_id,
            "video_file_path": self.video_file_path,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class PostPlatform:
    """Per-platform sub-record of a post."""
    post_id: str
    platform: Platform
    status: PlatformStatus = PlatformStatus.PENDING
    platform_video_id: Optional[str] = None
    thumbnail_url: Optional[str] = None
    error_message: Optional[str] = None
    uploaded_at: Optional[datetime] = None
    id: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return PlatformStatus(self.status) in SUCCESS_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "post_id": self.post_id,
            "platform": Platform(self.platform).value,
            "status": PlatformStatus(self.status).value,
            "platform_video_id": self.platform_video_id,
            "thumbnail_url": self.thumbnail_url,
            "error_message": self.error_message,
            "uploaded_at": self.uploaded_at.isoformat() if self.uploaded_at else None,
        }


@dataclass
class UploadOptions:
    """Platform-specific knobs that are not stored on the post."""
    facebook_video_type: str = "VIDEO"  # VIDEO | REELS
    facebook_page_id: Optional[str] = None
    instagram_account_id: Optional[str] = None
    youtube_privacy_status: str = "private"
    tiktok_privacy_level: str = "PUBLIC_TO_EVERYONE"


@dataclass
class UploadRequest:
    """Everything an adapter needs to upload one video."""
    video: bytes
    title: str
    description: str
    scheduled_at: datetime
    tags: List[str] = field(default_factory=list)
    category_id: Optional[str] = None
    options: UploadOptions = field(default_factory=UploadOptions)

    @property
    def size(self) -> int:
        return len(self.video)


@dataclass
class UploadResult:
    video_id: str
    thumbnail_url: Optional[str] = None


@dataclass
class MetadataUpdate:
    title: str
    description: str
    tags: Optional[List[str]] = None
    category_id: Optional[str] = None
    skip_tags: bool = False


@dataclass
class PlatformResult:
    """Outcome of one platform attempt inside a fan-out."""
    platform: Platform
    success: bool
    video_id: Optional[str] = None
    thumbnail_url: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    def to_dict(self) -> dict:
        out: Dict[str, Any] = {"platform": Platform(self.platform).value, "success": self.success}
        if self.success:
            out["result"] = {"videoId": self.video_id, "thumbnailUrl": self.thumbnail_url}
        else:
            out["error"] = self.error_message
            out["code"] = self.error_code
        return out


@dataclass
class PublishSummary:
    """Joined outcome of a fan-out over several platforms."""
    post_id: str
    results: List[PlatformResult] = field(default_factory=list)
    post_status: Optional[PostStatus] = None
    blob_deleted: bool = False

    @property
    def succeeded(self) -> List[Platform]:
        return [r.platform for r in self.results if r.success]

    @property
    def failed(self) -> List[Platform]:
        return [r.platform for r in self.results if not r.success]

    def is_partial_success(self) -> bool:
        return bool(self.succeeded) and bool(self.failed)

    def to_dict(self) -> dict:
        out = {
            "success": True,
            "postId": self.post_id,
            "status": PostStatus(self.post_status).value if self.post_status else None,
            "blobDeleted": self.blob_deleted,
            "uploadResults": [r.to_dict() for r in self.results],
        }
        if self.failed:
            out["warning"] = "Some platforms could not be uploaded"
            out["errors"] = [f"{Platform(r.platform).value}: {r.error_message}" for r in self.results if not r.success]
        return out


def derive_post_status(rows: Iterable[PostPlatform]) -> PostStatus:
    """
    Post-level status from its platform rows:
      - pending   when every row is uploaded/published
      - failed    when nothing is still pending and at least one row failed
      - uploading otherwise
    """
    statuses = [PlatformStatus(r.status) for r in rows]
    if not statuses:
        return PostStatus.UPLOADING
    if all(s in SUCCESS_STATUSES for s in statuses):
        return PostStatus.PENDING
    if PlatformStatus.PENDING not in statuses:
        return PostStatus.FAILED
    return PostStatus.UPLOADING
