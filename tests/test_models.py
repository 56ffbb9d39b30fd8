"""
Tests for the post/platform state machine and summary shapes.
"""

from datetime import datetime, timedelta, timezone

import pytest

from publishing.models import (
    Platform,
    PlatformConnection,
    PlatformResult,
    PlatformStatus,
    PostPlatform,
    PostStatus,
    PublishSummary,
    can_transition,
    derive_post_status,
)


def _rows(*statuses):
    platforms = list(Platform)
    return [PostPlatform(post_id="p1", platform=platforms[i], status=s) for i, s in enumerate(statuses)]


class TestDerivePostStatus:

    def test_no_rows_is_uploading(self):
        assert derive_post_status([]) == PostStatus.UPLOADING

    def test_fresh_post_is_uploading(self):
        assert derive_post_status(_rows(PlatformStatus.PENDING, PlatformStatus.PENDING)) == PostStatus.UPLOADING

    def test_all_uploaded_or_published_is_pending(self):
        rows = _rows(PlatformStatus.UPLOADED, PlatformStatus.PUBLISHED)
        assert derive_post_status(rows) == PostStatus.PENDING

    def test_failure_with_nothing_in_flight_is_failed(self):
        rows = _rows(PlatformStatus.UPLOADED, PlatformStatus.FAILED)
        assert derive_post_status(rows) == PostStatus.FAILED

    def test_failure_while_sibling_pending_is_uploading(self):
        rows = _rows(PlatformStatus.FAILED, PlatformStatus.PENDING)
        assert derive_post_status(rows) == PostStatus.UPLOADING


class TestTransitions:

    @pytest.mark.parametrize("current,target,allowed", [
        (PlatformStatus.PENDING, PlatformStatus.UPLOADED, True),
        (PlatformStatus.PENDING, PlatformStatus.FAILED, True),
        (PlatformStatus.FAILED, PlatformStatus.PENDING, True),
        (PlatformStatus.FAILED, PlatformStatus.UPLOADED, False),
        (PlatformStatus.UPLOADED, PlatformStatus.PENDING, False),
        (PlatformStatus.UPLOADED, PlatformStatus.PUBLISHED, True),
        (PlatformStatus.PUBLISHED, PlatformStatus.FAILED, False),
    ])
    def test_allowed_transitions(self, current, target, allowed):
        assert can_transition(current, target) is allowed

    def test_accepts_plain_strings(self):
        assert can_transition("failed", PlatformStatus.PENDING)


class TestPlatformConnection:
    NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def test_missing_expiry_counts_as_expiring(self):
        conn = PlatformConnection(user_id="u1", platform=Platform.YOUTUBE, access_token="t")
        assert conn.expires_within(timedelta(minutes=5), now=self.NOW)

    def test_expiry_inside_window(self):
        conn = PlatformConnection(
            user_id="u1", platform=Platform.YOUTUBE, access_token="t",
            expires_at=self.NOW + timedelta(minutes=3),
        )
        assert conn.expires_within(timedelta(minutes=5), now=self.NOW)

    def test_expiry_outside_window(self):
        conn = PlatformConnection(
            user_id="u1", platform=Platform.YOUTUBE, access_token="t",
            expires_at=self.NOW + timedelta(minutes=10),
        )
        assert not conn.expires_within(timedelta(minutes=5), now=self.NOW)


class TestPublishSummary:

    def test_partial_success_reports_warning_and_errors(self):
        summary = PublishSummary(
            post_id="p1",
            results=[
                PlatformResult(platform=Platform.YOUTUBE, success=True, video_id="yt1", thumbnail_url="thumb"),
                PlatformResult(platform=Platform.FACEBOOK, success=False, error_code="PLATFORM_TRANSIENT",
                               error_message="timed out"),
            ],
            post_status=PostStatus.FAILED,
        )

        data = summary.to_dict()

        assert summary.is_partial_success()
        assert data["success"] is True
        assert data["status"] == "failed"
        assert data["warning"] == "Some platforms could not be uploaded"
        assert data["errors"] == ["facebook: timed out"]
        assert data["uploadResults"][0]["result"] == {"videoId": "yt1", "thumbnailUrl": "thumb"}
        assert data["uploadResults"][1]["code"] == "PLATFORM_TRANSIENT"

    def test_full_success_has_no_warning(self):
        summary = PublishSummary(
            post_id="p1",
            results=[PlatformResult(platform=Platform.TIKTOK, success=True, video_id="pub1")],
            post_status=PostStatus.PENDING,
            blob_deleted=True,
        )
        data = summary.to_dict()
        assert "warning" not in data
        assert data["blobDeleted"] is True

    def test_platform_parse(self):
        assert Platform.parse(" YouTube ") == Platform.YOUTUBE
        with pytest.raises(ValueError, match="Unknown platform"):
            Platform.parse("myspace")
