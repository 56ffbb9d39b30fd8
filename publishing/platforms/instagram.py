"""
Instagram Adapter
=================
Instagram Graph API through the Facebook Page linked to a Business Account.
Single-shot media creation; no reschedule.
"""

import logging
from typing import Optional, Tuple

import httpx

from ..errors import PermanentPlatformError
from ..models import Platform, UploadRequest, UploadResult, MetadataUpdate
from .base import PlatformAdapter

logger = logging.getLogger("crosspost")

MEDIA_TIMEOUT = httpx.Timeout(300.0, connect=30.0)


class InstagramAdapter(PlatformAdapter):
    platform = Platform.INSTAGRAM
    supports_metadata_update = True
    supports_reschedule = False

    async def resolve_account(
        self,
        client: httpx.AsyncClient,
        access_token: str,
        page_id: Optional[str],
        account_id: Optional[str],
    ) -> Tuple[str, str]:
        """(page_id, instagram_business_account_id)"""
        if page_id and account_id:
            return page_id, account_id

        graph = self.settings.graph_url
        if not page_id:
            resp = await client.get(f"{graph}/me/accounts", params={"access_token": access_token})
            pages = self.check(resp, "Get Facebook pages").get("data") or []
            if not pages:
                raise PermanentPlatformError(
                    "No Facebook Page found. Please create a page and connect it to Instagram.",
                    platform="instagram",
                )
            page_id = pages[0]["id"]

        resp = await client.get(
            f"{graph}/{page_id}",
            params={"fields": "instagram_business_account", "access_token": access_token},
        )
        info = self.check(resp, "Get Instagram account from page")
        account_id = account_id or (info.get("instagram_business_account") or {}).get("id")
        if not account_id:
            raise PermanentPlatformError(
                "No Instagram Business Account found. Please connect your Instagram account to your Facebook Page.",
                platform="instagram",
            )
        return page_id, account_id

    async def upload_video(self, user_id: str, request: UploadRequest) -> UploadResult:
        access_token = await self.access_token(user_id)
        policy = self.policy(request.size)
        options = request.options

        async with self.client(MEDIA_TIMEOUT) as client:
            _, account_id = await policy.run(
                lambda: self.resolve_account(
                    client, access_token, options.facebook_page_id, options.instagram_account_id
                ),
                label="instagram account lookup",
            )

            async def _create() -> dict:
                resp = await client.post(
                    f"{self.settings.graph_url}/{account_id}/media",
                    data={
                        "media_type": "REELS",
                        "caption": request.description,
                        "access_token": access_token,
                    },
                    files={"video_file": ("video.mp4", request.video, "video/mp4")},
                )
                return self.check(resp, "Upload Instagram Reel")

            created = await policy.run(_create, label="instagram media")

        creation_id = created.get("id")
        if not creation_id:
            raise PermanentPlatformError("No creation ID received from Instagram", platform="instagram")

        logger.info(f"Instagram media container created: creation_id={creation_id}")
        return UploadResult(video_id=str(creation_id), thumbnail_url=None)

    async def update_metadata(self, user_id: str, video_id: str, update: MetadataUpdate) -> None:
        # Only the caption is editable on Instagram
        access_token = await self.access_token(user_id)
        async with self.client() as client:
            resp = await client.post(
                f"{self.settings.graph_url}/{video_id}",
                data={"caption": update.description, "access_token": access_token},
            )
            self.check(resp, "Update Instagram caption")
        logger.info(f"Instagram caption updated: media_id={video_id}")
