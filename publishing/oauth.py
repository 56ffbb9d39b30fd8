"""
Crosspost OAuth
===============
Authorization URL builders and code-for-token exchange per vendor.

Instagram rides on the Facebook Login dialog (the Facebook scopes include the
Instagram publishing permissions); only its callback URL differs.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import urlencode

import httpx

from .config import PlatformSettings, OAuthClient
from .errors import PublishError, ErrorCode
from .models import Platform

logger = logging.getLogger("crosspost")

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
TIKTOK_AUTH_URL = "https://www.tiktok.com/v2/auth/authorize/"
TIKTOK_TOKEN_URL = "https://open.tiktokapis.com/v2/oauth/token/"

YOUTUBE_SCOPES = "https://www.googleapis.com/auth/youtube"
FACEBOOK_SCOPES = (
    "pages_show_list,pages_manage_posts,pages_read_engagement,"
    "instagram_basic,instagram_content_publish"
)
TIKTOK_SCOPES = "user.info.basic,video.upload,video.publish"

# Meta omits expires_in on some long-lived tokens; they last 60 days
META_DEFAULT_EXPIRES_IN = 5184000
DEFAULT_EXPIRES_IN = 3600

OAUTH_TIMEOUT = httpx.Timeout(20.0)


@dataclass
class TokenGrant:
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    platform_user_id: Optional[str] = None

    def expires_at(self, now: datetime) -> Optional[datetime]:
        if self.expires_in is None:
            return None
        return now + timedelta(seconds=int(self.expires_in))


def client_for(settings: PlatformSettings, platform: Platform) -> OAuthClient:
    platform = Platform(platform)
    if platform == Platform.YOUTUBE:
        return settings.youtube
    if platform == Platform.TIKTOK:
        return settings.tiktok
    return settings.facebook


def authorization_url(settings: PlatformSettings, platform: Platform, state: str) -> str:
    platform = Platform(platform)
    client = client_for(settings, platform)
    if not client.configured:
        raise PublishError(f"{platform.value} OAuth not configured", code=ErrorCode.INTERNAL, platform=platform.value)

    redirect_uri = settings.redirect_uri(platform.value)

    if platform == Platform.YOUTUBE:
        params = {
            "client_id": client.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": YOUTUBE_SCOPES,
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    if platform == Platform.TIKTOK:
        params = {
            "client_key": client.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": TIKTOK_SCOPES,
            "state": state,
        }
        return f"{TIKTOK_AUTH_URL}?{urlencode(params)}"

    params = {
        "client_id": client.client_id,
        "redirect_uri": redirect_uri,
        "scope": FACEBOOK_SCOPES,
        "response_type": "code",
        "state": state,
    }
    return f"https://www.facebook.com/{settings.meta_api_version}/dialog/oauth?{urlencode(params)}"


def _raise_for_exchange(platform: Platform, resp: httpx.Response):
    if resp.status_code >= 400:
        logger.warning(f"{platform.value} code exchange failed: HTTP {resp.status_code}")
        raise PublishError(
            f"Failed to exchange code: {resp.text[:200]}",
            code=ErrorCode.UNAUTHORIZED,
            platform=platform.value,
        )


async def exchange_code(
    settings: PlatformSettings,
    platform: Platform,
    code: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> TokenGrant:
    platform = Platform(platform)
    client = client_for(settings, platform)
    redirect_uri = settings.redirect_uri(platform.value)

    async with httpx.AsyncClient(transport=transport, timeout=OAUTH_TIMEOUT) as http:
        if platform == Platform.YOUTUBE:
            resp = await http.post(
                GOOGLE_TOKEN_URL,
                data={
                    "client_id": client.client_id,
                    "client_secret": client.client_secret,
                    "code": code,
                    "grant_type": "authorization_code",
                    "redirect_uri": redirect_uri,
                },
            )
            _raise_for_exchange(platform, resp)
            data = resp.json()
            return TokenGrant(
                access_token=data["access_token"],
                refresh_token=data.get("refresh_token"),
                expires_in=data.get("expires_in", DEFAULT_EXPIRES_IN),
            )

        if platform == Platform.TIKTOK:
            resp = await http.post(
                TIKTOK_TOKEN_URL,
                data={
                    "client_key": client.client_id,
                    "client_secret": client.client_secret,
                    "code": code,
                    "grant_type": "authorization_code",
                    "redirect_uri": redirect_uri,
                },
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
            _raise_for_exchange(platform, resp)
            data = resp.json()
            # TikTok wraps tokens under "data" sometimes. Normalize.
            if isinstance(data.get("data"), dict):
                data = data["data"]
            if "access_token" not in data:
                raise PublishError(f"Failed to exchange code: {data}", code=ErrorCode.UNAUTHORIZED, platform=platform.value)
            return TokenGrant(
                access_token=data["access_token"],
                refresh_token=data.get("refresh_token"),
                expires_in=data.get("expires_in", DEFAULT_EXPIRES_IN),
                platform_user_id=data.get("open_id"),
            )

        resp = await http.get(
            f"{settings.graph_url}/oauth/access_token",
            params={
                "client_id": client.client_id,
                "client_secret": client.client_secret,
                "redirect_uri": redirect_uri,
                "code": code,
            },
        )
        _raise_for_exchange(platform, resp)
        data = resp.json()
        return TokenGrant(
            access_token=data["access_token"],
            expires_in=data.get("expires_in") or META_DEFAULT_EXPIRES_IN,
        )
