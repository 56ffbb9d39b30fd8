"""
Tests for OAuth authorization URLs and code exchange.
"""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from publishing.config import OAuthClient
from publishing.errors import ErrorCode, PublishError
from publishing.models import Platform
from publishing.oauth import YOUTUBE_SCOPES, authorization_url, exchange_code


def _query(url):
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


class TestAuthorizationUrl:

    def test_youtube_requests_offline_consent(self, platform_settings):
        url = authorization_url(platform_settings, Platform.YOUTUBE, "state-1")
        query = _query(url)

        assert url.startswith("https://accounts.google.com/")
        assert query["access_type"] == "offline"
        assert query["prompt"] == "consent"
        assert query["scope"] == YOUTUBE_SCOPES
        assert query["redirect_uri"] == "https://api.example.com/oauth/youtube/callback"
        assert query["state"] == "state-1"

    def test_instagram_uses_facebook_dialog(self, platform_settings):
        url = authorization_url(platform_settings, Platform.INSTAGRAM, "s")
        assert url.startswith("https://www.facebook.com/v18.0/dialog/oauth?")
        assert _query(url)["client_id"] == "fb-app"
        assert _query(url)["redirect_uri"] == "https://api.example.com/oauth/instagram/callback"

    def test_tiktok_uses_client_key(self, platform_settings):
        query = _query(authorization_url(platform_settings, Platform.TIKTOK, "s"))
        assert query["client_key"] == "tt-key"

    def test_unconfigured_platform(self, platform_settings):
        platform_settings.tiktok = OAuthClient()
        with pytest.raises(PublishError, match="not configured"):
            authorization_url(platform_settings, Platform.TIKTOK, "s")


class TestExchangeCode:

    @pytest.mark.asyncio
    async def test_tiktok_grant_unwrapped(self, platform_settings):
        def handler(request):
            return httpx.Response(200, json={"data": {
                "access_token": "a", "refresh_token": "r", "expires_in": 86400, "open_id": "open-1",
            }})

        grant = await exchange_code(platform_settings, Platform.TIKTOK, "code", transport=httpx.MockTransport(handler))

        assert (grant.access_token, grant.refresh_token, grant.platform_user_id) == ("a", "r", "open-1")
        assert grant.expires_in == 86400

    @pytest.mark.asyncio
    async def test_failed_exchange(self, platform_settings):
        transport = httpx.MockTransport(lambda r: httpx.Response(400, json={"error": "invalid_grant"}))
        with pytest.raises(PublishError) as exc:
            await exchange_code(platform_settings, Platform.YOUTUBE, "code", transport=transport)
        assert exc.value.code == ErrorCode.UNAUTHORIZED
