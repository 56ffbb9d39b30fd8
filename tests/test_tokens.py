"""
Tests for TokenManager refresh and connection lookup.
"""

from datetime import timedelta
from urllib.parse import parse_qs

import httpx
import pytest

from publishing.errors import NotConnected
from publishing.models import Platform, PlatformConnection
from publishing.oauth import GOOGLE_TOKEN_URL, META_DEFAULT_EXPIRES_IN
from publishing.tokens import TokenManager

from .conftest import FIXED_NOW


class VendorStub:
    """MockTransport handler that records requests and replays a fixed response."""

    def __init__(self, status=200, body=None):
        self.status = status
        self.body = body if body is not None else {"access_token": "fresh", "expires_in": 3600}
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status, json=self.body)


def _connection(platform=Platform.YOUTUBE, expires_in=None, token="stale", refresh="r1"):
    return PlatformConnection(
        user_id="u1",
        platform=platform,
        access_token=token,
        refresh_token=refresh,
        expires_at=FIXED_NOW + expires_in if expires_in is not None else None,
    )


@pytest.fixture
def vendor():
    return VendorStub()


@pytest.fixture
def manager(store, platform_settings, vendor, clock):
    return TokenManager(
        store,
        platform_settings,
        transport=httpx.MockTransport(vendor),
        clock=clock,
        skew_sec=300,
    )


class TestGetValidAccessToken:

    @pytest.mark.asyncio
    async def test_refreshes_token_expiring_in_three_minutes(self, store, manager, vendor):
        await store.save_connection(_connection(expires_in=timedelta(minutes=3)))

        token = await manager.get_valid_access_token("u1", Platform.YOUTUBE)

        assert token == "fresh"
        assert len(vendor.requests) == 1
        assert str(vendor.requests[0].url) == GOOGLE_TOKEN_URL
        form = parse_qs(vendor.requests[0].content.decode())
        assert form["grant_type"] == ["refresh_token"]
        assert form["refresh_token"] == ["r1"]

        saved = store.connections[("u1", Platform.YOUTUBE)]
        assert saved.access_token == "fresh"
        assert saved.refresh_token == "r1"
        assert saved.expires_at == FIXED_NOW + timedelta(seconds=3600)

    @pytest.mark.asyncio
    async def test_keeps_token_with_ten_minutes_left(self, store, manager, vendor):
        await store.save_connection(_connection(expires_in=timedelta(minutes=10)))

        assert await manager.get_valid_access_token("u1", Platform.YOUTUBE) == "stale"
        assert vendor.requests == []

    @pytest.mark.asyncio
    async def test_missing_expiry_triggers_refresh(self, store, manager, vendor):
        await store.save_connection(_connection(expires_in=None))

        assert await manager.get_valid_access_token("u1", Platform.YOUTUBE) == "fresh"
        assert len(vendor.requests) == 1

    @pytest.mark.asyncio
    async def test_failed_refresh_returns_stale_token(self, store, manager, vendor):
        vendor.status = 400
        vendor.body = {"error": "invalid_grant"}
        await store.save_connection(_connection(expires_in=timedelta(minutes=1)))

        assert await manager.get_valid_access_token("u1", Platform.YOUTUBE) == "stale"
        assert store.connections[("u1", Platform.YOUTUBE)].access_token == "stale"

    @pytest.mark.asyncio
    async def test_missing_refresh_token_returns_stale_token(self, store, manager, vendor):
        await store.save_connection(_connection(expires_in=timedelta(minutes=1), refresh=None))

        assert await manager.get_valid_access_token("u1", Platform.YOUTUBE) == "stale"
        assert vendor.requests == []

    @pytest.mark.asyncio
    async def test_meta_extends_long_lived_token(self, store, manager, vendor):
        vendor.body = {"access_token": "extended"}
        await store.save_connection(_connection(platform=Platform.FACEBOOK, expires_in=timedelta(minutes=1)))

        assert await manager.get_valid_access_token("u1", Platform.FACEBOOK) == "extended"

        request = vendor.requests[0]
        assert request.url.path == "/v18.0/oauth/access_token"
        assert request.url.params["grant_type"] == "fb_exchange_token"
        assert request.url.params["fb_exchange_token"] == "stale"
        saved = store.connections[("u1", Platform.FACEBOOK)]
        assert saved.expires_at == FIXED_NOW + timedelta(seconds=META_DEFAULT_EXPIRES_IN)

    @pytest.mark.asyncio
    async def test_tiktok_response_is_unwrapped(self, store, manager, vendor):
        vendor.body = {"data": {"access_token": "tt-fresh", "refresh_token": "tt-r2", "expires_in": 86400}}
        await store.save_connection(_connection(platform=Platform.TIKTOK, expires_in=timedelta(0)))

        assert await manager.get_valid_access_token("u1", Platform.TIKTOK) == "tt-fresh"
        assert store.connections[("u1", Platform.TIKTOK)].refresh_token == "tt-r2"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("platform", [Platform.YOUTUBE, Platform.FACEBOOK])
    async def test_ok_response_without_token_returns_stale_token(self, store, manager, vendor, platform):
        vendor.body = {"error": "invalid_grant"}
        await store.save_connection(_connection(platform=platform, expires_in=timedelta(minutes=3)))

        assert await manager.get_valid_access_token("u1", platform) == "stale"
        assert len(vendor.requests) == 1
        assert store.connections[("u1", platform)].access_token == "stale"

    @pytest.mark.asyncio
    async def test_non_json_refresh_body_returns_stale_token(self, store, platform_settings, clock):
        def handler(request):
            return httpx.Response(200, content=b"<html>maintenance</html>")

        manager = TokenManager(store, platform_settings, transport=httpx.MockTransport(handler), clock=clock)
        await store.save_connection(_connection(expires_in=timedelta(minutes=3)))

        assert await manager.get_valid_access_token("u1", Platform.YOUTUBE) == "stale"


class TestGetConnection:

    @pytest.mark.asyncio
    async def test_instagram_falls_back_to_facebook(self, store, manager):
        await store.save_connection(_connection(platform=Platform.FACEBOOK, expires_in=timedelta(days=30), token="fb"))

        assert await manager.get_valid_access_token("u1", Platform.INSTAGRAM) == "fb"

    @pytest.mark.asyncio
    async def test_not_connected(self, manager):
        with pytest.raises(NotConnected, match="Youtube account not connected"):
            await manager.get_connection("u1", Platform.YOUTUBE)

    @pytest.mark.asyncio
    async def test_list_connections_covers_every_platform(self, store, manager):
        await store.save_connection(_connection(expires_in=timedelta(days=1)))

        listed = {c["platform"]: c for c in await manager.list_connections("u1")}

        assert set(listed) == {p.value for p in Platform}
        assert listed["youtube"]["connected"] is True
        assert listed["tiktok"]["connected"] is False

    @pytest.mark.asyncio
    async def test_instagram_connect_also_stores_facebook(self, store, platform_settings, clock):
        def handler(request):
            return httpx.Response(200, json={"access_token": "ig-token", "expires_in": 5000})

        manager = TokenManager(store, platform_settings, transport=httpx.MockTransport(handler), clock=clock)
        await manager.connect("u1", Platform.INSTAGRAM, "code123")

        assert store.connections[("u1", Platform.INSTAGRAM)].access_token == "ig-token"
        assert store.connections[("u1", Platform.FACEBOOK)].access_token == "ig-token"

    @pytest.mark.asyncio
    async def test_disconnect(self, store, manager):
        await store.save_connection(_connection(expires_in=timedelta(days=1)))

        assert await manager.disconnect("u1", Platform.YOUTUBE) is True
        assert await manager.disconnect("u1", Platform.YOUTUBE) is False
