"""
Crosspost Token Manager
=======================
Hands out a usable access token per (user, platform) and keeps the stored
connection fresh.

Refresh lifecycle:
  - tokens expiring within TOKEN_REFRESH_SKEW_SEC (default 5 min) are refreshed
  - a connection without expires_at is treated as expired
  - YouTube/TikTok use their refresh_token; Facebook/Instagram extend the
    long-lived token via fb_exchange_token
  - a failed refresh is logged and the stale token is returned; the vendor
    call that follows reports the real error
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Callable

import httpx

from .config import PlatformSettings
from .errors import NotConnected, TokenRefreshFailed
from .models import Platform, PlatformConnection
from .oauth import (
    GOOGLE_TOKEN_URL,
    TIKTOK_TOKEN_URL,
    META_DEFAULT_EXPIRES_IN,
    DEFAULT_EXPIRES_IN,
    OAUTH_TIMEOUT,
    authorization_url,
    exchange_code,
    client_for,
)

logger = logging.getLogger("crosspost")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _token_payload(r: httpx.Response, action: str, platform: str) -> dict:
    """Body of a refresh response; TokenRefreshFailed unless it carries an access_token."""
    try:
        data = r.json()
    except ValueError:
        raise TokenRefreshFailed(f"{action} returned a non-JSON body: {r.text[:200]}", platform=platform)
    if not isinstance(data, dict):
        raise TokenRefreshFailed(f"{action} returned {str(data)[:200]}", platform=platform)
    # TikTok wraps tokens under "data" sometimes
    if isinstance(data.get("data"), dict):
        data = data["data"]
    if not data.get("access_token"):
        raise TokenRefreshFailed(f"{action} failed: {str(data)[:200]}", platform=platform)
    return data


class TokenManager:

    def __init__(
        self,
        store,
        settings: PlatformSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = _now_utc,
        skew_sec: int = 300,
    ):
        self.store = store
        self.settings = settings
        self.transport = transport
        self.clock = clock
        self.skew = timedelta(seconds=skew_sec)

    # ------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------

    async def get_connection(self, user_id: str, platform: Platform) -> PlatformConnection:
        """Connection row for the platform; Instagram falls back to the Facebook one."""
        platform = Platform(platform)
        connection = await self.store.get_connection(user_id, platform)
        if connection is None and platform == Platform.INSTAGRAM:
            connection = await self.store.get_connection(user_id, Platform.FACEBOOK)
        if connection is None:
            raise NotConnected(f"{platform.value.capitalize()} account not connected", platform=platform.value)
        return connection

    async def get_valid_access_token(self, user_id: str, platform: Platform) -> str:
        connection = await self.get_connection(user_id, platform)

        if not connection.expires_within(self.skew, now=self.clock()):
            return connection.access_token

        try:
            refreshed = await self.refresh(connection)
        except (TokenRefreshFailed, httpx.HTTPError) as e:
            logger.warning(f"Failed to refresh {Platform(connection.platform).value} token for user {user_id}: {e}")
            return connection.access_token

        return refreshed.access_token

    # ------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------

    async def refresh(self, connection: PlatformConnection) -> PlatformConnection:
        platform = Platform(connection.platform)
        if platform == Platform.YOUTUBE:
            access_token, refresh_token, expires_in = await self._refresh_google(connection)
        elif platform == Platform.TIKTOK:
            access_token, refresh_token, expires_in = await self._refresh_tiktok(connection)
        else:
            access_token, refresh_token, expires_in = await self._refresh_meta(connection)

        connection.access_token = access_token
        connection.refresh_token = refresh_token
        connection.expires_at = self.clock() + timedelta(seconds=int(expires_in))
        saved = await self.store.save_connection(connection)
        logger.info(f"{platform.value}: token refreshed for user {connection.user_id}")
        return saved or connection

    async def _refresh_google(self, connection: PlatformConnection):
        if not connection.refresh_token:
            raise TokenRefreshFailed("Google refresh_token missing; reconnect required", platform="youtube")
        client = client_for(self.settings, Platform.YOUTUBE)
        async with httpx.AsyncClient(transport=self.transport, timeout=OAUTH_TIMEOUT) as http:
            r = await http.post(
                GOOGLE_TOKEN_URL,
                data={
                    "client_id": client.client_id,
                    "client_secret": client.client_secret,
                    "grant_type": "refresh_token",
                    "refresh_token": connection.refresh_token,
                },
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        if r.status_code >= 400:
            raise TokenRefreshFailed(f"Google refresh failed: {r.text[:200]}", platform="youtube")
        data = _token_payload(r, "Google refresh", "youtube")
        # Google keeps the original refresh token unless it rotates one
        return (
            data["access_token"],
            data.get("refresh_token") or connection.refresh_token,
            data.get("expires_in", DEFAULT_EXPIRES_IN),
        )

    async def _refresh_tiktok(self, connection: PlatformConnection):
        if not connection.refresh_token:
            raise TokenRefreshFailed("TikTok refresh_token missing; reconnect required", platform="tiktok")
        client = client_for(self.settings, Platform.TIKTOK)
        async with httpx.AsyncClient(transport=self.transport, timeout=OAUTH_TIMEOUT) as http:
            r = await http.post(
                TIKTOK_TOKEN_URL,
                data={
                    "client_key": client.client_id,
                    "client_secret": client.client_secret,
                    "grant_type": "refresh_token",
                    "refresh_token": connection.refresh_token,
                },
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        if r.status_code >= 400:
            raise TokenRefreshFailed(f"TikTok refresh failed: {r.text[:200]}", platform="tiktok")
        data = _token_payload(r, "TikTok refresh", "tiktok")
        return (
            data["access_token"],
            data.get("refresh_token") or connection.refresh_token,
            data.get("expires_in", DEFAULT_EXPIRES_IN),
        )

    async def _refresh_meta(self, connection: PlatformConnection):
        platform = Platform(connection.platform).value
        if not connection.access_token:
            raise TokenRefreshFailed("Meta access_token missing; reconnect required", platform=platform)
        client = client_for(self.settings, Platform.FACEBOOK)
        async with httpx.AsyncClient(transport=self.transport, timeout=OAUTH_TIMEOUT) as http:
            r = await http.get(
                f"{self.settings.graph_url}/oauth/access_token",
                params={
                    "grant_type": "fb_exchange_token",
                    "client_id": client.client_id,
                    "client_secret": client.client_secret,
                    "fb_exchange_token": connection.access_token,
                },
            )
        if r.status_code >= 400:
            raise TokenRefreshFailed(f"Meta token exchange failed: {r.text[:200]}", platform=platform)
        data = _token_payload(r, "Meta token exchange", platform)
        return (
            data["access_token"],
            None,
            data.get("expires_in") or META_DEFAULT_EXPIRES_IN,
        )

    # ------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------

    def authorization_url(self, platform: Platform, state: str) -> str:
        return authorization_url(self.settings, platform, state)

    async def connect(self, user_id: str, platform: Platform, code: str) -> PlatformConnection:
        """Exchange an OAuth code and store the connection (Instagram also stores Facebook)."""
        platform = Platform(platform)
        grant = await exchange_code(self.settings, platform, code, transport=self.transport)
        expires_at = grant.expires_at(self.clock())

        targets = [platform]
        if platform == Platform.INSTAGRAM:
            targets.append(Platform.FACEBOOK)

        saved = None
        for target in targets:
            result = await self.store.save_connection(PlatformConnection(
                user_id=user_id,
                platform=target,
                access_token=grant.access_token,
                refresh_token=grant.refresh_token,
                expires_at=expires_at,
                platform_user_id=grant.platform_user_id,
            ))
            if saved is None:
                saved = result
        logger.info(f"{platform.value}: connected for user {user_id}")
        return saved

    async def disconnect(self, user_id: str, platform: Platform) -> bool:
        deleted = await self.store.delete_connection(user_id, Platform(platform))
        if deleted:
            logger.info(f"{Platform(platform).value}: disconnected for user {user_id}")
        return deleted

    async def list_connections(self, user_id: str) -> List[dict]:
        rows = {Platform(c.platform): c for c in await self.store.list_connections(user_id)}
        out = []
        for platform in Platform:
            conn = rows.get(platform)
            out.append({
                "platform": platform.value,
                "connected": conn is not None,
                "expires_at": conn.expires_at.isoformat() if conn and conn.expires_at else None,
                "platform_user_id": conn.platform_user_id if conn else None,
            })
        return out
