"""
Configuration for Crosspost.

Everything is read from the environment once at startup and handed to the
components that need it (token manager, adapters, blob store) instead of being
looked up as module globals at call time.
"""

import os
from dataclasses import dataclass, field
from typing import List


def _env(*names: str, default: str = "") -> str:
    """First non-empty env var among `names`."""
    for name in names:
        value = os.environ.get(name, "")
        if value:
            return value
    return default


@dataclass
class OAuthClient:
    """OAuth client credentials for one vendor."""
    client_id: str = ""
    client_secret: str = ""

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass
class PlatformSettings:
    """Vendor credentials and API endpoints."""
    youtube: OAuthClient = field(default_factory=lambda: OAuthClient(
        _env("YOUTUBE_CLIENT_ID", "GOOGLE_CLIENT_ID"),
        _env("YOUTUBE_CLIENT_SECRET", "GOOGLE_CLIENT_SECRET"),
    ))
    facebook: OAuthClient = field(default_factory=lambda: OAuthClient(
        _env("FACEBOOK_APP_ID", "META_APP_ID"),
        _env("FACEBOOK_APP_SECRET", "META_APP_SECRET"),
    ))
    tiktok: OAuthClient = field(default_factory=lambda: OAuthClient(
        _env("TIKTOK_CLIENT_KEY"),
        _env("TIKTOK_CLIENT_SECRET"),
    ))
    meta_api_version: str = field(default_factory=lambda: _env("META_API_VERSION", default="v18.0"))
    # OAuth callbacks live under {redirect_base_url}/oauth/{platform}/callback
    redirect_base_url: str = field(default_factory=lambda: _env("BASE_URL", default="http://localhost:8000"))

    @property
    def graph_url(self) -> str:
        return f"https://graph.facebook.com/{self.meta_api_version}"

    def redirect_uri(self, platform: str) -> str:
        return f"{self.redirect_base_url.rstrip('/')}/oauth/{platform}/callback"


@dataclass
class StorageSettings:
    """Object storage (Cloudflare R2, S3 API) for transient video bytes."""
    r2_account_id: str = field(default_factory=lambda: _env("R2_ACCOUNT_ID"))
    r2_access_key_id: str = field(default_factory=lambda: _env("R2_ACCESS_KEY_ID"))
    r2_secret_access_key: str = field(default_factory=lambda: _env("R2_SECRET_ACCESS_KEY"))
    r2_bucket_name: str = field(default_factory=lambda: _env("R2_BUCKET_NAME", default="videos"))
    r2_endpoint: str = field(default_factory=lambda: _env("R2_ENDPOINT"))

    @property
    def configured(self) -> bool:
        return bool(self.r2_access_key_id and self.r2_secret_access_key and (self.r2_endpoint or self.r2_account_id))

    @property
    def endpoint_url(self) -> str:
        return self.r2_endpoint or f"https://{self.r2_account_id}.r2.cloudflarestorage.com"


@dataclass
class Settings:
    """Top-level service configuration."""
    database_url: str = field(default_factory=lambda: _env("DATABASE_URL"))
    redis_url: str = field(default_factory=lambda: _env("REDIS_URL"))

    jwt_secret: str = field(default_factory=lambda: _env("JWT_SECRET"))
    jwt_issuer: str = field(default_factory=lambda: _env("JWT_ISSUER", default="crosspost"))
    jwt_audience: str = field(default_factory=lambda: _env("JWT_AUDIENCE", default="crosspost-app"))

    # v1:BASE64_32_BYTES_KEY,v2:BASE64_32_BYTES_KEY (newest last)
    token_enc_keys: str = field(default_factory=lambda: _env("TOKEN_ENC_KEYS"))

    allowed_origins: str = field(default_factory=lambda: _env("ALLOWED_ORIGINS", default="http://localhost:3000"))
    frontend_url: str = field(default_factory=lambda: _env("FRONTEND_URL", default="http://localhost:3000"))
    log_level: str = field(default_factory=lambda: _env("LOG_LEVEL", default="INFO").upper())

    token_refresh_skew_sec: int = field(default_factory=lambda: int(_env("TOKEN_REFRESH_SKEW_SEC", default="300")))
    orphan_blob_max_age_hours: int = field(default_factory=lambda: int(_env("ORPHAN_BLOB_MAX_AGE_HOURS", default="24")))
    upload_lease_ttl_sec: int = field(default_factory=lambda: int(_env("UPLOAD_LEASE_TTL_SEC", default="900")))

    platforms: PlatformSettings = field(default_factory=PlatformSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)

    @property
    def origins(self) -> List[str]:
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]

    def validate(self):
        """Fail fast on missing required configuration."""
        missing = []
        if not self.database_url:
            missing.append("DATABASE_URL")
        if not self.jwt_secret or self.jwt_secret == "change-me":
            missing.append("JWT_SECRET")
        if not self.token_enc_keys:
            missing.append("TOKEN_ENC_KEYS")

        if missing:
            raise RuntimeError(f"Missing required env vars: {', '.join(missing)}")


def load_settings() -> Settings:
    return Settings()
