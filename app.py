"""
Crosspost API
=============
FastAPI service that schedules one video to YouTube, Facebook, Instagram and
TikTok.
- Platform OAuth (connect / disconnect / list) with encrypted token storage
- Post creation with timezone-aware scheduling
- Transient video storage on R2 until every platform has it
- Concurrent per-platform upload with independent outcomes + retry
- Metadata and schedule edits pushed to the platforms that support them
- Schema migrations, request IDs, security headers, JSON errors

Auth is bearer JWT only (issued elsewhere); the `sub` claim is the user id.
"""

import os
import logging
import secrets
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, List, Union

import asyncpg
import jwt
import redis.asyncio as redis

from fastapi import FastAPI, HTTPException, Depends, Query, Header, Request, UploadFile, File, Form
from fastapi.responses import RedirectResponse, JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from contextlib import asynccontextmanager

from publishing.config import load_settings
from publishing.crypto import TokenCipher
from publishing.db import PostStore, create_pool
from publishing.errors import PublishError, ErrorCode, get_http_status
from publishing.leases import UploadLease
from publishing.models import Platform, UploadOptions
from publishing.orchestrator import PublishOrchestrator
from publishing.platforms import build_adapters
from publishing.storage import BlobStore
from publishing.tokens import TokenManager

# ============================================================
# Logging
# ============================================================

settings = load_settings()

logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger("crosspost")

VERSION = "1.0.0"
OAUTH_STATE_MINUTES = 10

# ============================================================
# Service singletons (set in lifespan)
# ============================================================

db_pool: Optional[asyncpg.Pool] = None
redis_client: Optional[redis.Redis] = None
token_manager: Optional[TokenManager] = None
orchestrator: Optional[PublishOrchestrator] = None
adapters = {}


async def init_redis():
    """Initialize Redis if REDIS_URL is configured. Safe no-op otherwise."""
    global redis_client
    if not settings.redis_url:
        redis_client = None
        logger.info("REDIS_URL not set; upload leases disabled (last write wins)")
        return
    try:
        redis_client = redis.from_url(settings.redis_url, decode_responses=True)
        await redis_client.ping()
        logger.info("Redis initialized")
    except (redis.RedisError, OSError) as e:
        redis_client = None
        logger.error(f"Redis init failed (continuing without Redis): {e}")


async def close_redis():
    global redis_client
    try:
        if redis_client is not None:
            await redis_client.close()
    finally:
        redis_client = None


async def init_services():
    global db_pool, token_manager, orchestrator, adapters
    settings.validate()
    cipher = TokenCipher.from_env_value(settings.token_enc_keys)
    await init_redis()

    db_pool = await create_pool(settings.database_url)
    store = PostStore(db_pool, cipher)

    if not settings.storage.configured:
        logger.warning("R2 storage is not fully configured; uploads to storage will fail")

    token_manager = TokenManager(store, settings.platforms, skew_sec=settings.token_refresh_skew_sec)
    adapters = build_adapters(token_manager, settings.platforms)
    orchestrator = PublishOrchestrator(
        store,
        BlobStore(settings.storage),
        adapters,
        lease=UploadLease(redis_client, ttl_sec=settings.upload_lease_ttl_sec),
        orphan_max_age_hours=settings.orphan_blob_max_age_hours,
    )
    logger.info("Services initialized")


async def close_services():
    global db_pool
    try:
        if db_pool:
            await db_pool.close()
            db_pool = None
    finally:
        await close_redis()

# ============================================================
# Pydantic Models
# ============================================================

# Required fields are validated by the orchestrator so the client gets a 400
# with one message instead of a 422 per field.


class CreatePostRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    tags: Optional[Union[List[str], str]] = None
    scheduledAt: Optional[str] = None
    timezone: Optional[str] = None
    youtubeCategoryId: Optional[str] = None
    platforms: Optional[List[str]] = None


class UploadTargetOptions(BaseModel):
    facebookVideoType: Optional[str] = None
    facebookPageId: Optional[str] = None
    instagramAccountId: Optional[str] = None

    def to_options(self) -> UploadOptions:
        return UploadOptions(
            facebook_video_type="REELS" if (self.facebookVideoType or "").upper() == "REELS" else "VIDEO",
            facebook_page_id=self.facebookPageId or None,
            instagram_account_id=self.instagramAccountId or None,
        )


class ProcessRequest(UploadTargetOptions):
    postId: Optional[str] = None
    platform: Optional[str] = None
    filePath: Optional[str] = None


class PublishRequest(UploadTargetOptions):
    postId: Optional[str] = None
    platforms: Optional[List[str]] = None
    filePath: Optional[str] = None


class RetryRequest(UploadTargetOptions):
    postId: Optional[str] = None
    platform: Optional[str] = None
    filePath: Optional[str] = None


class DeleteStorageRequest(BaseModel):
    filePath: Optional[str] = None


class MetadataRequest(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    tags: Optional[Union[List[str], str]] = None
    youtubeCategoryId: Optional[str] = None
    platforms: Optional[List[str]] = None
    skipYouTubeTags: bool = False


class ScheduleRequest(BaseModel):
    scheduledAt: Optional[str] = None
    timezone: Optional[str] = None

# ============================================================
# JWT Helpers (iss/aud)
# ============================================================

def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def create_state_jwt(user_id: str, platform: str) -> str:
    now = _now_utc()
    payload = {
        "sub": user_id,
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=OAUTH_STATE_MINUTES)).timestamp()),
        "jti": secrets.token_hex(16),
        "typ": "oauth_state",
        "platform": platform,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm="HS256")


def _decode(token: str) -> Optional[dict]:
    try:
        return jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
        )
    except jwt.InvalidTokenError:
        return None


def verify_access_jwt(token: str) -> Optional[str]:
    payload = _decode(token)
    if not payload or payload.get("typ", "access") != "access":
        return None
    return payload.get("sub")


def verify_state_jwt(token: str, platform: str) -> Optional[str]:
    payload = _decode(token or "")
    if not payload or payload.get("typ") != "oauth_state" or payload.get("platform") != platform:
        return None
    return payload.get("sub")


async def get_current_user(authorization: str = Header(None)) -> str:
    if not authorization:
        raise HTTPException(401, "Missing authorization header")

    token = authorization.replace("Bearer ", "")
    user_id = verify_access_jwt(token)
    if not user_id:
        raise HTTPException(401, "Invalid or expired token")
    return str(user_id)


def get_orchestrator() -> PublishOrchestrator:
    if orchestrator is None:
        raise HTTPException(503, "Service not initialized")
    return orchestrator


def get_token_manager() -> TokenManager:
    if token_manager is None:
        raise HTTPException(503, "Service not initialized")
    return token_manager


def get_adapters() -> dict:
    if not adapters:
        raise HTTPException(503, "Service not initialized")
    return adapters


def _platform_or_400(value: str) -> Platform:
    try:
        return Platform.parse(value)
    except ValueError as e:
        raise HTTPException(400, str(e))

# ============================================================
# FastAPI App + Middleware
# ============================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_services()
    yield
    await close_services()

app = FastAPI(title="Crosspost API", version=VERSION, lifespan=lifespan)

origins = settings.origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)


@app.exception_handler(PublishError)
async def publish_error_handler(request: Request, exc: PublishError):
    rid = getattr(request.state, "request_id", None)
    content = {"error": exc.message, "code": exc.code.value, "request_id": rid}
    if exc.platform:
        content["platform"] = exc.platform
    if exc.code == ErrorCode.BLOB_NOT_FOUND:
        content["requiresVideo"] = True
    return JSONResponse(status_code=get_http_status(exc.code), content=content)


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException):
    rid = getattr(request.state, "request_id", None)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail, "request_id": rid},
        headers=getattr(exc, "headers", None),
    )


@app.middleware("http")
async def request_id_security_and_logging(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid

    start = time.time()
    status_code = 500

    try:
        response = await call_next(request)
        status_code = response.status_code
    except Exception as e:
        logger.exception(f"[RID:{rid}] Unhandled exception: {e}")
        return JSONResponse(
            status_code=500,
            content={"error": "internal_error", "request_id": rid},
            headers={"X-Request-ID": rid},
        )
    finally:
        duration_ms = int((time.time() - start) * 1000)
        ip = request.headers.get("CF-Connecting-IP") or (request.client.host if request.client else "unknown")
        logger.info(f"rid={rid} ip={ip} {request.method} {request.url.path} status={status_code} dur_ms={duration_ms}")

    response.headers["X-Request-ID"] = rid
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    return response

# ============================================================
# Health & Status
# ============================================================

@app.get("/")
async def root():
    return {"message": "Crosspost API", "status": "running"}


@app.get("/api/health")
async def health():
    p = settings.platforms
    return {
        "status": "ok",
        "version": VERSION,
        "database": db_pool is not None,
        "redis": redis_client is not None,
        "r2_configured": settings.storage.configured,
        "platforms": {
            "youtube": p.youtube.configured,
            "facebook": p.facebook.configured,
            "instagram": p.facebook.configured,
            "tiktok": p.tiktok.configured,
        },
    }


@app.get("/health")
async def health_alias():
    return {"status": "ok"}

# ============================================================
# Platform Connections
# ============================================================

@app.get("/api/platforms")
async def list_platforms(user_id: str = Depends(get_current_user), tokens: TokenManager = Depends(get_token_manager)):
    return {"platforms": await tokens.list_connections(user_id)}


@app.delete("/api/platforms/{platform}")
async def disconnect_platform(
    platform: str,
    user_id: str = Depends(get_current_user),
    tokens: TokenManager = Depends(get_token_manager),
):
    p = _platform_or_400(platform)
    deleted = await tokens.disconnect(user_id, p)
    if not deleted:
        raise HTTPException(404, f"{p.value} is not connected")
    return {"success": True, "platform": p.value}


@app.get("/api/platforms/facebook/pages")
async def facebook_pages(user_id: str = Depends(get_current_user), registry: dict = Depends(get_adapters)):
    pages = await registry[Platform.FACEBOOK].list_pages(user_id)
    return {"pages": pages}

# ============================================================
# OAuth Routes
# ============================================================

@app.get("/oauth/{platform}/start")
async def oauth_start(
    platform: str,
    user_id: str = Depends(get_current_user),
    tokens: TokenManager = Depends(get_token_manager),
):
    p = _platform_or_400(platform)
    state = create_state_jwt(user_id, p.value)
    return RedirectResponse(tokens.authorization_url(p, state))


@app.get("/oauth/{platform}/callback")
async def oauth_callback(
    platform: str,
    code: str = Query(None),
    state: str = Query(None),
    error: str = Query(None),
    tokens: TokenManager = Depends(get_token_manager),
):
    p = _platform_or_400(platform)
    dashboard = f"{settings.frontend_url.rstrip('/')}/dashboard"
    if error:
        return RedirectResponse(f"{dashboard}?error={p.value}_oauth_failed")
    if not code:
        return RedirectResponse(f"{dashboard}?error=no_code")

    user_id = verify_state_jwt(state, p.value)
    if not user_id:
        return RedirectResponse(f"{dashboard}?error=invalid_state")

    try:
        await tokens.connect(user_id, p, code)
    except PublishError as e:
        logger.error(f"{p.value} OAuth exchange failed for user {user_id}: {e.message}")
        return RedirectResponse(f"{dashboard}?error={p.value}_oauth_failed")

    return RedirectResponse(f"{dashboard}?success={p.value}_connected")

# ============================================================
# Upload Routes
# ============================================================

@app.post("/api/upload/create")
async def create_post(
    body: CreatePostRequest,
    user_id: str = Depends(get_current_user),
    orch: PublishOrchestrator = Depends(get_orchestrator),
):
    post, rows = await orch.create_post(
        user_id,
        title=body.title,
        description=body.description,
        scheduled_at=body.scheduledAt,
        platforms=body.platforms,
        tags=body.tags,
        timezone_name=body.timezone,
        youtube_category_id=body.youtubeCategoryId,
    )
    return {
        "success": True,
        "postId": post.id,
        "scheduledAt": post.scheduled_at.isoformat(),
        "platforms": [r.to_dict() for r in rows],
    }


@app.post("/api/upload/storage")
async def upload_to_storage(
    postId: str = Form(...),
    file: UploadFile = File(...),
    user_id: str = Depends(get_current_user),
    orch: PublishOrchestrator = Depends(get_orchestrator),
):
    data = await file.read()
    path = await orch.upload_to_storage(
        user_id, postId, file.filename or "video.mp4", data, content_type=file.content_type or "video/mp4",
    )
    return {"success": True, "filePath": path}


@app.post("/api/upload/process")
async def process_upload(
    body: ProcessRequest,
    user_id: str = Depends(get_current_user),
    orch: PublishOrchestrator = Depends(get_orchestrator),
):
    if not body.postId or not body.platform:
        raise PublishError("Missing required fields", code=ErrorCode.VALIDATION_FAILED)
    result = await orch.process_upload(
        user_id, body.postId, body.platform, blob_path=body.filePath, options=body.to_options(),
    )
    return _single_result_response(result)


@app.post("/api/upload/publish")
async def publish_all(
    body: PublishRequest,
    user_id: str = Depends(get_current_user),
    orch: PublishOrchestrator = Depends(get_orchestrator),
):
    if not body.postId:
        raise PublishError("Missing postId", code=ErrorCode.VALIDATION_FAILED)
    summary = await orch.publish_to_all(
        user_id, body.postId, platforms=body.platforms, blob_path=body.filePath, options=body.to_options(),
    )
    return summary.to_dict()


@app.post("/api/upload/retry")
async def retry_upload(
    body: RetryRequest,
    user_id: str = Depends(get_current_user),
    orch: PublishOrchestrator = Depends(get_orchestrator),
):
    if not body.postId or not body.platform:
        raise PublishError("Missing required fields", code=ErrorCode.VALIDATION_FAILED)
    summary = await orch.retry(
        user_id, body.postId, body.platform, blob_path=body.filePath, options=body.to_options(),
    )
    response = _single_result_response(summary.results[0])
    if isinstance(response, dict):
        response["status"] = summary.post_status.value if summary.post_status else None
        response["blobDeleted"] = summary.blob_deleted
    return response


def _single_result_response(result):
    if result.success:
        return {"success": True, **result.to_dict()}
    try:
        code = ErrorCode(result.error_code)
    except ValueError:
        code = ErrorCode.PLATFORM_FAILED
    return JSONResponse(
        status_code=get_http_status(code),
        content={"error": result.error_message, "code": code.value, "platform": Platform(result.platform).value},
    )


@app.post("/api/upload/delete-storage")
async def delete_storage(
    body: DeleteStorageRequest,
    user_id: str = Depends(get_current_user),
    orch: PublishOrchestrator = Depends(get_orchestrator),
):
    await orch.delete_blob(user_id, body.filePath)
    return {"success": True}


@app.post("/api/upload/cleanup")
async def cleanup_storage(
    user_id: str = Depends(get_current_user),
    orch: PublishOrchestrator = Depends(get_orchestrator),
):
    deleted = await orch.cleanup_orphaned_blobs(user_id)
    return {"success": True, "deleted": len(deleted), "files": deleted}

# ============================================================
# Post Routes
# ============================================================

@app.get("/api/posts")
async def list_posts(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user),
    orch: PublishOrchestrator = Depends(get_orchestrator),
):
    return {"posts": await orch.list_posts(user_id, limit=limit, offset=offset)}


@app.get("/api/posts/{post_id}")
async def get_post(
    post_id: str,
    user_id: str = Depends(get_current_user),
    orch: PublishOrchestrator = Depends(get_orchestrator),
):
    return await orch.post_detail(user_id, post_id)


@app.delete("/api/posts/{post_id}")
async def delete_post(
    post_id: str,
    user_id: str = Depends(get_current_user),
    orch: PublishOrchestrator = Depends(get_orchestrator),
):
    await orch.delete_post(user_id, post_id)
    return {"success": True}


@app.patch("/api/posts/{post_id}/metadata")
async def update_metadata(
    post_id: str,
    body: MetadataRequest,
    user_id: str = Depends(get_current_user),
    orch: PublishOrchestrator = Depends(get_orchestrator),
):
    errors = await orch.update_metadata(
        user_id,
        post_id,
        title=body.title,
        description=body.description,
        tags=body.tags,
        youtube_category_id=body.youtubeCategoryId,
        platforms=body.platforms,
        skip_youtube_tags=body.skipYouTubeTags,
    )
    if errors:
        return {
            "success": True,
            "warning": "Metadata updated in database, but some platforms could not be updated",
            "errors": errors,
        }
    return {"success": True}


@app.patch("/api/posts/{post_id}/schedule")
async def update_schedule(
    post_id: str,
    body: ScheduleRequest,
    user_id: str = Depends(get_current_user),
    orch: PublishOrchestrator = Depends(get_orchestrator),
):
    errors = await orch.update_schedule(user_id, post_id, body.scheduledAt, timezone_name=body.timezone)
    if errors:
        return {
            "success": True,
            "warning": "Schedule updated in database, but some platforms could not be updated",
            "errors": errors,
        }
    return {"success": True}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("app:app", host="0.0.0.0", port=int(os.environ.get("PORT", 8000)))
