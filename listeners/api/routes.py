from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request

from listeners.api.deps import (
    bearer_token,
    get_current_user,
    rate_limit,
    rate_limit_request,
    require_admin,
    require_verified_user,
    skip_rate_limit_after_success,
)
from listeners.api.schemas import (
    CacheInvalidateRequest,
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    RateLimitResetRequest,
    RefreshTokenRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SongCreateRequest,
)
from listeners.logging import get_logger
from listeners.service.errors import AuthenticationError, NotFoundError, ValidationError
from listeners.service.ratelimit import Requester, RouteClass, account_bucket
from listeners.service.runtime import get_runtime
from listeners.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

AUDIO_QUALITIES = {"low", "high", "lossless"}
RECENTLY_PLAYED_LIMIT = 50

_RESET_EMAIL_SENT = {
    "message": "If an account with that email exists, a password reset link has been sent.",
    "code": "RESET_EMAIL_SENT",
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# -- health ---------------------------------------------------------------


@router.get("/health", tags=["health"])
async def health() -> Dict[str, Any]:
    runtime = get_runtime()
    return {
        "status": "healthy",
        "timestamp": _now_iso(),
        "cache": await runtime.cache.health_check(),
    }


# -- auth -----------------------------------------------------------------


@router.post("/auth/register", status_code=201, tags=["auth"])
async def register(
    body: RegisterRequest,
    request: Request,
    _limit=Depends(rate_limit(RouteClass.AUTH)),
):
    """Create an account and sign it in.

    Raises:
        409: USER_EXISTS if the email or username is taken
        429: If the auth rate limit is exceeded
    """
    runtime = get_runtime()
    result = await runtime.auth.register(body.email, body.username, body.password)
    await skip_rate_limit_after_success(request)
    response = result.to_response(
        "Registration successful. Please check your email to verify your account.",
        include_verification=runtime.settings.test_mode,
    )
    response["emailSent"] = False
    return response


@router.post("/auth/login", tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    _limit=Depends(rate_limit(RouteClass.AUTH_LOGIN)),
):
    """Authenticate by email or username.

    On top of the per-client login limit, each account gets a progressive
    limit that tightens as failed attempts accumulate.

    Raises:
        401: INVALID_CREDENTIALS
        423: ACCOUNT_LOCKED while the account lock is active
        429: If either login limit is exceeded
    """
    runtime = get_runtime()
    account = runtime.users.get_user_by_login(body.email_or_username)
    progressive = await runtime.rate_limiter.check(
        RouteClass.LOGIN_PROGRESSIVE,
        rate_limit_request(request),
        requester=Requester(
            user_id=account.id if account else None,
            failed_login_attempts=account.login_attempts if account else 0,
        ),
        bucket=account_bucket(body.email_or_username),
    )
    request.state.rate_limit_decisions.append(progressive)
    result = await runtime.auth.login(
        body.email_or_username, body.password, remember_me=body.remember_me
    )
    await skip_rate_limit_after_success(request)
    return result.to_response("Login successful")


@router.post("/auth/refresh-token", tags=["auth"])
async def refresh_token(
    body: RefreshTokenRequest,
    _limit=Depends(rate_limit(RouteClass.AUTH)),
):
    runtime = get_runtime()
    tokens = await runtime.auth.refresh(body.refresh_token)
    return {"message": "Token refreshed successfully", **tokens}


@router.post("/auth/logout", tags=["auth"])
async def logout(
    request: Request,
    body: Optional[LogoutRequest] = None,
    _limit=Depends(rate_limit(RouteClass.AUTH)),
    user: User = Depends(get_current_user),
):
    runtime = get_runtime()
    await runtime.auth.logout(
        user, bearer_token(request), body.refresh_token if body else None
    )
    return {"message": "Logout successful", "code": "LOGOUT_SUCCESS"}


@router.get("/auth/me", tags=["auth"])
async def me(
    _limit=Depends(rate_limit(RouteClass.AUTH)),
    user: User = Depends(get_current_user),
):
    return {"user": user.to_public()}


@router.get("/auth/verify-email", tags=["auth"])
async def verify_email(
    token: Optional[str] = Query(default=None, max_length=256),
    _limit=Depends(rate_limit(RouteClass.AUTH)),
):
    runtime = get_runtime()
    user = runtime.auth.verify_email(token)
    await runtime.cache.invalidate_user_caches(user.id)
    return {"message": "Email verified successfully", "code": "EMAIL_VERIFIED"}


@router.post("/auth/forgot-password", tags=["auth"])
async def forgot_password(
    body: ForgotPasswordRequest,
    _limit=Depends(rate_limit(RouteClass.STRICT)),
):
    runtime = get_runtime()
    token = await runtime.auth.initiate_password_reset(body.email)
    response = dict(_RESET_EMAIL_SENT)
    if token and runtime.settings.test_mode:
        response["resetToken"] = token
    return response


@router.post("/auth/reset-password", tags=["auth"])
async def reset_password(
    body: ResetPasswordRequest,
    _limit=Depends(rate_limit(RouteClass.STRICT)),
):
    runtime = get_runtime()
    user = await runtime.auth.complete_password_reset(body.token, body.password)
    await runtime.cache.invalidate_user_caches(user.id)
    return {"message": "Password reset successful", "code": "PASSWORD_RESET_SUCCESS"}


# -- catalog --------------------------------------------------------------


@router.get("/search", tags=["catalog"])
async def search(
    q: str = Query(..., min_length=1, max_length=100),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=50),
    _limit=Depends(rate_limit(RouteClass.SEARCH)),
):
    runtime = get_runtime()
    cached = await runtime.search_cache.fetch_catalog(q, page=page, limit=limit)
    if cached is not None:
        return {**cached, "cached": True}
    results = runtime.users.search_songs(q, page=page, limit=limit)
    await runtime.search_cache.put_catalog(q, results, page=page, limit=limit)
    return {**results, "query": q, "cached": False}


@router.get("/songs/trending", tags=["catalog"])
async def trending_songs(
    limit: int = Query(default=20, ge=1, le=50),
    _limit=Depends(rate_limit(RouteClass.API)),
):
    runtime = get_runtime()
    variant = f"songs:{limit}"
    songs = await runtime.trending_cache.fetch(variant)
    if songs is not None:
        return {"songs": songs, "cached": True}
    songs = [song.to_dict() for song in runtime.users.trending(limit)]
    await runtime.trending_cache.put(songs, variant)
    return {"songs": songs, "cached": False}


@router.get("/songs/popular", tags=["catalog"])
async def popular_songs(
    limit: int = Query(default=20, ge=1, le=50),
    _limit=Depends(rate_limit(RouteClass.API)),
):
    runtime = get_runtime()
    variant = f"songs:{limit}"
    songs = await runtime.popular_cache.fetch(variant)
    if songs is not None:
        return {"songs": songs, "cached": True}
    songs = [song.to_dict() for song in runtime.users.popular(limit)]
    await runtime.popular_cache.put(songs, variant)
    return {"songs": songs, "cached": False}


@router.get("/songs/{song_id}", tags=["catalog"])
async def get_song(
    song_id: str,
    _limit=Depends(rate_limit(RouteClass.API)),
):
    runtime = get_runtime()
    cached = await runtime.song_cache.fetch(song_id)
    if cached is not None:
        return {"song": cached, "cached": True}
    song = runtime.users.get_song(song_id)
    if not song:
        raise NotFoundError("Song not found", error_code="SONG_NOT_FOUND")
    payload = song.to_dict()
    await runtime.song_cache.put(song_id, payload)
    return {"song": payload, "cached": False}


@router.post("/songs", status_code=201, tags=["catalog"])
async def create_song(
    body: SongCreateRequest,
    _limit=Depends(rate_limit(RouteClass.UPLOAD)),
    user: User = Depends(require_verified_user),
):
    """Add a song to the catalog.

    Requires a verified email. Aggregate views (search, trending, popular,
    listings) are invalidated since they may now be stale.
    """
    runtime = get_runtime()
    song = runtime.users.add_song(
        body.title,
        body.artist,
        album=body.album,
        genre=body.genre,
        duration_ms=body.duration_ms,
        uploaded_by=user.id,
    )
    await runtime.cache.invalidate_search_caches()
    logger.info("song_created", song_id=song.id, user_id=user.id)
    return {"message": "Song created", "song": song.to_dict()}


@router.post("/songs/{song_id}/like", tags=["catalog"])
async def like_song(
    song_id: str,
    _limit=Depends(rate_limit(RouteClass.API)),
    user: User = Depends(get_current_user),
):
    runtime = get_runtime()
    song = runtime.users.toggle_like(song_id, user.id)
    if not song:
        raise NotFoundError("Song not found", error_code="SONG_NOT_FOUND")
    await runtime.cache.invalidate_song_caches(song_id)
    return {"liked": user.id in song.liked_by, "likeCount": song.like_count}


@router.post("/songs/{song_id}/play", tags=["catalog"])
async def play_song(
    song_id: str,
    _limit=Depends(rate_limit(RouteClass.API)),
    user: User = Depends(get_current_user),
):
    runtime = get_runtime()
    song = runtime.users.record_play(song_id)
    if not song:
        raise NotFoundError("Song not found", error_code="SONG_NOT_FOUND")
    recent = await runtime.recently_played_cache.fetch(user.id) or []
    recent = [entry for entry in recent if entry.get("id") != song_id]
    recent.insert(0, {"id": song.id, "title": song.title, "artist": song.artist, "playedAt": _now_iso()})
    await runtime.recently_played_cache.put(user.id, recent[:RECENTLY_PLAYED_LIMIT])
    await runtime.song_cache.evict(song_id)
    await runtime.cache.invalidate_ranking_caches()
    return {"playCount": song.play_count}


@router.get("/users/me/recently-played", tags=["catalog"])
async def recently_played(
    _limit=Depends(rate_limit(RouteClass.API)),
    user: User = Depends(get_current_user),
):
    runtime = get_runtime()
    return {"songs": await runtime.recently_played_cache.fetch(user.id) or []}


@router.get("/music/{song_id}/url", tags=["catalog"])
async def audio_url(
    song_id: str,
    quality: str = Query(default="high"),
    _limit=Depends(rate_limit(RouteClass.API)),
    user: User = Depends(get_current_user),
):
    """Signed audio URL for a song.

    Premium subscribers bypass rate limiting on music paths.

    Raises:
        403: PREMIUM_REQUIRED for lossless audio without an active subscription
        404: If no audio exists for the song
    """
    if quality not in AUDIO_QUALITIES:
        raise ValidationError(f"quality must be one of {sorted(AUDIO_QUALITIES)}")
    if quality == "lossless" and not user.is_premium:
        raise AuthenticationError("Lossless audio requires Premium", code="PREMIUM_REQUIRED")
    runtime = get_runtime()
    exists = await runtime.s3_check_cache.fetch(song_id)
    if exists is None:
        exists = await runtime.audio_storage.exists(song_id)
        await runtime.s3_check_cache.put(song_id, exists)
    if not exists:
        raise NotFoundError("Audio not found", error_code="AUDIO_NOT_FOUND")
    url = await runtime.audio_url_cache.get_url(song_id, quality)
    return {"songId": song_id, "quality": quality, "url": url}


# -- admin ----------------------------------------------------------------


@router.get("/admin/cache/stats", tags=["admin"])
async def admin_cache_stats(
    _limit=Depends(rate_limit(RouteClass.API)),
    admin: User = Depends(require_admin),
):
    runtime = get_runtime()
    return await runtime.cache.get_stats()


@router.post("/admin/cache/invalidate", tags=["admin"])
async def admin_cache_invalidate(
    body: CacheInvalidateRequest,
    _limit=Depends(rate_limit(RouteClass.API)),
    admin: User = Depends(require_admin),
):
    runtime = get_runtime()
    deleted = await runtime.cache.delete_by_pattern(body.pattern)
    logger.info("admin_cache_invalidated", pattern=body.pattern, count=deleted, admin_id=admin.id)
    return {"pattern": body.pattern, "deleted": deleted}


@router.post("/admin/cache/cleanup", tags=["admin"])
async def admin_cache_cleanup(
    _limit=Depends(rate_limit(RouteClass.API)),
    admin: User = Depends(require_admin),
):
    runtime = get_runtime()
    return {"cleaned": await runtime.cache.cleanup_orphaned_keys()}


def _route_class(value: str) -> RouteClass:
    try:
        return RouteClass(value)
    except ValueError:
        raise ValidationError(
            f"routeClass must be one of {[rc.value for rc in RouteClass]}"
        ) from None


@router.get("/admin/rate-limits/{route_class}/{bucket:path}", tags=["admin"])
async def admin_rate_limit_inspect(
    route_class: str,
    bucket: str,
    _limit=Depends(rate_limit(RouteClass.API)),
    admin: User = Depends(require_admin),
):
    runtime = get_runtime()
    state = await runtime.rate_limiter.inspect(_route_class(route_class), bucket)
    if state is None:
        raise NotFoundError("No active counter", error_code="COUNTER_NOT_FOUND")
    return {"hits": state.hits, "resetSeconds": state.ttl_seconds}


@router.post("/admin/rate-limits/reset", tags=["admin"])
async def admin_rate_limit_reset(
    body: RateLimitResetRequest,
    _limit=Depends(rate_limit(RouteClass.API)),
    admin: User = Depends(require_admin),
):
    runtime = get_runtime()
    reset = await runtime.rate_limiter.reset(_route_class(body.route_class), body.bucket)
    return {"reset": reset}


@router.post("/admin/rate-limits/decrement", tags=["admin"])
async def admin_rate_limit_decrement(
    body: RateLimitResetRequest,
    _limit=Depends(rate_limit(RouteClass.API)),
    admin: User = Depends(require_admin),
):
    runtime = get_runtime()
    hits = await runtime.rate_limiter.decrement(_route_class(body.route_class), body.bucket)
    return {"hits": hits}
