from __future__ import annotations

from typing import Callable, Optional

from fastapi import Depends, Request, Response

from listeners.service.errors import ForbiddenError
from listeners.service.ratelimit import RateLimitDecision, RateLimitRequest, RouteClass
from listeners.service.runtime import get_runtime
from listeners.storage.models import User


def bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _soft_user(request: Request) -> Optional[User]:
    """User behind a valid bearer token, resolved without store calls."""

    if hasattr(request.state, "soft_user"):
        return request.state.soft_user
    runtime = get_runtime()
    user_id = runtime.tokens.identify(bearer_token(request))
    user = runtime.users.get_user(user_id) if user_id else None
    request.state.soft_user = user
    return user


def rate_limit_request(request: Request) -> RateLimitRequest:
    return RateLimitRequest(
        path=request.url.path,
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
        accept_language=request.headers.get("Accept-Language"),
        accept_encoding=request.headers.get("Accept-Encoding"),
        user=_soft_user(request),
        skip_rate_limit=bool(getattr(request.state, "skip_rate_limit", False)),
    )


def _apply_headers(response: Response, decision: RateLimitDecision) -> None:
    for name, value in decision.headers.items():
        response.headers[name] = value


def rate_limit(route_class: RouteClass) -> Callable:
    """Dependency counting the request against ``route_class``."""

    async def _dependency(request: Request, response: Response) -> RateLimitDecision:
        runtime = get_runtime()
        decision = await runtime.rate_limiter.check(route_class, rate_limit_request(request))
        _apply_headers(response, decision)
        decisions = getattr(request.state, "rate_limit_decisions", [])
        decisions.append(decision)
        request.state.rate_limit_decisions = decisions
        return decision

    _dependency.__name__ = f"rate_limit_{route_class.value}"
    return _dependency


async def skip_rate_limit_after_success(request: Request) -> None:
    """Mark the request successful and give back the hits it consumed."""

    request.state.skip_rate_limit = True
    runtime = get_runtime()
    for decision in getattr(request.state, "rate_limit_decisions", []):
        await runtime.rate_limiter.refund(decision)
    request.state.rate_limit_decisions = []


async def get_current_user(request: Request) -> User:
    runtime = get_runtime()
    return await runtime.tokens.validate_access_token(bearer_token(request))


async def require_verified_user(request: Request) -> User:
    runtime = get_runtime()
    return await runtime.tokens.validate_access_token(bearer_token(request), sensitive=True)


async def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role != "admin":
        raise ForbiddenError("Admin access required", error_code="FORBIDDEN")
    return user


__all__ = [
    "bearer_token",
    "get_current_user",
    "rate_limit",
    "rate_limit_request",
    "require_admin",
    "require_verified_user",
    "skip_rate_limit_after_success",
]
