from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from typing import Any, Callable, Dict, Optional

from listeners.config import Settings, parse_duration
from listeners.logging import get_logger
from listeners.service.errors import AccountLockedError, AuthenticationError, ServerError
from listeners.storage.kv import KeyValueStore
from listeners.storage.memory import MemoryStore
from listeners.storage.models import User
from listeners.storage.soft import try_store_op

logger = get_logger(__name__)

BLACKLIST_PREFIX = "blacklist"
REFRESH_POINTER_PREFIX = "refreshToken"
# Rotation blacklists the superseded refresh token for a flat seven days.
ROTATION_BLACKLIST_TTL = 7 * 24 * 60 * 60


class TokenExpired(Exception):
    pass


class TokenInvalid(Exception):
    pass


def blacklist_key(token: str) -> str:
    return f"{BLACKLIST_PREFIX}:{token}"


def refresh_pointer_key(user_id: str) -> str:
    return f"{REFRESH_POINTER_PREFIX}:{user_id}"


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _is_token_text(token: Any) -> bool:
    # Latin-1 header bytes and JSON escapes can smuggle non-ASCII characters
    return isinstance(token, str) and token.isascii()


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenManager:
    """Issues, validates, rotates and revokes HS256 access/refresh tokens.

    Only the refresh pointer and the blacklist live in the key-value store.
    Every store call here is soft: an outage is logged and the token
    operation proceeds, so revocation is best effort while the store is down.
    """

    def __init__(
        self,
        store: KeyValueStore,
        settings: Settings,
        users: MemoryStore,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.settings = settings
        self.users = users
        self.clock = clock

    # -- signing -----------------------------------------------------------

    def _secret(self, kind: str) -> bytes:
        secret = self.settings.refresh_secret if kind == "refresh" else self.settings.jwt_secret
        if not secret:
            logger.error("jwt_secret_missing", kind=kind)
            raise ServerError("Token signing secret is not configured")
        return secret.encode()

    def _encode(self, payload: Dict[str, Any], kind: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(self._secret(kind), signing_input.encode(), hashlib.sha256).digest()
        return f"{signing_input}.{_encode_segment(signature)}"

    def decode(self, token: str, kind: str = "access", *, verify_exp: bool = True) -> Dict[str, Any]:
        """Verify ``token`` and return its claims.

        Raises :class:`TokenExpired` for a well-signed token past its ``exp``
        and :class:`TokenInvalid` for anything else that fails verification.
        """

        if not _is_token_text(token):
            raise TokenInvalid("malformed token")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError as exc:
            raise TokenInvalid("malformed token") from exc

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError) as exc:
            raise TokenInvalid("undecodable header") from exc
        # Reject algorithm confusion
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            raise TokenInvalid("unsupported algorithm")

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = _encode_segment(
            hmac.new(self._secret(kind), signing_input.encode(), hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise TokenInvalid("bad signature")
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            raise TokenInvalid("undecodable payload") from exc
        if not isinstance(payload, dict) or not payload.get("userId"):
            raise TokenInvalid("missing subject")
        try:
            exp = float(payload["exp"])
        except (KeyError, TypeError, ValueError) as exc:
            raise TokenInvalid("missing expiry") from exc
        if verify_exp and exp <= self.clock():
            raise TokenExpired("token expired")
        return payload

    def identify(self, token: Optional[str]) -> Optional[str]:
        """User id of a valid access token, without any store lookups."""

        if not token:
            return None
        try:
            payload = self.decode(token, "access")
        except (TokenExpired, TokenInvalid, ServerError):
            return None
        if payload.get("type") != "access":
            return None
        return payload["userId"]

    def remaining_lifetime(self, token: str, kind: str, fallback: int) -> int:
        """Seconds until ``token`` expires; ``fallback`` when it cannot be read."""

        try:
            payload = self.decode(token, kind, verify_exp=False)
        except TokenInvalid:
            return fallback
        return max(0, int(float(payload["exp"]) - self.clock()))

    # -- issuance ----------------------------------------------------------

    def access_ttl(self, remember_me: bool = False) -> str:
        return (
            self.settings.remember_me_access_token_ttl
            if remember_me
            else self.settings.access_token_ttl
        )

    def refresh_ttl(self, remember_me: bool = False) -> str:
        return (
            self.settings.remember_me_refresh_token_ttl
            if remember_me
            else self.settings.refresh_token_ttl
        )

    def issue_access_token(self, user_id: str, ttl: str | int | None = None) -> str:
        now = int(self.clock())
        lifetime = parse_duration(ttl if ttl is not None else self.settings.access_token_ttl)
        return self._encode(
            {
                "userId": user_id,
                "type": "access",
                "iat": now,
                "exp": now + lifetime,
                "jti": uuid.uuid4().hex,
            },
            "access",
        )

    async def issue_refresh_token(self, user_id: str, *, remember_me: bool = False) -> str:
        """Sign a refresh token and point ``refreshToken:<userId>`` at it."""

        now = int(self.clock())
        lifetime = parse_duration(self.refresh_ttl(remember_me))
        token = self._encode(
            {
                "userId": user_id,
                "type": "refresh",
                "iat": now,
                "exp": now + lifetime,
                "jti": uuid.uuid4().hex,
            },
            "refresh",
        )
        await try_store_op(
            lambda: self.store.set(refresh_pointer_key(user_id), token, ex=lifetime),
            None,
            event="refresh_token_persist_failed",
            user_id=user_id,
        )
        return token

    async def issue_token_pair(self, user_id: str, *, remember_me: bool = False) -> Dict[str, str]:
        expires_in = self.access_ttl(remember_me)
        access_token = self.issue_access_token(user_id, expires_in)
        refresh_token = await self.issue_refresh_token(user_id, remember_me=remember_me)
        return {
            "accessToken": access_token,
            "refreshToken": refresh_token,
            "expiresIn": expires_in,
        }

    # -- blacklist ---------------------------------------------------------

    async def blacklist_token(self, token: str, ttl_seconds: int) -> bool:
        if ttl_seconds <= 0 or not _is_token_text(token):
            return False
        result = await try_store_op(
            lambda: self.store.set(blacklist_key(token), "revoked", ex=int(ttl_seconds)),
            False,
            event="token_blacklist_failed",
            ttl_seconds=ttl_seconds,
        )
        return result is not False

    async def is_blacklisted(self, token: str) -> bool:
        if not _is_token_text(token):
            return False
        return await try_store_op(
            lambda: self.store.exists(blacklist_key(token)),
            False,
            event="token_blacklist_check_failed",
        )

    # -- validation --------------------------------------------------------

    def _load_user(self, user_id: str) -> User:
        user = self.users.get_user(user_id)
        if not user:
            raise AuthenticationError("User not found", code="USER_NOT_FOUND")
        if user.is_locked:
            raise AccountLockedError(
                "Account is temporarily locked",
                detail={"lockUntil": user.lock_until.isoformat() if user.lock_until else None},
            )
        return user

    async def validate_access_token(self, token: Optional[str], *, sensitive: bool = False) -> User:
        if not token:
            raise AuthenticationError("Access token required", code="TOKEN_MISSING")
        if await self.is_blacklisted(token):
            raise AuthenticationError("Token has been revoked", code="TOKEN_REVOKED")
        try:
            payload = self.decode(token, "access")
        except TokenExpired:
            raise AuthenticationError("Token expired", code="TOKEN_EXPIRED")
        except TokenInvalid:
            raise AuthenticationError("Invalid token", code="TOKEN_INVALID")
        if payload.get("type") != "access":
            raise AuthenticationError("Invalid token type", code="TOKEN_INVALID")
        user = self._load_user(payload["userId"])
        if sensitive and not user.is_verified:
            raise AuthenticationError(
                "Email verification required", code="EMAIL_NOT_VERIFIED"
            )
        return user

    async def validate_refresh_token(self, token: Optional[str]) -> User:
        if not token:
            raise AuthenticationError("Refresh token required", code="REFRESH_TOKEN_MISSING")
        if await self.is_blacklisted(token):
            raise AuthenticationError(
                "Refresh token has been revoked", code="REFRESH_TOKEN_REVOKED"
            )
        try:
            payload = self.decode(token, "refresh")
        except TokenExpired:
            raise AuthenticationError("Refresh token expired", code="REFRESH_TOKEN_EXPIRED")
        except TokenInvalid:
            raise AuthenticationError("Invalid refresh token", code="REFRESH_TOKEN_INVALID")
        if payload.get("type") != "refresh":
            raise AuthenticationError("Invalid refresh token", code="REFRESH_TOKEN_INVALID")
        user_id = payload["userId"]
        stored = await try_store_op(
            lambda: self.store.get(refresh_pointer_key(user_id)),
            None,
            event="refresh_token_lookup_failed",
            user_id=user_id,
        )
        if stored is None or not hmac.compare_digest(stored.encode(), token.encode()):
            raise AuthenticationError("Invalid refresh token", code="REFRESH_TOKEN_INVALID")
        return self._load_user(user_id)

    # -- rotation / revocation ---------------------------------------------

    def _was_remember_me(self, refresh_token: str) -> bool:
        try:
            payload = self.decode(refresh_token, "refresh", verify_exp=False)
            lifetime = int(payload["exp"]) - int(payload["iat"])
        except (TokenInvalid, KeyError, TypeError, ValueError):
            return False
        return lifetime > parse_duration(self.settings.refresh_token_ttl)

    async def rotate(self, old_refresh_token: str, user_id: str) -> Dict[str, str]:
        """Issue a fresh pair and retire ``old_refresh_token``."""

        remember_me = self._was_remember_me(old_refresh_token)
        tokens = await self.issue_token_pair(user_id, remember_me=remember_me)
        await self.blacklist_token(old_refresh_token, ROTATION_BLACKLIST_TTL)
        logger.info("refresh_token_rotated", user_id=user_id, remember_me=remember_me)
        return tokens

    async def revoke(
        self,
        access_token: Optional[str],
        refresh_token: Optional[str],
        user_id: str,
    ) -> None:
        """Blacklist both tokens for their remaining lifetime and drop the pointer."""

        if access_token:
            ttl = self.remaining_lifetime(
                access_token, "access", parse_duration(self.settings.access_token_ttl)
            )
            await self.blacklist_token(access_token, ttl)
        if refresh_token:
            ttl = self.remaining_lifetime(
                refresh_token, "refresh", parse_duration(self.settings.refresh_token_ttl)
            )
            await self.blacklist_token(refresh_token, ttl)
        await self.drop_refresh_pointer(user_id)
        logger.info("tokens_revoked", user_id=user_id)

    async def drop_refresh_pointer(self, user_id: str) -> None:
        await try_store_op(
            lambda: self.store.delete(refresh_pointer_key(user_id)),
            0,
            event="refresh_token_delete_failed",
            user_id=user_id,
        )


__all__ = [
    "BLACKLIST_PREFIX",
    "REFRESH_POINTER_PREFIX",
    "ROTATION_BLACKLIST_TTL",
    "TokenExpired",
    "TokenInvalid",
    "TokenManager",
    "blacklist_key",
    "refresh_pointer_key",
]
