from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from listeners.config import Settings
from listeners.logging import get_logger
from listeners.service.cache import CacheService
from listeners.service.cache_facades import SessionCache
from listeners.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    ValidationError,
)
from listeners.service.tokens import TokenManager
from listeners.storage.errors import ConstraintViolation
from listeners.storage.kv import KeyValueStore
from listeners.storage.memory import MemoryStore
from listeners.storage.models import User
from listeners.storage.soft import try_store_op

logger = get_logger(__name__)

PASSWORD_RESET_PREFIX = "passwordReset"


def password_reset_key(token: str) -> str:
    return f"{PASSWORD_RESET_PREFIX}:{token}"


@dataclass
class AuthResult:
    user: User
    tokens: Dict[str, str]
    verification_token: Optional[str] = None

    def to_response(self, message: str, *, include_verification: bool = False) -> Dict[str, Any]:
        body: Dict[str, Any] = {"message": message, **self.tokens, "user": self.user.to_public()}
        if include_verification and self.verification_token:
            body["verificationToken"] = self.verification_token
        return body


class AuthService:
    """Account flows built on the user store and the token manager."""

    def __init__(
        self,
        users: MemoryStore,
        tokens: TokenManager,
        store: KeyValueStore,
        settings: Settings,
        *,
        cache: Optional[CacheService] = None,
    ):
        self.users = users
        self.tokens = tokens
        self.store = store
        self.settings = settings
        self.cache = cache
        self.sessions = SessionCache(cache) if cache else None
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    # -- passwords ---------------------------------------------------------

    def _hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), "argon2id"

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.users.save_password(user_id, pwd_hash, algo)

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.users.get_password_record(user_id)
        if not record:
            logger.warning("password_record_missing", user_id=user_id)
            return False
        if record.password_algo != "argon2id":
            logger.warning("password_algo_mismatch", user_id=user_id, algo=record.password_algo)
            return False
        try:
            return self._pwd_hasher.verify(record.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    # -- flows -------------------------------------------------------------

    async def register(self, email: str, username: str, password: str) -> AuthResult:
        try:
            user = self.users.create_user(email, username)
        except ConstraintViolation as exc:
            message = (
                "Email already registered"
                if exc.field == "email"
                else "Username already taken"
            )
            raise ConflictError(
                message, error_code="USER_EXISTS", detail=exc.detail
            ) from exc
        self.save_password(user.id, password)
        verification_token = secrets.token_hex(32)
        self.users.set_email_verification_token(user.id, verification_token)
        tokens = await self.tokens.issue_token_pair(user.id)
        logger.info("user_registered", user_id=user.id)
        return AuthResult(user=user, tokens=tokens, verification_token=verification_token)

    async def login(
        self, email_or_username: str, password: str, *, remember_me: bool = False
    ) -> AuthResult:
        user = self.users.get_user_by_login(email_or_username)
        if not user:
            raise AuthenticationError("Invalid credentials", code="INVALID_CREDENTIALS")
        if user.is_locked:
            raise AccountLockedError(
                "Account is temporarily locked due to multiple failed login attempts",
                detail={"lockUntil": user.lock_until.isoformat()},
            )
        if not self.verify_password(user.id, password):
            self.users.inc_login_attempts(user.id)
            logger.warning("login_failed", user_id=user.id, attempts=user.login_attempts)
            raise AuthenticationError("Invalid credentials", code="INVALID_CREDENTIALS")

        self.users.reset_login_attempts(user.id)
        self.users.record_login(user.id)
        tokens = await self.tokens.issue_token_pair(user.id, remember_me=remember_me)
        if self.sessions:
            await self.sessions.put(
                user.id, {"userId": user.id, "rememberMe": remember_me, "role": user.role}
            )
        logger.info("login_succeeded", user_id=user.id, remember_me=remember_me)
        return AuthResult(user=user, tokens=tokens)

    async def refresh(self, refresh_token: Optional[str]) -> Dict[str, str]:
        user = await self.tokens.validate_refresh_token(refresh_token)
        return await self.tokens.rotate(refresh_token, user.id)

    async def logout(
        self, user: User, access_token: Optional[str], refresh_token: Optional[str]
    ) -> None:
        await self.tokens.revoke(access_token, refresh_token, user.id)
        if self.sessions:
            await self.sessions.evict(user.id)

    def verify_email(self, token: Optional[str]) -> User:
        if not token:
            raise ValidationError("Verification token is required", error_code="TOKEN_REQUIRED")
        user = self.users.get_user_by_verification_token(token)
        if not user:
            raise ValidationError(
                "Invalid or expired verification token", error_code="INVALID_TOKEN"
            )
        self.users.mark_email_verified(user.id)
        logger.info("email_verified", user_id=user.id)
        return user

    async def initiate_password_reset(self, email: str) -> Optional[str]:
        """Create a reset token for ``email``; ``None`` when there is no such account.

        Callers answer identically either way so accounts cannot be enumerated.
        """

        user = self.users.get_user_by_email(email)
        if not user:
            logger.info("password_reset_unknown_email")
            return None
        token = secrets.token_hex(32)
        await try_store_op(
            lambda: self.store.set(
                password_reset_key(token), user.id, ex=self.settings.password_reset_ttl_seconds
            ),
            None,
            event="password_reset_persist_failed",
            user_id=user.id,
        )
        logger.info("password_reset_requested", user_id=user.id)
        return token

    async def complete_password_reset(self, token: str, new_password: str) -> User:
        user_id = await try_store_op(
            lambda: self.store.get(password_reset_key(token)),
            None,
            event="password_reset_lookup_failed",
        )
        user = self.users.get_user(user_id) if user_id else None
        if not user:
            raise AuthenticationError(
                "Invalid or expired reset token", code="INVALID_RESET_TOKEN"
            )
        self.save_password(user.id, new_password)
        self.users.reset_login_attempts(user.id)
        await try_store_op(
            lambda: self.store.delete(password_reset_key(token)),
            0,
            event="password_reset_delete_failed",
            user_id=user.id,
        )
        await self.tokens.drop_refresh_pointer(user.id)
        logger.info("password_reset_completed", user_id=user.id)
        return user


__all__ = ["AuthResult", "AuthService", "PASSWORD_RESET_PREFIX", "password_reset_key"]
