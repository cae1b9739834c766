from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional, Set


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Subscription:
    type: str = "free"
    expires_at: Optional[datetime] = None

    @property
    def is_premium(self) -> bool:
        if self.type != "premium":
            return False
        return self.expires_at is None or self.expires_at > utcnow()


@dataclass
class User:
    id: str
    email: str
    username: str
    role: str = "user"
    is_verified: bool = False
    subscription: Subscription = field(default_factory=Subscription)
    login_attempts: int = 0
    lock_until: Optional[datetime] = None
    last_login: Optional[datetime] = None
    email_verification_token: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_locked(self) -> bool:
        return bool(self.lock_until and self.lock_until > utcnow())

    @property
    def is_premium(self) -> bool:
        return self.subscription.is_premium

    def to_public(self) -> Dict:
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "role": self.role,
            "isVerified": self.is_verified,
            "subscription": {
                "type": self.subscription.type,
                "expiresAt": (
                    self.subscription.expires_at.isoformat()
                    if self.subscription.expires_at
                    else None
                ),
            },
            "lastLogin": self.last_login.isoformat() if self.last_login else None,
        }


@dataclass
class PasswordRecord:
    user_id: str
    password_hash: str
    password_algo: str = "argon2id"
    last_updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Song:
    id: str
    title: str
    artist: str
    album: Optional[str] = None
    genre: Optional[str] = None
    duration_ms: int = 0
    uploaded_by: Optional[str] = None
    like_count: int = 0
    play_count: int = 0
    liked_by: Set[str] = field(default_factory=set)
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict:
        return {
            "id": self.id,
            "title": self.title,
            "artist": self.artist,
            "album": self.album,
            "genre": self.genre,
            "durationMs": self.duration_ms,
            "uploadedBy": self.uploaded_by,
            "likeCount": self.like_count,
            "playCount": self.play_count,
            "createdAt": self.created_at.isoformat(),
        }

