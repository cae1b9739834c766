from __future__ import annotations

import threading
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from listeners.logging import get_logger
from listeners.storage.errors import ConstraintViolation
from listeners.storage.models import PasswordRecord, Song, Subscription, User, utcnow


class MemoryStore:
    """In-process user and catalog store backing the auth and catalog routes."""

    def __init__(self, *, max_login_attempts: int = 5, lock_minutes: int = 120) -> None:
        self.logger = get_logger(__name__)
        self.max_login_attempts = max_login_attempts
        self.lock_minutes = lock_minutes
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, PasswordRecord] = {}
        self.songs: Dict[str, Song] = {}
        # RLock so helpers can call each other while holding the lock
        self._data_lock = threading.RLock()

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        username: str,
        *,
        role: str = "user",
        is_verified: bool = False,
        subscription: Optional[Subscription] = None,
    ) -> User:
        email = email.strip().lower()
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email")
            if any(
                existing.username.lower() == username.lower()
                for existing in self.users.values()
            ):
                raise ConstraintViolation("username")
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                username=username,
                role=role,
                is_verified=is_verified,
                subscription=subscription or Subscription(),
            )
            self.users[user.id] = user
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_user_by_login(self, email_or_username: str) -> Optional[User]:
        """Resolve a login identifier that may be either an email or a username."""

        needle = email_or_username.strip().lower()
        with self._data_lock:
            return next(
                (
                    u
                    for u in self.users.values()
                    if u.email == needle or u.username.lower() == needle
                ),
                None,
            )

    def save_password(self, user_id: str, password_hash: str, password_algo: str = "argon2id") -> None:
        with self._data_lock:
            self.credentials[user_id] = PasswordRecord(
                user_id=user_id, password_hash=password_hash, password_algo=password_algo
            )

    def get_password_record(self, user_id: str) -> Optional[PasswordRecord]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def inc_login_attempts(self, user_id: str) -> Optional[User]:
        """Count a failed login, locking the account once the maximum is reached.

        A lock that has already expired restarts the count at one.
        """

        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            now = utcnow()
            if user.lock_until and user.lock_until <= now:
                user.login_attempts = 1
                user.lock_until = None
                return user
            user.login_attempts += 1
            if user.login_attempts >= self.max_login_attempts and not user.is_locked:
                user.lock_until = now + timedelta(minutes=self.lock_minutes)
                self.logger.warning(
                    "account_locked",
                    user_id=user_id,
                    attempts=user.login_attempts,
                    lock_minutes=self.lock_minutes,
                )
            return user

    def reset_login_attempts(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.login_attempts = 0
            user.lock_until = None
            return user

    def record_login(self, user_id: str, when: Optional[datetime] = None) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.last_login = when or utcnow()
            return user

    def set_email_verification_token(self, user_id: str, token: Optional[str]) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.email_verification_token = token
            return user

    def get_user_by_verification_token(self, token: str) -> Optional[User]:
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.email_verification_token == token),
                None,
            )

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_verified = True
            user.email_verification_token = None
            return user

    # -- songs -------------------------------------------------------------

    def add_song(
        self,
        title: str,
        artist: str,
        *,
        album: Optional[str] = None,
        genre: Optional[str] = None,
        duration_ms: int = 0,
        uploaded_by: Optional[str] = None,
    ) -> Song:
        with self._data_lock:
            song = Song(
                id=str(uuid.uuid4()),
                title=title,
                artist=artist,
                album=album,
                genre=genre,
                duration_ms=duration_ms,
                uploaded_by=uploaded_by,
            )
            self.songs[song.id] = song
            return song

    def get_song(self, song_id: str) -> Optional[Song]:
        with self._data_lock:
            return self.songs.get(song_id)

    def search_songs(self, query: str, *, page: int = 1, limit: int = 20) -> Dict:
        needle = query.strip().lower()
        with self._data_lock:
            matches = [
                s
                for s in self.songs.values()
                if needle in s.title.lower()
                or needle in s.artist.lower()
                or (s.album and needle in s.album.lower())
            ]
        matches.sort(key=lambda s: (-s.play_count, s.title.lower()))
        start = (page - 1) * limit
        return {
            "results": [s.to_dict() for s in matches[start : start + limit]],
            "total": len(matches),
            "page": page,
            "limit": limit,
        }

    def toggle_like(self, song_id: str, user_id: str) -> Optional[Song]:
        with self._data_lock:
            song = self.songs.get(song_id)
            if not song:
                return None
            if user_id in song.liked_by:
                song.liked_by.discard(user_id)
            else:
                song.liked_by.add(user_id)
            song.like_count = len(song.liked_by)
            return song

    def record_play(self, song_id: str) -> Optional[Song]:
        with self._data_lock:
            song = self.songs.get(song_id)
            if not song:
                return None
            song.play_count += 1
            return song

    def trending(self, limit: int = 20) -> List[Song]:
        with self._data_lock:
            songs = list(self.songs.values())
        songs.sort(key=lambda s: (s.play_count + 2 * s.like_count, s.created_at), reverse=True)
        return songs[:limit]

    def popular(self, limit: int = 20) -> List[Song]:
        with self._data_lock:
            songs = list(self.songs.values())
        songs.sort(key=lambda s: (s.like_count, s.play_count), reverse=True)
        return songs[:limit]
