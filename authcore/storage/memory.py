from __future__ import annotations

import threading
import time
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, Optional

from authcore.logging import get_logger
from authcore.storage.errors import ConstraintViolation, StoreUnavailable
from authcore.storage.models import (
    RefreshTokenRecord,
    RevocationEntry,
    User,
    as_utc,
    utcnow,
)


class MemoryStore:
    """In-process user and refresh-token store for tests and local runs."""

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self._clock = clock
        # RLock for all data operations; nested acquisitions stay on one thread
        self._data_lock = threading.RLock()

    # users
    def create_user(self, email: str, password_hash: str) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User.new(email, password_hash)
            self.users[user.id] = user
            return user.without_password()

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return user.without_password() if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        user = self.get_user_by_email_with_password(email)
        return user.without_password() if user else None

    def get_user_by_email_with_password(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return replace(user) if user else None

    # refresh tokens
    def put_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshTokenRecord:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            record = RefreshTokenRecord(
                user_id=user_id,
                token_hash=token_hash,
                expires_at=as_utc(expires_at),
                created_at=self._clock(),
            )
            self.refresh_tokens[user_id] = record
            return record

    def get_refresh_token(self, user_id: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            record = self.refresh_tokens.get(user_id)
            return replace(record) if record else None

    def replace_refresh_token(
        self,
        user_id: str,
        expected_hash: str,
        token_hash: str,
        expires_at: datetime,
        deadline: Optional[float] = None,
    ) -> bool:
        with self._data_lock:
            if deadline is not None and time.monotonic() >= deadline:
                raise StoreUnavailable(
                    "memory", "replace_refresh_token", TimeoutError("deadline passed")
                )
            current = self.refresh_tokens.get(user_id)
            if current is None or current.token_hash != expected_hash:
                return False
            self.put_refresh_token(user_id, token_hash, expires_at)
            return True

    def delete_refresh_token(self, user_id: str) -> None:
        with self._data_lock:
            self.refresh_tokens.pop(user_id, None)

    def purge_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        cutoff = now or self._clock()
        with self._data_lock:
            stale = [
                uid for uid, rec in self.refresh_tokens.items() if rec.is_expired(cutoff)
            ]
            for uid in stale:
                self.refresh_tokens.pop(uid, None)
        if stale:
            self.logger.debug("refresh_tokens_purged", count=len(stale))
        return len(stale)


class MemoryRevocationStore:
    """Denylist of access-token identifiers with expiry checked on read.

    Without native per-key expiry, entries linger until ``sweep`` runs; a
    lingering entry is never reported once its token would have expired.
    """

    def __init__(self, *, clock: Callable[[], datetime] = utcnow) -> None:
        self.logger = get_logger(__name__)
        self.entries: Dict[str, RevocationEntry] = {}
        self._clock = clock
        self._lock = threading.Lock()

    async def add(self, token_id: str, user_id: str, expires_at: datetime) -> bool:
        now = self._clock()
        if as_utc(expires_at) <= now:
            return False
        with self._lock:
            self.entries[token_id] = RevocationEntry(
                token_id=token_id,
                user_id=user_id,
                expires_at=as_utc(expires_at),
                revoked_at=now,
            )
        return True

    async def contains(self, token_id: str) -> bool:
        with self._lock:
            entry = self.entries.get(token_id)
        return entry is not None and not entry.is_expired(self._clock())

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [tid for tid, entry in self.entries.items() if entry.is_expired(now)]
            for tid in stale:
                self.entries.pop(tid, None)
        if stale:
            self.logger.debug("revocations_swept", count=len(stale))
        return len(stale)
