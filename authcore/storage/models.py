from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    """Timezone-aware UTC now; every stored timestamp is aware."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize naive (assumed UTC) or foreign-zone datetimes to aware UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    password_hash: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, email: str, password_hash: str) -> "User":
        return cls(id=str(uuid.uuid4()), email=email, password_hash=password_hash)

    def without_password(self) -> "User":
        return replace(self, password_hash=None)


@dataclass
class RefreshTokenRecord:
    """The single live refresh token of a user; only its digest is kept."""

    user_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return as_utc(self.expires_at) <= now


@dataclass
class RevocationEntry:
    token_id: str
    user_id: str
    expires_at: datetime
    revoked_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: datetime) -> bool:
        return as_utc(self.expires_at) <= now
