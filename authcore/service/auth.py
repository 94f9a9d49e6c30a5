from __future__ import annotations

import asyncio
import contextlib
import hashlib
import hmac
import secrets
import time
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterator, Optional, Protocol, TypeVar

from authcore.api.schemas import TokenPair
from authcore.config import Settings
from authcore.logging import get_logger
from authcore.service.errors import (
    AlreadyExistsError,
    InvalidCredentialsError,
    NotFoundError,
    ServerError,
    StorageUnavailableError,
    UnauthorizedError,
)
from authcore.service.passwords import CorruptHashError, MismatchError, PasswordHasher
from authcore.service.tokens import (
    AccessClaims,
    ExpiredTokenError,
    InvalidSignatureError,
    IssuedToken,
    SignedTokenIssuer,
    TokenError,
)
from authcore.storage.errors import ConstraintViolation, StoreUnavailable
from authcore.storage.models import RefreshTokenRecord, User, as_utc, utcnow

logger = get_logger(__name__)

T = TypeVar("T")

# Bytes of randomness in an opaque refresh token
REFRESH_TOKEN_BYTES = 32
# Extra wait past a store deadline before the caller stops waiting for the store's answer
DEADLINE_GRACE_SECONDS = 1.0

# Caller-scoped override of the per-store-call bound
_store_timeout_var: ContextVar[Optional[float]] = ContextVar("store_timeout", default=None)


@contextlib.contextmanager
def store_timeout(seconds: float) -> Iterator[None]:
    """Bound every store call made inside the block by ``seconds``.

    Usage::

        with store_timeout(0.5):
            pair = await auth.login(email, password)
    """
    if seconds <= 0:
        raise ValueError("store timeout must be positive")
    token = _store_timeout_var.set(seconds)
    try:
        yield
    finally:
        _store_timeout_var.reset(token)


class UserStore(Protocol):
    def create_user(self, email: str, password_hash: str) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_email_with_password(self, email: str) -> Optional[User]: ...


class RefreshTokenStore(Protocol):
    def put_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshTokenRecord: ...

    def get_refresh_token(self, user_id: str) -> Optional[RefreshTokenRecord]: ...

    def replace_refresh_token(
        self,
        user_id: str,
        expected_hash: str,
        token_hash: str,
        expires_at: datetime,
        deadline: Optional[float] = None,
    ) -> bool:
        """Compare-and-swap on the stored digest.

        ``deadline`` is a ``time.monotonic()`` instant; past it the store must
        raise ``StoreUnavailable`` without committing.
        """

    def delete_refresh_token(self, user_id: str) -> None: ...

    def purge_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int: ...


class RevocationStore(Protocol):
    async def add(self, token_id: str, user_id: str, expires_at: datetime) -> bool: ...

    async def contains(self, token_id: str) -> bool: ...


def hash_refresh_token(token: str) -> str:
    """Digest kept server-side in place of the opaque refresh token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


@dataclass(frozen=True)
class _IssuedRefresh:
    token: str
    token_hash: str
    expires_at: datetime


class AuthService:
    """Login, logout and refresh-token rotation over injected stores.

    The service keeps no session state of its own: refresh records live in
    ``refresh_tokens`` (one per user, overwrite on write) and revoked access
    tokens in ``revocations`` (self-expiring). Every store call is bounded by
    ``store_timeout_seconds``; timeouts and backend outages surface as
    ``StorageUnavailableError`` and never as an authorization failure.
    """

    def __init__(
        self,
        users: UserStore,
        refresh_tokens: RefreshTokenStore,
        revocations: RevocationStore,
        settings: Settings,
        *,
        hasher: Optional[PasswordHasher] = None,
        issuer: Optional[SignedTokenIssuer] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.users = users
        self.refresh_tokens = refresh_tokens
        self.revocations = revocations
        self.settings = settings
        self._clock = clock
        self.hasher = hasher or PasswordHasher.from_settings(settings)
        self.issuer = issuer or SignedTokenIssuer.from_settings(settings, clock=clock)
        self.refresh_ttl = timedelta(minutes=settings.refresh_token_ttl_minutes)
        self.store_timeout = settings.store_timeout_seconds
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    def _timeout(self) -> float:
        return _store_timeout_var.get() or self.store_timeout

    async def _bounded(
        self, operation: str, awaitable: Awaitable[T], timeout: Optional[float] = None
    ) -> T:
        timeout = timeout or self._timeout()
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout)
        except asyncio.TimeoutError as exc:
            self.logger.error("store_timeout", operation=operation, timeout_seconds=timeout)
            raise StorageUnavailableError(
                f"{operation} timed out", detail={"operation": operation}
            ) from exc
        except StoreUnavailable as exc:
            self.logger.error(
                "store_unavailable",
                operation=operation,
                backend=exc.backend,
                error=str(exc.cause or exc),
            )
            raise StorageUnavailableError(
                f"{operation} failed: storage unavailable",
                detail={"operation": operation, "backend": exc.backend},
            ) from exc

    async def _call_store(self, operation: str, fn: Callable[..., T], *args: Any) -> T:
        # A timed-out thread keeps running to completion; only the caller is released.
        return await self._bounded(operation, asyncio.to_thread(fn, *args))

    async def _call_store_by_deadline(
        self, operation: str, fn: Callable[..., T], *args: Any
    ) -> T:
        """Run a write whose late commit would be observable after a reported failure.

        The store receives an absolute ``time.monotonic()`` deadline and refuses
        to commit past it, so the outcome seen here is the outcome stored. The
        outer bound only catches a store that ignores its deadline.
        """
        timeout = self._timeout()
        deadline = time.monotonic() + timeout
        return await self._bounded(
            operation,
            asyncio.to_thread(fn, *args, deadline),
            timeout=timeout + DEADLINE_GRACE_SECONDS,
        )

    # Issuance ---------------------------------------------------------------

    def _new_refresh_token(self) -> _IssuedRefresh:
        token = secrets.token_urlsafe(REFRESH_TOKEN_BYTES)
        return _IssuedRefresh(
            token=token,
            token_hash=hash_refresh_token(token),
            expires_at=self._now() + self.refresh_ttl,
        )

    @staticmethod
    def _pair(access: IssuedToken, refresh: _IssuedRefresh) -> TokenPair:
        return TokenPair(
            access_token=access.token,
            refresh_token=refresh.token,
            access_expires_at=access.expires_at,
            refresh_expires_at=refresh.expires_at,
        )

    async def _equalize_unknown_user(self, password: str) -> None:
        """Spend one verify on unknown emails so timing does not reveal them."""
        if self._dummy_hash is None:
            self._dummy_hash = await self.hasher.hash_async(secrets.token_urlsafe(16))
        try:
            await self.hasher.verify_async(self._dummy_hash, password)
        except MismatchError:
            pass

    # Operations -------------------------------------------------------------

    async def signup(self, email: str, password: str) -> User:
        email = normalize_email(email)
        existing = await self._call_store("get_user_by_email", self.users.get_user_by_email, email)
        if existing is not None:
            self.logger.info("signup_duplicate_email", email=email)
            raise AlreadyExistsError("user already exists")
        password_hash = await self.hasher.hash_async(password)
        try:
            user = await self._call_store(
                "create_user", self.users.create_user, email, password_hash
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent sign-up for the same email
            self.logger.info("signup_duplicate_email", email=email, race=True)
            raise AlreadyExistsError("user already exists", detail=exc.detail) from exc
        self.logger.info("user_signed_up", user_id=user.id)
        return user

    async def login(self, email: str, password: str) -> TokenPair:
        email = normalize_email(email)
        user = await self._call_store(
            "get_user_by_email_with_password",
            self.users.get_user_by_email_with_password,
            email,
        )
        if user is None:
            await self._equalize_unknown_user(password)
            self.logger.info("login_failed", reason="unknown_email")
            raise InvalidCredentialsError("invalid credentials")
        try:
            await self.hasher.verify_async(user.password_hash or "", password)
        except MismatchError as exc:
            self.logger.info("login_failed", reason="password_mismatch", user_id=user.id)
            raise InvalidCredentialsError("invalid credentials") from exc
        except CorruptHashError as exc:
            self.logger.error("password_hash_corrupt", user_id=user.id, error=str(exc))
            raise ServerError("stored credentials unreadable") from exc

        access = self.issuer.issue(user.id)
        refresh = self._new_refresh_token()
        await self._call_store(
            "put_refresh_token",
            self.refresh_tokens.put_refresh_token,
            user.id,
            refresh.token_hash,
            refresh.expires_at,
        )
        self.logger.info(
            "login_succeeded", user_id=user.id, token_id=access.token_id
        )
        return self._pair(access, refresh)

    async def logout(self, access_token: str, claims: Optional[AccessClaims] = None) -> None:
        """Revoke the presented access token, then drop the user's refresh record.

        If the revocation cannot be recorded the call fails and the refresh
        record is left untouched; a reported logout always means the token
        no longer works.
        """
        if claims is None:
            claims = self._claims_ignoring_expiry(access_token)
        added = await self._bounded(
            "revocation_add",
            self.revocations.add(claims.token_id, claims.subject, claims.expires_at),
        )
        await self._call_store(
            "delete_refresh_token", self.refresh_tokens.delete_refresh_token, claims.subject
        )
        self.logger.info(
            "logout_succeeded",
            user_id=claims.subject,
            token_id=claims.token_id,
            revoked=added,
        )

    async def refresh_token(
        self,
        access_token: str,
        user: User,
        refresh_token: str,
        expires_at: Optional[datetime] = None,
    ) -> TokenPair:
        """Rotate both tokens for ``user`` and revoke the superseded access token.

        ``expires_at`` is the old access token's expiry as seen by the caller;
        the revocation lives until the later of it and the token's own claim.
        The refresh record is swapped under a store-enforced deadline before
        anything else is written. If the revocation then fails the swap is
        reverted, so a reported failure leaves the presented refresh token and
        the old access token as they were.
        """
        old = self._claims_ignoring_expiry(access_token)
        if old.subject != user.id:
            self.logger.warning(
                "refresh_subject_mismatch", user_id=user.id, token_id=old.token_id
            )
            raise UnauthorizedError("access token does not belong to user")

        record = await self._call_store(
            "get_refresh_token", self.refresh_tokens.get_refresh_token, user.id
        )
        if record is None:
            self.logger.info("refresh_token_missing", user_id=user.id)
            raise UnauthorizedError(
                "refresh token not found", detail={"reason": "not_found"}
            ) from NotFoundError("refresh token not found")

        if not hmac.compare_digest(hash_refresh_token(refresh_token), record.token_hash):
            self.logger.warning(
                "refresh_token_mismatch",
                user_id=user.id,
                revoke_session=self.settings.revoke_on_refresh_reuse,
            )
            if self.settings.revoke_on_refresh_reuse:
                await self._call_store(
                    "delete_refresh_token", self.refresh_tokens.delete_refresh_token, user.id
                )
            raise UnauthorizedError("refresh token mismatch", detail={"reason": "mismatch"})

        if record.is_expired(self._now()):
            await self._call_store(
                "delete_refresh_token", self.refresh_tokens.delete_refresh_token, user.id
            )
            self.logger.info("refresh_token_expired", user_id=user.id)
            raise UnauthorizedError("refresh token expired", detail={"reason": "expired"})

        access = self.issuer.issue(user.id)
        refresh = self._new_refresh_token()

        swapped = await self._call_store_by_deadline(
            "replace_refresh_token",
            self.refresh_tokens.replace_refresh_token,
            user.id,
            record.token_hash,
            refresh.token_hash,
            refresh.expires_at,
        )
        if not swapped:
            # Another refresh or a logout changed the record after we read it
            self.logger.info("refresh_token_race_lost", user_id=user.id)
            raise UnauthorizedError(
                "refresh token superseded", detail={"reason": "superseded"}
            )

        revoke_until = old.expires_at
        if expires_at is not None and as_utc(expires_at) > revoke_until:
            revoke_until = as_utc(expires_at)
        try:
            await self._bounded(
                "revocation_add",
                self.revocations.add(old.token_id, user.id, revoke_until),
            )
        except StorageUnavailableError:
            await self._restore_refresh_record(record, refresh)
            raise

        self.logger.info(
            "refresh_succeeded",
            user_id=user.id,
            token_id=access.token_id,
            revoked_token_id=old.token_id,
        )
        return self._pair(access, refresh)

    async def _restore_refresh_record(
        self, record: RefreshTokenRecord, rotated: _IssuedRefresh
    ) -> None:
        """Swap the pre-rotation record back unless something replaced ours since."""
        try:
            restored = await self._call_store(
                "restore_refresh_token",
                self.refresh_tokens.replace_refresh_token,
                record.user_id,
                rotated.token_hash,
                record.token_hash,
                record.expires_at,
            )
        except StorageUnavailableError:
            self.logger.error("refresh_rollback_failed", user_id=record.user_id)
            return
        self.logger.warning(
            "refresh_rolled_back", user_id=record.user_id, restored=restored
        )

    async def authenticate(self, access_token: str) -> AccessClaims:
        """Full access-token check: signature, expiry and revocation status."""
        try:
            claims = self.issuer.verify(access_token)
        except ExpiredTokenError as exc:
            raise UnauthorizedError("access token expired", detail={"reason": "expired"}) from exc
        except InvalidSignatureError as exc:
            raise UnauthorizedError(
                "access token signature invalid", detail={"reason": "invalid_signature"}
            ) from exc
        except TokenError as exc:
            raise UnauthorizedError("access token malformed", detail={"reason": "malformed"}) from exc
        if await self._bounded("revocation_contains", self.revocations.contains(claims.token_id)):
            self.logger.info("access_token_revoked", token_id=claims.token_id)
            raise UnauthorizedError("access token revoked", detail={"reason": "revoked"})
        return claims

    def _claims_ignoring_expiry(self, access_token: str) -> AccessClaims:
        try:
            return self.issuer.verify_signature(access_token)
        except InvalidSignatureError as exc:
            raise UnauthorizedError(
                "access token signature invalid", detail={"reason": "invalid_signature"}
            ) from exc
        except TokenError as exc:
            raise UnauthorizedError("access token malformed", detail={"reason": "malformed"}) from exc

    async def by_email(self, email: str) -> User:
        user = await self._call_store(
            "get_user_by_email", self.users.get_user_by_email, normalize_email(email)
        )
        if user is None:
            raise NotFoundError("user not found")
        return user

    async def by_email_with_password(self, email: str) -> User:
        user = await self._call_store(
            "get_user_by_email_with_password",
            self.users.get_user_by_email_with_password,
            normalize_email(email),
        )
        if user is None:
            raise NotFoundError("user not found")
        return user

    async def by_id(self, user_id: str) -> User:
        user = await self._call_store("get_user", self.users.get_user, user_id)
        if user is None:
            raise NotFoundError("user not found")
        return user

    async def purge_expired(self) -> dict[str, int]:
        """Sweep expired refresh records and, where the backend needs it, revocations."""
        now = self._now()
        refresh = await self._call_store(
            "purge_expired_refresh_tokens",
            self.refresh_tokens.purge_expired_refresh_tokens,
            now,
        )
        revocations = 0
        sweep = getattr(self.revocations, "sweep", None)
        if sweep is not None:
            revocations = await self._call_store("revocation_sweep", sweep)
        if refresh or revocations:
            self.logger.info(
                "expired_auth_state_purged", refresh_tokens=refresh, revocations=revocations
            )
        return {"refresh_tokens": refresh, "revocations": revocations}

    def close(self) -> None:
        self.hasher.close()
