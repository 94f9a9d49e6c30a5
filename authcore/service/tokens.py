from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Optional

import jwt

from authcore.config import HMAC_ALGORITHMS, Settings
from authcore.logging import get_logger
from authcore.service.errors import TokenGenerationError
from authcore.storage.models import utcnow

logger = get_logger(__name__)

_REQUIRED_CLAIMS = ["sub", "iat", "exp", "jti", "iss", "aud"]


class TokenError(Exception):
    """Base class for access-token verification failures."""


class MalformedTokenError(TokenError):
    pass


class InvalidSignatureError(TokenError):
    pass


class ExpiredTokenError(TokenError):
    pass


@dataclass(frozen=True)
class AccessClaims:
    subject: str
    token_id: str
    issued_at: datetime
    expires_at: datetime
    issuer: str
    audience: str


@dataclass(frozen=True)
class IssuedToken:
    token: str
    token_id: str
    expires_at: datetime


class SignedTokenIssuer:
    """Creates and verifies compact signed access tokens.

    Claims carry ``jti``, a fresh random identifier distinct from the subject,
    so a still-unexpired token can be named in the revocation store without
    keeping the token itself. Expiry is checked against the injected clock
    rather than PyJWT's wall clock so tests can move time.
    """

    token_type = "access"

    def __init__(
        self,
        *,
        algorithm: str,
        signing_key: Any,
        verification_key: Any,
        issuer: str,
        audience: str,
        access_ttl: timedelta,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.algorithm = algorithm
        self._signing_key = signing_key
        self._verification_key = verification_key
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self._clock = clock

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Callable[[], datetime] = utcnow
    ) -> "SignedTokenIssuer":
        if settings.jwt_algorithm in HMAC_ALGORITHMS:
            signing_key = verification_key = settings.jwt_secret
        else:
            signing_key = Path(settings.jwt_private_key_path).read_text()
            verification_key = Path(settings.jwt_public_key_path).read_text()
        return cls(
            algorithm=settings.jwt_algorithm,
            signing_key=signing_key,
            verification_key=verification_key,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            clock=clock,
        )

    def issue(self, subject_id: str, ttl: Optional[timedelta] = None) -> IssuedToken:
        now = self._clock()
        issued_at = int(now.timestamp())
        expires_at = int((now + (self.access_ttl if ttl is None else ttl)).timestamp())
        token_id = str(uuid.uuid4())
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": str(subject_id),
            "iat": issued_at,
            "exp": expires_at,
            "jti": token_id,
            "typ": self.token_type,
        }
        try:
            token = jwt.encode(payload, self._signing_key, algorithm=self.algorithm)
        except Exception as exc:
            logger.error(
                "access_token_signing_failed",
                algorithm=self.algorithm,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise TokenGenerationError("error generating access token") from exc
        return IssuedToken(
            token=token,
            token_id=token_id,
            expires_at=datetime.fromtimestamp(expires_at, tz=timezone.utc),
        )

    def verify(self, token: str) -> AccessClaims:
        """Check structure, signature, issuer/audience and expiry."""
        claims = self._decode(token)
        if self._clock() >= claims.expires_at:
            raise ExpiredTokenError("access token expired")
        return claims

    def verify_signature(self, token: str) -> AccessClaims:
        """Like ``verify`` but accepts tokens past their expiry."""
        return self._decode(token)

    def _decode(self, token: str) -> AccessClaims:
        if not token or not isinstance(token, str):
            raise MalformedTokenError("empty token")
        try:
            payload = jwt.decode(
                token,
                self._verification_key,
                algorithms=[self.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                    "require": _REQUIRED_CLAIMS,
                },
            )
        except (jwt.InvalidSignatureError, jwt.InvalidAlgorithmError) as exc:
            raise InvalidSignatureError(str(exc)) from exc
        except jwt.InvalidTokenError as exc:
            raise MalformedTokenError(str(exc)) from exc

        if payload.get("typ") != self.token_type:
            raise MalformedTokenError("wrong token type")
        try:
            issued_at = datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError) as exc:
            raise MalformedTokenError("invalid timestamp claims") from exc
        return AccessClaims(
            subject=str(payload["sub"]),
            token_id=str(payload["jti"]),
            issued_at=issued_at,
            expires_at=expires_at,
            issuer=payload["iss"],
            audience=self.audience,
        )
