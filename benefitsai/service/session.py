from __future__ import annotations

import hmac
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable, Optional, Protocol

from benefitsai.config import Settings
from benefitsai.logging import get_logger
from benefitsai.service.errors import (
    ExpiredOrInvalid,
    IdentityProviderUnavailable,
    SessionIssuanceFailed,
)
from benefitsai.service.roles import ResolvedRole, Role, resolve
from benefitsai.service.signing import HS256Signer

if TYPE_CHECKING:
    from benefitsai.service.verifier import DecodedClaims, TokenVerifier

logger = get_logger(__name__)

SESSION_TOKEN_TYPE = "session"


class CookieJar(Protocol):
    """Outgoing cookie sink; ``fastapi.Response`` satisfies this."""

    def set_cookie(
        self,
        key: str,
        value: str = "",
        max_age: Optional[int] = None,
        expires: Any = None,
        path: str = "/",
        domain: Optional[str] = None,
        secure: bool = False,
        httponly: bool = False,
        samesite: Optional[str] = "lax",
    ) -> None:
        ...


@dataclass(frozen=True)
class SessionCookie:
    name: str
    value: str
    session_id: str
    subject: str
    role: Role
    company_id: Optional[str]
    issued_at: datetime
    expires_at: datetime
    max_age: int


class SessionCodec:
    """Signs and reads first-party session tokens."""

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        ttl: timedelta,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._signer = HS256Signer(secret, issuer=issuer, audience=audience, clock=clock)
        self._clock = clock
        self.ttl = ttl

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Callable[[], float] = time.time
    ) -> "SessionCodec":
        return cls(
            settings.session_secret,
            issuer=settings.session_issuer,
            audience=settings.session_audience,
            ttl=timedelta(seconds=settings.session_ttl_seconds),
            clock=clock,
        )

    def encode(
        self,
        *,
        subject: str,
        email: Optional[str],
        role: Role,
        company_id: Optional[str],
    ) -> tuple[str, dict[str, Any]]:
        now = self._clock()
        payload = {
            "sub": subject,
            "email": email,
            "role": role.value,
            "company_id": company_id,
            "sid": secrets.token_urlsafe(16),
            "iat": int(now),
            "iat_ms": int(now * 1000),
            "exp": int(now + self.ttl.total_seconds()),
            "token_type": SESSION_TOKEN_TYPE,
        }
        return self._signer.encode(payload), payload

    def decode(self, token: str) -> Optional[dict[str, Any]]:
        payload = self._signer.decode(token)
        if not payload or payload.get("token_type") != SESSION_TOKEN_TYPE:
            return None
        if not payload.get("sub") or not payload.get("sid"):
            return None
        return payload


class SessionIssuer:
    """Mints and clears the ``__session`` cookie (and carries the refresh cookie)."""

    def __init__(
        self,
        codec: SessionCodec,
        settings: Settings,
        *,
        verifier: Optional["TokenVerifier"] = None,
    ) -> None:
        self.codec = codec
        self.settings = settings
        self.verifier = verifier

    @property
    def cookie_name(self) -> str:
        return self.settings.session_cookie_name

    def _cookie_options(self) -> dict[str, Any]:
        return {
            "httponly": True,
            "secure": self.settings.is_production,
            "samesite": "lax",
            "path": "/",
        }

    def issue_session(
        self,
        claims: "DecodedClaims",
        cookies: CookieJar,
        *,
        resolved: Optional[ResolvedRole] = None,
    ) -> SessionCookie:
        """Write a signed session cookie embedding the canonical role and company."""
        resolved = resolved or resolve(claims.claims)
        token, payload = self.codec.encode(
            subject=claims.subject,
            email=claims.email,
            role=resolved.role,
            company_id=resolved.company_id,
        )
        max_age = int(self.codec.ttl.total_seconds())
        cookies.set_cookie(
            self.cookie_name, token, max_age=max_age, **self._cookie_options()
        )
        logger.info(
            "session_issued",
            user_id=claims.subject,
            role=resolved.role.value,
            company_id=resolved.company_id,
            session_id=payload["sid"],
        )
        return SessionCookie(
            name=self.cookie_name,
            value=token,
            session_id=payload["sid"],
            subject=claims.subject,
            role=resolved.role,
            company_id=resolved.company_id,
            issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            max_age=max_age,
        )

    async def verify_for_issuance(self, id_token: str) -> "DecodedClaims":
        """Verify an ID token, translating provider failures to SessionIssuanceFailed."""
        from benefitsai.service.verifier import CredentialKind

        if self.verifier is None:
            raise SessionIssuanceFailed("failed to create session", status_code=500)
        try:
            return await self.verifier.verify(id_token, CredentialKind.ID_TOKEN)
        except ExpiredOrInvalid as exc:
            raise SessionIssuanceFailed("invalid or expired credential", status_code=401) from exc
        except IdentityProviderUnavailable as exc:
            raise SessionIssuanceFailed("failed to create session", status_code=500) from exc

    async def create_from_id_token(
        self,
        id_token: str,
        cookies: CookieJar,
        *,
        resolved: Optional[ResolvedRole] = None,
    ) -> SessionCookie:
        """Verify ``id_token`` and mint a session; no cookie is written on failure."""
        claims = await self.verify_for_issuance(id_token)
        return self.issue_session(claims, cookies, resolved=resolved)

    def destroy_session(self, cookies: CookieJar) -> None:
        """Expire the session cookie; safe to call when no session exists."""
        cookies.set_cookie(
            self.cookie_name, "", max_age=0, expires=0, **self._cookie_options()
        )

    def set_refresh_cookie(self, cookies: CookieJar, token: str) -> None:
        cookies.set_cookie(
            self.settings.refresh_cookie_name,
            token,
            max_age=self.settings.refresh_token_ttl_seconds,
            **self._cookie_options(),
        )

    def clear_refresh_cookie(self, cookies: CookieJar) -> None:
        cookies.set_cookie(
            self.settings.refresh_cookie_name,
            "",
            max_age=0,
            expires=0,
            **self._cookie_options(),
        )

    def issue_csrf_token(self, cookies: CookieJar) -> str:
        """Set a fresh double-submit CSRF cookie and return its value for the client."""
        token = secrets.token_urlsafe(32)
        cookies.set_cookie(
            self.settings.csrf_cookie_name,
            token,
            max_age=self.settings.csrf_token_ttl_seconds,
            **self._cookie_options(),
        )
        return token


def csrf_tokens_match(cookie_token: Optional[str], header_token: Optional[str]) -> bool:
    if not cookie_token or not header_token:
        return False
    return hmac.compare_digest(cookie_token.encode(), header_token.encode())
