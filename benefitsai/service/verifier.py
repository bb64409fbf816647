from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Protocol

from benefitsai.logging import get_logger
from benefitsai.service.errors import (
    AuthenticationError,
    ExpiredOrInvalid,
    IdentityProviderUnavailable,
    InvalidCredential,
)
from benefitsai.service.identity import IdentityProvider
from benefitsai.service.roles import Role, normalize_role
from benefitsai.service.session import SessionCodec

logger = get_logger(__name__)

MAX_CREDENTIAL_LENGTH = 8192


class CredentialKind(str, Enum):
    ID_TOKEN = "id_token"
    SESSION_COOKIE = "session_cookie"


class SessionCutoffSource(Protocol):
    async def get_session_cutoff(self, user_id: str) -> Optional[float]:
        ...


@dataclass
class DecodedClaims:
    subject: str
    email: Optional[str]
    expires_at: datetime
    kind: CredentialKind
    claims: dict[str, Any] = field(default_factory=dict)
    role: Optional[Role] = None
    company_id: Optional[str] = None
    session_id: Optional[str] = None
    issued_at: Optional[datetime] = None


def _require_credential(credential: Any) -> str:
    if not isinstance(credential, str):
        raise InvalidCredential("credential is required")
    value = credential.strip()
    if not value:
        raise InvalidCredential("credential is required")
    if len(value) > MAX_CREDENTIAL_LENGTH:
        raise InvalidCredential("credential is malformed")
    return value


def extract_bearer(authorization: Optional[str]) -> str:
    if not authorization:
        raise InvalidCredential("credential is required")
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise InvalidCredential("credential is malformed")
    return token.strip()


class TokenVerifier:
    """Validates ID tokens and session cookies into :class:`DecodedClaims`.

    ID tokens go to the configured identity provider. Session cookies are
    checked locally against the session codec and, when a cutoff source is
    wired, the user's session revocation cutoff. Nothing is persisted here.
    """

    def __init__(
        self,
        provider: IdentityProvider,
        codec: SessionCodec,
        *,
        cutoffs: Optional[SessionCutoffSource] = None,
        provider_timeout: float = 5.0,
        store_timeout: float = 2.0,
    ) -> None:
        self.provider = provider
        self.codec = codec
        self.cutoffs = cutoffs
        self.provider_timeout = provider_timeout
        self.store_timeout = store_timeout

    async def verify(self, credential: Any, kind: CredentialKind) -> DecodedClaims:
        value = _require_credential(credential)
        if CredentialKind(kind) is CredentialKind.ID_TOKEN:
            return await self._verify_id_token(value)
        return await self._verify_session(value)

    async def verify_bearer(self, authorization: Optional[str]) -> DecodedClaims:
        """Entry point for ``Authorization: Bearer <id token>`` callers."""
        return await self.verify(extract_bearer(authorization), CredentialKind.ID_TOKEN)

    async def verify_session_cookie(self, value: Optional[str]) -> DecodedClaims:
        """Entry point for browser requests carrying the session cookie."""
        return await self.verify(value, CredentialKind.SESSION_COOKIE)

    async def _verify_id_token(self, token: str) -> DecodedClaims:
        try:
            record = await asyncio.wait_for(
                self.provider.verify_credential(token), timeout=self.provider_timeout
            )
        except (ExpiredOrInvalid, IdentityProviderUnavailable):
            raise
        except asyncio.TimeoutError as exc:
            logger.error("identity_provider_timeout", provider=self.provider.name)
            raise IdentityProviderUnavailable("identity provider unavailable") from exc
        except Exception as exc:
            logger.error(
                "identity_provider_error",
                provider=self.provider.name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise IdentityProviderUnavailable("identity provider unavailable") from exc
        return DecodedClaims(
            subject=record.subject,
            email=record.email,
            expires_at=record.expires_at,
            kind=CredentialKind.ID_TOKEN,
            claims=dict(record.claims),
        )

    async def _verify_session(self, token: str) -> DecodedClaims:
        payload = self.codec.decode(token)
        if payload is None:
            raise ExpiredOrInvalid("invalid or expired session")
        subject = str(payload["sub"])
        issued_ms = payload.get("iat_ms") or int(payload.get("iat", 0)) * 1000
        if self.cutoffs is not None:
            await self._check_cutoff(subject, issued_ms)
        return DecodedClaims(
            subject=subject,
            email=payload.get("email"),
            expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
            kind=CredentialKind.SESSION_COOKIE,
            claims={"role": payload.get("role"), "companyId": payload.get("company_id")},
            role=normalize_role(payload.get("role")),
            company_id=payload.get("company_id"),
            session_id=payload.get("sid"),
            issued_at=datetime.fromtimestamp(issued_ms / 1000.0, tz=timezone.utc),
        )

    async def _check_cutoff(self, subject: str, issued_ms: int) -> None:
        try:
            cutoff = await asyncio.wait_for(
                self.cutoffs.get_session_cutoff(subject), timeout=self.store_timeout
            )
        except Exception as exc:
            # Fail closed: an unreachable store must not let a revoked session through
            logger.error(
                "session_cutoff_check_failed",
                user_id=subject,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise AuthenticationError("session could not be verified") from exc
        if cutoff is not None and issued_ms < cutoff * 1000:
            raise ExpiredOrInvalid("invalid or expired session")
