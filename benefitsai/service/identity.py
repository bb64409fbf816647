from __future__ import annotations

import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol

import httpx

from benefitsai.config import IdentityProviderKind, Settings
from benefitsai.logging import get_logger
from benefitsai.service.errors import (
    ExpiredOrInvalid,
    IdentityProviderUnavailable,
    ServerError,
)
from benefitsai.service.signing import HS256Signer, unverified_payload

logger = get_logger(__name__)

LOCAL_IDP_AUDIENCE = "benefitsai"
FIREBASE_LOOKUP_URL = "https://identitytoolkit.googleapis.com/v1/accounts:lookup"
_FIREBASE_REJECTIONS = {
    "INVALID_ID_TOKEN",
    "TOKEN_EXPIRED",
    "USER_NOT_FOUND",
    "USER_DISABLED",
    "CREDENTIAL_TOO_OLD_LOGIN_AGAIN",
}


@dataclass
class IdentityRecord:
    """What an identity provider vouches for after verifying a credential."""

    subject: str
    email: Optional[str]
    expires_at: datetime
    claims: dict[str, Any] = field(default_factory=dict)


class IdentityProvider(Protocol):
    name: str

    async def verify_credential(self, id_token: str) -> IdentityRecord:
        """Raise ExpiredOrInvalid on rejection, IdentityProviderUnavailable on outage."""

    async def mint_credential(
        self,
        subject: str,
        *,
        email: Optional[str] = None,
        claims: Optional[dict[str, Any]] = None,
    ) -> str:
        ...

    async def close(self) -> None:
        ...


class LocalIdentityProvider:
    """Issues and verifies HMAC-signed ID tokens itself.

    Used for development, tests and the admin bootstrap script where no
    hosted identity provider is available.
    """

    name = "local"

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        token_ttl: timedelta = timedelta(hours=1),
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._signer = HS256Signer(
            secret, issuer=issuer, audience=LOCAL_IDP_AUDIENCE, clock=clock
        )
        self._clock = clock
        self.token_ttl = token_ttl

    async def verify_credential(self, id_token: str) -> IdentityRecord:
        payload = self._signer.decode(id_token)
        if not payload or payload.get("token_type") != "id" or not payload.get("sub"):
            raise ExpiredOrInvalid("invalid or expired credential")
        claims = {
            k: v
            for k, v in payload.items()
            if k not in {"iss", "aud", "iat", "exp", "token_type", "jti"}
        }
        return IdentityRecord(
            subject=str(payload["sub"]),
            email=payload.get("email"),
            expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
            claims=claims,
        )

    async def mint_credential(
        self,
        subject: str,
        *,
        email: Optional[str] = None,
        claims: Optional[dict[str, Any]] = None,
        ttl: Optional[timedelta] = None,
    ) -> str:
        now = int(self._clock())
        lifetime = ttl if ttl is not None else self.token_ttl
        payload: dict[str, Any] = {**(claims or {})}
        payload.update(
            {
                "sub": subject,
                "iat": now,
                "exp": now + int(lifetime.total_seconds()),
                "jti": str(uuid.uuid4()),
                "token_type": "id",
            }
        )
        if email:
            payload["email"] = email
        return self._signer.encode(payload)

    async def close(self) -> None:
        return None


class FirebaseIdentityProvider:
    """Verifies Firebase Auth ID tokens through the Identity Toolkit REST API."""

    name = "firebase"

    def __init__(
        self,
        api_key: str,
        *,
        project_id: Optional[str] = None,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not api_key:
            raise ValueError("FIREBASE_API_KEY is required for the firebase identity provider")
        self.api_key = api_key
        self.project_id = project_id
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def verify_credential(self, id_token: str) -> IdentityRecord:
        payload = unverified_payload(id_token)
        if payload is None:
            raise ExpiredOrInvalid("invalid or expired credential")
        if self.project_id and payload.get("aud") != self.project_id:
            logger.warning("firebase_audience_mismatch", audience=payload.get("aud"))
            raise ExpiredOrInvalid("invalid or expired credential")

        try:
            resp = await self._client.post(
                FIREBASE_LOOKUP_URL,
                params={"key": self.api_key},
                json={"idToken": id_token},
            )
        except httpx.TimeoutException as exc:
            logger.error("identity_provider_timeout", provider=self.name, error=str(exc))
            raise IdentityProviderUnavailable("identity provider unavailable") from exc
        except httpx.HTTPError as exc:
            logger.error(
                "identity_provider_transport_error",
                provider=self.name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise IdentityProviderUnavailable("identity provider unavailable") from exc

        if resp.status_code == 400:
            reason = self._error_reason(resp)
            if reason in _FIREBASE_REJECTIONS or reason.startswith("INVALID_ID_TOKEN"):
                logger.info("identity_provider_rejected", provider=self.name, reason=reason)
                raise ExpiredOrInvalid("invalid or expired credential")
        if resp.status_code != 200:
            logger.error(
                "identity_provider_bad_status",
                provider=self.name,
                status_code=resp.status_code,
            )
            raise IdentityProviderUnavailable("identity provider unavailable")

        try:
            users = resp.json().get("users") or []
        except ValueError as exc:
            raise IdentityProviderUnavailable("identity provider unavailable") from exc
        if not users:
            raise ExpiredOrInvalid("invalid or expired credential")
        account = users[0]
        if account.get("disabled"):
            raise ExpiredOrInvalid("invalid or expired credential")

        claims = {
            k: v
            for k, v in payload.items()
            if k not in {"iss", "aud", "iat", "exp", "auth_time", "firebase"}
        }
        custom = account.get("customAttributes")
        if custom:
            try:
                claims["custom_claims"] = json.loads(custom)
            except ValueError:
                logger.warning("firebase_custom_attributes_invalid", subject=account.get("localId"))

        subject = account.get("localId") or payload.get("sub")
        if not subject:
            raise ExpiredOrInvalid("invalid or expired credential")
        try:
            expires_at = datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc)
        except (KeyError, TypeError, ValueError):
            raise ExpiredOrInvalid("invalid or expired credential")
        return IdentityRecord(
            subject=str(subject),
            email=account.get("email") or payload.get("email"),
            expires_at=expires_at,
            claims=claims,
        )

    @staticmethod
    def _error_reason(resp: httpx.Response) -> str:
        try:
            return str(resp.json().get("error", {}).get("message", ""))
        except (ValueError, AttributeError):
            return ""

    async def mint_credential(
        self,
        subject: str,
        *,
        email: Optional[str] = None,
        claims: Optional[dict[str, Any]] = None,
    ) -> str:
        # Custom tokens need a service-account signer; clients sign in through Firebase directly
        raise ServerError("credential minting is not available with the firebase provider")

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def build_identity_provider(
    settings: Settings, *, client: Optional[httpx.AsyncClient] = None
) -> IdentityProvider:
    """Construct the single identity provider selected by IDENTITY_PROVIDER."""
    if settings.identity_provider == IdentityProviderKind.FIREBASE:
        return FirebaseIdentityProvider(
            settings.firebase_api_key or "",
            project_id=settings.firebase_project_id,
            timeout=settings.identity_provider_timeout_seconds,
            client=client,
        )
    return LocalIdentityProvider(
        settings.local_idp_secret,
        issuer=settings.local_idp_issuer,
        token_ttl=timedelta(minutes=settings.local_idp_token_ttl_minutes),
    )
