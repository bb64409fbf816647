from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional, Protocol

from benefitsai.config import Settings
from benefitsai.logging import get_logger, get_security_logger
from benefitsai.service.access import AuthContext
from benefitsai.service.errors import (
    AuthenticationError,
    IdentityProviderUnavailable,
    InvalidCredential,
    SessionIssuanceFailed,
    StoreUnavailable,
    TokenReuseDetected,
)
from benefitsai.service.refresh_tokens import RefreshTokenStore, generate_token
from benefitsai.service.roles import (
    DEFAULT_ROLE,
    ResolvedRole,
    merge_with_directory,
    resolve,
)
from benefitsai.service.session import CookieJar, SessionCookie, SessionIssuer
from benefitsai.service.verifier import CredentialKind, DecodedClaims, TokenVerifier
from benefitsai.storage.errors import BackendUnavailable, ConstraintViolation, DuplicateToken
from benefitsai.storage.models import Company, TokenState, User

logger = get_logger(__name__)
security_log = get_security_logger()


class UserDirectory(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def create_user(
        self,
        email: Optional[str],
        *,
        user_id: Optional[str] = None,
        role: str = "employee",
        company_id: Optional[str] = None,
        display_name: Optional[str] = None,
        is_active: bool = True,
    ) -> User: ...

    def list_users(self, company_id: Optional[str] = None, limit: int = 100) -> List[User]: ...

    def update_user_role(self, user_id: str, role: str) -> Optional[User]: ...

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]: ...

    def get_company(self, company_id: str) -> Optional[Company]: ...


@contextmanager
def directory_errors(operation: str) -> Iterator[None]:
    """Translate directory outages into StoreUnavailable."""
    try:
        yield
    except BackendUnavailable as exc:
        logger.error("directory_unavailable", operation=operation, error=str(exc))
        raise StoreUnavailable("user directory unavailable") from exc


class SessionCutoffStore(Protocol):
    async def set_session_cutoff(self, user_id: str, cutoff: float, ttl_seconds: int) -> None: ...

    async def get_session_cutoff(self, user_id: str) -> Optional[float]: ...


@dataclass(frozen=True)
class IdentitySummary:
    uid: str
    email: Optional[str]
    role: str
    company_id: Optional[str]


class AuthService:
    """Session and refresh-token flows on top of the verifier, issuer and token store."""

    def __init__(
        self,
        *,
        directory: UserDirectory,
        verifier: TokenVerifier,
        issuer: SessionIssuer,
        refresh_tokens: RefreshTokenStore,
        cutoffs: SessionCutoffStore,
        settings: Settings,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.directory = directory
        self.verifier = verifier
        self.issuer = issuer
        self.refresh_tokens = refresh_tokens
        self.cutoffs = cutoffs
        self.settings = settings
        self._clock = clock

    def _provision(self, claims: DecodedClaims) -> User:
        """Fetch the directory record for ``claims``, creating it on first sign-in."""
        user = self.directory.get_user(claims.subject)
        if user is not None:
            return user
        resolved = resolve(claims.claims)
        try:
            user = self.directory.create_user(
                claims.email,
                user_id=claims.subject,
                role=resolved.role.value,
                company_id=resolved.company_id,
            )
        except ConstraintViolation as exc:
            logger.warning(
                "user_provision_conflict", user_id=claims.subject, detail=exc.detail
            )
            raise SessionIssuanceFailed("invalid or expired credential", status_code=401) from exc
        security_log.info(
            "user_provisioned",
            user_id=user.id,
            role=user.role,
            company_id=user.company_id,
        )
        return user

    async def _new_refresh_token(self, user_id: str) -> str:
        for _ in range(3):
            token = generate_token()
            try:
                await self.refresh_tokens.store(
                    token, user_id, self.settings.refresh_token_ttl_seconds
                )
                return token
            except DuplicateToken:
                logger.warning("refresh_token_collision", user_id=user_id)
        raise StoreUnavailable("could not allocate refresh token")

    async def create_session(self, id_token: str, cookies: CookieJar) -> SessionCookie:
        """Exchange an ID token for session and refresh cookies.

        Cookies are only written once every check and store write succeeded.
        """
        claims = await self.issuer.verify_for_issuance(id_token)
        try:
            with directory_errors("provision_user"):
                user = self._provision(claims)
        except StoreUnavailable as exc:
            raise SessionIssuanceFailed("failed to create session", status_code=500) from exc
        if not user.is_active:
            security_log.warning("session_denied_inactive_user", user_id=user.id)
            raise SessionIssuanceFailed("invalid or expired credential", status_code=401)
        resolved = merge_with_directory(resolve(claims.claims), user)
        try:
            refresh_token = await self._new_refresh_token(user.id)
        except StoreUnavailable as exc:
            raise SessionIssuanceFailed("failed to create session", status_code=500) from exc
        session = self.issuer.issue_session(claims, cookies, resolved=resolved)
        self.issuer.set_refresh_cookie(cookies, refresh_token)
        security_log.info(
            "session_created",
            user_id=user.id,
            role=resolved.role.value,
            company_id=resolved.company_id,
            session_id=session.session_id,
        )
        return session

    async def refresh(self, refresh_token: Optional[str], cookies: CookieJar) -> SessionCookie:
        """Rotate ``refresh_token`` and re-mint both cookies.

        A consumed token, or losing a concurrent rotation, counts as reuse:
        every refresh token of the owner is revoked and TokenReuseDetected is
        raised.
        """
        if not refresh_token:
            raise AuthenticationError("invalid refresh token")
        try:
            record = await self.refresh_tokens.lookup(refresh_token)
        except StoreUnavailable as exc:
            raise AuthenticationError("invalid refresh token") from exc
        if record is None:
            raise AuthenticationError("invalid refresh token")

        state = record.effective_state()
        if state is TokenState.CONSUMED:
            await self._handle_reuse(record.user_id, reason="consumed_token_presented")
        if state is not TokenState.ISSUED:
            logger.info("refresh_token_rejected", user_id=record.user_id, token_state=state.value)
            raise AuthenticationError("invalid refresh token")

        try:
            with directory_errors("refresh_lookup_user"):
                user = self.directory.get_user(record.user_id)
        except StoreUnavailable as exc:
            raise AuthenticationError("invalid refresh token") from exc
        if user is None or not user.is_active:
            try:
                await self.refresh_tokens.revoke(refresh_token)
            except StoreUnavailable:
                logger.error("refresh_revoke_failed", user_id=record.user_id)
            security_log.warning("refresh_denied_inactive_user", user_id=record.user_id)
            raise AuthenticationError("invalid refresh token")

        new_token = generate_token()
        try:
            rotated = await self.refresh_tokens.rotate(
                refresh_token, new_token, user.id, self.settings.refresh_token_ttl_seconds
            )
        except (StoreUnavailable, DuplicateToken) as exc:
            raise AuthenticationError("invalid refresh token") from exc
        if not rotated:
            await self._handle_reuse(user.id, reason="rotation_lost")

        resolved = merge_with_directory(ResolvedRole(role=DEFAULT_ROLE), user)
        claims = DecodedClaims(
            subject=user.id,
            email=user.email,
            expires_at=record.expires_at,
            kind=CredentialKind.SESSION_COOKIE,
        )
        session = self.issuer.issue_session(claims, cookies, resolved=resolved)
        self.issuer.set_refresh_cookie(cookies, new_token)
        logger.info("session_refreshed", user_id=user.id, session_id=session.session_id)
        return session

    async def _handle_reuse(self, user_id: str, *, reason: str) -> None:
        revoked: Optional[int] = None
        try:
            revoked = await self.refresh_tokens.revoke_all(user_id)
        except StoreUnavailable:
            logger.error("reuse_revocation_failed", user_id=user_id)
        sessions_revoked = False
        if self.settings.revoke_sessions_on_reuse:
            sessions_revoked = await self._set_cutoff(user_id)
        security_log.error(
            "refresh_token_reuse_detected",
            user_id=user_id,
            reason=reason,
            refresh_tokens_revoked=revoked,
            sessions_revoked=sessions_revoked,
        )
        raise TokenReuseDetected(user_id=user_id)

    async def _set_cutoff(self, user_id: str) -> bool:
        try:
            await self.cutoffs.set_session_cutoff(
                user_id, self._clock(), self.settings.session_ttl_seconds
            )
        except Exception as exc:
            logger.error(
                "session_cutoff_write_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        return True

    async def invalidate_sessions(self, user_id: str) -> bool:
        """End every session issued so far; refresh tokens stay usable."""
        ok = await self._set_cutoff(user_id)
        if not ok:
            raise StoreUnavailable("session store unavailable")
        return ok

    async def revoke_everywhere(self, user_id: str) -> int:
        """Sign a user out on every device: refresh tokens and sessions."""
        revoked = await self.refresh_tokens.revoke_all(user_id)
        await self.invalidate_sessions(user_id)
        security_log.info("user_signed_out_everywhere", user_id=user_id, refresh_tokens_revoked=revoked)
        return revoked

    async def sign_out(self, refresh_token: Optional[str], cookies: CookieJar) -> None:
        """Clear both cookies and revoke the presented refresh token; never fails."""
        if refresh_token:
            try:
                await self.refresh_tokens.revoke(refresh_token)
            except StoreUnavailable:
                logger.error("sign_out_revoke_failed")
        self.issuer.destroy_session(cookies)
        self.issuer.clear_refresh_cookie(cookies)

    async def authenticate(
        self,
        authorization: Optional[str] = None,
        session_cookie: Optional[str] = None,
    ) -> Optional[AuthContext]:
        """Resolve the caller from a bearer ID token or the session cookie.

        Any verification failure, including provider or store outages, yields
        None so callers fail closed.
        """
        try:
            if authorization:
                claims = await self.verifier.verify_bearer(authorization)
                with directory_errors("authenticate_lookup_user"):
                    user = self.directory.get_user(claims.subject)
                if user is not None and not user.is_active:
                    security_log.warning("bearer_denied_inactive_user", user_id=user.id)
                    return None
                resolved = merge_with_directory(resolve(claims.claims), user)
                return AuthContext(
                    user_id=claims.subject,
                    role=resolved.role,
                    company_id=resolved.company_id,
                    email=claims.email,
                    via=CredentialKind.ID_TOKEN,
                )
            if session_cookie:
                claims = await self.verifier.verify_session_cookie(session_cookie)
                return AuthContext(
                    user_id=claims.subject,
                    role=claims.role or resolve(claims.claims).role,
                    company_id=claims.company_id,
                    email=claims.email,
                    via=CredentialKind.SESSION_COOKIE,
                    session_id=claims.session_id,
                )
        except (
            InvalidCredential,
            AuthenticationError,
            IdentityProviderUnavailable,
            StoreUnavailable,
        ) as exc:
            logger.info("authentication_failed", reason=exc.error_code)
            return None
        return None

    async def describe_id_token(self, id_token: Optional[str]) -> IdentitySummary:
        try:
            claims = await self.verifier.verify(id_token, CredentialKind.ID_TOKEN)
        except IdentityProviderUnavailable as exc:
            raise AuthenticationError("invalid or expired credential") from exc
        with directory_errors("describe_lookup_user"):
            user = self.directory.get_user(claims.subject)
        resolved = merge_with_directory(resolve(claims.claims), user)
        return IdentitySummary(
            uid=claims.subject,
            email=claims.email,
            role=resolved.role.value,
            company_id=resolved.company_id,
        )

    async def describe_session(self, session_cookie: Optional[str]) -> IdentitySummary:
        claims = await self.verifier.verify(session_cookie, CredentialKind.SESSION_COOKIE)
        role = claims.role or resolve(claims.claims).role
        return IdentitySummary(
            uid=claims.subject,
            email=claims.email,
            role=role.value,
            company_id=claims.company_id,
        )
