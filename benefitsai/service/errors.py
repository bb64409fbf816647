from __future__ import annotations

from typing import Dict, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    ``message`` is what the client sees and must stay generic; anything that
    could help enumerate users or reveal internals belongs in ``detail``, which
    is only logged.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidCredential(ValidationError):
    """Credential missing, empty or malformed (400)."""
    error_code = "invalid_credential"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


Unauthorized = AuthenticationError


class ExpiredOrInvalid(AuthenticationError):
    """Identity provider or session codec rejected the credential (401)."""
    error_code = "expired_or_invalid"


class TokenReuseDetected(AuthenticationError):
    """A consumed or revoked refresh token was presented again (401)."""
    error_code = "token_reuse_detected"

    def __init__(self, message: str = "invalid refresh token", *, user_id: Optional[str] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.user_id = user_id


class SessionIssuanceFailed(ServiceError):
    """Session could not be minted.

    401 when the identity provider rejected the credential, 500 when the
    provider or store could not be reached.
    """
    status_code = 401
    error_code = "session_issuance_failed"


class ForbiddenError(ServiceError):
    """Access denied: insufficient role, tenant mismatch or self-action (403)."""
    status_code = 403
    error_code = "forbidden"


Forbidden = ForbiddenError


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class RateLimitExceeded(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "too many requests",
        *,
        retry_after: int = 1,
        headers: Optional[Dict[str, str]] = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = max(1, int(retry_after))
        self.headers = dict(headers or {})


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class IdentityProviderUnavailable(ServerError):
    """Identity provider timed out or returned a transport error (500)."""
    error_code = "identity_provider_unavailable"


class StoreUnavailable(ServerError):
    """Shared token store timed out or failed (500)."""
    error_code = "store_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidCredential",
    "AuthenticationError",
    "Unauthorized",
    "ExpiredOrInvalid",
    "TokenReuseDetected",
    "SessionIssuanceFailed",
    "ForbiddenError",
    "Forbidden",
    "NotFoundError",
    "RateLimitExceeded",
    "ServerError",
    "IdentityProviderUnavailable",
    "StoreUnavailable",
]
