from __future__ import annotations

from typing import Iterable, Optional

from fastapi import Depends, Header, Request, Response

from benefitsai.config import EndpointClass
from benefitsai.logging import bind_request_context
from benefitsai.service.access import AuthContext, check_role
from benefitsai.service.errors import AuthenticationError, RateLimitExceeded
from benefitsai.service.rate_limit import RateLimitResult, rate_limit_key
from benefitsai.service.roles import Role
from benefitsai.service.runtime import Runtime


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def client_ip(request: Request) -> Optional[str]:
    """First X-Forwarded-For hop, else the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else None


async def get_optional_auth_context(
    request: Request,
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> Optional[AuthContext]:
    session_cookie = request.cookies.get(runtime.settings.session_cookie_name)
    if not authorization and not session_cookie:
        return None
    ctx = await runtime.auth.authenticate(authorization, session_cookie)
    if ctx is not None:
        bind_request_context(user_id=ctx.user_id, company_id=ctx.company_id)
    return ctx


async def get_auth_context(
    ctx: Optional[AuthContext] = Depends(get_optional_auth_context),
) -> AuthContext:
    if ctx is None:
        raise AuthenticationError("authentication required")
    return ctx


def require_role(
    min_role: Optional[Role | str] = None,
    roles: Optional[Iterable[Role | str]] = None,
    *,
    action: str = "",
):
    """Dependency factory: the resolved caller, or 401/403 before the handler runs."""
    allowed = tuple(roles) if roles is not None else None

    async def dependency(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
        return check_role(ctx, min_role=min_role, roles=allowed, action=action)

    return dependency


async def _enforce(
    runtime: Runtime,
    request: Request,
    response: Response,
    endpoint_class: EndpointClass,
    user_id: Optional[str],
) -> RateLimitResult:
    max_requests, window_ms = runtime.settings.rate_limit_for(endpoint_class)
    key = rate_limit_key(endpoint_class.value, client_ip(request), user_id)
    result = await runtime.rate_limiter.check(key, max_requests, window_ms)
    headers = result.headers()
    if not result.allowed:
        raise RateLimitExceeded(retry_after=result.retry_after(), headers=headers)
    for name, value in headers.items():
        response.headers[name] = value
    return result


def rate_limited(endpoint_class: EndpointClass | str, *, per_user: bool = False):
    """Dependency factory applying the limits of ``endpoint_class``.

    With ``per_user`` the key includes the authenticated caller, so the
    dependency also requires authentication.
    """
    cls = EndpointClass(endpoint_class)

    if per_user:

        async def dependency(
            request: Request,
            response: Response,
            ctx: AuthContext = Depends(get_auth_context),
            runtime: Runtime = Depends(get_runtime),
        ) -> RateLimitResult:
            return await _enforce(runtime, request, response, cls, ctx.user_id)

        return dependency

    async def anonymous_dependency(
        request: Request,
        response: Response,
        runtime: Runtime = Depends(get_runtime),
    ) -> RateLimitResult:
        return await _enforce(runtime, request, response, cls, None)

    return anonymous_dependency
