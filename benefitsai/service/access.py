from __future__ import annotations

import functools
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional

from benefitsai.logging import get_security_logger
from benefitsai.service.errors import AuthenticationError, ForbiddenError
from benefitsai.service.roles import Role, assignable_roles, normalize_role
from benefitsai.service.verifier import CredentialKind

security_log = get_security_logger()


@dataclass(frozen=True)
class AuthContext:
    """The resolved caller of a protected operation."""

    user_id: str
    role: Role
    company_id: Optional[str] = None
    email: Optional[str] = None
    via: CredentialKind = CredentialKind.SESSION_COOKIE
    session_id: Optional[str] = None


def _normalize_policy(
    min_role: Optional[Role | str], roles: Optional[Iterable[Role | str]]
) -> tuple[Optional[Role], Optional[frozenset[Role]]]:
    if min_role is not None and roles is not None:
        raise ValueError("pass either min_role or roles, not both")
    floor = normalize_role(min_role) if min_role is not None else None
    allowed = frozenset(normalize_role(r) for r in roles) if roles is not None else None
    return floor, allowed


def role_satisfies(
    role: Role,
    *,
    min_role: Optional[Role | str] = None,
    roles: Optional[Iterable[Role | str]] = None,
) -> bool:
    floor, allowed = _normalize_policy(min_role, roles)
    if allowed is not None:
        return role in allowed
    if floor is not None:
        return role.at_least(floor)
    return True


def _deny(ctx: AuthContext, action: str, reason: str, **extra: Any) -> ForbiddenError:
    security_log.warning(
        "access_denied",
        user_id=ctx.user_id,
        role=ctx.role.value,
        company_id=ctx.company_id,
        action=action,
        reason=reason,
        **extra,
    )
    return ForbiddenError("forbidden", detail={"reason": reason})


def check_role(
    ctx: Optional[AuthContext],
    *,
    min_role: Optional[Role | str] = None,
    roles: Optional[Iterable[Role | str]] = None,
    action: str = "",
) -> AuthContext:
    """Raise Unauthorized without a caller and Forbidden when the role falls short."""
    if ctx is None:
        raise AuthenticationError("authentication required")
    if not role_satisfies(ctx.role, min_role=min_role, roles=roles):
        raise _deny(ctx, action, "insufficient_role")
    return ctx


def ensure_same_company(
    ctx: AuthContext, resource_company_id: Optional[str], *, action: str = ""
) -> None:
    """Tenant check: any role acting on another company's resource is denied."""
    if not ctx.company_id or ctx.company_id != resource_company_id:
        raise _deny(
            ctx, action, "tenant_mismatch", resource_company_id=resource_company_id
        )


def ensure_not_self(ctx: AuthContext, target_user_id: str, *, action: str = "") -> None:
    if ctx.user_id == target_user_id:
        raise _deny(ctx, action, "self_action")


def ensure_outranks(ctx: AuthContext, target_role: Role, *, action: str = "") -> None:
    """Deny acting on a user at or above the caller's own level (super_admin excepted)."""
    if ctx.role is not Role.SUPER_ADMIN and target_role.level >= ctx.role.level:
        raise _deny(ctx, action, "target_not_manageable", target_role=target_role.value)


def ensure_can_manage_role(
    ctx: AuthContext,
    new_role: Role,
    *,
    current_role: Optional[Role] = None,
    action: str = "assign_role",
) -> None:
    """Only grant roles below your own, and only to users below you."""
    if new_role not in assignable_roles(ctx.role):
        raise _deny(ctx, action, "role_not_assignable", requested_role=new_role.value)
    if current_role is not None:
        ensure_outranks(ctx, current_role, action=action)


def requires_role(
    *,
    min_role: Optional[Role | str] = None,
    roles: Optional[Iterable[Role | str]] = None,
    action: Optional[str] = None,
) -> Callable[[Callable[..., Awaitable[Any]]], Callable[..., Awaitable[Any]]]:
    """Decorator form of the gate for service methods taking ``ctx`` first.

    Usage:
        @requires_role(min_role=Role.PLATFORM_ADMIN)
        async def assign_role(self, ctx: AuthContext, user_id: str, role: Role):
            ...

    The wrapped coroutine never starts unless the policy allows ``ctx``.
    """
    floor, allowed = _normalize_policy(min_role, roles)

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        name = action or func.__name__

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            ctx = kwargs.get("ctx")
            if ctx is None:
                ctx = next((a for a in args if isinstance(a, AuthContext)), None)
            check_role(ctx, min_role=floor, roles=allowed, action=name)
            return await func(*args, **kwargs)

        return wrapper

    return decorator
