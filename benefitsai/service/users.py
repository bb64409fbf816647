from __future__ import annotations

from typing import List, Optional

from benefitsai.logging import get_security_logger
from benefitsai.service.access import (
    AuthContext,
    check_role,
    ensure_can_manage_role,
    ensure_not_self,
    ensure_outranks,
    ensure_same_company,
    requires_role,
)
from benefitsai.service.auth import AuthService, UserDirectory, directory_errors
from benefitsai.service.errors import NotFoundError, ValidationError
from benefitsai.service.roles import Role, normalize_role, parse_role
from benefitsai.storage.models import User

audit_log = get_security_logger()

COMPANY_MANAGERS = (Role.HR_ADMIN, Role.COMPANY_ADMIN)


class UserAdminService:
    """Tenant-scoped user management behind the access gate."""

    def __init__(self, directory: UserDirectory, auth: AuthService) -> None:
        self.directory = directory
        self.auth = auth

    @requires_role(roles=COMPANY_MANAGERS, action="list_employees")
    async def list_company_employees(
        self, ctx: AuthContext, company_id: Optional[str] = None, *, limit: int = 100
    ) -> List[User]:
        target_company = company_id or ctx.company_id
        ensure_same_company(ctx, target_company, action="list_employees")
        with directory_errors("list_users"):
            return self.directory.list_users(company_id=target_company, limit=limit)

    @requires_role(roles=COMPANY_MANAGERS, action="deactivate_employee")
    async def deactivate_employee(self, ctx: AuthContext, user_id: str) -> User:
        ensure_not_self(ctx, user_id, action="deactivate_employee")
        with directory_errors("get_user"):
            target = self.directory.get_user(user_id)
        if target is None:
            raise NotFoundError("user not found")
        ensure_same_company(ctx, target.company_id, action="deactivate_employee")
        ensure_outranks(ctx, normalize_role(target.role), action="deactivate_employee")

        with directory_errors("set_user_active"):
            updated = self.directory.set_user_active(user_id, False) or target
        revoked = await self.auth.revoke_everywhere(user_id)
        audit_log.info(
            "employee_deactivated",
            actor_id=ctx.user_id,
            user_id=user_id,
            company_id=target.company_id,
            refresh_tokens_revoked=revoked,
        )
        return updated

    @requires_role(min_role=Role.PLATFORM_ADMIN, action="assign_role")
    async def assign_role(self, ctx: AuthContext, user_id: str, role: str) -> User:
        try:
            new_role = parse_role(role)
        except ValueError as exc:
            raise ValidationError("invalid role", detail={"role": role}) from exc
        ensure_not_self(ctx, user_id, action="assign_role")
        with directory_errors("get_user"):
            target = self.directory.get_user(user_id)
        if target is None:
            raise NotFoundError("user not found")
        current_role = normalize_role(target.role)
        ensure_can_manage_role(ctx, new_role, current_role=current_role)

        with directory_errors("update_user_role"):
            updated = self.directory.update_user_role(user_id, new_role.value) or target
        # Sessions embed the role; force a refresh so the new role takes effect
        await self.auth.invalidate_sessions(user_id)
        audit_log.info(
            "role_assigned",
            actor_id=ctx.user_id,
            user_id=user_id,
            previous_role=current_role.value,
            role=new_role.value,
        )
        return updated

    async def revoke_user_sessions(self, ctx: AuthContext, user_id: str) -> int:
        """Sign ``user_id`` out everywhere; self-service or platform_admin and above."""
        if ctx.user_id != user_id:
            check_role(ctx, min_role=Role.PLATFORM_ADMIN, action="revoke_sessions")
        return await self.auth.revoke_everywhere(user_id)
