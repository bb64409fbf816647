import pytest

from benefitsai.service.access import (
    AuthContext,
    check_role,
    ensure_can_manage_role,
    ensure_not_self,
    ensure_outranks,
    ensure_same_company,
    requires_role,
    role_satisfies,
)
from benefitsai.service.errors import AuthenticationError, ForbiddenError
from benefitsai.service.roles import Role


def _ctx(role=Role.COMPANY_ADMIN, company_id="company-a", user_id="admin-1"):
    return AuthContext(user_id=user_id, role=role, company_id=company_id)


def test_min_role_uses_the_hierarchy_and_role_sets_use_membership():
    assert role_satisfies(Role.SUPER_ADMIN, min_role=Role.HR_ADMIN)
    assert not role_satisfies(Role.EMPLOYEE, min_role="hr-admin")
    assert role_satisfies(Role.HR_ADMIN, roles=[Role.HR_ADMIN, Role.COMPANY_ADMIN])
    assert not role_satisfies(Role.SUPER_ADMIN, roles=[Role.HR_ADMIN, Role.COMPANY_ADMIN])
    assert role_satisfies(Role.EMPLOYEE)
    with pytest.raises(ValueError):
        role_satisfies(Role.EMPLOYEE, min_role=Role.HR_ADMIN, roles=[Role.HR_ADMIN])


def test_check_role_without_caller_is_unauthorized():
    with pytest.raises(AuthenticationError):
        check_role(None, min_role=Role.EMPLOYEE)


def test_check_role_with_insufficient_role_is_forbidden():
    with pytest.raises(ForbiddenError):
        check_role(_ctx(Role.EMPLOYEE), min_role=Role.HR_ADMIN)
    assert check_role(_ctx(), min_role=Role.HR_ADMIN).role is Role.COMPANY_ADMIN


def test_cross_tenant_access_is_forbidden_regardless_of_role():
    with pytest.raises(ForbiddenError) as excinfo:
        ensure_same_company(_ctx(Role.COMPANY_ADMIN, "company-a"), "company-b")
    assert excinfo.value.detail == {"reason": "tenant_mismatch"}

    with pytest.raises(ForbiddenError):
        ensure_same_company(_ctx(Role.SUPER_ADMIN, "company-a"), "company-b")
    ensure_same_company(_ctx(), "company-a")


def test_caller_without_company_cannot_touch_tenant_resources():
    with pytest.raises(ForbiddenError):
        ensure_same_company(_ctx(company_id=None), None)


def test_self_action_guard():
    with pytest.raises(ForbiddenError):
        ensure_not_self(_ctx(user_id="u1"), "u1", action="deactivate_employee")
    ensure_not_self(_ctx(user_id="u1"), "u2")


def test_outranks_guard():
    with pytest.raises(ForbiddenError):
        ensure_outranks(_ctx(Role.HR_ADMIN), Role.COMPANY_ADMIN)
    with pytest.raises(ForbiddenError):
        ensure_outranks(_ctx(Role.HR_ADMIN), Role.HR_ADMIN)
    ensure_outranks(_ctx(Role.HR_ADMIN), Role.EMPLOYEE)
    ensure_outranks(_ctx(Role.SUPER_ADMIN), Role.SUPER_ADMIN)


def test_actors_only_grant_roles_below_their_own():
    platform = _ctx(Role.PLATFORM_ADMIN, company_id=None)
    ensure_can_manage_role(platform, Role.COMPANY_ADMIN, current_role=Role.EMPLOYEE)
    with pytest.raises(ForbiddenError):
        ensure_can_manage_role(platform, Role.PLATFORM_ADMIN)
    with pytest.raises(ForbiddenError):
        ensure_can_manage_role(platform, Role.EMPLOYEE, current_role=Role.SUPER_ADMIN)
    ensure_can_manage_role(_ctx(Role.SUPER_ADMIN), Role.SUPER_ADMIN)


class _Service:
    def __init__(self):
        self.calls = []

    @requires_role(min_role=Role.PLATFORM_ADMIN)
    async def purge(self, ctx, target):
        self.calls.append(target)
        return target


async def test_decorator_runs_the_operation_only_when_allowed():
    service = _Service()

    assert await service.purge(_ctx(Role.SUPER_ADMIN), "t1") == "t1"
    with pytest.raises(ForbiddenError):
        await service.purge(_ctx(Role.COMPANY_ADMIN), "t2")
    with pytest.raises(AuthenticationError):
        await service.purge(None, "t3")
    assert await service.purge(ctx=_ctx(Role.PLATFORM_ADMIN), target="t4") == "t4"

    assert service.calls == ["t1", "t4"]
    assert service.purge.__name__ == "purge"
