from unittest.mock import MagicMock

import pytest

from benefitsai.service.access import AuthContext
from benefitsai.service.errors import (
    AuthenticationError,
    ExpiredOrInvalid,
    ForbiddenError,
    NotFoundError,
    StoreUnavailable,
    ValidationError,
)
from benefitsai.service.refresh_tokens import generate_token
from benefitsai.service.roles import Role
from benefitsai.storage.errors import BackendUnavailable


@pytest.fixture
def directory(runtime):
    store = runtime.store
    store.create_user("owner@a.com", user_id="admin-a", role="company_admin", company_id="company-a")
    store.create_user("hr@a.com", user_id="hr-a", role="hr_admin", company_id="company-a")
    store.create_user("emp@a.com", user_id="emp-a", role="employee", company_id="company-a")
    store.create_user("emp@b.com", user_id="emp-b", role="employee", company_id="company-b")
    store.create_user("ops@platform.com", user_id="platform-1", role="platform_admin")
    return store


def _ctx(user_id, role, company_id=None):
    return AuthContext(user_id=user_id, role=role, company_id=company_id)


COMPANY_ADMIN_A = _ctx("admin-a", Role.COMPANY_ADMIN, "company-a")
HR_ADMIN_A = _ctx("hr-a", Role.HR_ADMIN, "company-a")
PLATFORM = _ctx("platform-1", Role.PLATFORM_ADMIN)


async def test_company_admin_lists_only_own_company(runtime, directory):
    users = await runtime.users.list_company_employees(COMPANY_ADMIN_A)

    assert {u.id for u in users} == {"admin-a", "hr-a", "emp-a"}


async def test_listing_another_company_is_forbidden(runtime, directory):
    with pytest.raises(ForbiddenError):
        await runtime.users.list_company_employees(COMPANY_ADMIN_A, "company-b")


async def test_employee_cannot_list(runtime, directory):
    with pytest.raises(ForbiddenError):
        await runtime.users.list_company_employees(_ctx("emp-a", Role.EMPLOYEE, "company-a"))
    with pytest.raises(AuthenticationError):
        await runtime.users.list_company_employees(None)


async def test_deactivation_revokes_tokens_and_sessions(runtime, directory, clock):
    refresh_token = generate_token()
    await runtime.refresh_tokens.store(refresh_token, "emp-a", 3600)
    token, _ = runtime.codec.encode(subject="emp-a", email=None, role=Role.EMPLOYEE, company_id="company-a")
    clock.advance(1)

    user = await runtime.users.deactivate_employee(COMPANY_ADMIN_A, "emp-a")

    assert user.is_active is False
    assert await runtime.refresh_tokens.verify(refresh_token) is None
    with pytest.raises(ExpiredOrInvalid):
        await runtime.verifier.verify_session_cookie(token)


async def test_self_deactivation_is_forbidden(runtime, directory):
    with pytest.raises(ForbiddenError) as excinfo:
        await runtime.users.deactivate_employee(COMPANY_ADMIN_A, "admin-a")

    assert excinfo.value.detail == {"reason": "self_action"}
    assert directory.get_user("admin-a").is_active is True


async def test_cross_tenant_deactivation_is_forbidden(runtime, directory):
    with pytest.raises(ForbiddenError) as excinfo:
        await runtime.users.deactivate_employee(COMPANY_ADMIN_A, "emp-b")

    assert excinfo.value.detail == {"reason": "tenant_mismatch"}
    assert directory.get_user("emp-b").is_active is True


async def test_hr_admin_cannot_deactivate_a_company_admin(runtime, directory):
    with pytest.raises(ForbiddenError):
        await runtime.users.deactivate_employee(HR_ADMIN_A, "admin-a")


async def test_deactivating_unknown_user_is_not_found(runtime, directory):
    with pytest.raises(NotFoundError):
        await runtime.users.deactivate_employee(COMPANY_ADMIN_A, "ghost")


async def test_assign_role_updates_directory_and_ends_sessions(runtime, directory, clock):
    token, _ = runtime.codec.encode(subject="emp-a", email=None, role=Role.EMPLOYEE, company_id="company-a")
    clock.advance(1)

    user = await runtime.users.assign_role(PLATFORM, "emp-a", "HR-Admin")

    assert user.role == "hr_admin"
    with pytest.raises(ExpiredOrInvalid):
        await runtime.verifier.verify_session_cookie(token)


async def test_assign_role_guards(runtime, directory):
    with pytest.raises(ForbiddenError):
        await runtime.users.assign_role(COMPANY_ADMIN_A, "emp-a", "hr_admin")
    with pytest.raises(ForbiddenError):
        await runtime.users.assign_role(PLATFORM, "platform-1", "employee")
    with pytest.raises(ForbiddenError):
        await runtime.users.assign_role(PLATFORM, "emp-a", "super_admin")
    with pytest.raises(ValidationError):
        await runtime.users.assign_role(PLATFORM, "emp-a", "wizard")
    with pytest.raises(NotFoundError):
        await runtime.users.assign_role(PLATFORM, "ghost", "employee")


async def test_revoke_user_sessions_is_self_service_or_platform_admin(runtime, directory):
    refresh_token = generate_token()
    await runtime.refresh_tokens.store(refresh_token, "emp-a", 3600)

    with pytest.raises(ForbiddenError):
        await runtime.users.revoke_user_sessions(COMPANY_ADMIN_A, "emp-a")

    assert await runtime.users.revoke_user_sessions(_ctx("emp-a", Role.EMPLOYEE, "company-a"), "emp-a") == 1
    assert await runtime.users.revoke_user_sessions(PLATFORM, "emp-a") == 0


async def test_directory_outage_is_reported_as_store_unavailable(runtime):
    runtime.users.directory = MagicMock()
    runtime.users.directory.list_users.side_effect = BackendUnavailable("postgres")
    runtime.users.directory.get_user.side_effect = BackendUnavailable("postgres")

    with pytest.raises(StoreUnavailable):
        await runtime.users.list_company_employees(COMPANY_ADMIN_A)
    with pytest.raises(StoreUnavailable):
        await runtime.users.deactivate_employee(COMPANY_ADMIN_A, "emp-a")
