from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response

from benefitsai.api.dependencies import (
    get_auth_context,
    get_runtime,
    rate_limited,
    require_role,
)
from benefitsai.api.schemas import (
    AssignRoleRequest,
    CsrfTokenResponse,
    EmployeeListResponse,
    EmployeeResponse,
    IdentityResponse,
    MeResponse,
    RevokeRequest,
    SessionIdentityResponse,
    SessionRequest,
    StatusResponse,
    VerifySessionRequest,
    VerifyTokenRequest,
)
from benefitsai.config import EndpointClass
from benefitsai.service.access import AuthContext
from benefitsai.service.errors import InvalidCredential, ValidationError
from benefitsai.service.roles import Role
from benefitsai.service.runtime import Runtime
from benefitsai.service.users import COMPANY_MANAGERS
from benefitsai.storage.models import User

router = APIRouter()


def _employee(user: User) -> EmployeeResponse:
    return EmployeeResponse(
        id=user.id,
        email=user.email,
        role=user.role,
        company_id=user.company_id,
        is_active=user.is_active,
        display_name=user.display_name,
    )


@router.post(
    "/auth/session",
    response_model=StatusResponse,
    dependencies=[Depends(rate_limited(EndpointClass.AUTH))],
)
async def create_session(
    response: Response,
    body: Optional[SessionRequest] = None,
    runtime: Runtime = Depends(get_runtime),
):
    if body is None or not body.id_token:
        raise InvalidCredential("idToken is required")
    await runtime.auth.create_session(body.id_token, response)
    return StatusResponse()


@router.delete("/auth/session", response_model=StatusResponse)
async def delete_session(
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    refresh_token = request.cookies.get(runtime.settings.refresh_cookie_name)
    await runtime.auth.sign_out(refresh_token, response)
    return StatusResponse()


@router.post(
    "/auth/refresh",
    response_model=StatusResponse,
    dependencies=[Depends(rate_limited(EndpointClass.AUTH))],
)
async def refresh_session(
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    refresh_token = request.cookies.get(runtime.settings.refresh_cookie_name)
    await runtime.auth.refresh(refresh_token, response)
    return StatusResponse()


@router.post(
    "/auth/verify-token",
    response_model=IdentityResponse,
    dependencies=[Depends(rate_limited(EndpointClass.API))],
)
async def verify_token(
    body: Optional[VerifyTokenRequest] = None,
    runtime: Runtime = Depends(get_runtime),
):
    if body is None or not body.id_token:
        raise InvalidCredential("idToken is required")
    identity = await runtime.auth.describe_id_token(body.id_token)
    return IdentityResponse(
        uid=identity.uid,
        email=identity.email,
        role=identity.role,
        company_id=identity.company_id,
    )


@router.post(
    "/auth/verify-session",
    response_model=SessionIdentityResponse,
    dependencies=[Depends(rate_limited(EndpointClass.API))],
)
async def verify_session(
    body: Optional[VerifySessionRequest] = None,
    runtime: Runtime = Depends(get_runtime),
):
    if body is None or not body.session_cookie:
        raise InvalidCredential("sessionCookie is required")
    identity = await runtime.auth.describe_session(body.session_cookie)
    return SessionIdentityResponse(
        is_valid=True,
        uid=identity.uid,
        email=identity.email,
        role=identity.role,
        company_id=identity.company_id,
    )


@router.post("/auth/revoke", response_model=StatusResponse)
async def revoke_sessions(
    body: Optional[RevokeRequest] = None,
    ctx: AuthContext = Depends(get_auth_context),
    runtime: Runtime = Depends(get_runtime),
):
    # Without a body the caller signs themselves out everywhere
    target = (body.user_id if body else None) or ctx.user_id
    await runtime.users.revoke_user_sessions(ctx, target)
    return StatusResponse(status="revoked")


@router.get("/auth/csrf", response_model=CsrfTokenResponse)
async def csrf_token(response: Response, runtime: Runtime = Depends(get_runtime)):
    token = runtime.issuer.issue_csrf_token(response)
    return CsrfTokenResponse(csrf_token=token)


@router.get("/auth/me", response_model=MeResponse)
async def me(ctx: AuthContext = Depends(get_auth_context)):
    return MeResponse(
        uid=ctx.user_id,
        email=ctx.email,
        role=ctx.role.value,
        company_id=ctx.company_id,
        via=ctx.via.value,
    )


@router.get("/company-admin/employees", response_model=EmployeeListResponse)
async def list_employees(
    limit: int = Query(100, ge=1, le=500),
    ctx: AuthContext = Depends(require_role(roles=COMPANY_MANAGERS, action="list_employees")),
    runtime: Runtime = Depends(get_runtime),
):
    users = await runtime.users.list_company_employees(ctx, limit=limit)
    return EmployeeListResponse(employees=[_employee(u) for u in users])


@router.post(
    "/company-admin/employees/{user_id}/deactivate",
    response_model=EmployeeResponse,
    dependencies=[Depends(rate_limited(EndpointClass.ADMIN, per_user=True))],
)
async def deactivate_employee(
    user_id: str,
    ctx: AuthContext = Depends(
        require_role(roles=COMPANY_MANAGERS, action="deactivate_employee")
    ),
    runtime: Runtime = Depends(get_runtime),
):
    user = await runtime.users.deactivate_employee(ctx, user_id)
    return _employee(user)


@router.post(
    "/admin/users/{user_id}/assign-role",
    response_model=EmployeeResponse,
    dependencies=[Depends(rate_limited(EndpointClass.ADMIN, per_user=True))],
)
async def assign_role(
    user_id: str,
    body: Optional[AssignRoleRequest] = None,
    ctx: AuthContext = Depends(require_role(min_role=Role.PLATFORM_ADMIN, action="assign_role")),
    runtime: Runtime = Depends(get_runtime),
):
    if body is None:
        raise ValidationError("role is required")
    user = await runtime.users.assign_role(ctx, user_id, body.role)
    return _employee(user)
