from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

# Credentials above this size are rejected before reaching the verifier
MAX_CREDENTIAL_FIELD = 8192


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class SessionRequest(_CamelModel):
    id_token: Optional[str] = Field(None, alias="idToken", max_length=MAX_CREDENTIAL_FIELD)


class VerifyTokenRequest(_CamelModel):
    id_token: Optional[str] = Field(None, alias="idToken", max_length=MAX_CREDENTIAL_FIELD)


class VerifySessionRequest(_CamelModel):
    session_cookie: Optional[str] = Field(
        None, alias="sessionCookie", max_length=MAX_CREDENTIAL_FIELD
    )


class RevokeRequest(_CamelModel):
    user_id: Optional[str] = Field(None, alias="userId", max_length=256)


class AssignRoleRequest(_CamelModel):
    role: str = Field(..., min_length=1, max_length=64)


class StatusResponse(BaseModel):
    status: str = "success"


class CsrfTokenResponse(_CamelModel):
    csrf_token: str = Field(..., alias="csrfToken")


class IdentityResponse(_CamelModel):
    uid: str
    email: Optional[str] = None
    role: str
    company_id: Optional[str] = Field(None, alias="companyId")


class SessionIdentityResponse(IdentityResponse):
    is_valid: bool = Field(True, alias="isValid")


class MeResponse(IdentityResponse):
    via: str


class EmployeeResponse(_CamelModel):
    id: str
    email: Optional[str] = None
    role: str
    company_id: Optional[str] = Field(None, alias="companyId")
    is_active: bool = Field(True, alias="isActive")
    display_name: Optional[str] = Field(None, alias="displayName")


class EmployeeListResponse(BaseModel):
    employees: List[EmployeeResponse]


class ErrorResponse(_CamelModel):
    error: str
    retry_after: Optional[int] = Field(None, alias="retryAfter")
