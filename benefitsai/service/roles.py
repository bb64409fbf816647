from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Sequence


class Role(str, Enum):
    """Canonical roles, ordered by privilege level."""

    EMPLOYEE = "employee"
    HR_ADMIN = "hr_admin"
    COMPANY_ADMIN = "company_admin"
    PLATFORM_ADMIN = "platform_admin"
    SUPER_ADMIN = "super_admin"

    @property
    def level(self) -> int:
        return _ROLE_LEVELS[self]

    def at_least(self, other: "Role") -> bool:
        return self.level >= other.level


_ROLE_LEVELS = {
    Role.EMPLOYEE: 0,
    Role.HR_ADMIN: 1,
    Role.COMPANY_ADMIN: 2,
    Role.PLATFORM_ADMIN: 3,
    Role.SUPER_ADMIN: 4,
}

DEFAULT_ROLE = Role.EMPLOYEE

# Separator/case-folded spellings seen in older claims and directory rows
_ALIASES = {
    "superadmin": Role.SUPER_ADMIN,
    "platformadmin": Role.PLATFORM_ADMIN,
    "companyadmin": Role.COMPANY_ADMIN,
    "hradmin": Role.HR_ADMIN,
    "hr": Role.HR_ADMIN,
    "user": Role.EMPLOYEE,
}

# Claim paths in lookup order; earlier paths win when several are present
ROLE_CLAIM_PATHS: Sequence[tuple[str, ...]] = (
    ("role",),
    ("custom_claims", "role"),
    ("customClaims", "role"),
    ("claims", "role"),
    ("app_metadata", "role"),
    ("extension_Role",),
    ("extension_role",),
    ("roles",),
)

COMPANY_CLAIM_PATHS: Sequence[tuple[str, ...]] = (
    ("companyId",),
    ("company_id",),
    ("custom_claims", "companyId"),
    ("custom_claims", "company_id"),
    ("customClaims", "companyId"),
    ("app_metadata", "companyId"),
    ("extension_CompanyId",),
    ("extension_companyId",),
)


@dataclass(frozen=True)
class ResolvedRole:
    role: Role
    company_id: Optional[str] = None


def normalize_role(value: Any) -> Role:
    """Map any role spelling onto the canonical enum.

    ``"Company-Admin"``, ``"company admin"`` and ``"companyadmin"`` all become
    ``Role.COMPANY_ADMIN``. Anything unrecognised becomes ``Role.EMPLOYEE``.
    """
    if isinstance(value, Role):
        return value
    if not isinstance(value, str):
        return DEFAULT_ROLE
    token = value.strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return Role(token)
    except ValueError:
        return _ALIASES.get(token.replace("_", ""), DEFAULT_ROLE)


def _lookup(claims: Mapping[str, Any], path: Iterable[str]) -> Any:
    node: Any = claims
    for key in path:
        if not isinstance(node, Mapping) or key not in node:
            return None
        node = node[key]
    return node


def _first_present(claims: Mapping[str, Any], paths: Sequence[tuple[str, ...]]) -> Any:
    for path in paths:
        value = _lookup(claims, path)
        if isinstance(value, (list, tuple)):
            value = next((v for v in value if isinstance(v, str) and v.strip()), None)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def resolve(raw_claims: Optional[Mapping[str, Any]]) -> ResolvedRole:
    """Resolve the canonical role and company id from raw identity claims."""
    claims = raw_claims or {}
    raw_role = _first_present(claims, ROLE_CLAIM_PATHS)
    company_id = _first_present(claims, COMPANY_CLAIM_PATHS)
    return ResolvedRole(role=normalize_role(raw_role), company_id=company_id)


def parse_role(value: Any) -> Role:
    """Strict variant of :func:`normalize_role` for role assignment input."""
    if isinstance(value, Role):
        return value
    if isinstance(value, str):
        token = value.strip().lower().replace("-", "_").replace(" ", "_")
        if token in Role._value2member_map_:
            return Role(token)
        if token.replace("_", "") in _ALIASES:
            return _ALIASES[token.replace("_", "")]
    raise ValueError(f"unknown role: {value!r}")


def merge_with_directory(resolved: ResolvedRole, user: Any) -> ResolvedRole:
    """Combine claim-derived role data with the user's directory record.

    The directory is authoritative for role once a record exists, so role
    changes made by admins apply on the next session. The company id falls
    back to the claim when the record has none.
    """
    if user is None:
        return resolved
    return ResolvedRole(
        role=normalize_role(user.role),
        company_id=getattr(user, "company_id", None) or resolved.company_id,
    )


def assignable_roles(actor_role: Role) -> list[Role]:
    """Roles ``actor_role`` may grant to other users."""
    if actor_role is Role.SUPER_ADMIN:
        return list(Role)
    return [r for r in Role if r.level < actor_role.level]
