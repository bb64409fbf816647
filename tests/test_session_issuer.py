from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from benefitsai.service.errors import (
    ExpiredOrInvalid,
    IdentityProviderUnavailable,
    SessionIssuanceFailed,
)
from benefitsai.service.roles import ResolvedRole, Role
from benefitsai.service.session import SessionCodec, SessionIssuer
from benefitsai.service.verifier import CredentialKind, DecodedClaims


def _issuer(settings, clock, verifier=None):
    return SessionIssuer(SessionCodec.from_settings(settings, clock=clock), settings, verifier=verifier)


def _claims(clock, **claims):
    return DecodedClaims(
        subject="user-1",
        email="pat@example.com",
        expires_at=datetime.fromtimestamp(clock() + 3600, tz=timezone.utc),
        kind=CredentialKind.ID_TOKEN,
        claims=claims,
    )


def test_issue_session_sets_http_only_cookie_with_seven_day_lifetime(settings, clock, cookies):
    issuer = _issuer(settings, clock)

    session = issuer.issue_session(
        _claims(clock, custom_claims={"role": "Company-Admin", "companyId": "acme"}), cookies
    )

    call = cookies.last("__session")
    assert call["value"] == session.value
    assert call["httponly"] is True
    assert call["samesite"] == "lax"
    assert call["path"] == "/"
    assert call["secure"] is False  # development settings
    assert call["max_age"] == int(timedelta(days=7).total_seconds())
    assert session.role is Role.COMPANY_ADMIN
    assert session.company_id == "acme"


def test_issued_session_decodes_back_to_role_and_tenant(settings, clock, cookies):
    issuer = _issuer(settings, clock)
    session = issuer.issue_session(
        _claims(clock),
        cookies,
        resolved=ResolvedRole(role=Role.HR_ADMIN, company_id="globex"),
    )

    payload = issuer.codec.decode(session.value)

    assert payload["sub"] == "user-1"
    assert payload["role"] == "hr_admin"
    assert payload["company_id"] == "globex"
    assert payload["sid"] == session.session_id


def test_production_cookies_are_secure(settings, clock, cookies):
    prod = type(settings)(**{**settings.model_dump(), "environment": "production"})
    issuer = _issuer(prod, clock)

    issuer.issue_session(_claims(clock), cookies)

    assert cookies.last("__session")["secure"] is True


def test_destroy_session_is_idempotent(settings, clock, cookies):
    issuer = _issuer(settings, clock)

    issuer.destroy_session(cookies)
    issuer.destroy_session(cookies)

    assert len(cookies.calls) == 2
    for call in cookies.calls:
        assert call["key"] == "__session"
        assert call["value"] == ""
        assert call["max_age"] == 0


async def test_rejected_id_token_writes_no_cookie(settings, clock, cookies):
    verifier = MagicMock()
    verifier.verify = AsyncMock(side_effect=ExpiredOrInvalid("invalid or expired credential"))
    issuer = _issuer(settings, clock, verifier=verifier)

    with pytest.raises(SessionIssuanceFailed) as excinfo:
        await issuer.create_from_id_token("a.b.c", cookies)

    assert excinfo.value.status_code == 401
    assert cookies.calls == []


async def test_provider_outage_is_a_server_side_issuance_failure(settings, clock, cookies):
    verifier = MagicMock()
    verifier.verify = AsyncMock(side_effect=IdentityProviderUnavailable("down"))
    issuer = _issuer(settings, clock, verifier=verifier)

    with pytest.raises(SessionIssuanceFailed) as excinfo:
        await issuer.create_from_id_token("a.b.c", cookies)

    assert excinfo.value.status_code == 500
    assert cookies.calls == []


async def test_create_from_id_token_uses_verified_claims(settings, clock, cookies):
    verifier = MagicMock()
    verifier.verify = AsyncMock(return_value=_claims(clock, role="employee"))
    issuer = _issuer(settings, clock, verifier=verifier)

    session = await issuer.create_from_id_token("a.b.c", cookies)

    verifier.verify.assert_awaited_once_with("a.b.c", CredentialKind.ID_TOKEN)
    assert session.subject == "user-1"
    assert session.role is Role.EMPLOYEE
