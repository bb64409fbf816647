"""Error responses always have the shape ``{"error": "<message>"}``.

Rate-limited responses add ``retryAfter`` plus the ``Retry-After`` and
``X-RateLimit-*`` headers; server errors never echo internal details.
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel

from benefitsai.api.error_handling import register_exception_handlers
from benefitsai.service.errors import (
    ExpiredOrInvalid,
    Forbidden,
    InvalidCredential,
    RateLimitExceeded,
    SessionIssuanceFailed,
    StoreUnavailable,
    TokenReuseDetected,
)
from benefitsai.storage.errors import DuplicateToken


class Payload(BaseModel):
    count: int


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app, sign_in_path="/sign-in")

    errors = {
        "invalid": InvalidCredential("credential is required"),
        "expired": ExpiredOrInvalid("invalid or expired credential"),
        "forbidden": Forbidden("forbidden", detail={"reason": "tenant_mismatch"}),
        "issuance": SessionIssuanceFailed("failed to create session", status_code=500),
        "reuse": TokenReuseDetected(user_id="user-1"),
        "store": StoreUnavailable("redis timeout talking to 10.0.0.5"),
        "duplicate": DuplicateToken({"user_id": "user-1"}),
        "limited": RateLimitExceeded(
            retry_after=42,
            headers={
                "X-RateLimit-Limit": "5",
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": "1700000042",
            },
        ),
    }

    @app.get("/raise/{name}")
    async def raise_error(name: str):
        raise errors[name]

    @app.post("/raise/{name}")
    async def raise_error_post(name: str):
        raise errors[name]

    @app.post("/validate")
    async def validate(payload: Payload):
        return {"count": payload.count}

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret stack detail")

    return TestClient(app, raise_server_exceptions=False)


@pytest.mark.parametrize(
    "name, status, message",
    [
        ("invalid", 400, "credential is required"),
        ("expired", 401, "invalid or expired credential"),
        ("forbidden", 403, "forbidden"),
        ("reuse", 401, "invalid refresh token"),
        ("duplicate", 409, "conflict"),
    ],
)
def test_service_errors_map_to_status_and_message(client, name, status, message):
    response = client.get(f"/raise/{name}")

    assert response.status_code == status
    assert response.json() == {"error": message}


@pytest.mark.parametrize("name", ["issuance", "store"])
def test_server_errors_do_not_leak_details(client, name):
    response = client.get(f"/raise/{name}")

    assert response.status_code == 500
    assert response.json() == {"error": "internal server error"}


def test_uncaught_exception_is_generic_500(client):
    response = client.get("/boom")

    assert response.status_code == 500
    assert response.json() == {"error": "internal server error"}
    assert "secret" not in response.text


def test_rate_limited_response_carries_retry_after(client):
    response = client.get("/raise/limited")

    assert response.status_code == 429
    assert response.json() == {"error": "too many requests", "retryAfter": 42}
    assert response.headers["Retry-After"] == "42"
    assert response.headers["X-RateLimit-Limit"] == "5"
    assert response.headers["X-RateLimit-Remaining"] == "0"


def test_request_validation_is_a_400(client):
    response = client.post("/validate", json={"count": "many"})

    assert response.status_code == 400
    assert response.json() == {"error": "invalid request"}


def test_unknown_route_uses_the_same_envelope(client):
    response = client.get("/nope")

    assert response.status_code == 404
    assert response.json() == {"error": "not found"}


def test_page_navigation_on_401_redirects_to_sign_in(client):
    response = client.get(
        "/raise/expired", headers={"Accept": "text/html"}, follow_redirects=False
    )

    assert response.status_code == 303
    assert response.headers["location"] == "/sign-in"


def test_api_post_on_401_gets_json_even_when_accepting_html(client):
    response = client.post("/raise/expired", headers={"Accept": "text/html"})

    assert response.status_code == 401
    assert response.json() == {"error": "invalid or expired credential"}
