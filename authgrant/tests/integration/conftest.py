"""
tests/integration/conftest.py — Fixtures and helpers for all integration tests.

Design:
  - Tests run against the TestingConfig database: in-memory SQLite by
    default, or TEST_DATABASE_URL (e.g. a PostgreSQL authgrant_test).
  - The app is created once per session using create_app("testing").
  - All tables are created once via db.create_all() at session start.
  - Between tests, all rows are deleted in FK-safe order and the clock is
    reset, so tests are isolated.

Helper functions (not fixtures) are provided for common operations:
  - session_token(app, user_id)        → signed session JWT for the user
  - auth_headers(token)                → {"Authorization": "Bearer <token>"}
  - basic_auth(client_id, secret)      → HTTP Basic header for client auth
  - register_client(client, app, ...)  → {"client_id", "client_secret", ...}
  - obtain_code(client, app, reg, ...) → raw authorization code
  - exchange(client, reg, code, ...)   → HTTP response from /oauth/token
  - issue_tokens(client, app, reg)     → token response data dict

These are plain functions (not pytest fixtures) so they can be called with
arbitrary arguments in any test without fixture parameterization overhead.
"""

from __future__ import annotations

import base64
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlsplit

import jwt
import pytest
from sqlalchemy import text

from authgrant.app import create_app
from authgrant.app.extensions import db as _db
from authgrant.app.security import s256_challenge, utcnow
from authgrant.app.services.grant_engine import GrantEngine


REDIRECT_URI = "https://client.example.com/callback"
OTHER_REDIRECT_URI = "https://client.example.com/other"
VERIFIER = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"

_TABLES = (
    "oauth_audit_logs",
    "oauth_refresh_tokens",
    "oauth_access_tokens",
    "oauth_user_authorizations",
    "oauth_authorization_codes",
    "oauth_clients",
)


class FakeClock:
    """Injectable clock. Call it for `now`; advance() moves time forward."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# ═══════════════════════════════════════════════════════════════════════════
# Session-scoped app fixture
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture(scope="session")
def app():
    """
    Creates the Flask application in 'testing' mode once for the entire test session.
    """
    flask_app = create_app("testing")

    with flask_app.app_context():
        _db.create_all()

    yield flask_app

    with flask_app.app_context():
        _db.drop_all()


# ═══════════════════════════════════════════════════════════════════════════
# Function-scoped test isolation
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture(autouse=True)
def clean_tables(app):
    """
    Deletes all rows between tests, children before parents, and puts the
    real clock back.
    """
    yield  # run the test

    app.extensions["oauth_clock"] = utcnow

    with app.app_context():
        _db.session.rollback()  # discard any uncommitted state from a failed test

        with _db.engine.connect() as conn:
            conn.execute(text("UPDATE oauth_refresh_tokens SET successor_id = NULL"))
            for table in _TABLES:
                conn.execute(text(f"DELETE FROM {table}"))
            conn.commit()


# ═══════════════════════════════════════════════════════════════════════════
# Client / context fixtures
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def client(app):
    """Flask test client. Each test gets a fresh client (function-scoped)."""
    return app.test_client()


@pytest.fixture
def clock(app):
    """A FakeClock installed as the app's clock for the duration of the test."""
    fake = FakeClock()
    app.extensions["oauth_clock"] = fake
    return fake


@pytest.fixture
def ctx(app):
    """An application context for service-level tests using db.session."""
    with app.app_context():
        yield


@pytest.fixture
def engine(app, ctx, clock):
    """A GrantEngine on db.session with the fake clock."""
    return GrantEngine(_db.session, app.extensions["oauth_settings"], clock=clock)


# ═══════════════════════════════════════════════════════════════════════════
# Shared helper functions (not fixtures)
# ═══════════════════════════════════════════════════════════════════════════

def session_token(app, user_id: int, expires_in: int = 3600) -> str:
    """Signs a session JWT the way the user-authentication system does."""
    payload = {
        "sub": str(user_id),
        "exp": datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    }
    return jwt.encode(
        payload,
        app.config["JWT_SECRET_KEY"],
        algorithm=app.config["JWT_ALGORITHM"],
    )


def auth_headers(token: str) -> dict:
    """Returns the Authorization header dict for use in test requests."""
    return {"Authorization": f"Bearer {token}"}


def basic_auth(client_id: str, client_secret: str) -> dict:
    raw = f"{client_id}:{client_secret}".encode("utf-8")
    return {"Authorization": "Basic " + base64.b64encode(raw).decode("ascii")}


def set_status(app, client_id: str, status: str) -> None:
    """Operator action: change a client's status (cascades on suspend/reject)."""
    with app.app_context():
        GrantEngine(_db.session, app.extensions["oauth_settings"]).change_client_status(
            client_id, status
        )
        _db.session.commit()


def register_client(
    client,
    app,
    owner_id: int = 100,
    name: str = "Test Client",
    redirect_uris: list[str] | None = None,
    scopes: str = "read write offline_access",
    approve: bool = True,
) -> dict:
    """
    Registers a client through the API and (by default) approves it.
    Returns the registration data dict, including the one-time client_secret.
    """
    resp = client.post(
        "/oauth/clients",
        json={
            "name": name,
            "redirect_uris": redirect_uris or [REDIRECT_URI, OTHER_REDIRECT_URI],
            "scopes": scopes,
        },
        headers=auth_headers(session_token(app, owner_id)),
    )
    assert resp.status_code == 201, f"register_client failed: {resp.get_json()}"
    data = resp.get_json()["data"]
    if approve:
        set_status(app, data["client_id"], "approved")
    return data


def authorize(client, app, reg: dict, user_id: int = 1, **params):
    """GET /oauth/authorize as `user_id`. Returns the HTTP response."""
    query = {
        "response_type": "code",
        "client_id": reg["client_id"],
        "redirect_uri": REDIRECT_URI,
        "scope": "read",
        "state": "xyz",
    }
    query.update(params)
    query = {k: v for k, v in query.items() if v is not None}
    return client.get(
        "/oauth/authorize",
        query_string=query,
        headers=auth_headers(session_token(app, user_id)),
    )


def consent(client, app, reg: dict, user_id: int = 1, approved: bool = True, **params):
    """POST /oauth/consent as `user_id`. Returns the HTTP response."""
    body = {
        "response_type": "code",
        "client_id": reg["client_id"],
        "redirect_uri": REDIRECT_URI,
        "scope": "read",
        "state": "xyz",
        "approved": approved,
    }
    body.update(params)
    body = {k: v for k, v in body.items() if v is not None}
    return client.post(
        "/oauth/consent",
        json=body,
        headers=auth_headers(session_token(app, user_id)),
    )


def redirect_params(resp) -> dict:
    """Query parameters of a 302 Location header, single-valued."""
    assert resp.status_code == 302, f"expected redirect: {resp.status_code} {resp.get_json()}"
    location = resp.headers["Location"]
    return {k: v[0] for k, v in parse_qs(urlsplit(location).query).items()}


def obtain_code(
    client,
    app,
    reg: dict,
    user_id: int = 1,
    scope: str = "read",
    pkce: str | None = None,
) -> str:
    """
    Runs authorize + consent and returns the raw code.
    pkce: None, "plain" or "S256" (uses VERIFIER).
    """
    extra = {}
    if pkce == "S256":
        extra = {"code_challenge": s256_challenge(VERIFIER), "code_challenge_method": "S256"}
    elif pkce == "plain":
        extra = {"code_challenge": VERIFIER, "code_challenge_method": "plain"}

    resp = consent(client, app, reg, user_id=user_id, scope=scope, **extra)
    return redirect_params(resp)["code"]


def exchange(
    client,
    reg: dict,
    code: str,
    redirect_uri: str = REDIRECT_URI,
    code_verifier: str | None = None,
):
    """POST /oauth/token (authorization_code) with HTTP Basic client auth."""
    form = {"grant_type": "authorization_code", "code": code, "redirect_uri": redirect_uri}
    if code_verifier is not None:
        form["code_verifier"] = code_verifier
    return client.post(
        "/oauth/token",
        data=form,
        headers=basic_auth(reg["client_id"], reg["client_secret"]),
    )


def refresh(client, reg: dict, refresh_token: str, scope: str | None = None):
    """POST /oauth/token (refresh_token) with HTTP Basic client auth."""
    form = {"grant_type": "refresh_token", "refresh_token": refresh_token}
    if scope is not None:
        form["scope"] = scope
    return client.post(
        "/oauth/token",
        data=form,
        headers=basic_auth(reg["client_id"], reg["client_secret"]),
    )


def introspect(client, reg: dict, token: str) -> dict:
    resp = client.post(
        "/oauth/introspect",
        data={"token": token},
        headers=basic_auth(reg["client_id"], reg["client_secret"]),
    )
    assert resp.status_code == 200, f"introspect failed: {resp.get_json()}"
    return resp.get_json()["data"]


def issue_tokens(client, app, reg: dict, user_id: int = 1, scope: str = "read") -> dict:
    """Full authorization-code flow. Returns the token response data dict."""
    code = obtain_code(client, app, reg, user_id=user_id, scope=scope)
    resp = exchange(client, reg, code)
    assert resp.status_code == 200, f"exchange failed: {resp.get_json()}"
    return resp.get_json()["data"]
