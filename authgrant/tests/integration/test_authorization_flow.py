"""
tests/integration/test_authorization_flow.py — Authorization and consent endpoints.

Endpoints covered:
  GET  /oauth/authorize → 302 (code / error) or 200 consent_required
  POST /oauth/consent   → 302 (code / access_denied)
  POST /oauth/token     → authorization_code grant, PKCE

Properties verified:
  - Happy path: authorize → consent → token → introspect reports the grant
  - Skip-consent: a standing authorization covering the scopes issues a code
    without a consent step
  - Scope escalation is refused (no silent downgrade)
  - Errors before the redirect URI is trusted are JSON, never redirects
  - PKCE S256 / plain succeed; a wrong or missing verifier fails
"""

from __future__ import annotations

import pytest

from .conftest import (
    OTHER_REDIRECT_URI,
    REDIRECT_URI,
    VERIFIER,
    auth_headers,
    authorize,
    basic_auth,
    consent,
    exchange,
    introspect,
    obtain_code,
    redirect_params,
    register_client,
    session_token,
)


# ═══════════════════════════════════════════════════════════════════════════
# Happy path
# ═══════════════════════════════════════════════════════════════════════════

class TestHappyPath:

    def test_first_authorize_requires_consent(self, client, app):
        reg = register_client(client, app)

        resp = authorize(client, app, reg, scope="read write")

        assert resp.status_code == 200
        data = resp.get_json()["data"]
        assert data["consent_required"] is True
        assert data["client"]["client_id"] == reg["client_id"]
        assert data["client"]["name"] == "Test Client"
        assert data["scopes"] == ["read", "write"]

    def test_consent_redirects_with_code_and_state(self, client, app):
        reg = register_client(client, app)

        resp = consent(client, app, reg, state="abc123")

        params = redirect_params(resp)
        assert resp.headers["Location"].startswith(REDIRECT_URI + "?")
        assert params["state"] == "abc123"
        assert len(params["code"]) >= 43

    def test_full_flow_produces_introspectable_token(self, client, app):
        reg = register_client(client, app)
        code = obtain_code(client, app, reg, user_id=7, scope="read write")

        resp = exchange(client, reg, code)

        assert resp.status_code == 200
        assert resp.headers["Cache-Control"] == "no-store"
        tokens = resp.get_json()["data"]
        assert tokens["token_type"] == "Bearer"
        assert tokens["scope"] == "read write"
        assert 0 < tokens["expires_in"] <= 3600
        assert tokens["access_token"] != tokens["refresh_token"]

        info = introspect(client, reg, tokens["access_token"])
        assert info["active"] is True
        assert info["user_id"] == 7
        assert info["client_id"] == reg["client_id"]
        assert info["scope"] == "read write"

    def test_second_authorize_skips_consent(self, client, app):
        reg = register_client(client, app)
        obtain_code(client, app, reg, user_id=1, scope="read write")

        resp = authorize(client, app, reg, user_id=1, scope="read")

        params = redirect_params(resp)
        assert "code" in params
        assert params["state"] == "xyz"

    def test_skip_consent_does_not_cover_wider_scope(self, client, app):
        reg = register_client(client, app)
        obtain_code(client, app, reg, user_id=1, scope="read")

        resp = authorize(client, app, reg, user_id=1, scope="read write")

        assert resp.status_code == 200
        assert resp.get_json()["data"]["consent_required"] is True

    def test_skip_consent_is_per_user(self, client, app):
        reg = register_client(client, app)
        obtain_code(client, app, reg, user_id=1)

        resp = authorize(client, app, reg, user_id=2)

        assert resp.status_code == 200
        assert resp.get_json()["data"]["consent_required"] is True

    def test_token_endpoint_accepts_body_credentials(self, client, app):
        reg = register_client(client, app)
        code = obtain_code(client, app, reg)

        resp = client.post("/oauth/token", data={
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": REDIRECT_URI,
            "client_id": reg["client_id"],
            "client_secret": reg["client_secret"],
        })

        assert resp.status_code == 200
        assert "access_token" in resp.get_json()["data"]

    def test_token_endpoint_accepts_json_body(self, client, app):
        reg = register_client(client, app)
        code = obtain_code(client, app, reg)

        resp = client.post(
            "/oauth/token",
            json={"grant_type": "authorization_code", "code": code, "redirect_uri": REDIRECT_URI},
            headers=basic_auth(reg["client_id"], reg["client_secret"]),
        )

        assert resp.status_code == 200

    def test_registered_second_redirect_uri_is_accepted(self, client, app):
        reg = register_client(client, app)

        resp = consent(client, app, reg, redirect_uri=OTHER_REDIRECT_URI)

        assert resp.headers["Location"].startswith(OTHER_REDIRECT_URI + "?")


# ═══════════════════════════════════════════════════════════════════════════
# Consent decisions and authorization errors
# ═══════════════════════════════════════════════════════════════════════════

class TestAuthorizationErrors:

    def test_denied_consent_redirects_access_denied(self, client, app):
        reg = register_client(client, app)

        resp = consent(client, app, reg, approved=False)

        params = redirect_params(resp)
        assert params["error"] == "access_denied"
        assert params["state"] == "xyz"
        assert "code" not in params

    def test_denied_consent_leaves_no_standing_grant(self, client, app):
        reg = register_client(client, app)
        consent(client, app, reg, approved=False)

        resp = authorize(client, app, reg)

        assert resp.status_code == 200
        assert resp.get_json()["data"]["consent_required"] is True

    def test_scope_outside_client_allowance_redirects_invalid_scope(self, client, app):
        reg = register_client(client, app, scopes="read")

        resp = authorize(client, app, reg, scope="read write")

        params = redirect_params(resp)
        assert params["error"] == "invalid_scope"
        assert params["state"] == "xyz"

    def test_empty_scope_redirects_invalid_scope(self, client, app):
        reg = register_client(client, app)

        resp = authorize(client, app, reg, scope=None)

        assert redirect_params(resp)["error"] == "invalid_scope"

    def test_unsupported_pkce_method_redirects_invalid_request(self, client, app):
        reg = register_client(client, app)

        resp = authorize(client, app, reg, code_challenge="x" * 43, code_challenge_method="S512")

        assert redirect_params(resp)["error"] == "invalid_request"

    def test_unregistered_redirect_uri_is_not_redirected(self, client, app):
        reg = register_client(client, app)

        resp = authorize(client, app, reg, redirect_uri="https://evil.example.com/cb")

        assert resp.status_code == 400
        err = resp.get_json()["error"]
        assert err["code"] == "invalid_request"
        assert err["field"] == "redirect_uri"

    def test_redirect_uri_prefix_does_not_match(self, client, app):
        reg = register_client(client, app)

        resp = authorize(client, app, reg, redirect_uri=REDIRECT_URI + "/extra")

        assert resp.status_code == 400

    def test_unknown_client_is_invalid_client(self, client, app):
        resp = authorize(client, app, {"client_id": "nope"})

        assert resp.status_code == 401
        assert resp.get_json()["error"]["code"] == "invalid_client"

    def test_pending_client_cannot_authorize(self, client, app):
        reg = register_client(client, app, approve=False)

        resp = authorize(client, app, reg)

        assert resp.status_code == 401
        assert resp.get_json()["error"]["code"] == "invalid_client"

    def test_unsupported_response_type(self, client, app):
        reg = register_client(client, app)

        resp = authorize(client, app, reg, response_type="token")

        assert resp.status_code == 400
        err = resp.get_json()["error"]
        assert err["code"] == "unsupported_response_type"
        assert err["field"] == "response_type"

    def test_missing_client_id_is_missing_field(self, client, app):
        resp = client.get(
            "/oauth/authorize",
            query_string={"response_type": "code", "redirect_uri": REDIRECT_URI},
            headers=auth_headers(session_token(app, 1)),
        )

        assert resp.status_code == 400
        err = resp.get_json()["error"]
        assert err["code"] == "missing_field"
        assert err["field"] == "client_id"

    def test_authorize_requires_session(self, client, app):
        reg = register_client(client, app)

        resp = client.get("/oauth/authorize", query_string={
            "response_type": "code",
            "client_id": reg["client_id"],
            "redirect_uri": REDIRECT_URI,
        })

        assert resp.status_code == 401
        assert resp.get_json()["error"]["code"] == "token_missing"


# ═══════════════════════════════════════════════════════════════════════════
# Token endpoint request errors
# ═══════════════════════════════════════════════════════════════════════════

class TestTokenRequestErrors:

    def test_unsupported_grant_type(self, client, app):
        reg = register_client(client, app)

        resp = client.post(
            "/oauth/token",
            data={"grant_type": "password"},
            headers=basic_auth(reg["client_id"], reg["client_secret"]),
        )

        assert resp.status_code == 400
        assert resp.get_json()["error"]["code"] == "unsupported_grant_type"

    def test_authorization_code_grant_requires_code(self, client, app):
        reg = register_client(client, app)

        resp = client.post(
            "/oauth/token",
            data={"grant_type": "authorization_code", "redirect_uri": REDIRECT_URI},
            headers=basic_auth(reg["client_id"], reg["client_secret"]),
        )

        assert resp.status_code == 400
        err = resp.get_json()["error"]
        assert err["code"] == "missing_field"
        assert err["field"] == "code"

    def test_wrong_client_secret_is_invalid_client(self, client, app):
        reg = register_client(client, app)
        code = obtain_code(client, app, reg)

        resp = exchange(client, {**reg, "client_secret": "wrong"}, code)

        assert resp.status_code == 401
        assert resp.get_json()["error"]["code"] == "invalid_client"
        assert resp.headers["WWW-Authenticate"].startswith("Basic")

    @pytest.mark.parametrize("owner", ["registered", "unknown"])
    def test_overlong_client_secret_is_invalid_client(self, client, app, owner):
        reg = register_client(client, app)
        code = obtain_code(client, app, reg)
        client_id = reg["client_id"] if owner == "registered" else "a" * 100

        resp = exchange(client, {"client_id": client_id, "client_secret": "a" * 100}, code)

        assert resp.status_code == 401
        assert resp.get_json()["error"]["code"] == "invalid_client"

    def test_missing_client_credentials_is_invalid_client(self, client, app):
        reg = register_client(client, app)
        code = obtain_code(client, app, reg)

        resp = client.post("/oauth/token", data={
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": REDIRECT_URI,
        })

        assert resp.status_code == 401
        assert resp.get_json()["error"]["code"] == "invalid_client"

    def test_unknown_code_is_invalid_grant(self, client, app):
        reg = register_client(client, app)

        resp = exchange(client, reg, "not-a-real-code")

        assert resp.status_code == 400
        err = resp.get_json()["error"]
        assert err["code"] == "invalid_grant"
        assert err["reason"] == "unknown"


# ═══════════════════════════════════════════════════════════════════════════
# PKCE
# ═══════════════════════════════════════════════════════════════════════════

class TestPKCE:

    def test_s256_verifier_succeeds(self, client, app):
        reg = register_client(client, app)
        code = obtain_code(client, app, reg, pkce="S256")

        resp = exchange(client, reg, code, code_verifier=VERIFIER)

        assert resp.status_code == 200

    def test_plain_verifier_succeeds(self, client, app):
        reg = register_client(client, app)
        code = obtain_code(client, app, reg, pkce="plain")

        resp = exchange(client, reg, code, code_verifier=VERIFIER)

        assert resp.status_code == 200

    def test_wrong_verifier_fails(self, client, app):
        reg = register_client(client, app)
        code = obtain_code(client, app, reg, pkce="S256")

        resp = exchange(client, reg, code, code_verifier="a" * 43)

        assert resp.status_code == 400
        err = resp.get_json()["error"]
        assert err["code"] == "invalid_grant"
        assert err["reason"] == "mismatch"

    def test_missing_verifier_fails(self, client, app):
        reg = register_client(client, app)
        code = obtain_code(client, app, reg, pkce="S256")

        resp = exchange(client, reg, code)

        assert resp.status_code == 400
        assert resp.get_json()["error"]["code"] == "invalid_grant"

    def test_failed_verifier_does_not_consume_code(self, client, app):
        reg = register_client(client, app)
        code = obtain_code(client, app, reg, pkce="S256")
        exchange(client, reg, code, code_verifier="a" * 43)

        resp = exchange(client, reg, code, code_verifier=VERIFIER)

        assert resp.status_code == 200

    def test_verifier_without_challenge_fails(self, client, app):
        reg = register_client(client, app)
        code = obtain_code(client, app, reg)

        resp = exchange(client, reg, code, code_verifier=VERIFIER)

        assert resp.status_code == 400
        assert resp.get_json()["error"]["code"] == "invalid_grant"

    def test_malformed_verifier_is_rejected_by_schema(self, client, app):
        reg = register_client(client, app)
        code = obtain_code(client, app, reg, pkce="S256")

        resp = exchange(client, reg, code, code_verifier="short")

        assert resp.status_code == 400
        err = resp.get_json()["error"]
        assert err["code"] == "invalid_field"
        assert err["field"] == "code_verifier"

    @pytest.mark.parametrize("challenge", ["é" * 43, "short", "c" * 129])
    def test_malformed_challenge_at_consent_redirects_invalid_request(self, client, app, challenge):
        reg = register_client(client, app)

        resp = consent(client, app, reg, code_challenge=challenge, code_challenge_method="plain")

        params = redirect_params(resp)
        assert params["error"] == "invalid_request"
        assert params["state"] == "xyz"
        assert "code" not in params

    def test_malformed_challenge_at_authorize_redirects_invalid_request(self, client, app):
        reg = register_client(client, app)

        resp = authorize(client, app, reg, code_challenge="é" * 43, code_challenge_method="S256")

        assert redirect_params(resp)["error"] == "invalid_request"
