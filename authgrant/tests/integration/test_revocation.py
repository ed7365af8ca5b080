"""
tests/integration/test_revocation.py — Revocation, introspection, standing grants.

Endpoints covered:
  POST   /oauth/revoke                      → 200 always (after client auth)
  POST   /oauth/introspect                  → 200 {active, ...}
  GET    /oauth/authorizations              → 200
  DELETE /oauth/authorizations/:client_id   → 200

Properties verified:
  - Revoking twice succeeds and changes nothing the second time
  - Unknown and foreign tokens answer 200 and touch nothing
  - Revoking a refresh token kills its access token
  - Withdrawing a standing grant kills the pair's tokens
  - Suspending a client kills every token it holds
"""

from __future__ import annotations

from .conftest import (
    auth_headers,
    authorize,
    basic_auth,
    introspect,
    issue_tokens,
    refresh,
    register_client,
    session_token,
    set_status,
)


def _revoke(client, reg: dict, token: str):
    return client.post(
        "/oauth/revoke",
        data={"token": token},
        headers=basic_auth(reg["client_id"], reg["client_secret"]),
    )


class TestRevokeEndpoint:

    def test_revoke_access_token(self, client, app):
        reg = register_client(client, app)
        tokens = issue_tokens(client, app, reg)

        resp = _revoke(client, reg, tokens["access_token"])

        assert resp.status_code == 200
        assert introspect(client, reg, tokens["access_token"]) == {"active": False, "reason": "revoked"}

    def test_revoking_access_token_leaves_refresh_token(self, client, app):
        reg = register_client(client, app)
        tokens = issue_tokens(client, app, reg)

        _revoke(client, reg, tokens["access_token"])

        assert refresh(client, reg, tokens["refresh_token"]).status_code == 200

    def test_revoke_refresh_token_also_revokes_access_token(self, client, app):
        reg = register_client(client, app)
        tokens = issue_tokens(client, app, reg)

        _revoke(client, reg, tokens["refresh_token"])

        assert introspect(client, reg, tokens["access_token"])["active"] is False
        resp = refresh(client, reg, tokens["refresh_token"])
        assert resp.status_code == 400
        assert resp.get_json()["error"]["reason"] == "revoked"

    def test_revoke_is_idempotent(self, client, app):
        reg = register_client(client, app)
        tokens = issue_tokens(client, app, reg)

        first = _revoke(client, reg, tokens["access_token"])
        second = _revoke(client, reg, tokens["access_token"])

        assert first.status_code == 200
        assert second.status_code == 200
        assert introspect(client, reg, tokens["access_token"])["reason"] == "revoked"

    def test_revoke_twice_keeps_first_timestamp(self, client, app, clock):
        from sqlalchemy import select

        from authgrant.app.extensions import db
        from authgrant.app.models.access_token import AccessToken
        from authgrant.app.security import as_utc, hash_token

        reg = register_client(client, app)
        tokens = issue_tokens(client, app, reg)
        _revoke(client, reg, tokens["access_token"])
        revoked_at = clock.now

        clock.advance(minutes=5)
        _revoke(client, reg, tokens["access_token"])

        with app.app_context():
            record = db.session.execute(
                select(AccessToken).where(AccessToken.token_hash == hash_token(tokens["access_token"]))
            ).scalar_one()
            assert as_utc(record.revoked_at) == revoked_at

    def test_unknown_token_answers_200(self, client, app):
        reg = register_client(client, app)

        resp = _revoke(client, reg, "never-issued")

        assert resp.status_code == 200
        assert resp.get_json()["data"]["revoked"] is True

    def test_foreign_token_is_untouched(self, client, app):
        reg_a = register_client(client, app, name="A")
        reg_b = register_client(client, app, name="B")
        tokens = issue_tokens(client, app, reg_a)

        resp = _revoke(client, reg_b, tokens["access_token"])

        assert resp.status_code == 200
        assert introspect(client, reg_a, tokens["access_token"])["active"] is True

    def test_revoke_requires_client_authentication(self, client, app):
        reg = register_client(client, app)
        tokens = issue_tokens(client, app, reg)

        resp = client.post("/oauth/revoke", data={"token": tokens["access_token"]})

        assert resp.status_code == 401
        assert introspect(client, reg, tokens["access_token"])["active"] is True

    def test_revoke_requires_token_field(self, client, app):
        reg = register_client(client, app)

        resp = client.post(
            "/oauth/revoke",
            data={"token_type_hint": "access_token"},
            headers=basic_auth(reg["client_id"], reg["client_secret"]),
        )

        assert resp.status_code == 400
        assert resp.get_json()["error"]["code"] == "missing_field"


class TestIntrospection:

    def test_unknown_token_is_inactive(self, client, app):
        reg = register_client(client, app)

        assert introspect(client, reg, "nope") == {"active": False, "reason": "unknown"}

    def test_refresh_token_is_not_an_access_token(self, client, app):
        reg = register_client(client, app)
        tokens = issue_tokens(client, app, reg)

        assert introspect(client, reg, tokens["refresh_token"])["active"] is False

    def test_exp_matches_expires_in(self, client, app, clock):
        reg = register_client(client, app)
        tokens = issue_tokens(client, app, reg)

        info = introspect(client, reg, tokens["access_token"])

        assert info["exp"] == int(clock.now.timestamp()) + tokens["expires_in"]

    def test_introspection_requires_client_authentication(self, client, app):
        resp = client.post("/oauth/introspect", data={"token": "x"})

        assert resp.status_code == 401
        assert resp.get_json()["error"]["code"] == "invalid_client"


class TestStandingAuthorizations:

    def test_list_authorizations(self, client, app):
        reg = register_client(client, app, name="Listed")
        issue_tokens(client, app, reg, user_id=11, scope="read write")

        resp = client.get("/oauth/authorizations", headers=auth_headers(session_token(app, 11)))

        assert resp.status_code == 200
        data = resp.get_json()["data"]
        assert len(data) == 1
        assert data[0]["client_id"] == reg["client_id"]
        assert data[0]["client_name"] == "Listed"
        assert data[0]["scope"] == "read write"
        assert data[0]["last_used_at"] is not None

    def test_list_is_per_user(self, client, app):
        reg = register_client(client, app)
        issue_tokens(client, app, reg, user_id=11)

        resp = client.get("/oauth/authorizations", headers=auth_headers(session_token(app, 12)))

        assert resp.get_json()["data"] == []

    def test_withdraw_authorization_revokes_tokens(self, client, app):
        reg = register_client(client, app)
        tokens = issue_tokens(client, app, reg, user_id=11)

        resp = client.delete(
            f"/oauth/authorizations/{reg['client_id']}",
            headers=auth_headers(session_token(app, 11)),
        )

        assert resp.status_code == 200
        assert resp.get_json()["data"]["revoked"] is True
        assert introspect(client, reg, tokens["access_token"])["active"] is False
        assert refresh(client, reg, tokens["refresh_token"]).status_code == 400

        listed = client.get("/oauth/authorizations", headers=auth_headers(session_token(app, 11)))
        assert listed.get_json()["data"] == []

    def test_withdraw_then_authorize_asks_again(self, client, app):
        reg = register_client(client, app)
        issue_tokens(client, app, reg, user_id=11)
        client.delete(
            f"/oauth/authorizations/{reg['client_id']}",
            headers=auth_headers(session_token(app, 11)),
        )

        resp = authorize(client, app, reg, user_id=11)

        assert resp.get_json()["data"]["consent_required"] is True

    def test_withdraw_without_grant_is_false(self, client, app):
        reg = register_client(client, app)

        resp = client.delete(
            f"/oauth/authorizations/{reg['client_id']}",
            headers=auth_headers(session_token(app, 11)),
        )

        assert resp.status_code == 200
        assert resp.get_json()["data"]["revoked"] is False


class TestClientSuspension:

    def test_suspended_client_tokens_fail_validation(self, client, app):
        reg = register_client(client, app)
        tokens = issue_tokens(client, app, reg)
        observer = register_client(client, app, name="Observer")

        set_status(app, reg["client_id"], "suspended")

        assert introspect(client, observer, tokens["access_token"]) == {
            "active": False,
            "reason": "revoked",
        }

    def test_suspended_client_cannot_authenticate(self, client, app):
        reg = register_client(client, app)
        tokens = issue_tokens(client, app, reg)

        set_status(app, reg["client_id"], "suspended")
        resp = refresh(client, reg, tokens["refresh_token"])

        assert resp.status_code == 401
        assert resp.get_json()["error"]["code"] == "invalid_client"

    def test_reapproved_client_tokens_stay_revoked(self, client, app):
        reg = register_client(client, app)
        tokens = issue_tokens(client, app, reg)

        set_status(app, reg["client_id"], "suspended")
        set_status(app, reg["client_id"], "approved")

        assert introspect(client, reg, tokens["access_token"])["active"] is False
        resp = refresh(client, reg, tokens["refresh_token"])
        assert resp.status_code == 400
