"""
routes/oauth.py — Authorization server endpoints.

Layer rules:
  - Parse request parameters
  - Validate with the appropriate schema (raises ValidationError on bad input)
  - Call exactly ONE GrantEngine operation
  - Commit the DB session
  - Return the standard response envelope: {"data": {...}, "warnings": []}

AppError propagates to the global error handler in app/__init__.py — routes
never catch it.

Endpoints (url_prefix=/oauth):
  GET    /authorize                    → 302 (code / error) or 200 consent_required
  POST   /consent                      → 302 (code / access_denied)
  POST   /token                        → 200 token response, Cache-Control: no-store
  POST   /revoke                       → 200 always (after client auth)
  POST   /introspect                   → 200 {active, ...}
  GET    /authorizations               → 200 caller's standing grants
  DELETE /authorizations/<client_id>   → 200 revoke a standing grant
"""

from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, redirect, request

from authgrant.app.extensions import db
from authgrant.app.middleware.auth_middleware import require_auth
from authgrant.app.middleware.client_auth import client_credentials, request_body
from authgrant.app.schemas.oauth_schema import (
    AuthorizeRequestSchema,
    ConsentSchema,
    TokenActionSchema,
    TokenRequestSchema,
)
from authgrant.app.services.grant_engine import AuthorizeResult, GrantEngine

oauth_bp = Blueprint("oauth", __name__)


def grant_engine() -> GrantEngine:
    """A GrantEngine bound to the request session and the app's settings."""
    return GrantEngine(
        db.session,
        current_app.extensions["oauth_settings"],
        clock=current_app.extensions["oauth_clock"],
        ip_address=request.remote_addr,
    )


def _authorize_response(result: AuthorizeResult):
    if result.redirect_to is not None:
        return redirect(result.redirect_to, code=302)
    return jsonify({"data": result.to_dict(), "warnings": []}), 200


def _no_store(response):
    # RFC 6749 §5.1: token responses must not be cached.
    response.headers["Cache-Control"] = "no-store"
    response.headers["Pragma"] = "no-cache"
    return response


@oauth_bp.route("/authorize", methods=["GET"])
@require_auth
def authorize():
    """GET /oauth/authorize — Start an authorization-code grant for the signed-in user."""
    data = AuthorizeRequestSchema().load(request.args.to_dict())
    result = grant_engine().authorize(
        user_id=g.user_id,
        client_id=data["client_id"],
        redirect_uri=data["redirect_uri"],
        scope=data["scope"],
        state=data["state"],
        code_challenge=data["code_challenge"],
        code_challenge_method=data["code_challenge_method"],
    )
    db.session.commit()
    return _authorize_response(result)


@oauth_bp.route("/consent", methods=["POST"])
@require_auth
def consent():
    """POST /oauth/consent — Record the user's allow/deny decision."""
    data = ConsentSchema().load(request_body())
    result = grant_engine().grant_consent(
        user_id=g.user_id,
        client_id=data["client_id"],
        redirect_uri=data["redirect_uri"],
        scope=data["scope"],
        approved=data["approved"],
        state=data["state"],
        code_challenge=data["code_challenge"],
        code_challenge_method=data["code_challenge_method"],
    )
    db.session.commit()
    return _authorize_response(result)


@oauth_bp.route("/token", methods=["POST"])
def token():
    """POST /oauth/token — authorization_code and refresh_token grants. (Client auth.)"""
    body = request_body()
    data = TokenRequestSchema().load(body)
    client_id, client_secret = client_credentials(body)
    engine = grant_engine()

    if data["grant_type"] == "authorization_code":
        result = engine.exchange_code(
            client_id=client_id,
            client_secret=client_secret,
            code=data["code"],
            redirect_uri=data["redirect_uri"],
            code_verifier=data["code_verifier"],
        )
    else:
        result = engine.refresh(
            client_id=client_id,
            client_secret=client_secret,
            refresh_token=data["refresh_token"],
            scope=data["scope"],
        )

    db.session.commit()
    return _no_store(jsonify({"data": result, "warnings": []})), 200


@oauth_bp.route("/revoke", methods=["POST"])
def revoke():
    """POST /oauth/revoke — Revoke an access or refresh token. (Client auth.)"""
    body = request_body()
    data = TokenActionSchema().load(body)
    client_id, client_secret = client_credentials(body)
    grant_engine().revoke(
        client_id=client_id,
        client_secret=client_secret,
        token=data["token"],
    )
    db.session.commit()
    return jsonify({"data": {"revoked": True}, "warnings": []}), 200


@oauth_bp.route("/introspect", methods=["POST"])
def introspect():
    """POST /oauth/introspect — Report whether an access token is active. (Client auth.)"""
    body = request_body()
    data = TokenActionSchema().load(body)
    client_id, client_secret = client_credentials(body)
    result = grant_engine().introspect(
        client_id=client_id,
        client_secret=client_secret,
        token=data["token"],
    )
    return _no_store(jsonify({"data": result, "warnings": []})), 200


@oauth_bp.route("/authorizations", methods=["GET"])
@require_auth
def list_authorizations():
    """GET /oauth/authorizations — Clients the signed-in user has authorized."""
    rows = grant_engine().list_authorizations(g.user_id)
    result = [
        {
            "client_id":    client.client_id,
            "client_name":  client.name,
            "scope":        authorization.scope,
            "created_at":   authorization.created_at,
            "last_used_at": authorization.last_used_at,
            "expires_at":   authorization.expires_at,
        }
        for authorization, client in rows
    ]
    return jsonify({"data": result, "warnings": []}), 200


@oauth_bp.route("/authorizations/<client_id>", methods=["DELETE"])
@require_auth
def revoke_authorization(client_id: str):
    """DELETE /oauth/authorizations/:client_id — Withdraw a standing grant and its tokens."""
    revoked = grant_engine().revoke_authorization(g.user_id, client_id)
    db.session.commit()
    return jsonify({"data": {"client_id": client_id, "revoked": revoked}, "warnings": []}), 200
