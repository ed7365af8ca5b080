"""
routes/clients.py — Client (developer application) management.

Layer rules:
  - Parse, validate, call ONE GrantEngine operation, commit, return envelope.
  - Ownership (403) is decided by the engine, not here.

Endpoints (url_prefix=/oauth/clients):
  POST   /clients                      → 201 register; secret shown once
  GET    /clients                      → 200 caller's clients
  POST   /clients/:client_id/secret    → 200 regenerate secret (owner only)

Approval is an operator action: `flask oauth set-client-status`.
"""

from __future__ import annotations

from flask import Blueprint, g, jsonify, request

from authgrant.app.extensions import db
from authgrant.app.middleware.auth_middleware import require_auth
from authgrant.app.routes.oauth import grant_engine
from authgrant.app.schemas.client_schema import ClientSchema, RegisterClientSchema

clients_bp = Blueprint("clients", __name__)


@clients_bp.route("", methods=["POST"])
@require_auth
def register_client():
    """POST /oauth/clients — Register a client. It starts in `pending`."""
    data = RegisterClientSchema().load(request.get_json(force=True) or {})
    client, raw_secret = grant_engine().register_client(
        owner_id=g.user_id,
        metadata={
            "name":        data["name"],
            "description": data["description"],
            "website":     data["website"],
            "logo_url":    data["logo_url"],
        },
        redirect_uris=data["redirect_uris"],
        scopes=data["scopes"],
    )
    db.session.commit()

    result = ClientSchema().dump(client)
    result["client_secret"] = raw_secret
    return jsonify({"data": result, "warnings": []}), 201


@clients_bp.route("", methods=["GET"])
@require_auth
def list_clients():
    """GET /oauth/clients — Clients owned by the caller."""
    clients = grant_engine().list_clients(g.user_id)
    return jsonify({"data": ClientSchema(many=True).dump(clients), "warnings": []}), 200


@clients_bp.route("/<client_id>/secret", methods=["POST"])
@require_auth
def regenerate_secret(client_id: str):
    """POST /oauth/clients/:client_id/secret — Replace the client secret."""
    client, raw_secret = grant_engine().regenerate_client_secret(g.user_id, client_id)
    db.session.commit()
    return jsonify({
        "data": {"client_id": client.client_id, "client_secret": raw_secret},
        "warnings": [],
    }), 200
