"""
schemas/client_schema.py — Marshmallow schemas for client management.

Shape rules live here; URI and scope-vocabulary rules live in
services/client_registry.py so the registry enforces them for every caller
(HTTP, CLI, tests).

IMPORTANT: All schemas inherit from marshmallow.Schema directly.
           Do NOT use ma.Schema — it requires an active Flask app context
           and breaks unit tests. See extensions.py for the full explanation.
"""

from __future__ import annotations

from marshmallow import Schema, ValidationError, fields, pre_load, validate, validates


class RegisterClientSchema(Schema):
    """
    POST /oauth/clients

    scopes may be a list or a space-delimited string; both load as a list.
    """

    name = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=100, error="Name must be between 1 and 100 characters."),
    )
    description = fields.Str(load_default=None)
    website = fields.Url(load_default=None, validate=validate.Length(max=255))
    logo_url = fields.Url(load_default=None, validate=validate.Length(max=255))
    redirect_uris = fields.List(fields.Str(), required=True)
    scopes = fields.List(fields.Str(), required=True)

    @pre_load
    def split_scope_string(self, data, **kwargs):
        if isinstance(data, dict) and isinstance(data.get("scopes"), str):
            data = dict(data)
            data["scopes"] = data["scopes"].split()
        return data

    @validates("name")
    def validate_name(self, value: str, **kwargs) -> None:
        if not value.strip():
            raise ValidationError("Name must not be blank.")

    @validates("redirect_uris")
    def validate_redirect_uris(self, value: list, **kwargs) -> None:
        if not value:
            raise ValidationError("At least one redirect URI is required.")


class ClientSchema(Schema):
    """Serialises an OAuthClient. The secret hash is never dumped."""

    client_id = fields.Str()
    name = fields.Str()
    description = fields.Str(allow_none=True)
    website = fields.Str(allow_none=True)
    logo_url = fields.Str(allow_none=True)
    redirect_uris = fields.List(fields.Str())
    allowed_scopes = fields.Str()
    status = fields.Str()
    created_at = fields.DateTime()
