"""
schemas/oauth_schema.py — Marshmallow schemas for the OAuth endpoints.

Validation responsibility:
  - This file: presence, types, enumerations, PKCE verifier format.
  - services/: everything that needs a DB lookup (client, redirect URI,
    scope vocabulary, code and token state).

Error messages that ARE a registered ErrorCode value are passed through as
the response code by the ValidationError handler in app/__init__.py
(e.g. unsupported_grant_type), so standard OAuth client libraries see the
code they expect.

IMPORTANT: All schemas inherit from marshmallow.Schema directly.
           Do NOT use ma.Schema — it requires an active Flask app context
           and breaks unit tests. See extensions.py for the full explanation.
"""

from __future__ import annotations

from marshmallow import EXCLUDE, Schema, ValidationError, fields, validate, validates, validates_schema

from authgrant.app.errors import ErrorCode
from authgrant.app.security import PKCE_VERIFIER_RE


GRANT_TYPES = ("authorization_code", "refresh_token")


class _OAuthSchema(Schema):
    # OAuth clients routinely send extra parameters; ignore them.
    class Meta:
        unknown = EXCLUDE


class AuthorizeRequestSchema(_OAuthSchema):
    """
    GET /oauth/authorize (query string)

    Only the authorization-code response type is supported.
    """

    response_type = fields.Str(
        required=True,
        validate=validate.Equal("code", error=ErrorCode.UNSUPPORTED_RESPONSE_TYPE),
    )
    client_id = fields.Str(required=True, validate=validate.Length(min=1))
    redirect_uri = fields.Str(required=True, validate=validate.Length(min=1))
    scope = fields.Str(load_default=None)
    state = fields.Str(load_default=None, validate=validate.Length(max=500))
    # Format is checked by CodeIssuer.challenge_method so a bad value is
    # redirected back to the client as invalid_request.
    code_challenge = fields.Str(load_default=None)
    code_challenge_method = fields.Str(load_default=None)


class ConsentSchema(AuthorizeRequestSchema):
    """
    POST /oauth/consent

    The authorization request echoed back by the consent screen, plus the
    user's decision.
    """

    approved = fields.Bool(required=True)


class TokenRequestSchema(_OAuthSchema):
    """
    POST /oauth/token

    Per-grant requirements:
      authorization_code : code, redirect_uri (code_verifier when PKCE was used)
      refresh_token      : refresh_token (scope optional, narrowing only)

    client_id / client_secret may come here or in HTTP Basic; see
    middleware/client_auth.py.
    """

    grant_type = fields.Str(
        required=True,
        validate=validate.OneOf(GRANT_TYPES, error=ErrorCode.UNSUPPORTED_GRANT_TYPE),
    )
    code = fields.Str(load_default=None)
    redirect_uri = fields.Str(load_default=None)
    code_verifier = fields.Str(load_default=None)
    refresh_token = fields.Str(load_default=None)
    scope = fields.Str(load_default=None)
    client_id = fields.Str(load_default=None)
    client_secret = fields.Str(load_default=None, load_only=True)

    @validates("code_verifier")
    def validate_code_verifier(self, value, **kwargs) -> None:
        """RFC 7636 §4.1: 43–128 characters from the unreserved set."""
        if value is not None and not PKCE_VERIFIER_RE.match(value):
            raise ValidationError(
                "code_verifier must be 43-128 characters of [A-Za-z0-9-._~]."
            )

    @validates_schema
    def validate_grant_fields(self, data, **kwargs) -> None:
        grant_type = data.get("grant_type")
        if grant_type == "authorization_code":
            required = ("code", "redirect_uri")
        elif grant_type == "refresh_token":
            required = ("refresh_token",)
        else:
            return

        for name in required:
            if not data.get(name):
                raise ValidationError(
                    f"Missing data for required field '{name}' "
                    f"(grant_type={grant_type}).",
                    field_name=name,
                )


class TokenActionSchema(_OAuthSchema):
    """
    POST /oauth/revoke and POST /oauth/introspect

    token_type_hint is accepted and ignored: lookups try access tokens first,
    then refresh tokens.
    """

    token = fields.Str(required=True)
    token_type_hint = fields.Str(
        load_default=None,
        validate=validate.OneOf(("access_token", "refresh_token")),
    )
    client_id = fields.Str(load_default=None)
    client_secret = fields.Str(load_default=None, load_only=True)
