"""
middleware/client_auth.py — Client credential extraction.

RFC 6749 §2.3.1 allows two ways to present client credentials:
  - HTTP Basic (client_id:client_secret), preferred
  - client_id / client_secret in the request body

Only extraction happens here. Verification is ClientRegistry.authenticate(),
so every failure mode yields the same invalid_client error.
"""

from __future__ import annotations

from flask import request

from authgrant.app.errors import AppError, ErrorCode


def request_body() -> dict:
    """The request parameters: form-encoded (the OAuth norm) or JSON."""
    if request.form:
        return request.form.to_dict()
    return request.get_json(force=True, silent=True) or {}


def client_credentials(body: dict) -> tuple[str | None, str | None]:
    """
    Returns (client_id, client_secret).

    Raises:
      AppError(INVALID_REQUEST, 400) — credentials sent both ways at once.
    """
    basic = request.authorization
    if basic is not None and basic.type == "basic":
        if body.get("client_secret"):
            raise AppError(
                ErrorCode.INVALID_REQUEST,
                "Use either HTTP Basic or body client credentials, not both.",
                400,
            )
        return basic.username, basic.password

    return body.get("client_id"), body.get("client_secret")
