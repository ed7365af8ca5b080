"""
middleware/auth_middleware.py — Session JWT authentication decorator.

The signed-in user (resource owner) reaches the authorization server with a
session JWT minted by the surrounding application. The @require_auth
decorator:
  1. Reads the Authorization header (expected: "Bearer <jwt>")
  2. Decodes and verifies the signature (JWT_SECRET_KEY / JWT_ALGORITHM)
  3. Checks expiry
  4. Attaches user_id (int, from the `sub` claim) to flask.g

This is NOT how OAuth access tokens are checked: those are opaque and go
through TokenIssuer.validate() / POST /oauth/introspect.

Strict responsibility boundary:
  - Middleware = authentication (401). Ownership checks (403) belong to
    the service layer, which receives user_id as a plain int.

Error codes:
  token_missing  (401) — no Authorization header
  token_invalid  (401) — malformed header, bad signature, or bad payload
  token_expired  (401) — valid token but exp claim is in the past
"""

from __future__ import annotations

import functools
from typing import Callable

import jwt
from flask import current_app, g, request

from authgrant.app.errors import AppError, ErrorCode


def require_auth(f: Callable) -> Callable:
    """
    Route decorator that enforces session JWT authentication.

    Attaches the authenticated user's ID to flask.g.user_id.
    Raises AppError for all auth failures — the global error handler converts
    these to the correct JSON response. Routes never catch AppError.

    Usage:
        @oauth_bp.route("/authorize")
        @require_auth
        def authorize():
            user_id = g.user_id  # always an int when this runs
            ...
    """
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        _authenticate_request()
        return f(*args, **kwargs)

    return decorated


def _authenticate_request() -> None:
    """
    Performs the full JWT authentication sequence and sets flask.g.user_id.

    Separated from the decorator wrapper so tests can call it directly inside
    a test request context.
    """
    auth_header = request.headers.get("Authorization", "")

    # ── Step 1: Require Authorization header ──────────────────────────────
    if not auth_header:
        raise AppError(
            ErrorCode.TOKEN_MISSING,
            "Authentication required. Provide a Bearer token in the Authorization header.",
            401,
        )

    # ── Step 2: Parse "Bearer <token>" format ─────────────────────────────
    parts = auth_header.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AppError(
            ErrorCode.TOKEN_INVALID,
            "Authorization header must be in the format: Bearer <token>.",
            401,
        )

    raw_token = parts[1]

    # ── Step 3: Decode and verify the JWT ─────────────────────────────────
    try:
        payload = jwt.decode(
            raw_token,
            current_app.config["JWT_SECRET_KEY"],
            algorithms=[current_app.config.get("JWT_ALGORITHM", "HS256")],
        )
    except jwt.ExpiredSignatureError:
        raise AppError(
            ErrorCode.TOKEN_EXPIRED,
            "The session token has expired. Sign in again.",
            401,
        )
    except jwt.InvalidTokenError:
        # bad signature, malformed token, invalid claims
        raise AppError(
            ErrorCode.TOKEN_INVALID,
            "The session token is invalid or has been tampered with.",
            401,
        )

    # ── Step 4: Extract and validate the sub (user_id) claim ──────────────
    sub = payload.get("sub")
    if sub is None:
        raise AppError(
            ErrorCode.TOKEN_INVALID,
            "The session token is missing the required 'sub' claim.",
            401,
        )

    try:
        user_id = int(sub)
    except (TypeError, ValueError):
        raise AppError(
            ErrorCode.TOKEN_INVALID,
            "The 'sub' claim in the session token is not a valid user ID.",
            401,
        )

    # ── Step 5: Attach user_id to flask.g ─────────────────────────────────
    g.user_id = user_id
