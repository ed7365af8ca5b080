"""
services/client_registry.py — Registered client applications.

Responsibilities:
  - Client registration (redirect URIs, scopes, display metadata)
  - Client authentication (client_id + secret, bcrypt)
  - Exact-match redirect URI validation
  - Scope validation against the client's allowed set
  - Status changes and secret regeneration

Layer rules:
  - No Flask imports. Pure Python with a SQLAlchemy session parameter.
  - Commits are the route's responsibility — only flush here.
  - Leaf component: does not call any other OAuth service. Cascading a
    suspension to tokens is grant_engine's job.

Secrets:
  - The raw secret is returned once by register()/regenerate_secret() and
    is never stored, logged, or echoed in an error message.
"""

from __future__ import annotations

from collections.abc import Iterable
from urllib.parse import urlsplit

from sqlalchemy import select
from sqlalchemy.orm import Session

from authgrant.app.errors import (
    AppError,
    ErrorCode,
    invalid_client,
    invalid_scope,
    validation_error,
)
from authgrant.app.models.client import CLIENT_STATUSES, OAuthClient
from authgrant.app.scopes import format_scope, parse_scope
from authgrant.app.security import (
    dummy_secret_hash,
    generate_token,
    hash_secret,
    verify_secret,
)
from authgrant.config import OAuthSettings


def is_absolute_uri(uri: str) -> bool:
    """
    Absolute URI with a scheme and an authority, and no fragment
    (RFC 6749 §3.1.2). Custom schemes (myapp://callback) are accepted.
    """
    if not isinstance(uri, str) or not uri or uri != uri.strip():
        return False
    parts = urlsplit(uri)
    return bool(parts.scheme) and bool(parts.netloc) and not parts.fragment and "#" not in uri


class ClientRegistry:

    def __init__(self, session: Session, settings: OAuthSettings) -> None:
        self._session = session
        self._settings = settings

    # ── Lookup ─────────────────────────────────────────────────────────────

    def get(self, client_id: str) -> OAuthClient | None:
        return self._session.execute(
            select(OAuthClient).where(OAuthClient.client_id == client_id)
        ).scalar_one_or_none()

    def require(self, client_id: str) -> OAuthClient:
        """get() for management endpoints: unknown id is a 404, not a 401."""
        client = self.get(client_id)
        if client is None:
            raise AppError(
                ErrorCode.CLIENT_NOT_FOUND,
                f"Client '{client_id}' does not exist.",
                404,
            )
        return client

    def list_for_owner(self, owner_id: int) -> list[OAuthClient]:
        return list(
            self._session.execute(
                select(OAuthClient)
                .where(OAuthClient.owner_id == owner_id)
                .order_by(OAuthClient.created_at, OAuthClient.id)
            ).scalars()
        )

    # ── Registration ───────────────────────────────────────────────────────

    def register(
            self,
            owner_id: int,
            metadata: dict,
            redirect_uris: Iterable[str],
            scopes: Iterable[str] | str,
    ) -> tuple[OAuthClient, str]:
        """
        Registers a new client in `pending` status.

        Raises:
          AppError(INVALID_FIELD, 400, field="redirect_uris") — empty list or
              an entry that is not an absolute URI
          AppError(INVALID_FIELD, 400, field="scopes") — empty, or a scope
              outside the configured vocabulary

        Returns: (OAuthClient, raw_secret). The raw secret is shown once.
        """
        uris = list(redirect_uris or [])
        if not uris:
            raise validation_error("At least one redirect URI is required.", "redirect_uris")
        for uri in uris:
            if not is_absolute_uri(uri):
                raise validation_error(
                    f"Redirect URI '{uri}' is not an absolute URI.",
                    "redirect_uris",
                )

        requested = parse_scope(scopes)
        if not requested:
            raise validation_error("At least one scope is required.", "scopes")
        unknown = [s for s in requested if s not in self._settings.scope_vocabulary]
        if unknown:
            raise validation_error(
                f"Unrecognized scopes: {', '.join(unknown)}.",
                "scopes",
            )

        raw_secret = generate_token(32)
        client = OAuthClient(
            client_id=generate_token(16),
            client_secret_hash=hash_secret(raw_secret, self._settings.bcrypt_rounds),
            name=metadata["name"],
            description=metadata.get("description"),
            website=metadata.get("website"),
            logo_url=metadata.get("logo_url"),
            # de-duplicated, registration order kept
            redirect_uris=list(dict.fromkeys(uris)),
            allowed_scopes=format_scope(requested),
            status="pending",
            owner_id=owner_id,
        )
        self._session.add(client)
        self._session.flush()

        return client, raw_secret

    # ── Authentication ─────────────────────────────────────────────────────

    def authenticate(self, client_id: str | None, secret: str | None) -> OAuthClient:
        """
        Verifies client credentials.

        Raises:
          AppError(INVALID_CLIENT, 401) — unknown id, wrong secret, or a
          client that is not `approved`. One error for all three, so the
          response does not reveal which ids exist.
        """
        if not client_id or not secret:
            raise invalid_client("Client credentials are required.")

        client = self.get(client_id)
        if client is None:
            # Same bcrypt cost as a real check.
            verify_secret(secret, dummy_secret_hash(self._settings.bcrypt_rounds))
            raise invalid_client()

        if not verify_secret(secret, client.client_secret_hash):
            raise invalid_client()

        if client.status != "approved":
            raise invalid_client(f"Client is {client.status}.")

        return client

    # ── Validation ─────────────────────────────────────────────────────────

    def validate_redirect(self, client_id: str, uri: str | None) -> bool:
        """Exact string match against a registered URI. No wildcards, no prefixes."""
        client = self.get(client_id)
        if client is None or not uri:
            return False
        return uri in (client.redirect_uris or [])

    def validate_scopes(self, client_id: str, requested: Iterable[str] | str) -> list[str]:
        """
        Returns requested ∩ allowed, which equals `requested` on success.

        Raises:
          AppError(INVALID_SCOPE, 400) — nothing requested, or any requested
          scope is outside the allowed set (no silent downgrade).
        """
        client = self.get(client_id)
        if client is None:
            raise invalid_client()

        wanted = parse_scope(requested)
        if not wanted:
            raise invalid_scope("At least one scope must be requested.")

        allowed = set(parse_scope(client.allowed_scopes))
        excess = [s for s in wanted if s not in allowed]
        if excess:
            raise invalid_scope(
                f"Client is not allowed to request: {', '.join(excess)}."
            )
        return [s for s in wanted if s in allowed]

    # ── Administration ─────────────────────────────────────────────────────

    def set_status(self, client_id: str, status: str) -> OAuthClient:
        if status not in CLIENT_STATUSES:
            raise validation_error(
                f"Status must be one of: {', '.join(CLIENT_STATUSES)}.",
                "status",
            )
        client = self.require(client_id)
        client.status = status
        self._session.flush()
        return client

    def regenerate_secret(self, client_id: str) -> str:
        """Replaces the stored hash. The old secret stops working immediately."""
        client = self.require(client_id)
        raw_secret = generate_token(32)
        client.client_secret_hash = hash_secret(raw_secret, self._settings.bcrypt_rounds)
        self._session.flush()
        return raw_secret
