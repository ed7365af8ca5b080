"""
services/grant_engine.py — Authorization-code and refresh grant flows.

Composes the leaf components:

  ClientRegistry     — who the client is and what it may ask for
  CodeIssuer         — single-use codes
  TokenIssuer        — access/refresh pairs, validation
  RotationLedger     — refresh rotation and reuse detection
  RevocationService  — revocation cascades
  AuditService       — audit trail

Grant lifecycle, as reported by grant_state():

  requested → code_issued → exchanged → tokens_issued
                   │                          │
                   └──► expired               └──► revoked

Commit policy: the engine only flushes, with two exceptions (code replay
here, refresh-token reuse in RotationLedger). Both commit their revocation
cascade before the error propagates.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from authgrant.app.errors import AppError, ErrorCode, Reason, invalid_client
from authgrant.app.models.access_token import AccessToken
from authgrant.app.models.authorization_code import AuthorizationCode
from authgrant.app.models.client import OAuthClient
from authgrant.app.models.refresh_token import RefreshToken
from authgrant.app.models.user_authorization import UserAuthorization
from authgrant.app.scopes import covers, format_scope, parse_scope
from authgrant.app.security import as_utc, hash_token, utcnow
from authgrant.app.services.audit_service import AuditAction, AuditService
from authgrant.app.services.client_registry import ClientRegistry
from authgrant.app.services.code_issuer import CodeIssuer
from authgrant.app.services.revocation_service import RevocationService
from authgrant.app.services.rotation_ledger import RotationLedger
from authgrant.app.services.token_issuer import TokenIssuer
from authgrant.config import OAuthSettings

logger = logging.getLogger(__name__)


class GrantState:
    REQUESTED     = "requested"
    CODE_ISSUED   = "code_issued"
    EXCHANGED     = "exchanged"
    TOKENS_ISSUED = "tokens_issued"
    EXPIRED       = "expired"
    REVOKED       = "revoked"


# Statuses that end a client's ability to hold live credentials.
REVOKING_STATUSES = frozenset({"suspended", "rejected"})


def with_query(uri: str, params: dict) -> str:
    """Appends params to uri, keeping any query the registered URI carries."""
    parts = urlsplit(uri)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v is not None)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


@dataclass
class AuthorizeResult:
    """
    Outcome of an authorization request.

    Exactly one of:
      redirect_to        — send the user agent back to the client
      consent_required   — ask the user; client and scopes describe the request
    """
    redirect_to: str | None = None
    consent_required: bool = False
    client: OAuthClient | None = None
    scopes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        if self.redirect_to is not None:
            return {"redirect_to": self.redirect_to}
        return {
            "consent_required": True,
            "client": {
                "client_id":   self.client.client_id,
                "name":        self.client.name,
                "description": self.client.description,
                "website":     self.client.website,
                "logo_url":    self.client.logo_url,
            },
            "scopes": self.scopes,
        }


class GrantEngine:

    def __init__(
            self,
            session: Session,
            settings: OAuthSettings,
            clock: Callable[[], datetime] = utcnow,
            ip_address: str | None = None,
    ) -> None:
        self._session    = session
        self._settings   = settings
        self._clock      = clock
        self.audit       = AuditService(session, ip_address=ip_address)
        self.clients     = ClientRegistry(session, settings)
        self.codes       = CodeIssuer(session, settings, clock)
        self.tokens      = TokenIssuer(session, settings, clock)
        self.revocation  = RevocationService(session, clock)
        self.ledger      = RotationLedger(session, self.tokens, self.revocation, self.audit, clock)

    # ── Authorization endpoint ─────────────────────────────────────────────

    def authorize(
            self,
            user_id: int,
            client_id: str,
            redirect_uri: str,
            scope: str | None,
            state: str | None = None,
            code_challenge: str | None = None,
            code_challenge_method: str | None = None,
    ) -> AuthorizeResult:
        """
        Validates an authorization request for the signed-in user.

        Raises (never redirected, the redirect target is not trusted yet):
          AppError(INVALID_CLIENT, 401)   — unknown or non-approved client
          AppError(INVALID_REQUEST, 400)  — redirect_uri not registered

        Scope and PKCE problems are redirected back to the client as
        error/error_description/state. A standing authorization that covers
        the request skips consent and redirects with a fresh code.
        """
        client = self._require_active_client(client_id)
        self._require_registered_redirect(client, redirect_uri)

        try:
            scopes = self.clients.validate_scopes(client.client_id, scope)
            CodeIssuer.challenge_method(code_challenge, code_challenge_method)
        except AppError as err:
            return AuthorizeResult(redirect_to=self._error_redirect(redirect_uri, err, state))

        standing = self._active_authorization(user_id, client.client_id)
        if standing is not None and covers(parse_scope(standing.scope), scopes):
            return AuthorizeResult(
                redirect_to=self._issue_code_redirect(
                    user_id, client.client_id, redirect_uri, scopes,
                    state, code_challenge, code_challenge_method,
                )
            )

        return AuthorizeResult(consent_required=True, client=client, scopes=scopes)

    def grant_consent(
            self,
            user_id: int,
            client_id: str,
            redirect_uri: str,
            scope: str | None,
            approved: bool,
            state: str | None = None,
            code_challenge: str | None = None,
            code_challenge_method: str | None = None,
    ) -> AuthorizeResult:
        """
        Records the user's decision. Deny redirects with access_denied;
        allow stores the standing authorization and redirects with a code.
        Same pre-redirect errors as authorize().
        """
        client = self._require_active_client(client_id)
        self._require_registered_redirect(client, redirect_uri)

        try:
            scopes = self.clients.validate_scopes(client.client_id, scope)
            CodeIssuer.challenge_method(code_challenge, code_challenge_method)
        except AppError as err:
            return AuthorizeResult(redirect_to=self._error_redirect(redirect_uri, err, state))

        if not approved:
            self.audit.record(AuditAction.CONSENT_DENIED, client_id=client.client_id, user_id=user_id)
            denied = AppError(ErrorCode.ACCESS_DENIED, "The user denied the request.", 400)
            return AuthorizeResult(redirect_to=self._error_redirect(redirect_uri, denied, state))

        self._store_authorization(user_id, client.client_id, scopes)
        self.audit.record(
            AuditAction.CONSENT_GRANTED,
            client_id=client.client_id,
            user_id=user_id,
            details=f"scope={format_scope(scopes)}",
        )
        return AuthorizeResult(
            redirect_to=self._issue_code_redirect(
                user_id, client.client_id, redirect_uri, scopes,
                state, code_challenge, code_challenge_method,
            )
        )

    # ── Token endpoint ─────────────────────────────────────────────────────

    def exchange_code(
            self,
            client_id: str | None,
            client_secret: str | None,
            code: str,
            redirect_uri: str | None,
            code_verifier: str | None = None,
    ) -> dict:
        """
        grant_type=authorization_code. Returns the token response body.

        A code presented a second time is treated as stolen: every token
        minted from it (and every rotation of those) is revoked and committed
        before invalid_grant is raised.
        """
        client = self.clients.authenticate(client_id, client_secret)

        try:
            record = self.codes.exchange(code, client.client_id, redirect_uri, code_verifier)
        except AppError as err:
            if err.reason == Reason.USED:
                self._handle_code_replay(code, client.client_id)
            raise

        scopes = parse_scope(record.scope)
        pair = self.tokens.issue_pair(
            record.user_id, client.client_id, scopes, authorization_code_id=record.id
        )
        self._touch_authorization(record.user_id, client.client_id, scopes)
        self.audit.record(
            AuditAction.AUTHORIZATION_CODE_EXCHANGED,
            client_id=client.client_id,
            user_id=record.user_id,
        )
        return pair.to_response(self._clock())

    def refresh(
            self,
            client_id: str | None,
            client_secret: str | None,
            refresh_token: str,
            scope: str | None = None,
    ) -> dict:
        """grant_type=refresh_token. Returns the token response body."""
        client = self.clients.authenticate(client_id, client_secret)
        pair = self.ledger.refresh(refresh_token, client.client_id, scope)
        self._touch_authorization(pair.access_token.user_id, client.client_id)
        return pair.to_response(self._clock())

    # ── Introspection / revocation endpoints ───────────────────────────────

    def introspect(
            self,
            client_id: str | None,
            client_secret: str | None,
            token: str,
    ) -> dict:
        """RFC 7662 style. Invalid tokens are reported, not raised."""
        self.clients.authenticate(client_id, client_secret)

        try:
            record = self.tokens.validate(token)
        except AppError as err:
            if err.code != ErrorCode.INVALID_TOKEN:
                raise
            return {"active": False, "reason": err.reason}

        return {
            "active":     True,
            "user_id":    record.user_id,
            "client_id":  record.client_id,
            "scope":      record.scope,
            "token_type": "Bearer",
            "exp":        int(as_utc(record.expires_at).timestamp()),
        }

    def revoke(
            self,
            client_id: str | None,
            client_secret: str | None,
            token: str,
    ) -> None:
        """
        RFC 7009. Succeeds for unknown, already-revoked and foreign tokens;
        only tokens issued to the authenticated client are touched.
        """
        client = self.clients.authenticate(client_id, client_secret)
        if self.revocation.revoke_token(token, client_id=client.client_id):
            self.audit.record(AuditAction.TOKEN_REVOKED, client_id=client.client_id)

    # ── Standing authorizations ────────────────────────────────────────────

    def list_authorizations(self, user_id: int) -> list[tuple[UserAuthorization, OAuthClient]]:
        rows = self._session.execute(
            select(UserAuthorization, OAuthClient)
            .join(OAuthClient, OAuthClient.client_id == UserAuthorization.client_id)
            .where(
                UserAuthorization.user_id == user_id,
                UserAuthorization.revoked_at.is_(None),
            )
            .order_by(UserAuthorization.created_at, UserAuthorization.id)
        ).all()
        return [(row[0], row[1]) for row in rows]

    def revoke_authorization(self, user_id: int, client_id: str) -> bool:
        """Revokes the user's grant to the client and every token behind it."""
        revoked = self.revocation.revoke_user_authorization(user_id, client_id)
        if revoked:
            self.audit.record(
                AuditAction.USER_AUTHORIZATION_REVOKED,
                client_id=client_id,
                user_id=user_id,
            )
        return revoked

    # ── Client administration ──────────────────────────────────────────────

    def register_client(
            self,
            owner_id: int,
            metadata: dict,
            redirect_uris: list[str],
            scopes: list[str] | str,
    ) -> tuple[OAuthClient, str]:
        client, raw_secret = self.clients.register(owner_id, metadata, redirect_uris, scopes)
        self.audit.record(AuditAction.CLIENT_REGISTERED, client_id=client.client_id, user_id=owner_id)
        return client, raw_secret

    def list_clients(self, owner_id: int) -> list[OAuthClient]:
        return self.clients.list_for_owner(owner_id)

    def regenerate_client_secret(self, owner_id: int, client_id: str) -> tuple[OAuthClient, str]:
        """Raises CLIENT_NOT_FOUND (404) or FORBIDDEN (403) for a non-owner."""
        client = self.clients.require(client_id)
        if client.owner_id != owner_id:
            raise AppError(
                ErrorCode.FORBIDDEN,
                "Only the client's owner can regenerate its secret.",
                403,
            )
        raw_secret = self.clients.regenerate_secret(client_id)
        self.audit.record(AuditAction.CLIENT_SECRET_REGENERATED, client_id=client_id, user_id=owner_id)
        return client, raw_secret

    def change_client_status(self, client_id: str, status: str) -> OAuthClient:
        """Suspending or rejecting a client revokes everything it holds."""
        client = self.clients.set_status(client_id, status)
        self.audit.record(
            AuditAction.CLIENT_STATUS_CHANGED,
            client_id=client_id,
            details=f"status={status}",
        )
        if status in REVOKING_STATUSES:
            counts = self.revocation.revoke_client(client_id)
            self.audit.record(
                AuditAction.CLIENT_REVOKED,
                client_id=client_id,
                details=" ".join(f"{k}={v}" for k, v in counts.items()),
            )
        return client

    # ── Housekeeping ───────────────────────────────────────────────────────

    def sweep_expired(self) -> dict:
        """Deletes expired codes, token pairs, and lapsed revoked authorizations."""
        now = self._clock()
        codes = self.codes.sweep_expired()
        tokens = self.tokens.sweep_expired()
        result = self._session.execute(
            delete(UserAuthorization)
            .where(
                UserAuthorization.revoked_at.is_not(None),
                UserAuthorization.expires_at.is_not(None),
                UserAuthorization.expires_at < now,
            )
            .execution_options(synchronize_session=False)
        )
        counts = {
            "authorization_codes": codes,
            "access_tokens": tokens,
            "user_authorizations": int(result.rowcount or 0),
        }
        logger.info("Swept expired OAuth rows: %s", counts)
        return counts

    # ── Grant state ────────────────────────────────────────────────────────

    def grant_state(self, code: AuthorizationCode | None) -> str:
        """
        Reports where the grant started by `code` stands. None means the
        request has not produced a code yet.
        """
        if code is None:
            return GrantState.REQUESTED
        if code.revoked_at is not None:
            return GrantState.REVOKED
        if not code.used:
            if self._clock() >= as_utc(code.expires_at):
                return GrantState.EXPIRED
            return GrantState.CODE_ISSUED

        roots = list(
            self._session.execute(
                select(RefreshToken)
                .join(AccessToken, RefreshToken.access_token_id == AccessToken.id)
                .where(AccessToken.authorization_code_id == code.id)
            ).scalars()
        )
        if not roots:
            return GrantState.EXCHANGED

        for root in roots:
            tip = root
            while tip.successor_id is not None:
                tip = self._session.get(RefreshToken, tip.successor_id)
            if tip.revoked_at is None:
                return GrantState.TOKENS_ISSUED
        return GrantState.REVOKED

    # ── Private helpers ────────────────────────────────────────────────────

    def _require_active_client(self, client_id: str | None) -> OAuthClient:
        client = self.clients.get(client_id) if client_id else None
        if client is None or client.status != "approved":
            raise invalid_client("Unknown or inactive client.")
        return client

    def _require_registered_redirect(self, client: OAuthClient, redirect_uri: str | None) -> None:
        if not self.clients.validate_redirect(client.client_id, redirect_uri):
            raise AppError(
                ErrorCode.INVALID_REQUEST,
                "redirect_uri is not registered for this client.",
                400,
                field="redirect_uri",
            )

    @staticmethod
    def _error_redirect(redirect_uri: str, err: AppError, state: str | None) -> str:
        return with_query(redirect_uri, {
            "error": err.code,
            "error_description": err.message,
            "state": state,
        })

    def _issue_code_redirect(
            self,
            user_id: int,
            client_id: str,
            redirect_uri: str,
            scopes: list[str],
            state: str | None,
            code_challenge: str | None,
            code_challenge_method: str | None,
    ) -> str:
        record, raw_code = self.codes.issue(
            user_id, client_id, redirect_uri, scopes, code_challenge, code_challenge_method
        )
        self.audit.record(
            AuditAction.AUTHORIZATION_CODE_ISSUED,
            client_id=client_id,
            user_id=user_id,
            details=f"scope={record.scope} pkce={record.code_challenge_method or 'none'}",
        )
        return with_query(redirect_uri, {"code": raw_code, "state": state})

    def _active_authorization(self, user_id: int, client_id: str) -> UserAuthorization | None:
        """The standing grant, if not revoked and not past expires_at."""
        authorization = self._find_authorization(user_id, client_id)
        if authorization is None or authorization.revoked_at is not None:
            return None
        if authorization.expires_at is not None and self._clock() >= as_utc(authorization.expires_at):
            return None
        return authorization

    def _find_authorization(self, user_id: int, client_id: str) -> UserAuthorization | None:
        return self._session.execute(
            select(UserAuthorization).where(
                UserAuthorization.user_id == user_id,
                UserAuthorization.client_id == client_id,
            )
        ).scalar_one_or_none()

    def _store_authorization(self, user_id: int, client_id: str, scopes: list[str]) -> UserAuthorization:
        """Creates the standing grant, or replaces its scope and reactivates it."""
        now = self._clock()
        authorization = self._find_authorization(user_id, client_id)
        if authorization is None:
            authorization = UserAuthorization(user_id=user_id, client_id=client_id)
            self._session.add(authorization)

        authorization.scope = format_scope(scopes)
        authorization.revoked_at = None
        authorization.last_used_at = now
        authorization.expires_at = now + self._settings.user_authorization_ttl
        self._session.flush()
        return authorization

    def _touch_authorization(
            self,
            user_id: int,
            client_id: str,
            scopes: list[str] | None = None,
    ) -> None:
        """
        Marks the standing grant as used. With `scopes`, a missing grant is
        created.
        """
        authorization = self._find_authorization(user_id, client_id)
        if authorization is not None and authorization.revoked_at is None:
            authorization.last_used_at = self._clock()
            self._session.flush()
        elif authorization is None and scopes is not None:
            self._store_authorization(user_id, client_id, scopes)

    def _handle_code_replay(self, raw_code: str, client_id: str) -> None:
        record = self.codes.find(raw_code)
        chains = self.revocation.revoke_code_grant(hash_token(raw_code))
        self.audit.record(
            AuditAction.AUTHORIZATION_CODE_REPLAY,
            client_id=client_id,
            user_id=record.user_id if record is not None else None,
            details=f"Used authorization code presented again; revoked {chains} token chains.",
        )
        self._session.commit()
