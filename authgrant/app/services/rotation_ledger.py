"""
services/rotation_ledger.py — Refresh-token rotation with reuse detection.

Every refresh both advances and narrows the validity window:

  1. Unknown token, or one issued to another client      → invalid_grant
  2. Token already has a successor (it was rotated once) → REUSE:
       revoke the whole chain and the user's standing authorization for
       the client, audit, COMMIT, then raise refresh_token_reused
  3. Token revoked or expired                            → invalid_grant
  4. Otherwise: mint a new pair, then one conditional UPDATE sets the old
     token's successor and revokes it (WHERE successor_id IS NULL AND
     revoked_at IS NULL). The old access token is revoked with it.

Concurrency: two refreshes of the same token race on step 4's UPDATE. The
loser (rowcount == 0) discards the pair it minted, reloads the record and is
re-classified by steps 2/3 — it now sees a successor and is treated as reuse.

Commit exception:
  Step 2 commits inside the service. The error propagates to the global
  handler, and the request session is rolled back at teardown; without the
  commit the cascade would be undone by the very error that reports it.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.orm import Session

from authgrant.app.errors import Reason, invalid_grant, invalid_scope, reuse_detected
from authgrant.app.models.refresh_token import RefreshToken
from authgrant.app.scopes import covers, parse_scope
from authgrant.app.security import as_utc, utcnow
from authgrant.app.services.audit_service import AuditAction, AuditService
from authgrant.app.services.revocation_service import RevocationService
from authgrant.app.services.token_issuer import TokenIssuer, TokenPair


class RotationLedger:

    def __init__(
            self,
            session: Session,
            tokens: TokenIssuer,
            revocation: RevocationService,
            audit: AuditService,
            clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session = session
        self._tokens = tokens
        self._revocation = revocation
        self._audit = audit
        self._clock = clock

    def refresh(
            self,
            raw_refresh_token: str,
            client_id: str,
            scope: str | None = None,
    ) -> TokenPair:
        """
        Rotates a refresh token and returns the new pair.

        Args:
            raw_refresh_token: the value presented by the client.
            client_id:         the authenticated client.
            scope:             optional narrower scope (RFC 6749 §6); must be
                               covered by the original grant.

        Raises:
            AppError(INVALID_GRANT, 400)         — unknown, foreign, revoked, expired
            AppError(REFRESH_TOKEN_REUSED, 400)  — superseded token presented again
            AppError(INVALID_SCOPE, 400)         — scope wider than the grant
        """
        record = self._tokens.find_refresh_token(raw_refresh_token)
        if record is None:
            raise invalid_grant("The refresh token is invalid.", Reason.UNKNOWN)

        previous_access = record.access_token
        if previous_access.client_id != client_id:
            raise invalid_grant("The refresh token was issued to another client.", Reason.MISMATCH)

        self._check_state(record)

        granted = parse_scope(previous_access.scope)
        if scope is not None:
            requested = parse_scope(scope)
            if not requested or not covers(granted, requested):
                raise invalid_scope("The requested scope exceeds the original grant.")
            granted = requested

        user_id = previous_access.user_id
        pair = self._tokens.issue_pair(user_id, client_id, granted)

        # ── Compare-and-swap: successor NULL → new token ──────────────────
        now = self._clock()
        result = self._session.execute(
            update(RefreshToken)
            .where(
                RefreshToken.id == record.id,
                RefreshToken.successor_id.is_(None),
                RefreshToken.revoked_at.is_(None),
            )
            .values(successor_id=pair.refresh_token.id, revoked_at=now)
            .execution_options(synchronize_session=False)
        )
        self._session.expire(record)

        if result.rowcount != 1:
            # Lost the race: drop what we minted and re-classify.
            self._session.delete(pair.refresh_token)
            self._session.delete(pair.access_token)
            self._session.flush()
            self._check_state(record)
            raise invalid_grant("The refresh token is no longer valid.", Reason.REVOKED)

        self._revocation.revoke_access_token(previous_access)

        self._audit.record(
            AuditAction.TOKEN_REFRESHED,
            client_id=client_id,
            user_id=user_id,
        )
        return pair

    # ── Private helpers ────────────────────────────────────────────────────

    def _check_state(self, record: RefreshToken) -> None:
        """Raises for a superseded (reuse), revoked, or expired token."""
        if record.successor_id is not None:
            self._handle_reuse(record)

        if record.revoked_at is not None:
            raise invalid_grant("The refresh token has been revoked.", Reason.REVOKED)

        if self._clock() >= as_utc(record.expires_at):
            raise invalid_grant("The refresh token has expired.", Reason.EXPIRED)

    def _handle_reuse(self, record: RefreshToken) -> None:
        access = record.access_token
        user_id, client_id = access.user_id, access.client_id

        chain_length = self._revocation.revoke_chain(record)
        self._revocation.revoke_user_authorization(user_id, client_id)
        self._audit.record(
            AuditAction.REFRESH_TOKEN_REUSE,
            client_id=client_id,
            user_id=user_id,
            details=f"Superseded refresh token presented; revoked chain of {chain_length}.",
        )
        self._session.commit()
        raise reuse_detected()
