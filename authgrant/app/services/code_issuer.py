"""
services/code_issuer.py — Single-use authorization codes.

Invariants enforced here:
  - A code is 256 bits from `secrets`, stored only as its SHA-256 digest.
  - expires_at = issuance + OAUTH_AUTHORIZATION_CODE_EXPIRES (minutes).
  - A code is consumed at most once. The used flag is flipped by a single
    conditional UPDATE ... WHERE used IS false; under a race exactly one
    caller sees rowcount == 1, every other caller fails invalid_grant.
  - The flip happens in the caller's transaction, which goes on to mint the
    tokens. If token issuance fails, the rollback restores the code.

Layer rules:
  - No Flask imports. Commits are the route's responsibility — only flush.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import datetime

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.orm import Session

from authgrant.app.errors import AppError, ErrorCode, Reason, invalid_grant
from authgrant.app.models.authorization_code import AuthorizationCode
from authgrant.app.scopes import format_scope
from authgrant.app.security import (
    PKCE_METHODS,
    PKCE_VERIFIER_RE,
    as_utc,
    generate_token,
    hash_token,
    utcnow,
    verify_pkce,
)
from authgrant.config import OAuthSettings


class CodeIssuer:

    def __init__(
            self,
            session: Session,
            settings: OAuthSettings,
            clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session = session
        self._settings = settings
        self._clock = clock

    def issue(
            self,
            user_id: int,
            client_id: str,
            redirect_uri: str,
            scopes: Iterable[str],
            code_challenge: str | None = None,
            code_challenge_method: str | None = None,
    ) -> tuple[AuthorizationCode, str]:
        """
        Stores a new unused code and returns (record, raw_code).

        Raises:
          AppError(INVALID_REQUEST, 400) — see challenge_method().
        """
        method = self.challenge_method(code_challenge, code_challenge_method)

        raw_code = generate_token(32)
        record = AuthorizationCode(
            code_hash=hash_token(raw_code),
            user_id=user_id,
            client_id=client_id,
            redirect_uri=redirect_uri,
            scope=format_scope(scopes),
            code_challenge=code_challenge or None,
            code_challenge_method=method,
            expires_at=self._clock() + self._settings.authorization_code_ttl,
            used=False,
        )
        self._session.add(record)
        self._session.flush()

        return record, raw_code

    @staticmethod
    def challenge_method(
            code_challenge: str | None,
            code_challenge_method: str | None,
    ) -> str | None:
        """
        Resolves the PKCE method to store. A challenge without a method means
        `plain` (RFC 7636 §4.3); no challenge means no method.

        Raises:
          AppError(INVALID_REQUEST, 400) — unsupported method, a challenge
          outside the RFC 7636 §4.2 format, or a method sent without a
          challenge.
        """
        if code_challenge:
            if not PKCE_VERIFIER_RE.match(code_challenge):
                raise AppError(
                    ErrorCode.INVALID_REQUEST,
                    "code_challenge must be 43-128 characters of [A-Za-z0-9-._~].",
                    400,
                    field="code_challenge",
                )
            method = code_challenge_method or "plain"
            if method not in PKCE_METHODS:
                raise AppError(
                    ErrorCode.INVALID_REQUEST,
                    f"code_challenge_method must be one of: {', '.join(PKCE_METHODS)}.",
                    400,
                    field="code_challenge_method",
                )
            return method

        if code_challenge_method:
            raise AppError(
                ErrorCode.INVALID_REQUEST,
                "code_challenge_method was sent without a code_challenge.",
                400,
                field="code_challenge",
            )
        return None

    def find(self, raw_code: str) -> AuthorizationCode | None:
        return self._session.execute(
            select(AuthorizationCode).where(AuthorizationCode.code_hash == hash_token(raw_code))
        ).scalar_one_or_none()

    def exchange(
            self,
            raw_code: str,
            client_id: str,
            redirect_uri: str | None,
            code_verifier: str | None = None,
    ) -> AuthorizationCode:
        """
        Consumes a code and returns its record (user_id, scope).

        Raises AppError(INVALID_GRANT, 400) with reason:
          unknown  — no such code
          used     — already exchanged (a compromise signal; the caller
                     revokes whatever was minted from it)
          revoked  — revoked by a client / authorization cascade
          expired  — now >= expires_at, even if never used
          mismatch — different client, different redirect_uri, or PKCE failure
        """
        record = self.find(raw_code)
        if record is None:
            raise invalid_grant("The authorization code is invalid.", Reason.UNKNOWN)

        if record.used:
            raise invalid_grant("The authorization code has already been used.", Reason.USED)

        if record.revoked_at is not None:
            raise invalid_grant("The authorization code has been revoked.", Reason.REVOKED)

        now = self._clock()
        if now >= as_utc(record.expires_at):
            raise invalid_grant("The authorization code has expired.", Reason.EXPIRED)

        if record.client_id != client_id:
            raise invalid_grant(
                "The authorization code was issued to another client.",
                Reason.MISMATCH,
            )

        if record.redirect_uri != redirect_uri:
            raise invalid_grant(
                "redirect_uri does not match the one used at authorization.",
                Reason.MISMATCH,
            )

        self._check_pkce(record, code_verifier)

        # ── Compare-and-swap: unused → used ───────────────────────────────
        result = self._session.execute(
            update(AuthorizationCode)
            .where(
                AuthorizationCode.id == record.id,
                AuthorizationCode.used.is_(False),
                AuthorizationCode.revoked_at.is_(None),
            )
            .values(used=True, used_at=now)
            .execution_options(synchronize_session=False)
        )
        # The in-memory row is stale either way; reload it on next access.
        self._session.expire(record)

        if result.rowcount != 1:
            raise invalid_grant("The authorization code has already been used.", Reason.USED)

        return record

    def sweep_expired(self) -> int:
        """
        Deletes unused codes past expiry, and used codes once every refresh
        token they could have minted has lapsed. A used code must survive
        that long so a later replay is still recognised and revokes its
        tokens. Returns the number of rows removed.
        """
        now = self._clock()
        result = self._session.execute(
            delete(AuthorizationCode)
            .where(
                or_(
                    and_(AuthorizationCode.used.is_(False), AuthorizationCode.expires_at < now),
                    AuthorizationCode.expires_at < now - self._settings.refresh_token_ttl,
                )
            )
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    # ── Private helpers ────────────────────────────────────────────────────

    @staticmethod
    def _check_pkce(record: AuthorizationCode, code_verifier: str | None) -> None:
        if record.code_challenge is None:
            if code_verifier:
                raise invalid_grant(
                    "code_verifier was sent but no code_challenge was registered.",
                    Reason.MISMATCH,
                )
            return

        if not code_verifier:
            raise invalid_grant("code_verifier is required for this code.", Reason.MISMATCH)

        if not verify_pkce(code_verifier, record.code_challenge, record.code_challenge_method):
            raise invalid_grant(
                "code_verifier does not match the code_challenge.",
                Reason.MISMATCH,
            )
