"""
services/token_issuer.py — Access and refresh token minting and validation.

Token design:
  - Access token: opaque 256-bit value, TTL OAUTH_ACCESS_TOKEN_EXPIRES.
  - Refresh token: opaque 256-bit value, TTL OAUTH_REFRESH_TOKEN_EXPIRES,
    issued 1:1 with the access token it accompanies.
  - Both are stored as SHA-256 digests. The raw values are returned to the
    client once and never stored.

validate() is the resource-server hot path: a single SELECT, no writes, no
row locks. It must never mutate state.

Layer rules:
  - No Flask imports. Commits are the route's responsibility — only flush.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from authgrant.app.errors import Reason, invalid_token
from authgrant.app.models.access_token import AccessToken
from authgrant.app.models.refresh_token import RefreshToken
from authgrant.app.scopes import format_scope
from authgrant.app.security import as_utc, generate_token, hash_token, utcnow
from authgrant.config import OAuthSettings


@dataclass
class TokenPair:
    access_token: AccessToken
    refresh_token: RefreshToken
    raw_access_token: str
    raw_refresh_token: str

    def to_response(self, now: datetime) -> dict:
        """The token endpoint body (RFC 6749 §5.1)."""
        expires_in = int((as_utc(self.access_token.expires_at) - now).total_seconds())
        return {
            "access_token": self.raw_access_token,
            "token_type": "Bearer",
            "expires_in": max(expires_in, 0),
            "refresh_token": self.raw_refresh_token,
            "scope": self.access_token.scope,
        }


class TokenIssuer:

    def __init__(
            self,
            session: Session,
            settings: OAuthSettings,
            clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session = session
        self._settings = settings
        self._clock = clock

    # ── Issuance ───────────────────────────────────────────────────────────

    def issue_access_token(
            self,
            user_id: int,
            client_id: str,
            scopes: Iterable[str],
            authorization_code_id: int | None = None,
    ) -> tuple[AccessToken, str]:
        raw_token = generate_token(32)
        record = AccessToken(
            token_hash=hash_token(raw_token),
            user_id=user_id,
            client_id=client_id,
            scope=format_scope(scopes),
            authorization_code_id=authorization_code_id,
            expires_at=self._clock() + self._settings.access_token_ttl,
        )
        self._session.add(record)
        self._session.flush()
        return record, raw_token

    def issue_refresh_token(self, access_token: AccessToken) -> tuple[RefreshToken, str]:
        raw_token = generate_token(32)
        record = RefreshToken(
            token_hash=hash_token(raw_token),
            access_token_id=access_token.id,
            expires_at=self._clock() + self._settings.refresh_token_ttl,
        )
        self._session.add(record)
        self._session.flush()
        return record, raw_token

    def issue_pair(
            self,
            user_id: int,
            client_id: str,
            scopes: Iterable[str],
            authorization_code_id: int | None = None,
    ) -> TokenPair:
        access, raw_access = self.issue_access_token(
            user_id, client_id, scopes, authorization_code_id
        )
        refresh, raw_refresh = self.issue_refresh_token(access)
        return TokenPair(access, refresh, raw_access, raw_refresh)

    # ── Lookup / validation ────────────────────────────────────────────────

    def find_access_token(self, raw_token: str) -> AccessToken | None:
        return self._session.execute(
            select(AccessToken).where(AccessToken.token_hash == hash_token(raw_token))
        ).scalar_one_or_none()

    def find_refresh_token(self, raw_token: str) -> RefreshToken | None:
        return self._session.execute(
            select(RefreshToken).where(RefreshToken.token_hash == hash_token(raw_token))
        ).scalar_one_or_none()

    def validate(self, raw_token: str) -> AccessToken:
        """
        Returns the token record (user_id, client_id, scope, expires_at).

        Raises AppError(INVALID_TOKEN, 401) with reason unknown / revoked /
        expired. Revocation is reported before expiry.
        """
        record = self.find_access_token(raw_token) if raw_token else None
        if record is None:
            raise invalid_token(Reason.UNKNOWN)
        if record.revoked_at is not None:
            raise invalid_token(Reason.REVOKED)
        if self._clock() >= as_utc(record.expires_at):
            raise invalid_token(Reason.EXPIRED)
        return record

    # ── Housekeeping ───────────────────────────────────────────────────────

    def sweep_expired(self) -> int:
        """
        Deletes access tokens (and, by FK cascade, their refresh tokens)
        once both have expired. Returns the number of access tokens removed.
        """
        now = self._clock()
        live_refresh = select(RefreshToken.access_token_id).where(RefreshToken.expires_at >= now)
        expired_ids = list(
            self._session.execute(
                select(AccessToken.id).where(
                    AccessToken.expires_at < now,
                    AccessToken.id.not_in(live_refresh),
                )
            ).scalars()
        )
        if not expired_ids:
            return 0

        # Explicit child delete: SQLite does not enforce ON DELETE CASCADE
        # unless the foreign_keys pragma is on.
        self._session.execute(
            delete(RefreshToken)
            .where(RefreshToken.access_token_id.in_(expired_ids))
            .execution_options(synchronize_session=False)
        )
        self._session.execute(
            delete(AccessToken)
            .where(AccessToken.id.in_(expired_ids))
            .execution_options(synchronize_session=False)
        )
        return len(expired_ids)
