"""
services/revocation_service.py — Revocation and its cascades.

Ownership edges walked here (explicit traversals, never ORM cascades):
  client              → access tokens, refresh tokens, unused codes,
                        user authorizations
  user authorization  → that pair's access/refresh tokens and unused codes
  rotation chain      → every refresh token linked by successor_id (both
                        directions) and each one's paired access token
  refresh token       → its paired access token
  authorization code  → tokens minted from it (replay response)

Every write is UPDATE ... SET revoked_at = now WHERE revoked_at IS NULL, so
revoking twice is a no-op: it succeeds, and neither the already-revoked row
nor any unrelated row changes.

Layer rules:
  - No Flask imports. Commits are the route's responsibility — only flush.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from authgrant.app.models.access_token import AccessToken
from authgrant.app.models.authorization_code import AuthorizationCode
from authgrant.app.models.refresh_token import RefreshToken
from authgrant.app.models.user_authorization import UserAuthorization
from authgrant.app.security import hash_token, utcnow

logger = logging.getLogger(__name__)


class RevocationService:

    def __init__(
            self,
            session: Session,
            clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session = session
        self._clock = clock

    # ── Single tokens ──────────────────────────────────────────────────────

    def revoke_token(self, raw_token: str, client_id: str | None = None) -> bool:
        """
        Revokes the access or refresh token with this raw value.

        When `client_id` is given, a token issued to a different client is
        left untouched. Returns True if a matching token exists (revoked now
        or earlier), False otherwise. Never raises for unknown tokens.
        """
        token_hash = hash_token(raw_token)

        access = self._session.execute(
            select(AccessToken).where(AccessToken.token_hash == token_hash)
        ).scalar_one_or_none()
        if access is not None:
            if client_id is not None and access.client_id != client_id:
                return False
            self._revoke_access_ids([access.id])
            return True

        refresh = self._session.execute(
            select(RefreshToken).where(RefreshToken.token_hash == token_hash)
        ).scalar_one_or_none()
        if refresh is not None:
            if client_id is not None and refresh.access_token.client_id != client_id:
                return False
            self.revoke_refresh_token(refresh)
            return True

        return False

    def revoke_refresh_token(self, refresh: RefreshToken) -> None:
        """Revokes a refresh token together with its paired access token."""
        self._revoke_refresh_ids([refresh.id])
        self._revoke_access_ids([refresh.access_token_id])

    def revoke_access_token(self, access: AccessToken) -> None:
        self._revoke_access_ids([access.id])

    # ── Cascades ───────────────────────────────────────────────────────────

    def revoke_chain(self, refresh: RefreshToken) -> int:
        """
        Revokes every token of the rotation chain `refresh` belongs to.

        Walks successor links forward from `refresh` and predecessor links
        backward to the root. Returns the number of refresh tokens in the
        chain.
        """
        chain_ids = self._chain_ids(refresh)
        access_ids = list(
            self._session.execute(
                select(RefreshToken.access_token_id).where(RefreshToken.id.in_(chain_ids))
            ).scalars()
        )
        self._revoke_refresh_ids(chain_ids)
        self._revoke_access_ids(access_ids)
        return len(chain_ids)

    def revoke_client(self, client_id: str) -> dict:
        """Revokes everything the client owns. Returns per-kind counts."""
        now = self._clock()
        access_ids = select(AccessToken.id).where(AccessToken.client_id == client_id)

        refresh_count = self._update_count(
            update(RefreshToken)
            .where(RefreshToken.access_token_id.in_(access_ids), RefreshToken.revoked_at.is_(None))
            .values(revoked_at=now)
        )
        access_count = self._update_count(
            update(AccessToken)
            .where(AccessToken.client_id == client_id, AccessToken.revoked_at.is_(None))
            .values(revoked_at=now)
        )
        code_count = self._update_count(
            update(AuthorizationCode)
            .where(
                AuthorizationCode.client_id == client_id,
                AuthorizationCode.used.is_(False),
                AuthorizationCode.revoked_at.is_(None),
            )
            .values(revoked_at=now)
        )
        authorization_count = self._update_count(
            update(UserAuthorization)
            .where(UserAuthorization.client_id == client_id, UserAuthorization.revoked_at.is_(None))
            .values(revoked_at=now)
        )
        logger.info(
            "Revoked client %s: %d access, %d refresh, %d codes, %d authorizations",
            client_id, access_count, refresh_count, code_count, authorization_count,
        )
        return {
            "access_tokens": access_count,
            "refresh_tokens": refresh_count,
            "authorization_codes": code_count,
            "user_authorizations": authorization_count,
        }

    def revoke_user_authorization(self, user_id: int, client_id: str) -> bool:
        """
        Revokes the standing grant of `user_id` to `client_id` and every
        token and unused code of that pair. Returns True if a standing grant
        was active.
        """
        now = self._clock()
        revoked = self._update_count(
            update(UserAuthorization)
            .where(
                UserAuthorization.user_id == user_id,
                UserAuthorization.client_id == client_id,
                UserAuthorization.revoked_at.is_(None),
            )
            .values(revoked_at=now)
        )

        access_ids = select(AccessToken.id).where(
            AccessToken.user_id == user_id,
            AccessToken.client_id == client_id,
        )
        self._update_count(
            update(RefreshToken)
            .where(RefreshToken.access_token_id.in_(access_ids), RefreshToken.revoked_at.is_(None))
            .values(revoked_at=now)
        )
        self._update_count(
            update(AccessToken)
            .where(
                AccessToken.user_id == user_id,
                AccessToken.client_id == client_id,
                AccessToken.revoked_at.is_(None),
            )
            .values(revoked_at=now)
        )
        self._update_count(
            update(AuthorizationCode)
            .where(
                AuthorizationCode.user_id == user_id,
                AuthorizationCode.client_id == client_id,
                AuthorizationCode.used.is_(False),
                AuthorizationCode.revoked_at.is_(None),
            )
            .values(revoked_at=now)
        )
        return revoked > 0

    def revoke_code_grant(self, code_hash: str) -> int:
        """
        Revokes all tokens minted from the code with this digest, including
        every later rotation of them. Returns the number of chains revoked.
        """
        code_id = self._session.execute(
            select(AuthorizationCode.id).where(AuthorizationCode.code_hash == code_hash)
        ).scalar_one_or_none()
        if code_id is None:
            return 0

        roots = list(
            self._session.execute(
                select(RefreshToken)
                .join(AccessToken, RefreshToken.access_token_id == AccessToken.id)
                .where(AccessToken.authorization_code_id == code_id)
            ).scalars()
        )
        for root in roots:
            self.revoke_chain(root)

        # Access tokens minted from the code without a refresh token.
        self._update_count(
            update(AccessToken)
            .where(AccessToken.authorization_code_id == code_id, AccessToken.revoked_at.is_(None))
            .values(revoked_at=self._clock())
        )
        return len(roots)

    # ── Private helpers ────────────────────────────────────────────────────

    def _chain_ids(self, refresh: RefreshToken) -> list[int]:
        ids = [refresh.id]
        seen = {refresh.id}

        # forward
        next_id = refresh.successor_id
        while next_id is not None and next_id not in seen:
            ids.append(next_id)
            seen.add(next_id)
            next_id = self._session.execute(
                select(RefreshToken.successor_id).where(RefreshToken.id == next_id)
            ).scalar_one_or_none()

        # backward
        current_id = refresh.id
        while True:
            prev_id = self._session.execute(
                select(RefreshToken.id).where(RefreshToken.successor_id == current_id)
            ).scalar_one_or_none()
            if prev_id is None or prev_id in seen:
                break
            ids.append(prev_id)
            seen.add(prev_id)
            current_id = prev_id

        return ids

    def _revoke_refresh_ids(self, ids: list[int]) -> int:
        if not ids:
            return 0
        return self._update_count(
            update(RefreshToken)
            .where(RefreshToken.id.in_(ids), RefreshToken.revoked_at.is_(None))
            .values(revoked_at=self._clock())
        )

    def _revoke_access_ids(self, ids: list[int]) -> int:
        if not ids:
            return 0
        return self._update_count(
            update(AccessToken)
            .where(AccessToken.id.in_(ids), AccessToken.revoked_at.is_(None))
            .values(revoked_at=self._clock())
        )

    def _update_count(self, statement) -> int:
        result = self._session.execute(
            statement.execution_options(synchronize_session=False)
        )
        # Bulk UPDATEs bypass the identity map; drop cached attributes so
        # records already loaded in this session see the new revoked_at.
        self._session.expire_all()
        return int(result.rowcount or 0)
