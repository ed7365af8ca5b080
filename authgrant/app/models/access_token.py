"""
models/access_token.py — AccessToken table definition.

No business logic. No imports from services or routes.

FK policy:
  client_id              ON DELETE CASCADE  — token owned by the client.
  authorization_code_id  ON DELETE SET NULL — the expiry sweep may delete the
                                              code long before the token.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from authgrant.app.extensions import db


class AccessToken(db.Model):
    __tablename__ = "oauth_access_tokens"

    id: Mapped[int] = mapped_column(primary_key=True)

    # SHA-256 hex digest of the raw bearer value.
    token_hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
    )

    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    client_id: Mapped[str] = mapped_column(
        ForeignKey("oauth_clients.client_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    scope: Mapped[str] = mapped_column(Text, nullable=False)

    # The code this token was minted from; NULL for refresh-grant tokens.
    authorization_code_id: Mapped[int | None] = mapped_column(
        ForeignKey("oauth_authorization_codes.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # ── Relationships ──────────────────────────────────────────────────────

    refresh_token: Mapped["RefreshToken"] = relationship(  # noqa: F821
        "RefreshToken",
        back_populates="access_token",
        uselist=False,
        passive_deletes=True,
    )

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<AccessToken id={self.id} "
            f"client_id={self.client_id!r} "
            f"user_id={self.user_id} "
            f"revoked={self.revoked_at is not None}>"
        )
