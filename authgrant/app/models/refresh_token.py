"""
models/refresh_token.py — RefreshToken table definition.

No business logic. No imports from services or routes.

FK policy:
  access_token_id ON DELETE CASCADE  — issued 1:1 with its access token.
  successor_id    ON DELETE SET NULL — forward link of the rotation chain.

Rotation chain: successor_id is written once, by rotation_ledger.refresh(),
through a conditional UPDATE (successor_id IS NULL). Each rotation creates a
strictly newer row, so the chain is acyclic by construction.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from authgrant.app.extensions import db


class RefreshToken(db.Model):
    __tablename__ = "oauth_refresh_tokens"

    id: Mapped[int] = mapped_column(primary_key=True)

    # SHA-256 hex digest of the raw refresh token, never the token itself.
    token_hash: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
    )

    access_token_id: Mapped[int] = mapped_column(
        ForeignKey("oauth_access_tokens.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )

    successor_id: Mapped[int | None] = mapped_column(
        ForeignKey("oauth_refresh_tokens.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
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

    access_token: Mapped["AccessToken"] = relationship(  # noqa: F821
        "AccessToken",
        back_populates="refresh_token",
    )

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<RefreshToken id={self.id} "
            f"access_token_id={self.access_token_id} "
            f"successor_id={self.successor_id} "
            f"revoked={self.revoked_at is not None}>"
        )
