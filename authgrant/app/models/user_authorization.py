"""
models/user_authorization.py — UserAuthorization table definition.

A standing grant: "user U has authorized client C for these scopes".
Independent of any single token pair; consulted at authorize time to skip
the consent step.

FK policy: client_id ON DELETE CASCADE. UNIQUE(user_id, client_id) — one
standing grant per pair, updated in place on each consent.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from authgrant.app.extensions import db


class UserAuthorization(db.Model):
    __tablename__ = "oauth_user_authorizations"

    __table_args__ = (
        UniqueConstraint("user_id", "client_id", name="uq_oauth_user_authorizations_user_client"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    client_id: Mapped[str] = mapped_column(
        ForeignKey("oauth_clients.client_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    scope: Mapped[str] = mapped_column(Text, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<UserAuthorization id={self.id} "
            f"user_id={self.user_id} "
            f"client_id={self.client_id!r}>"
        )
