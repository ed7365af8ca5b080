"""
models/authorization_code.py — AuthorizationCode table definition.

No business logic. No imports from services or routes.

FK policy: client_id ON DELETE CASCADE — codes are owned by the client.
The `used` flag is flipped exactly once, by code_issuer.exchange(), through a
conditional UPDATE (used IS false). It never flips back.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, false, func
from sqlalchemy.orm import Mapped, mapped_column

from authgrant.app.extensions import db


class AuthorizationCode(db.Model):
    __tablename__ = "oauth_authorization_codes"

    id: Mapped[int] = mapped_column(primary_key=True)

    # SHA-256 hex digest of the raw code. The raw value exists only in the
    # redirect sent to the client.
    code_hash: Mapped[str] = mapped_column(
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

    redirect_uri: Mapped[str] = mapped_column(Text, nullable=False)
    scope: Mapped[str] = mapped_column(Text, nullable=False)

    code_challenge: Mapped[str | None] = mapped_column(String(128), nullable=True)
    code_challenge_method: Mapped[str | None] = mapped_column(String(8), nullable=True)

    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    used: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=false(),
    )
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Set by client / user-authorization revocation cascades.
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<AuthorizationCode id={self.id} "
            f"client_id={self.client_id!r} "
            f"user_id={self.user_id} "
            f"used={self.used}>"
        )
