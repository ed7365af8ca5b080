"""
models/client.py — OAuthClient table definition.

No business logic. No imports from services or routes.

The client secret is stored as a bcrypt hash only; the raw secret is shown
to the developer once at registration (or regeneration).
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, CheckConstraint, DateTime, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from authgrant.app.extensions import db


CLIENT_STATUSES = ("pending", "approved", "suspended", "rejected")


class OAuthClient(db.Model):
    __tablename__ = "oauth_clients"

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'approved', 'suspended', 'rejected')",
            name="ck_oauth_clients_status",
        ),
        CheckConstraint(
            "LENGTH(TRIM(name)) > 0",
            name="ck_oauth_clients_name_nonempty",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    # Public, opaque identifier. Every other OAuth table references this
    # column rather than the surrogate key.
    client_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
    )

    client_secret_hash: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    website: Mapped[str | None] = mapped_column(String(255), nullable=True)
    logo_url: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Exact-match list; no wildcard or prefix matching is ever applied.
    redirect_uris: Mapped[list] = mapped_column(JSON, nullable=False)

    # Space-delimited, normalised by app.scopes.format_scope.
    allowed_scopes: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="pending",
        server_default="pending",
    )

    # Developer identity from the user-authentication system. No FK: users
    # live outside this service.
    owner_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:  # pragma: no cover
        return (
            f"<OAuthClient id={self.id} "
            f"client_id={self.client_id!r} "
            f"status={self.status!r}>"
        )
