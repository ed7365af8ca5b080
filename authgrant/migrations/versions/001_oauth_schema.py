"""OAuth schema — clients, codes, tokens, standing authorizations, audit log.

Revision: 001_oauth_schema
Created:  2026-10-19

Append-only:
  This file must NEVER be edited after it has been applied to any database.
  If a schema change is required, create a NEW migration file.

Creation order (FK dependency):
  oauth_clients → oauth_authorization_codes → oauth_access_tokens
  → oauth_refresh_tokens, oauth_user_authorizations, oauth_audit_logs

ON DELETE policies:
  *.client_id                          → CASCADE   (owned by the client)
  access_tokens.authorization_code_id  → SET NULL  (provenance only)
  refresh_tokens.access_token_id       → CASCADE   (1:1 pair)
  refresh_tokens.successor_id          → SET NULL  (rotation link)
  audit_logs.client_id                 → no FK     (outlives the client)

Credential columns hold SHA-256 hex digests (64 chars) or bcrypt hashes.
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op

# ── Alembic revision identifiers ──────────────────────────────────────────
revision: str = "001_oauth_schema"
down_revision: str | None = None      # first migration — no parent
branch_labels: tuple | None = None
depends_on: tuple | None = None


def upgrade() -> None:

    # ── Step 1: oauth_clients ──────────────────────────────────────────────

    op.create_table(
        "oauth_clients",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("client_id", sa.String(64), nullable=False),
        sa.Column("client_secret_hash", sa.String(255), nullable=False),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("website", sa.String(255), nullable=True),
        sa.Column("logo_url", sa.String(255), nullable=True),
        sa.Column("redirect_uris", sa.JSON(), nullable=False),
        sa.Column("allowed_scopes", sa.Text(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.PrimaryKeyConstraint("id", name="pk_oauth_clients"),
        sa.UniqueConstraint("client_id", name="uq_oauth_clients_client_id"),
        sa.CheckConstraint(
            "status IN ('pending', 'approved', 'suspended', 'rejected')",
            name="ck_oauth_clients_status",
        ),
        sa.CheckConstraint(
            "LENGTH(TRIM(name)) > 0",
            name="ck_oauth_clients_name_nonempty",
        ),
    )

    # ── Step 2: oauth_authorization_codes ──────────────────────────────────
    # used flips false → true exactly once (conditional UPDATE).

    op.create_table(
        "oauth_authorization_codes",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("code_hash", sa.String(64), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "client_id",
            sa.String(64),
            sa.ForeignKey(
                "oauth_clients.client_id",
                ondelete="CASCADE",
                name="fk_oauth_codes_client",
            ),
            nullable=False,
        ),
        sa.Column("redirect_uri", sa.Text(), nullable=False),
        sa.Column("scope", sa.Text(), nullable=False),
        sa.Column("code_challenge", sa.String(128), nullable=True),
        sa.Column("code_challenge_method", sa.String(8), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("used", sa.Boolean(), nullable=False, server_default=sa.text("FALSE")),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.PrimaryKeyConstraint("id", name="pk_oauth_authorization_codes"),
        sa.UniqueConstraint("code_hash", name="uq_oauth_codes_hash"),
    )

    # ── Step 3: oauth_access_tokens ────────────────────────────────────────

    op.create_table(
        "oauth_access_tokens",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("token_hash", sa.String(64), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "client_id",
            sa.String(64),
            sa.ForeignKey(
                "oauth_clients.client_id",
                ondelete="CASCADE",
                name="fk_oauth_access_tokens_client",
            ),
            nullable=False,
        ),
        sa.Column("scope", sa.Text(), nullable=False),
        sa.Column(
            "authorization_code_id",
            sa.Integer(),
            sa.ForeignKey(
                "oauth_authorization_codes.id",
                ondelete="SET NULL",
                name="fk_oauth_access_tokens_code",
            ),
            nullable=True,
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.PrimaryKeyConstraint("id", name="pk_oauth_access_tokens"),
        sa.UniqueConstraint("token_hash", name="uq_oauth_access_tokens_hash"),
    )

    # ── Step 4: oauth_refresh_tokens ───────────────────────────────────────
    # successor_id is set at most once; UNIQUE keeps a chain linear.

    op.create_table(
        "oauth_refresh_tokens",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("token_hash", sa.String(64), nullable=False),
        sa.Column(
            "access_token_id",
            sa.Integer(),
            sa.ForeignKey(
                "oauth_access_tokens.id",
                ondelete="CASCADE",
                name="fk_oauth_refresh_tokens_access",
            ),
            nullable=False,
        ),
        sa.Column(
            "successor_id",
            sa.Integer(),
            sa.ForeignKey(
                "oauth_refresh_tokens.id",
                ondelete="SET NULL",
                name="fk_oauth_refresh_tokens_successor",
            ),
            nullable=True,
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.PrimaryKeyConstraint("id", name="pk_oauth_refresh_tokens"),
        sa.UniqueConstraint("token_hash", name="uq_oauth_refresh_tokens_hash"),
        sa.UniqueConstraint("access_token_id", name="uq_oauth_refresh_tokens_access"),
        sa.UniqueConstraint("successor_id", name="uq_oauth_refresh_tokens_successor"),
    )

    # ── Step 5: oauth_user_authorizations ──────────────────────────────────

    op.create_table(
        "oauth_user_authorizations",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "client_id",
            sa.String(64),
            sa.ForeignKey(
                "oauth_clients.client_id",
                ondelete="CASCADE",
                name="fk_oauth_user_authorizations_client",
            ),
            nullable=False,
        ),
        sa.Column("scope", sa.Text(), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id", name="pk_oauth_user_authorizations"),
        sa.UniqueConstraint(
            "user_id", "client_id",
            name="uq_oauth_user_authorizations_user_client",
        ),
    )

    # ── Step 6: oauth_audit_logs ───────────────────────────────────────────

    op.create_table(
        "oauth_audit_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("client_id", sa.String(64), nullable=True),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("details", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("NOW()"),
        ),
        sa.PrimaryKeyConstraint("id", name="pk_oauth_audit_logs"),
    )

    # ── Step 7: Indexes ────────────────────────────────────────────────────

    op.create_index("ix_oauth_clients_owner_id", "oauth_clients", ["owner_id"])
    op.create_index("ix_oauth_authorization_codes_user_id", "oauth_authorization_codes", ["user_id"])
    op.create_index("ix_oauth_authorization_codes_client_id", "oauth_authorization_codes", ["client_id"])
    op.create_index("ix_oauth_access_tokens_user_id", "oauth_access_tokens", ["user_id"])
    op.create_index("ix_oauth_access_tokens_client_id", "oauth_access_tokens", ["client_id"])
    op.create_index(
        "ix_oauth_access_tokens_authorization_code_id",
        "oauth_access_tokens",
        ["authorization_code_id"],
    )
    op.create_index("ix_oauth_user_authorizations_user_id", "oauth_user_authorizations", ["user_id"])
    op.create_index("ix_oauth_user_authorizations_client_id", "oauth_user_authorizations", ["client_id"])
    op.create_index("ix_oauth_audit_logs_action", "oauth_audit_logs", ["action"])
    op.create_index("ix_oauth_audit_logs_client_id", "oauth_audit_logs", ["client_id"])


def downgrade() -> None:
    """Drop everything in reverse dependency order."""
    op.drop_table("oauth_audit_logs")
    op.drop_table("oauth_user_authorizations")
    op.drop_table("oauth_refresh_tokens")
    op.drop_table("oauth_access_tokens")
    op.drop_table("oauth_authorization_codes")
    op.drop_table("oauth_clients")
