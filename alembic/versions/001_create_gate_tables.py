"""Create subscription tiers, organizations, api keys, daily usage and audit log tables.

Revision ID: 001_gate_tables
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision = "001_gate_tables"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "subscription_tiers",
        sa.Column("id", sa.String(20), primary_key=True),
        sa.Column("name", sa.String(50), nullable=False),
        sa.Column("monthly_price_cents", sa.Integer, nullable=False, server_default="0"),
        sa.Column("monthly_token_limit", sa.Integer, nullable=True),
        sa.Column("rate_limit_per_minute", sa.Integer, nullable=False),
        sa.Column("features", JSONB, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "organizations",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("slug", sa.String(100), unique=True, nullable=False),
        sa.Column("status", sa.String(20), server_default="active"),
        sa.Column(
            "subscription_tier_id",
            sa.String(20),
            sa.ForeignKey("subscription_tiers.id"),
            server_default="free",
        ),
        sa.Column("subscription_status", sa.String(20), server_default="active"),
        sa.Column("billing_email", sa.String(255), nullable=True),
        sa.Column("paused_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pause_reason", sa.Text, nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoke_reason", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint(
            "status IN ('active', 'paused', 'suspended', 'revoked')",
            name="ck_organizations_status",
        ),
        sa.CheckConstraint(
            "subscription_status IN ('active', 'past_due', 'canceled', 'trialing')",
            name="ck_organizations_subscription_status",
        ),
    )
    op.create_index("idx_organizations_status", "organizations", ["status"])

    op.create_table(
        "api_keys",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "organization_id",
            sa.String(36),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("key_hash", sa.String(64), unique=True, nullable=False),
        sa.Column("key_prefix", sa.String(20), nullable=False),
        sa.Column("environment", sa.String(10), server_default="live"),
        sa.Column("scopes", sa.ARRAY(sa.String(50)), server_default="{read}"),
        sa.Column("rate_limit_override", sa.Integer, nullable=True),
        sa.Column("is_active", sa.Boolean, server_default="true"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_by", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint("environment IN ('live', 'test')", name="ck_api_keys_environment"),
    )
    op.create_index("ix_api_keys_organization_id", "api_keys", ["organization_id"])

    op.create_table(
        "usage_daily",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "organization_id",
            sa.String(36),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("date", sa.Date, nullable=False),
        sa.Column("source", sa.String(20), nullable=False),
        sa.Column("endpoint", sa.String(100), nullable=False),
        sa.Column("request_count", sa.Integer, server_default="0"),
        sa.Column("tokens_used", sa.Integer, server_default="0"),
        sa.UniqueConstraint(
            "organization_id", "date", "source", "endpoint",
            name="uq_usage_daily_org_date_source_endpoint",
        ),
    )
    op.create_index("idx_usage_daily_org_date", "usage_daily", ["organization_id", "date"])

    op.create_table(
        "admin_audit_log",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("actor", sa.String(100), nullable=False),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("target_type", sa.String(50), nullable=False),
        sa.Column("target_id", sa.String(36), nullable=True),
        sa.Column("details", JSONB, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("idx_audit_log_target", "admin_audit_log", ["target_type", "target_id"])
    op.create_index("idx_audit_log_created", "admin_audit_log", ["created_at"])


def downgrade() -> None:
    op.drop_table("admin_audit_log")
    op.drop_table("usage_daily")
    op.drop_table("api_keys")
    op.drop_table("organizations")
    op.drop_table("subscription_tiers")
