"""Create accounts, campaign_account_map and campaign_activity_log.

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()
    existing = set(sa.inspect(conn).get_table_names())

    if "accounts" not in existing:
        op.create_table(
            "accounts",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("name", sa.String(255), nullable=False),
            sa.Column("platform", sa.String(50), nullable=False),
            sa.Column("platform_account_id", sa.String(255), nullable=True),
            sa.Column("status", sa.String(20), nullable=True, server_default="active"),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("platform", "platform_account_id", name="uq_account_per_platform"),
        )
        op.create_index("ix_accounts_platform", "accounts", ["platform"], unique=False)

    if "campaign_account_map" not in existing:
        op.create_table(
            "campaign_account_map",
            sa.Column("campaign_id", sa.String(255), nullable=False),
            sa.Column("account_id", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.Column("updated_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.ForeignKeyConstraint(["account_id"], ["accounts.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("campaign_id"),
        )
        op.create_index("ix_campaign_account_map_account_id", "campaign_account_map", ["account_id"], unique=False)

    if "campaign_activity_log" not in existing:
        op.create_table(
            "campaign_activity_log",
            sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
            sa.Column("platform", sa.String(50), nullable=False),
            sa.Column("entity_type", sa.String(20), nullable=False, server_default="adset"),
            sa.Column("entity_id", sa.String(255), nullable=False),
            sa.Column("action", sa.String(20), nullable=False),
            sa.Column("old_budget", sa.Numeric(12, 2), nullable=True),
            sa.Column("new_budget", sa.Numeric(12, 2), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True, server_default=sa.text("now()")),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_activity_log_entity_created", "campaign_activity_log", ["entity_id", "created_at"], unique=False)
        op.create_index("ix_activity_log_platform", "campaign_activity_log", ["platform"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_activity_log_platform", table_name="campaign_activity_log")
    op.drop_index("ix_activity_log_entity_created", table_name="campaign_activity_log")
    op.drop_table("campaign_activity_log")
    op.drop_index("ix_campaign_account_map_account_id", table_name="campaign_account_map")
    op.drop_table("campaign_account_map")
    op.drop_index("ix_accounts_platform", table_name="accounts")
    op.drop_table("accounts")
