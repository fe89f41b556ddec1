from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "0001_create_ledger"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "login_attempts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("identifier", sa.String(length=255), nullable=False),
        sa.Column("ip_address", sa.String(length=64), nullable=False),
        sa.Column("user_agent", sa.String(length=512), nullable=False, server_default=""),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("blocked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_login_attempts_id", "login_attempts", ["id"])
    op.create_index("ix_login_attempts_identifier_created", "login_attempts", ["identifier", "created_at"])
    op.create_index("ix_login_attempts_ip_created", "login_attempts", ["ip_address", "created_at"])

    op.create_table(
        "account_lockouts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("identifier", sa.String(length=255), nullable=False),
        sa.Column("locked_at", sa.DateTime(), nullable=True),
        sa.Column("locked_until", sa.DateTime(), nullable=True),
        sa.Column("reset_at", sa.DateTime(), nullable=True),
        sa.Column("lockout_level", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_lockout_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_account_lockouts_id", "account_lockouts", ["id"])
    op.create_index("ix_account_lockouts_identifier", "account_lockouts", ["identifier"], unique=True)

    op.create_table(
        "ip_blocks",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("ip_address", sa.String(length=64), nullable=False),
        sa.Column("blocked_at", sa.DateTime(), nullable=True),
        sa.Column("blocked_until", sa.DateTime(), nullable=True),
        sa.Column("reason", sa.String(length=255), nullable=True),
    )
    op.create_index("ix_ip_blocks_id", "ip_blocks", ["id"])
    op.create_index("ix_ip_blocks_ip_address", "ip_blocks", ["ip_address"], unique=True)


def downgrade() -> None:
    op.drop_index("ix_ip_blocks_ip_address", table_name="ip_blocks")
    op.drop_index("ix_ip_blocks_id", table_name="ip_blocks")
    op.drop_table("ip_blocks")

    op.drop_index("ix_account_lockouts_identifier", table_name="account_lockouts")
    op.drop_index("ix_account_lockouts_id", table_name="account_lockouts")
    op.drop_table("account_lockouts")

    op.drop_index("ix_login_attempts_ip_created", table_name="login_attempts")
    op.drop_index("ix_login_attempts_identifier_created", table_name="login_attempts")
    op.drop_index("ix_login_attempts_id", table_name="login_attempts")
    op.drop_table("login_attempts")
