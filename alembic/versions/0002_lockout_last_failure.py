from __future__ import annotations

import sqlalchemy as sa
from alembic import op

revision = "0002_lockout_last_failure"
down_revision = "0001_create_ledger"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("account_lockouts") as batch_op:
        batch_op.add_column(sa.Column("last_failure_at", sa.DateTime(), nullable=True))


def downgrade() -> None:
    with op.batch_alter_table("account_lockouts") as batch_op:
        batch_op.drop_column("last_failure_at")
