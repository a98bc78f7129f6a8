"""budget period range columns

Revision ID: 202406031000
Revises: 202401150900
Create Date: 2024-06-03 10:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "202406031000"
down_revision = "202401150900"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("budgets") as batch:
        batch.alter_column("amount", new_column_name="limit_amount")
        batch.add_column(sa.Column("period_start", sa.Date(), nullable=True))
        batch.add_column(sa.Column("period_end", sa.Date(), nullable=True))

    # Existing budgets cover the calendar month they were created in.
    bind = op.get_bind()
    if bind.dialect.name == "sqlite":
        op.execute(
            "UPDATE budgets SET "
            "period_start = date(created_at, 'start of month'), "
            "period_end = date(created_at, 'start of month', '+1 month', '-1 day') "
            "WHERE period_start IS NULL"
        )
    else:
        op.execute(
            "UPDATE budgets SET "
            "period_start = date_trunc('month', created_at)::date, "
            "period_end = (date_trunc('month', created_at) + interval '1 month - 1 day')::date "
            "WHERE period_start IS NULL"
        )

    op.create_index(
        "ix_budget_user_category_period",
        "budgets",
        ["user_id", "category_id", "period", "period_start"],
    )


def downgrade() -> None:
    op.drop_index("ix_budget_user_category_period", table_name="budgets")
    with op.batch_alter_table("budgets") as batch:
        batch.drop_column("period_end")
        batch.drop_column("period_start")
        batch.alter_column("limit_amount", new_column_name="amount")
