"""saving goals progress view

Revision ID: 202409121400
Revises: 202406031000
Create Date: 2024-09-12 14:00:00.000000

"""

from __future__ import annotations

from alembic import op


revision = "202409121400"
down_revision = "202406031000"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE VIEW saving_goals_with_progress AS
        SELECT
            g.*,
            COALESCE(c.saved_amount, 0) AS saved_amount,
            CASE
                WHEN g.target_amount > 0
                THEN COALESCE(c.saved_amount, 0) * 100.0 / g.target_amount
                ELSE 0
            END AS progress_percentage
        FROM saving_goals AS g
        LEFT JOIN (
            SELECT goal_id, SUM(amount) AS saved_amount
            FROM saving_goal_contributions
            GROUP BY goal_id
        ) AS c ON c.goal_id = g.id
        """
    )


def downgrade() -> None:
    op.execute("DROP VIEW IF EXISTS saving_goals_with_progress")
