"""Track agent task outcomes per required skill for similar-task success rates."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261003_0003"
down_revision = "20261002_0002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "agents",
        sa.Column(
            "skill_outcomes_json",
            sa.Text(),
            nullable=False,
            server_default="{}",
        ),
    )


def downgrade() -> None:
    op.drop_column("agents", "skill_outcomes_json")
