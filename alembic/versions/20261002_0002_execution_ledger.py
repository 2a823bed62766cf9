"""Add tool execution ledger, checkpoints, failure analyses and escalations."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261002_0002"
down_revision = "20261001_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tool_execution_records",
        sa.Column("record_id", sa.String(), nullable=False),
        sa.Column("team_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("tool_id", sa.String(), nullable=False),
        sa.Column("agent_id", sa.String(), nullable=True),
        sa.Column("input_json", sa.Text(), nullable=False),
        sa.Column("output_json", sa.Text(), nullable=True),
        sa.Column("error_code", sa.String(), nullable=True),
        sa.Column("error_detail", sa.Text(), nullable=True),
        sa.Column("succeeded", sa.Boolean(), nullable=False),
        sa.Column("cache_hit", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("timed_out", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("cost_units", sa.Float(), nullable=False, server_default="0"),
        sa.Column("latency_ms", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["team_id"], ["teams.team_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("record_id"),
    )
    op.create_index(
        "ix_tool_execution_records_team_id",
        "tool_execution_records",
        ["team_id"],
        unique=False,
    )
    op.create_index(
        "ix_tool_execution_records_task_id",
        "tool_execution_records",
        ["task_id"],
        unique=False,
    )
    op.create_index(
        "ix_tool_execution_records_tool_id",
        "tool_execution_records",
        ["tool_id"],
        unique=False,
    )
    op.create_index(
        "ix_tool_execution_records_agent_id",
        "tool_execution_records",
        ["agent_id"],
        unique=False,
    )
    op.create_index(
        "ix_tool_execution_records_error_code",
        "tool_execution_records",
        ["error_code"],
        unique=False,
    )
    op.create_index(
        "idx_tool_execution_records_tool_time",
        "tool_execution_records",
        ["tool_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "cost_entries",
        sa.Column("entry_id", sa.Integer(), nullable=False),
        sa.Column("team_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=True),
        sa.Column("record_id", sa.String(), nullable=False),
        sa.Column("tool_id", sa.String(), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("amount >= 0", name="ck_cost_entries_positive_amount"),
        sa.ForeignKeyConstraint(["team_id"], ["teams.team_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(
            ["record_id"],
            ["tool_execution_records.record_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("entry_id"),
        sa.UniqueConstraint("record_id", name="uq_cost_entries_record"),
    )
    op.create_index("ix_cost_entries_team_id", "cost_entries", ["team_id"], unique=False)
    op.create_index("ix_cost_entries_task_id", "cost_entries", ["task_id"], unique=False)
    op.create_index("ix_cost_entries_tool_id", "cost_entries", ["tool_id"], unique=False)
    op.create_index(
        "idx_cost_entries_team_time",
        "cost_entries",
        ["team_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "checkpoints",
        sa.Column("checkpoint_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("step_number", sa.Integer(), nullable=False),
        sa.Column("snapshot_json", sa.Text(), nullable=False),
        sa.Column("cumulative_cost", sa.Float(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("invalidated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("checkpoint_id"),
    )
    op.create_index("ix_checkpoints_task_id", "checkpoints", ["task_id"], unique=False)
    op.create_index(
        "idx_checkpoints_task_created",
        "checkpoints",
        ["task_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "uq_checkpoints_task_step_valid",
        "checkpoints",
        ["task_id", "step_number"],
        unique=True,
        sqlite_where=sa.text("invalidated_at IS NULL"),
    )

    op.create_table(
        "failure_analyses",
        sa.Column("analysis_id", sa.String(), nullable=False),
        sa.Column("team_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("root_cause", sa.Text(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("recommended_action", sa.String(), nullable=False),
        sa.Column("escalation_priority", sa.String(), nullable=False),
        sa.Column("intervention", sa.String(), nullable=True),
        sa.Column("matched_rule", sa.String(), nullable=False),
        sa.Column("evidence_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["team_id"], ["teams.team_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("analysis_id"),
    )
    op.create_index("ix_failure_analyses_team_id", "failure_analyses", ["team_id"], unique=False)
    op.create_index("ix_failure_analyses_task_id", "failure_analyses", ["task_id"], unique=False)
    op.create_index(
        "ix_failure_analyses_category",
        "failure_analyses",
        ["category"],
        unique=False,
    )

    op.create_table(
        "escalations",
        sa.Column("escalation_id", sa.String(), nullable=False),
        sa.Column("team_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("analysis_id", sa.String(), nullable=True),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("priority", sa.String(), nullable=False),
        sa.Column("intervention", sa.String(), nullable=True),
        sa.Column("recommended_action", sa.String(), nullable=False),
        sa.Column("evidence_json", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("resolution", sa.String(), nullable=True),
        sa.Column("resolution_note", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["team_id"], ["teams.team_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["task_id"], ["tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("escalation_id"),
    )
    op.create_index("ix_escalations_team_id", "escalations", ["team_id"], unique=False)
    op.create_index("ix_escalations_task_id", "escalations", ["task_id"], unique=False)
    op.create_index("ix_escalations_status", "escalations", ["status"], unique=False)
    op.create_index(
        "idx_escalations_team_status",
        "escalations",
        ["team_id", "status"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_escalations_team_status", table_name="escalations")
    op.drop_index("ix_escalations_status", table_name="escalations")
    op.drop_index("ix_escalations_task_id", table_name="escalations")
    op.drop_index("ix_escalations_team_id", table_name="escalations")
    op.drop_table("escalations")
    op.drop_index("ix_failure_analyses_category", table_name="failure_analyses")
    op.drop_index("ix_failure_analyses_task_id", table_name="failure_analyses")
    op.drop_index("ix_failure_analyses_team_id", table_name="failure_analyses")
    op.drop_table("failure_analyses")
    op.drop_index("uq_checkpoints_task_step_valid", table_name="checkpoints")
    op.drop_index("idx_checkpoints_task_created", table_name="checkpoints")
    op.drop_index("ix_checkpoints_task_id", table_name="checkpoints")
    op.drop_table("checkpoints")
    op.drop_index("idx_cost_entries_team_time", table_name="cost_entries")
    op.drop_index("ix_cost_entries_tool_id", table_name="cost_entries")
    op.drop_index("ix_cost_entries_task_id", table_name="cost_entries")
    op.drop_index("ix_cost_entries_team_id", table_name="cost_entries")
    op.drop_table("cost_entries")
    op.drop_index("idx_tool_execution_records_tool_time", table_name="tool_execution_records")
    op.drop_index("ix_tool_execution_records_error_code", table_name="tool_execution_records")
    op.drop_index("ix_tool_execution_records_agent_id", table_name="tool_execution_records")
    op.drop_index("ix_tool_execution_records_tool_id", table_name="tool_execution_records")
    op.drop_index("ix_tool_execution_records_task_id", table_name="tool_execution_records")
    op.drop_index("ix_tool_execution_records_team_id", table_name="tool_execution_records")
    op.drop_table("tool_execution_records")
