"""Initial schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18

"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "0001_initial"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

ACTIVE_RUN_PREDICATE = sa.text("status IN ('pending', 'running', 'paused')")


def upgrade() -> None:
    op.create_table(
        "research_runs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("item_id", sa.String(length=128), nullable=False),
        sa.Column("organization_id", sa.String(length=128), nullable=True),
        sa.Column("run_type", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), server_default=sa.text("'pending'"), nullable=False),
        sa.Column("pipeline_version", sa.String(length=64), nullable=False),
        sa.Column("research_mode", sa.String(length=16), server_default=sa.text("'balanced'"), nullable=False),
        sa.Column("research_constraints", sa.JSON(), nullable=False),
        sa.Column("pause_requested", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("paused_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("current_node", sa.String(length=64), nullable=True),
        sa.Column("step_count", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("step_history", sa.JSON(), nullable=False),
        sa.Column("field_states", sa.JSON(), nullable=False),
        sa.Column("context_data", sa.JSON(), nullable=False),
        sa.Column("research_cost_usd", sa.Float(), server_default=sa.text("0"), nullable=False),
        sa.Column("log_sequence", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("checkpoint_version", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_research_runs_item_created", "research_runs", ["item_id", "created_at"])
    op.create_index("ix_research_runs_status", "research_runs", ["status"])
    op.create_index(
        "uq_research_runs_active_item",
        "research_runs",
        ["item_id"],
        unique=True,
        sqlite_where=ACTIVE_RUN_PREDICATE,
        postgresql_where=ACTIVE_RUN_PREDICATE,
    )

    op.create_table(
        "run_leases",
        sa.Column("run_id", sa.Uuid(), nullable=False),
        sa.Column("holder_id", sa.String(length=128), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["run_id"], ["research_runs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("run_id"),
    )

    op.create_table(
        "research_activity_logs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("research_run_id", sa.Uuid(), nullable=False),
        sa.Column("item_id", sa.String(length=128), nullable=False),
        sa.Column("organization_id", sa.String(length=128), nullable=True),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("event_type", sa.String(length=16), nullable=False),
        sa.Column("operation_id", sa.String(length=128), nullable=True),
        sa.Column("operation_type", sa.String(length=64), nullable=True),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("message", sa.Text(), server_default=sa.text("''"), nullable=False),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("step_id", sa.String(length=96), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["research_run_id"], ["research_runs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("research_run_id", "sequence", name="uq_activity_run_sequence"),
    )
    op.create_index("ix_activity_run_timestamp", "research_activity_logs", ["research_run_id", "timestamp"])
    op.create_index("ix_activity_item_timestamp", "research_activity_logs", ["item_id", "timestamp"])

    op.create_table(
        "research_outcomes",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.String(length=128), nullable=True),
        sa.Column("item_id", sa.String(length=128), nullable=False),
        sa.Column("research_run_id", sa.Uuid(), nullable=False),
        sa.Column("predicted_price_floor", sa.Float(), nullable=True),
        sa.Column("predicted_price_target", sa.Float(), nullable=True),
        sa.Column("predicted_price_ceiling", sa.Float(), nullable=True),
        sa.Column("predicted_category", sa.String(length=255), nullable=True),
        sa.Column("identified_brand", sa.String(length=255), nullable=True),
        sa.Column("identified_model", sa.String(length=255), nullable=True),
        sa.Column("research_confidence", sa.Float(), nullable=True),
        sa.Column("tools_used", sa.JSON(), nullable=False),
        sa.Column("sold_price", sa.Float(), nullable=True),
        sa.Column("sold_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("days_to_sell", sa.Integer(), nullable=True),
        sa.Column("marketplace", sa.String(length=64), nullable=True),
        sa.Column("was_returned", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("return_reason", sa.Text(), nullable=True),
        sa.Column("price_accuracy_ratio", sa.Float(), nullable=True),
        sa.Column("price_within_bands", sa.Boolean(), nullable=True),
        sa.Column("identification_correct", sa.Boolean(), nullable=True),
        sa.Column("outcome_quality", sa.String(length=16), nullable=True),
        sa.Column("correction_notes", sa.Text(), nullable=True),
        sa.Column("corrected_by", sa.String(length=128), nullable=True),
        sa.Column("corrected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["research_run_id"], ["research_runs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("research_run_id", name="uq_research_outcomes_run"),
    )
    op.create_index("ix_research_outcomes_org_created", "research_outcomes", ["organization_id", "created_at"])

    op.create_table(
        "tool_effectiveness",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.String(length=128), nullable=True),
        sa.Column("tool_type", sa.String(length=64), nullable=False),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("total_uses", sa.Integer(), nullable=False),
        sa.Column("contributed_to_sale", sa.Integer(), nullable=False),
        sa.Column("contributed_to_return", sa.Integer(), nullable=False),
        sa.Column("total_price_deviation_sum", sa.Float(), nullable=False),
        sa.Column("price_accuracy_count", sa.Integer(), nullable=False),
        sa.Column("actual_accuracy_sum", sa.Float(), nullable=False),
        sa.Column("identification_correct_count", sa.Integer(), nullable=False),
        sa.Column("identification_total_count", sa.Integer(), nullable=False),
        sa.Column("confidence_when_used_sum", sa.Float(), nullable=False),
        sa.Column("confidence_when_used_count", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("organization_id", "tool_type", "period_start", name="uq_tool_effectiveness_period"),
    )

    op.create_table(
        "research_anomalies",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.String(length=128), nullable=True),
        sa.Column("tool_type", sa.String(length=64), nullable=True),
        sa.Column("anomaly_type", sa.String(length=64), nullable=False),
        sa.Column("severity", sa.String(length=16), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("affected_items", sa.JSON(), nullable=False),
        sa.Column("pattern", sa.JSON(), nullable=True),
        sa.Column("suggested_action", sa.Text(), nullable=True),
        sa.Column("detected_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.String(length=128), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_research_anomalies_org_resolved", "research_anomalies", ["organization_id", "resolved"])

    op.create_table(
        "calibration_results",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("tool_family", sa.String(length=64), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), server_default=sa.text("true"), nullable=False),
        sa.Column("weights", sa.JSON(), nullable=False),
        sa.Column("details", sa.JSON(), nullable=False),
        sa.Column("triggered_by", sa.String(length=16), nullable=False),
        sa.Column("triggered_by_user", sa.String(length=128), nullable=True),
        sa.Column("period_days", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tool_family", "version", name="uq_calibration_family_version"),
    )
    op.create_index("ix_calibration_family_active", "calibration_results", ["tool_family", "is_active"])


def downgrade() -> None:
    op.drop_index("ix_calibration_family_active", table_name="calibration_results")
    op.drop_table("calibration_results")
    op.drop_index("ix_research_anomalies_org_resolved", table_name="research_anomalies")
    op.drop_table("research_anomalies")
    op.drop_table("tool_effectiveness")
    op.drop_index("ix_research_outcomes_org_created", table_name="research_outcomes")
    op.drop_table("research_outcomes")
    op.drop_index("ix_activity_item_timestamp", table_name="research_activity_logs")
    op.drop_index("ix_activity_run_timestamp", table_name="research_activity_logs")
    op.drop_table("research_activity_logs")
    op.drop_table("run_leases")
    op.drop_index("uq_research_runs_active_item", table_name="research_runs")
    op.drop_index("ix_research_runs_status", table_name="research_runs")
    op.drop_index("ix_research_runs_item_created", table_name="research_runs")
    op.drop_table("research_runs")
