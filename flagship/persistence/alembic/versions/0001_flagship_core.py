"""create feature, usage and dead-letter tables

Revision ID: 0001_flagship_core
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_flagship_core"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    ]


def upgrade() -> None:
    # Feature definitions are project scoped; keys are unique per project.
    op.create_table(
        "features",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("project_id", sa.String(), nullable=False),
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("type", sa.String(), nullable=False, server_default="boolean"),
        sa.Column("default_value", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("project_id", "key", name="uq_features_project_key"),
    )
    op.create_index("ix_features_project_id", "features", ["project_id"], unique=False)
    op.create_index("ix_features_key", "features", ["key"], unique=False)
    op.create_index("ix_features_enabled", "features", ["enabled"], unique=False)

    # One rule per type per feature per environment.
    op.create_table(
        "feature_rules",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("feature_id", sa.String(), sa.ForeignKey("features.id", ondelete="CASCADE"), nullable=False),
        sa.Column("environment_id", sa.String(), nullable=False),
        sa.Column("rule_type", sa.String(), nullable=False),
        sa.Column("value_json", postgresql.JSONB(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint(
            "feature_id", "environment_id", "rule_type", name="uq_feature_rules_feature_env_type"
        ),
    )
    op.create_index("ix_feature_rules_feature_id", "feature_rules", ["feature_id"], unique=False)
    op.create_index("ix_feature_rules_environment_id", "feature_rules", ["environment_id"], unique=False)
    op.create_index("ix_feature_rules_priority", "feature_rules", ["priority"], unique=False)

    op.create_table(
        "plan_features",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("plan_id", sa.String(), nullable=False),
        sa.Column("feature_id", sa.String(), sa.ForeignKey("features.id", ondelete="CASCADE"), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("config_json", postgresql.JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint("plan_id", "feature_id", name="uq_plan_features_plan_feature"),
    )
    op.create_index("ix_plan_features_plan_id", "plan_features", ["plan_id"], unique=False)
    op.create_index("ix_plan_features_feature_id", "plan_features", ["feature_id"], unique=False)

    # The unique constraint is the conflict target for atomic counter upserts.
    op.create_table(
        "usage_metrics",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("environment_id", sa.String(), nullable=False),
        sa.Column("org_id", sa.String(), nullable=False),
        sa.Column("metric_key", sa.String(), nullable=False),
        sa.Column("current_value", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.UniqueConstraint(
            "environment_id",
            "org_id",
            "metric_key",
            "period_start",
            name="uq_usage_metrics_env_org_metric_period",
        ),
    )
    op.create_index("ix_usage_metrics_environment_id", "usage_metrics", ["environment_id"], unique=False)
    op.create_index("ix_usage_metrics_org_id", "usage_metrics", ["org_id"], unique=False)
    op.create_index("ix_usage_metrics_metric_key", "usage_metrics", ["metric_key"], unique=False)

    op.create_table(
        "usage_limits",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("environment_id", sa.String(), nullable=False),
        sa.Column("plan_id", sa.String(), nullable=True),
        sa.Column("metric_key", sa.String(), nullable=False),
        sa.Column("limit_type", sa.String(), nullable=False, server_default="count"),
        sa.Column("limit_value", sa.BigInteger(), nullable=False),
        sa.Column("period_type", sa.String(), nullable=False, server_default="month"),
        sa.Column("enforcement", sa.String(), nullable=False, server_default="hard"),
        sa.Column("warning_threshold", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("environment_id", "plan_id", "metric_key", name="uq_usage_limits_env_plan_metric"),
    )
    op.create_index("ix_usage_limits_environment_id", "usage_limits", ["environment_id"], unique=False)
    op.create_index("ix_usage_limits_plan_id", "usage_limits", ["plan_id"], unique=False)
    op.create_index("ix_usage_limits_metric_key", "usage_limits", ["metric_key"], unique=False)
    # NULL plan ids are distinct in the unique constraint, so defaults need their own index.
    op.create_index(
        "uq_usage_limits_env_metric_default",
        "usage_limits",
        ["environment_id", "metric_key"],
        unique=True,
        postgresql_where=sa.text("plan_id IS NULL"),
    )

    # Exhausted ingestion jobs; rows are kept until an operator replays them.
    op.create_table(
        "usage_ingest_dead_letters",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("request_id", sa.String(), nullable=False),
        sa.Column("environment_id", sa.String(), nullable=False),
        sa.Column("org_id", sa.String(), nullable=False),
        sa.Column("payload_json", postgresql.JSONB(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("replayed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("replay_job_id", sa.String(), nullable=True),
    )
    op.create_index("ix_usage_ingest_dead_letters_job_id", "usage_ingest_dead_letters", ["job_id"], unique=False)
    op.create_index(
        "ix_usage_ingest_dead_letters_request_id", "usage_ingest_dead_letters", ["request_id"], unique=False
    )
    op.create_index(
        "ix_usage_ingest_dead_letters_environment_id",
        "usage_ingest_dead_letters",
        ["environment_id"],
        unique=False,
    )
    op.create_index(
        "ix_usage_ingest_dead_letters_created_at", "usage_ingest_dead_letters", ["created_at"], unique=False
    )


def downgrade() -> None:
    op.drop_table("usage_ingest_dead_letters")
    op.drop_table("usage_limits")
    op.drop_table("usage_metrics")
    op.drop_table("plan_features")
    op.drop_table("feature_rules")
    op.drop_table("features")
