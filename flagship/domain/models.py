from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Use JSONB on Postgres while staying portable for SQLite-backed tests.
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return uuid4().hex


class Base(DeclarativeBase):
    pass


class Feature(Base):
    __tablename__ = "features"
    __table_args__ = (
        UniqueConstraint("project_id", "key", name="uq_features_project_key"),
        Index("ix_features_enabled", "enabled"),
    )

    # Project-scoped feature definitions owned by the management collaborator.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    project_id: Mapped[str] = mapped_column(String, index=True)
    key: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(String, default="boolean", nullable=False)
    default_value: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Master kill switch; disabled features bypass every rule.
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class FeatureRule(Base):
    __tablename__ = "feature_rules"
    __table_args__ = (
        UniqueConstraint(
            "feature_id",
            "environment_id",
            "rule_type",
            name="uq_feature_rules_feature_env_type",
        ),
        Index("ix_feature_rules_priority", "priority"),
    )

    # Environment-scoped rules; value_json shape depends on rule_type.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    feature_id: Mapped[str] = mapped_column(
        String, ForeignKey("features.id", ondelete="CASCADE"), index=True
    )
    environment_id: Mapped[str] = mapped_column(String, index=True)
    rule_type: Mapped[str] = mapped_column(String)
    value_json: Mapped[dict[str, Any]] = mapped_column(JSONType)
    # Higher priority rules are evaluated first.
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class PlanFeature(Base):
    __tablename__ = "plan_features"
    __table_args__ = (
        UniqueConstraint("plan_id", "feature_id", name="uq_plan_features_plan_feature"),
    )

    # Fallback plan entitlements used when a plan feature has no plan_gate rule.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    plan_id: Mapped[str] = mapped_column(String, index=True)
    feature_id: Mapped[str] = mapped_column(
        String, ForeignKey("features.id", ondelete="CASCADE"), index=True
    )
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    config_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class UsageMetric(Base):
    __tablename__ = "usage_metrics"
    __table_args__ = (
        UniqueConstraint(
            "environment_id",
            "org_id",
            "metric_key",
            "period_start",
            name="uq_usage_metrics_env_org_metric_period",
        ),
    )

    # One counter row per environment/org/metric/calendar month.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    environment_id: Mapped[str] = mapped_column(String, index=True)
    org_id: Mapped[str] = mapped_column(String, index=True)
    metric_key: Mapped[str] = mapped_column(String, index=True)
    current_value: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class UsageLimit(Base):
    __tablename__ = "usage_limits"
    __table_args__ = (
        UniqueConstraint(
            "environment_id",
            "plan_id",
            "metric_key",
            name="uq_usage_limits_env_plan_metric",
        ),
        # NULL plan ids never collide in the constraint above; one default per metric.
        Index(
            "uq_usage_limits_env_metric_default",
            "environment_id",
            "metric_key",
            unique=True,
            postgresql_where=text("plan_id IS NULL"),
            sqlite_where=text("plan_id IS NULL"),
        ),
    )

    # Limit definitions; plan-specific rows take precedence over plan-less defaults.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    environment_id: Mapped[str] = mapped_column(String, index=True)
    plan_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    metric_key: Mapped[str] = mapped_column(String, index=True)
    limit_type: Mapped[str] = mapped_column(String, default="count", nullable=False)
    limit_value: Mapped[int] = mapped_column(BigInteger, nullable=False)
    period_type: Mapped[str] = mapped_column(String, default="month", nullable=False)
    enforcement: Mapped[str] = mapped_column(String, default="hard", nullable=False)
    warning_threshold: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class UsageIngestDeadLetter(Base):
    __tablename__ = "usage_ingest_dead_letters"
    __table_args__ = (
        Index("ix_usage_ingest_dead_letters_created_at", "created_at"),
    )

    # Retain exhausted ingestion jobs for inspection and manual replay.
    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    job_id: Mapped[str] = mapped_column(String, index=True)
    request_id: Mapped[str] = mapped_column(String, index=True)
    environment_id: Mapped[str] = mapped_column(String, index=True)
    org_id: Mapped[str] = mapped_column(String)
    payload_json: Mapped[dict[str, Any]] = mapped_column(JSONType)
    reason: Mapped[str] = mapped_column(String)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    replayed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    replay_job_id: Mapped[str | None] = mapped_column(String, nullable=True)
