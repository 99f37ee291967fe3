"""
SQLAlchemy models for FunnelWatch.
"""
from sqlalchemy import (
    Column, Integer, String, Text, Boolean, Float, Date,
    ForeignKey, DateTime, JSON, CheckConstraint, UniqueConstraint, Index
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from funnelwatch.core.database import Base


class Funnel(Base):
    """A tracked funnel, one per upstream project."""
    __tablename__ = "funnels"

    id = Column(Integer, primary_key=True)
    source_project_id = Column(String(120), unique=True, nullable=False)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    total_steps = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default="active")
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    steps = relationship("FunnelStep", back_populates="funnel", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint("status IN ('active', 'paused', 'archived')", name="valid_funnel_status"),
    )


class FunnelStep(Base):
    """
    One page/question of a funnel.

    Catalog steps use their declared page number; steps discovered in event
    data get numbers from 1000 upward.
    """
    __tablename__ = "funnel_steps"

    id = Column(Integer, primary_key=True)
    funnel_id = Column(Integer, ForeignKey("funnels.id", ondelete="CASCADE"), nullable=False)
    step_number = Column(Integer, nullable=False)
    step_key = Column(String(200), nullable=False)
    step_name = Column(String(200), nullable=False)
    category = Column(String(30), nullable=True)
    is_discovered = Column(Boolean, nullable=False, default=False)
    first_seen_page_index = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    funnel = relationship("Funnel", back_populates="steps")

    __table_args__ = (
        UniqueConstraint("funnel_id", "step_number", name="uq_funnel_steps_funnel_number"),
        UniqueConstraint("funnel_id", "step_key", name="uq_funnel_steps_funnel_key"),
    )


class FunnelEntry(Base):
    """Lightweight record of one user's attempt through the funnel."""
    __tablename__ = "funnel_entries"

    id = Column(Integer, primary_key=True)
    entry_id = Column(String(120), unique=True, nullable=False)
    funnel_id = Column(Integer, ForeignKey("funnels.id", ondelete="CASCADE"), nullable=False)
    completed = Column(Boolean, nullable=False, default=False)
    last_step_index = Column(Integer, nullable=False, default=0)
    total_steps = Column(Integer, nullable=False, default=0)
    time_spent = Column(Integer, nullable=False, default=0)
    last_event_type = Column(String(80), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_funnel_entries_funnel_created", "funnel_id", "created_at"),
    )


class StepDailyAggregate(Base):
    """Per-step, per-UTC-day rollup. Replaced wholesale by every sync that touches the day."""
    __tablename__ = "step_daily_aggregates"

    id = Column(Integer, primary_key=True)
    step_id = Column(Integer, ForeignKey("funnel_steps.id", ondelete="CASCADE"), nullable=False)
    day_key = Column(Date, nullable=False)
    views = Column(Integer, nullable=False, default=0)
    exits = Column(Integer, nullable=False, default=0)
    continues = Column(Integer, nullable=False, default=0)
    drop_off_rate = Column(Float, nullable=False, default=0.0)
    conversion_rate = Column(Float, nullable=False, default=0.0)
    avg_time_on_step = Column(Float, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    step = relationship("FunnelStep")

    __table_args__ = (
        UniqueConstraint("step_id", "day_key", name="uq_step_daily_aggregates_step_day"),
        CheckConstraint("views >= 0 AND exits >= 0 AND continues >= 0", name="non_negative_step_counts"),
    )


class FunnelDailyAggregate(Base):
    """Per-funnel, per-UTC-day rollup. Same replace-per-day lifecycle as step rollups."""
    __tablename__ = "funnel_daily_aggregates"

    id = Column(Integer, primary_key=True)
    funnel_id = Column(Integer, ForeignKey("funnels.id", ondelete="CASCADE"), nullable=False)
    day_key = Column(Date, nullable=False)
    total_starts = Column(Integer, nullable=False, default=0)
    total_completions = Column(Integer, nullable=False, default=0)
    total_dropoffs = Column(Integer, nullable=False, default=0)
    conversion_rate = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("funnel_id", "day_key", name="uq_funnel_daily_aggregates_funnel_day"),
    )


class Alert(Base):
    """Anomaly alert raised by the detector. Status changes are manual."""
    __tablename__ = "alerts"

    id = Column(Integer, primary_key=True)
    funnel_id = Column(Integer, ForeignKey("funnels.id", ondelete="CASCADE"), nullable=False)
    step_number = Column(Integer, nullable=True)
    step_name = Column(String(200), nullable=True)
    severity = Column(String(20), nullable=False)
    alert_type = Column(String(30), nullable=False)
    current_value = Column(Float, nullable=False)
    previous_day_value = Column(Float, nullable=True)
    seven_day_average = Column(Float, nullable=True)
    percentage_change = Column(Float, nullable=False)
    message = Column(Text, nullable=False)
    recommendation = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default="active")
    acknowledged_by = Column(String(120), nullable=True)
    acknowledged_at = Column(DateTime(timezone=True), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    funnel = relationship("Funnel")

    __table_args__ = (
        CheckConstraint("severity IN ('critical', 'warning', 'info')", name="valid_alert_severity"),
        CheckConstraint(
            "alert_type IN ('drop_off', 'conversion', 'volume', 'step_anomaly')",
            name="valid_alert_type",
        ),
        CheckConstraint("status IN ('active', 'acknowledged', 'resolved')", name="valid_alert_status"),
        Index("idx_alerts_dedup", "funnel_id", "step_number", "alert_type", "status", "created_at"),
    )


class SyncLog(Base):
    """Append-only audit trail of sync attempts."""
    __tablename__ = "sync_logs"

    id = Column(Integer, primary_key=True)
    sync_type = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False)
    records_processed = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("status IN ('success', 'partial', 'failed')", name="valid_sync_status"),
    )


class SyncLease(Base):
    """Run lock so overlapping sync invocations don't interleave day replacements."""
    __tablename__ = "sync_leases"

    name = Column(String(200), primary_key=True)
    owner = Column(String(64), nullable=False)
    acquired_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
