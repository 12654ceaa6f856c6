from datetime import datetime
from typing import Optional, Any

from sqlalchemy import String, Integer, DateTime, Boolean, ForeignKey, Index, JSON, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.dialects.postgresql import JSONB

from jobctl.db.session import Base
from jobctl.domain.states import JobStatus, JobMode, JobEvent
from jobctl.utils.clock import utcnow

# JSONB on Postgres, plain JSON elsewhere (SQLite in local runs and tests)
JsonType = JSON().with_variant(JSONB(), "postgresql")


class JobRecord(Base):
    __tablename__ = "job_records"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    logical_name: Mapped[str] = mapped_column(String, index=True, nullable=False)
    unit_name: Mapped[str] = mapped_column(String, nullable=False)
    mode: Mapped[JobMode] = mapped_column(String, nullable=False)
    status: Mapped[JobStatus] = mapped_column(String, default=JobStatus.QUEUED, index=True)

    # Progress
    items_total: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    items_processed: Mapped[int] = mapped_column(Integer, default=0)
    error_count: Mapped[int] = mapped_column(Integer, default=0)
    slices_executed: Mapped[int] = mapped_column(Integer, default=0)

    # Timing
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)
    not_before: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_requested_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Retry logic
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    status_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    failure_kind: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # Unit parameters and output
    config: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    input_context: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    context: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)

    # Chaining
    chain: Mapped[list[dict[str, Any]]] = mapped_column(JsonType, default=list)
    error_tolerance: Mapped[int] = mapped_column(Integer, default=0)
    # Weak references, lookup and audit only
    parent_job_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    supersedes_job_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    # Reconciliation bookkeeping
    engine_done: Mapped[bool] = mapped_column(Boolean, default=False)
    settled: Mapped[bool] = mapped_column(Boolean, default=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    errors: Mapped[list["ErrorLogEntry"]] = relationship(
        "ErrorLogEntry", back_populates="job", order_by="ErrorLogEntry.id", cascade="all, delete-orphan"
    )
    events: Mapped[list["JobEventLog"]] = relationship("JobEventLog", back_populates="job", cascade="all, delete-orphan")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        # Reconciler poll: everything the engine still owns
        Index("ix_job_records_engine_done", "engine_done", "status"),
        Index("ix_job_records_history", "logical_name", "created_at"),
    )


class ErrorLogEntry(Base):
    __tablename__ = "job_error_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(64), ForeignKey("job_records.id", ondelete="CASCADE"), index=True)
    kind: Mapped[str] = mapped_column(String, nullable=False)  # unit | item
    item_ref: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    job: Mapped["JobRecord"] = relationship("JobRecord", back_populates="errors")


class JobSlot(Base):
    """Duplicate Guard reservation, one row per active logical job."""
    __tablename__ = "job_slots"

    logical_name: Mapped[str] = mapped_column(String, primary_key=True)
    token: Mapped[str] = mapped_column(String(64), nullable=False)
    # Unbound while the dispatcher is between reservation and record creation
    job_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class JobEventLog(Base):
    __tablename__ = "job_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(64), ForeignKey("job_records.id", ondelete="CASCADE"), index=True)

    event_type: Mapped[JobEvent] = mapped_column(String, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    # Context (e.g. status reason, retry delay, successor id)
    meta: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)

    job: Mapped["JobRecord"] = relationship("JobRecord", back_populates="events")


class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String, nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)
    status: Mapped[str] = mapped_column(String, default="PENDING", index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
