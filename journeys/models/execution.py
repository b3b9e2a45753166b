"""Execution tracking models."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text, Uuid, func, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, TenantMixin, TimestampMixin, UUIDMixin
from .journey import Journey, JourneyStep

ACTIVE_STATUSES = ("running", "waiting")
TERMINAL_STATUSES = ("completed", "failed", "cancelled")
EXECUTION_STATUSES = ACTIVE_STATUSES + TERMINAL_STATUSES

ATTEMPT_OUTCOMES = ("success", "retryable_failure", "fatal_failure", "cancelled")

ACTIVE_UNIQUE_WHERE = "status IN ('running', 'waiting') AND reentry_key IS NULL"


class JourneyExecution(Base, UUIDMixin, TimestampMixin, TenantMixin):
    """The live state of one contact walking one journey."""

    __tablename__ = "journey_execution"
    __table_args__ = (
        Index("ix_journey_execution_due", "status", "next_step_at"),
        Index("ix_journey_execution_journey_contact", "journey_id", "contact_id"),
        # One active execution per (journey, contact) unless the journey allows re-entry.
        Index(
            "uq_journey_execution_active_contact",
            "journey_id",
            "contact_id",
            unique=True,
            sqlite_where=text(ACTIVE_UNIQUE_WHERE),
            postgresql_where=text(ACTIVE_UNIQUE_WHERE),
        ),
    )

    journey_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("journey.id", ondelete="CASCADE")
    )
    contact_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    status: Mapped[str] = mapped_column(
        String(20), default="running"
    )  # running/waiting/completed/failed/cancelled
    current_step_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("journey_step.id", ondelete="SET NULL"), default=None, nullable=True
    )
    trigger_data: Mapped[dict | None] = mapped_column(JSON, default=None)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    next_step_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None, nullable=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None, nullable=True
    )
    leased_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None, nullable=True
    )
    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    # Set only on re-entry journeys, taking the row out of the active-contact index.
    reentry_key: Mapped[str | None] = mapped_column(String(32), default=None, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, default=None)

    journey: Mapped[Journey] = relationship(back_populates="executions")
    current_step: Mapped[JourneyStep | None] = relationship()
    attempts: Mapped[list[ExecutionStepAttempt]] = relationship(
        back_populates="execution",
        cascade="all, delete-orphan",
        order_by="ExecutionStepAttempt.sequence",
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def __repr__(self) -> str:
        return f"<JourneyExecution {self.status} step={self.current_step_id}>"


class ExecutionStepAttempt(Base, UUIDMixin):
    """Append-only record of one attempt to execute a step within an execution."""

    __tablename__ = "execution_step_attempt"

    execution_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("journey_execution.id", ondelete="CASCADE"), index=True
    )
    step_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("journey_step.id", ondelete="SET NULL"), nullable=True
    )
    # Monotonic per execution; orders the log independently of clock resolution
    sequence: Mapped[int] = mapped_column(Integer)
    attempt_no: Mapped[int] = mapped_column(Integer, default=1)
    outcome: Mapped[str] = mapped_column(String(20))  # success/retryable_failure/fatal_failure/cancelled
    error: Mapped[str | None] = mapped_column(Text, default=None)
    detail: Mapped[dict | None] = mapped_column(JSON, default=None)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    execution: Mapped[JourneyExecution] = relationship(back_populates="attempts")

    def __repr__(self) -> str:
        return f"<ExecutionStepAttempt #{self.sequence} {self.outcome}>"
