"""Journey and JourneyStep models."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, TenantMixin, TimestampMixin, UUIDMixin

if TYPE_CHECKING:
    from .execution import JourneyExecution

JOURNEY_STATUSES = {
    "draft": "Draft",
    "active": "Active",
    "paused": "Paused",
    "archived": "Archived",
}


class Journey(Base, UUIDMixin, TimestampMixin, TenantMixin):
    """A tenant-scoped journey definition."""

    __tablename__ = "journey"

    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[str | None] = mapped_column(Text, default=None)
    status: Mapped[str] = mapped_column(String(20), default="draft")  # draft/active/paused/archived
    settings: Mapped[dict | None] = mapped_column(JSON, default=None)
    version: Mapped[int] = mapped_column(Integer, default=0)
    created_by: Mapped[str | None] = mapped_column(String(255), default=None)
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)

    steps: Mapped[list[JourneyStep]] = relationship(
        back_populates="journey",
        cascade="all, delete-orphan",
        order_by="JourneyStep.order_no",
    )
    executions: Mapped[list[JourneyExecution]] = relationship(
        back_populates="journey",
        cascade="all, delete-orphan",
    )

    @property
    def allow_reentry(self) -> bool:
        return bool((self.settings or {}).get("allow_reentry", False))

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def __repr__(self) -> str:
        return f"<Journey {self.name!r} ({self.status} v{self.version})>"


class JourneyStep(Base, UUIDMixin, TimestampMixin):
    """One node in a journey's ordered step list."""

    __tablename__ = "journey_step"
    __table_args__ = (
        UniqueConstraint("journey_id", "order_no", name="uq_journey_step_order"),
    )

    journey_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("journey.id", ondelete="CASCADE"), index=True
    )
    step_type: Mapped[str] = mapped_column(String(30))
    order_no: Mapped[int] = mapped_column(Integer)
    label: Mapped[str | None] = mapped_column(String(200), default=None)
    config: Mapped[dict | None] = mapped_column(JSON, default=None)
    conditions: Mapped[dict | None] = mapped_column(JSON, default=None)

    # Branch targets reference order_no within the same journey
    on_true_order_no: Mapped[int | None] = mapped_column(Integer, default=None)
    on_false_order_no: Mapped[int | None] = mapped_column(Integer, default=None)

    journey: Mapped[Journey] = relationship(back_populates="steps")

    def __repr__(self) -> str:
        return f"<JourneyStep {self.step_type} order={self.order_no}>"
