"""Execution queries, attempt log helpers and cancellation."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..errors import NotFoundError
from ..models.execution import ACTIVE_STATUSES, ExecutionStepAttempt, JourneyExecution
from ..models.journey import JourneyStep
from ..timeutil import as_utc, utcnow

logger = logging.getLogger(__name__)


# ── Attempt log ──────────────────────────────────────────────────────────

async def next_sequence(db: AsyncSession, execution_id: uuid.UUID) -> int:
    stmt = select(func.max(ExecutionStepAttempt.sequence)).where(
        ExecutionStepAttempt.execution_id == execution_id
    )
    current = (await db.execute(stmt)).scalar()
    return (current or 0) + 1


async def record_attempt(
    db: AsyncSession,
    execution_id: uuid.UUID,
    step_id: uuid.UUID | None,
    outcome: str,
    attempt_no: int = 1,
    error: str | None = None,
    detail: dict | None = None,
) -> ExecutionStepAttempt:
    """Stage one attempt row; the caller commits it with the state change."""
    attempt = ExecutionStepAttempt(
        execution_id=execution_id,
        step_id=step_id,
        sequence=await next_sequence(db, execution_id),
        attempt_no=attempt_no,
        outcome=outcome,
        error=error,
        detail=detail,
    )
    db.add(attempt)
    return attempt


async def trailing_retry_count(
    db: AsyncSession, execution_id: uuid.UUID, step_id: uuid.UUID
) -> int:
    """Consecutive retryable failures of ``step_id`` at the end of the log."""
    stmt = (
        select(ExecutionStepAttempt.step_id, ExecutionStepAttempt.outcome)
        .where(ExecutionStepAttempt.execution_id == execution_id)
        .order_by(ExecutionStepAttempt.sequence.desc())
    )
    count = 0
    for attempt_step_id, outcome in (await db.execute(stmt)).all():
        if attempt_step_id != step_id or outcome != "retryable_failure":
            break
        count += 1
    return count


# ── Cancellation ─────────────────────────────────────────────────────────

async def cancel_where(
    db: AsyncSession,
    *criteria,
    reason: str,
    now: datetime | None = None,
) -> list[uuid.UUID]:
    """Cancel every active execution matching ``criteria``.

    Each row moves through a conditional update from an active status, so an
    execution that finished concurrently is left untouched.
    """
    now = now or utcnow()
    stmt = select(JourneyExecution.id, JourneyExecution.current_step_id).where(
        JourneyExecution.status.in_(ACTIVE_STATUSES), *criteria
    )
    cancelled: list[uuid.UUID] = []
    for execution_id, step_id in (await db.execute(stmt)).all():
        result = await db.execute(
            update(JourneyExecution)
            .where(
                JourneyExecution.id == execution_id,
                JourneyExecution.status.in_(ACTIVE_STATUSES),
            )
            .values(
                status="cancelled",
                next_step_at=None,
                leased_at=None,
                completed_at=now,
                last_error=reason,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            await record_attempt(db, execution_id, step_id, "cancelled", error=reason)
            cancelled.append(execution_id)
    await db.commit()
    for execution_id in cancelled:
        logger.info("Execution %s cancelled: %s", execution_id, reason)
    return cancelled


# ── Queries ──────────────────────────────────────────────────────────────

async def get_execution(
    db: AsyncSession, tenant_id: uuid.UUID, execution_id: uuid.UUID
) -> JourneyExecution:
    stmt = (
        select(JourneyExecution)
        .where(JourneyExecution.id == execution_id, JourneyExecution.tenant_id == tenant_id)
        .options(selectinload(JourneyExecution.attempts))
        .execution_options(populate_existing=True)
    )
    execution = (await db.execute(stmt)).scalar_one_or_none()
    if execution is None:
        raise NotFoundError(f"Execution {execution_id} not found")
    return execution


async def list_attempts(
    db: AsyncSession, tenant_id: uuid.UUID, execution_id: uuid.UUID
) -> list[ExecutionStepAttempt]:
    await get_execution(db, tenant_id, execution_id)
    stmt = (
        select(ExecutionStepAttempt)
        .where(ExecutionStepAttempt.execution_id == execution_id)
        .order_by(ExecutionStepAttempt.sequence)
    )
    return list((await db.execute(stmt)).scalars().all())


def progress_percentage(status: str, current_order_no: int | None, total_steps: int) -> float:
    if status == "completed":
        return 100.0
    if not total_steps or current_order_no is None:
        return 0.0
    return round((current_order_no - 1) / total_steps * 100, 1)


def duration_minutes(
    started_at: datetime | None, completed_at: datetime | None, now: datetime | None = None
) -> int | None:
    started = as_utc(started_at)
    if started is None:
        return None
    end = as_utc(completed_at) or now or utcnow()
    return max(int((end - started).total_seconds() // 60), 0)


async def list_executions(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    journey_id: uuid.UUID,
    status: str | None = None,
    page: int = 1,
    per_page: int = 20,
    now: datetime | None = None,
) -> tuple[list[dict], int]:
    """Return one page of executions with derived progress/duration, plus the total."""
    filters = [JourneyExecution.tenant_id == tenant_id, JourneyExecution.journey_id == journey_id]
    if status:
        filters.append(JourneyExecution.status == status)

    total = (
        await db.execute(select(func.count()).select_from(JourneyExecution).where(*filters))
    ).scalar_one()

    step_rows = await db.execute(
        select(JourneyStep.id, JourneyStep.order_no).where(JourneyStep.journey_id == journey_id)
    )
    order_by_step = {step_id: order_no for step_id, order_no in step_rows.all()}
    total_steps = len(order_by_step)

    stmt = (
        select(JourneyExecution)
        .where(*filters)
        .order_by(JourneyExecution.started_at.desc(), JourneyExecution.id)
        .offset((page - 1) * per_page)
        .limit(per_page)
    )
    executions = list((await db.execute(stmt)).scalars().all())

    rows = []
    for execution in executions:
        current_order = order_by_step.get(execution.current_step_id)
        rows.append({
            "execution": execution,
            "current_order_no": current_order,
            "progress_percentage": progress_percentage(execution.status, current_order, total_steps),
            "duration_minutes": duration_minutes(execution.started_at, execution.completed_at, now),
        })
    return rows, total
