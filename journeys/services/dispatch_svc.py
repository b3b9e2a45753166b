"""Dispatcher: find due executions, lease them and drive them through the machine.

The ``waiting -> running`` status write is the lease. It is a conditional
UPDATE, so when several workers race on the same row exactly one of them
sees a row count of one.
"""

from __future__ import annotations

import logging
import random
import uuid
from datetime import datetime, timedelta

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import JourneySettings, settings as default_settings
from ..errors import DispatcherTransientError
from ..models.execution import JourneyExecution
from ..models.journey import Journey
from ..timeutil import as_utc, utcnow

logger = logging.getLogger(__name__)


async def find_due(
    db: AsyncSession, now: datetime | None = None, limit: int | None = None
) -> list[uuid.UUID]:
    """Ids of waiting executions whose wake time has passed, oldest first.

    Executions of paused journeys stay parked until the journey resumes.
    """
    now = now or utcnow()
    limit = limit or default_settings.dispatch_batch_size
    stmt = (
        select(JourneyExecution.id)
        .join(Journey, Journey.id == JourneyExecution.journey_id)
        .where(
            JourneyExecution.status == "waiting",
            JourneyExecution.next_step_at <= now,
            Journey.status != "paused",
        )
        .order_by(JourneyExecution.next_step_at.asc(), JourneyExecution.id)
        .limit(limit)
    )
    return list((await db.execute(stmt)).scalars().all())


async def backlog(db: AsyncSession, now: datetime | None = None) -> dict[str, int]:
    """Counts of due and leased executions, for readiness reporting."""
    now = now or utcnow()
    due = (
        select(func.count())
        .select_from(JourneyExecution)
        .join(Journey, Journey.id == JourneyExecution.journey_id)
        .where(
            JourneyExecution.status == "waiting",
            JourneyExecution.next_step_at <= now,
            Journey.status != "paused",
        )
    )
    leased = select(func.count()).select_from(JourneyExecution).where(JourneyExecution.status == "running")
    return {
        "due": (await db.execute(due)).scalar_one(),
        "running": (await db.execute(leased)).scalar_one(),
    }


async def acquire_lease(db: AsyncSession, execution_id: uuid.UUID, now: datetime | None = None) -> bool:
    """Move an execution from waiting to running; False if another worker got there first."""
    now = now or utcnow()
    result = await db.execute(
        update(JourneyExecution)
        .where(JourneyExecution.id == execution_id, JourneyExecution.status == "waiting")
        .values(status="running", next_step_at=None, leased_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


def rollback_delay(settings_obj: JourneySettings | None = None) -> timedelta:
    cfg = settings_obj or default_settings
    jitter = random.uniform(0, cfg.dispatch_rollback_jitter_seconds)
    return timedelta(seconds=cfg.dispatch_rollback_delay_seconds + jitter)


async def release_lease(
    db: AsyncSession,
    execution_id: uuid.UUID,
    error: str,
    now: datetime | None = None,
    settings_obj: JourneySettings | None = None,
    wake: datetime | None = None,
) -> bool:
    """Return a running execution to waiting after an unexpected error.

    The execution keeps its current step and attempt history. It wakes a short
    jittered delay after ``wake``, the next_step_at it was leased with, or
    after ``now`` when it was never parked.
    """
    now = now or utcnow()
    wake = (as_utc(wake) or now) + rollback_delay(settings_obj)
    result = await db.execute(
        update(JourneyExecution)
        .where(JourneyExecution.id == execution_id, JourneyExecution.status == "running")
        .values(
            status="waiting",
            next_step_at=wake,
            leased_at=None,
            last_error=error,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def recover_stale_leases(
    db: AsyncSession,
    now: datetime | None = None,
    settings_obj: JourneySettings | None = None,
) -> int:
    """Requeue running executions whose worker disappeared mid-advance."""
    cfg = settings_obj or default_settings
    now = now or utcnow()
    cutoff = now - timedelta(seconds=cfg.dispatch_lease_timeout_seconds)
    result = await db.execute(
        update(JourneyExecution)
        .where(
            JourneyExecution.status == "running",
            JourneyExecution.leased_at.is_not(None),
            JourneyExecution.leased_at < cutoff,
        )
        .values(status="waiting", next_step_at=now, leased_at=None, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount:
        logger.warning("Recovered %d executions with expired leases", result.rowcount)
    return result.rowcount


async def dispatch_one(
    session_factory: async_sessionmaker[AsyncSession],
    machine,
    execution_id: uuid.UUID,
    now: datetime | None = None,
) -> bool:
    """Lease and advance one execution in its own session.

    Returns True when this worker advanced it. Step failures never reach
    here; anything that does is rolled back onto the queue.
    """
    async with session_factory() as db:
        leased_wake = (
            await db.execute(select(JourneyExecution.next_step_at).where(JourneyExecution.id == execution_id))
        ).scalar_one_or_none()
        if not await acquire_lease(db, execution_id, now):
            return False
        execution = (
            await db.execute(select(JourneyExecution).where(JourneyExecution.id == execution_id))
        ).scalar_one()
        try:
            await machine.advance(db, execution, now=now)
        except Exception as exc:
            await db.rollback()
            error = DispatcherTransientError(f"{type(exc).__name__}: {exc}")
            logger.exception("Advancing execution %s failed; returning it to the queue", execution_id)
            await release_lease(
                db, execution_id, str(error), now, getattr(machine, "settings", None), wake=leased_wake
            )
        return True


async def run_dispatch_cycle(
    session_factory: async_sessionmaker[AsyncSession],
    machine,
    now: datetime | None = None,
    limit: int | None = None,
) -> int:
    """One poll: advance every due execution this worker can lease."""
    async with session_factory() as db:
        due = await find_due(db, now, limit)
    advanced = 0
    for execution_id in due:
        if await dispatch_one(session_factory, machine, execution_id, now):
            advanced += 1
    return advanced
