"""Trigger gateway: starts journeys for contacts and cancels executions."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ConflictError, DispatcherTransientError, NotFoundError, ValidationError
from ..models.execution import ACTIVE_STATUSES, JourneyExecution
from ..timeutil import utcnow
from . import dispatch_svc, execution_svc, journey_svc

logger = logging.getLogger(__name__)


async def find_active_execution(
    db: AsyncSession, tenant_id: uuid.UUID, journey_id: uuid.UUID, contact_id: uuid.UUID
) -> JourneyExecution | None:
    stmt = (
        select(JourneyExecution)
        .where(
            JourneyExecution.tenant_id == tenant_id,
            JourneyExecution.journey_id == journey_id,
            JourneyExecution.contact_id == contact_id,
            JourneyExecution.status.in_(ACTIVE_STATUSES),
        )
        .order_by(JourneyExecution.started_at.desc())
        .limit(1)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def start_journey(
    db: AsyncSession,
    machine,
    tenant_id: uuid.UUID,
    journey_id: uuid.UUID,
    contact_id: uuid.UUID,
    trigger_data: dict | None = None,
    delay: timedelta | None = None,
    now: datetime | None = None,
) -> tuple[JourneyExecution, bool]:
    """Start ``journey_id`` for a contact.

    Returns ``(execution, created)``. When re-entry is disabled and the contact
    already has an active execution, that execution is returned with
    ``created=False``. Without a delay the first steps run before this
    returns; with one, the execution is parked until the delay elapses.
    """
    journey = await journey_svc.get_journey(db, tenant_id, journey_id)
    if journey.status != "active":
        raise ConflictError(f"Journey {journey_id} is {journey.status}, not active")

    if not journey.allow_reentry:
        existing = await find_active_execution(db, tenant_id, journey_id, contact_id)
        if existing is not None:
            logger.info(
                "Contact %s already in journey %s (execution %s)", contact_id, journey_id, existing.id
            )
            return existing, False

    if not await machine.contacts.exists(tenant_id, contact_id):
        raise NotFoundError(f"Contact {contact_id} not found")

    now = now or utcnow()
    delayed = delay is not None and delay > timedelta(0)
    execution = JourneyExecution(
        tenant_id=tenant_id,
        journey_id=journey.id,
        contact_id=contact_id,
        status="waiting" if delayed else "running",
        trigger_data=trigger_data or {},
        started_at=now,
        next_step_at=now + delay if delayed else None,
        leased_at=None if delayed else now,
        reentry_key=uuid.uuid4().hex if journey.allow_reentry else None,
    )
    db.add(execution)
    try:
        await db.commit()
    except IntegrityError:
        # A concurrent start won the active-contact unique index.
        await db.rollback()
        existing = await find_active_execution(db, tenant_id, journey_id, contact_id)
        if existing is None:
            raise ConflictError(
                f"Contact {contact_id} was started in journey {journey_id} concurrently; retry"
            )
        logger.info(
            "Contact %s already in journey %s (execution %s)", contact_id, journey_id, existing.id
        )
        return existing, False
    await db.refresh(execution)
    logger.info("Execution %s started: journey %s contact %s", execution.id, journey.id, contact_id)

    if not delayed:
        execution = await _advance_or_requeue(db, machine, execution, now)
    return execution, True


async def _advance_or_requeue(db: AsyncSession, machine, execution: JourneyExecution, now: datetime):
    """First synchronous advance; unexpected errors put the execution back on the queue."""
    execution_id, tenant_id = execution.id, execution.tenant_id
    try:
        return await machine.advance(db, execution, now=now)
    except Exception as exc:
        await db.rollback()
        error = DispatcherTransientError(f"{type(exc).__name__}: {exc}")
        logger.exception("Advancing new execution %s failed; returning it to the queue", execution_id)
        await dispatch_svc.release_lease(
            db, execution_id, str(error), now, getattr(machine, "settings", None)
        )
        return await execution_svc.get_execution(db, tenant_id, execution_id)


async def handle_automation_event(
    db: AsyncSession,
    machine,
    tenant_id: uuid.UUID,
    event: dict,
    now: datetime | None = None,
) -> tuple[JourneyExecution, bool]:
    """Map an automation rule event onto ``start_journey``.

    Event shape::

        {"journey_id": ..., "contact_id": ..., "payload": {...}, "delay_seconds": 3600}
    """
    try:
        journey_id = uuid.UUID(str(event["journey_id"]))
        contact_id = uuid.UUID(str(event["contact_id"]))
    except (KeyError, ValueError) as exc:
        raise ValidationError([{"message": f"invalid automation event: {exc}"}]) from exc

    delay_seconds = event.get("delay_seconds") or 0
    if not isinstance(delay_seconds, (int, float)) or isinstance(delay_seconds, bool) or delay_seconds < 0:
        raise ValidationError([{"message": "delay_seconds must be a non-negative number", "field": "delay_seconds"}])

    trigger_data = dict(event.get("payload") or {})
    if event.get("event_type"):
        trigger_data.setdefault("event_type", event["event_type"])
    return await start_journey(
        db,
        machine,
        tenant_id,
        journey_id,
        contact_id,
        trigger_data=trigger_data,
        delay=timedelta(seconds=delay_seconds),
        now=now,
    )


async def cancel_execution(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    execution_id: uuid.UUID,
    reason: str = "cancelled by operator",
) -> JourneyExecution:
    execution = await execution_svc.get_execution(db, tenant_id, execution_id)
    if not execution.is_active:
        raise ConflictError(f"Execution {execution_id} is already {execution.status}")
    await execution_svc.cancel_where(
        db,
        JourneyExecution.id == execution_id,
        JourneyExecution.tenant_id == tenant_id,
        reason=reason,
    )
    return await execution_svc.get_execution(db, tenant_id, execution_id)


async def cancel_contact_executions(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    contact_id: uuid.UUID,
    journey_id: uuid.UUID | None = None,
    reason: str = "contact unsubscribed",
) -> list[uuid.UUID]:
    """Cancel a contact's active executions, across all journeys unless one is given."""
    criteria = [JourneyExecution.tenant_id == tenant_id, JourneyExecution.contact_id == contact_id]
    if journey_id is not None:
        criteria.append(JourneyExecution.journey_id == journey_id)
    return await execution_svc.cancel_where(db, *criteria, reason=reason)
