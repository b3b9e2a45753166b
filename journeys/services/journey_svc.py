"""Journey definition store: CRUD, step validation and publishing."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ..config import settings
from ..engine.cache import StepCache
from ..engine.evaluator import validate_expression
from ..engine.steps import (
    STEP_TYPE_LABELS,
    StepDefinition,
    StepType,
    describe_step,
    is_step_type,
    step_config_errors,
)
from ..engine.steps import step_type_schema as _config_schema
from ..errors import ConflictError, NotFoundError, ValidationError
from ..models.execution import ACTIVE_STATUSES, EXECUTION_STATUSES, JourneyExecution
from ..models.journey import JOURNEY_STATUSES, Journey, JourneyStep
from ..timeutil import utcnow
from . import execution_svc

logger = logging.getLogger(__name__)

step_cache = StepCache(settings.step_cache_size)

EDITABLE_STATUSES = ("draft",)
PUBLISHABLE_STATUSES = ("draft", "paused")


# ── Step validation ──────────────────────────────────────────────────────

def normalize_steps(steps: list[dict] | None) -> list[dict]:
    """Fill in ``order_no`` from list position where it was left out."""
    normalized = []
    for index, raw in enumerate(steps or [], start=1):
        step = dict(raw)
        if step.get("order_no") is None:
            step["order_no"] = index
        normalized.append(step)
    return normalized


def _violation(message: str, order_no: int | None = None, field: str | None = None) -> dict:
    violation: dict = {"message": message}
    if order_no is not None:
        violation["order_no"] = order_no
    if field is not None:
        violation["field"] = field
    return violation


def _next_orders(step: dict, orders: set[int]) -> list[int]:
    """Order numbers a step can hand control to."""
    if step.get("conditions"):
        return [t for t in (step.get("on_true_order_no"), step.get("on_false_order_no")) if t is not None]
    if step.get("step_type") == StepType.END:
        return []
    following = step["order_no"] + 1
    return [following] if following in orders else []


def validate_steps(steps: list[dict], for_publish: bool = False) -> list[dict]:
    """Collect every problem in a step list; an empty list means valid.

    Publishing additionally requires at least one step and that every step
    be reachable from the first.
    """
    violations: list[dict] = []
    orders = [s.get("order_no") for s in steps]

    if for_publish and not steps:
        violations.append(_violation("a journey needs at least one step to publish"))

    if any(not isinstance(o, int) or isinstance(o, bool) for o in orders):
        violations.append(_violation("order_no must be an integer", field="order_no"))
        return violations
    if len(set(orders)) != len(orders):
        dupes = sorted({o for o in orders if orders.count(o) > 1})
        for order_no in dupes:
            violations.append(_violation("duplicate order_no", order_no, "order_no"))
    elif sorted(orders) != list(range(1, len(orders) + 1)):
        violations.append(_violation(
            f"order_no must run 1..{len(orders)} without gaps", field="order_no"
        ))

    order_set = set(orders)
    for step in sorted(steps, key=lambda s: s["order_no"]):
        order_no = step["order_no"]
        step_type = step.get("step_type")

        if not isinstance(step_type, str) or not is_step_type(step_type):
            violations.append(_violation(f"unknown step type {step_type!r}", order_no, "step_type"))
            continue

        for message in step_config_errors(step_type, step.get("config")):
            violations.append(_violation(message, order_no, "config"))

        conditions = step.get("conditions")
        if conditions:
            for message in validate_expression(conditions):
                violations.append(_violation(message, order_no, "conditions"))
        elif step_type == StepType.CONDITION:
            violations.append(_violation("condition steps require conditions", order_no, "conditions"))

        for key in ("on_true_order_no", "on_false_order_no"):
            target = step.get(key)
            if target is None:
                continue
            if not conditions:
                violations.append(_violation(f"{key} is only allowed on steps with conditions", order_no, key))
            elif target not in order_set:
                violations.append(_violation(f"{key} points to missing step {target}", order_no, key))

    if for_publish and steps and not violations:
        by_order = {s["order_no"]: s for s in steps}
        reached: set[int] = set()
        pending = [1]
        while pending:
            current = pending.pop()
            if current in reached or current not in by_order:
                continue
            reached.add(current)
            pending.extend(_next_orders(by_order[current], order_set))
        for order_no in sorted(order_set - reached):
            violations.append(_violation("step is unreachable from the first step", order_no))

    return violations


def _step_rows(journey_id: uuid.UUID, steps: list[dict]) -> list[JourneyStep]:
    return [
        JourneyStep(
            journey_id=journey_id,
            step_type=s["step_type"],
            order_no=s["order_no"],
            label=s.get("label") or describe_step(s["step_type"], s.get("config")),
            config=s.get("config") or {},
            conditions=s.get("conditions") or None,
            on_true_order_no=s.get("on_true_order_no"),
            on_false_order_no=s.get("on_false_order_no"),
        )
        for s in steps
    ]


def _row_dict(step: JourneyStep) -> dict:
    return {
        "step_type": step.step_type,
        "order_no": step.order_no,
        "config": step.config,
        "conditions": step.conditions,
        "on_true_order_no": step.on_true_order_no,
        "on_false_order_no": step.on_false_order_no,
    }


# ── Journey CRUD ─────────────────────────────────────────────────────────

async def get_journey(
    db: AsyncSession, tenant_id: uuid.UUID, journey_id: uuid.UUID
) -> Journey:
    stmt = (
        select(Journey)
        .where(
            Journey.id == journey_id,
            Journey.tenant_id == tenant_id,
            Journey.deleted_at.is_(None),
        )
        .options(selectinload(Journey.steps))
        .execution_options(populate_existing=True)
    )
    journey = (await db.execute(stmt)).scalar_one_or_none()
    if journey is None:
        raise NotFoundError(f"Journey {journey_id} not found")
    return journey


async def list_journeys(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    status: str | None = None,
    page: int = 1,
    per_page: int = 20,
) -> tuple[list[Journey], int]:
    filters = [Journey.tenant_id == tenant_id, Journey.deleted_at.is_(None)]
    if status:
        filters.append(Journey.status == status)
    total = (
        await db.execute(select(func.count()).select_from(Journey).where(*filters))
    ).scalar_one()
    stmt = (
        select(Journey)
        .where(*filters)
        .options(selectinload(Journey.steps))
        .order_by(Journey.updated_at.desc(), Journey.id)
        .offset((page - 1) * per_page)
        .limit(per_page)
    )
    return list((await db.execute(stmt)).scalars().all()), total


async def create_journey(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    name: str,
    steps: list[dict] | None = None,
    description: str | None = None,
    settings: dict | None = None,
    status: str = "draft",
    created_by: str | None = None,
) -> Journey:
    """Create a journey with its steps; nothing is persisted if any step is invalid."""
    if status not in ("draft", "active"):
        raise ValidationError([_violation(f"journeys cannot be created as {status!r}", field="status")])
    steps = normalize_steps(steps)
    violations = validate_steps(steps)
    if violations:
        raise ValidationError(violations)

    journey = Journey(
        tenant_id=tenant_id,
        name=name,
        description=description,
        settings=settings or {},
        created_by=created_by,
    )
    db.add(journey)
    await db.flush()
    db.add_all(_step_rows(journey.id, steps))
    await db.commit()
    logger.info("Journey %s created for tenant %s with %d steps", journey.id, tenant_id, len(steps))

    if status == "active":
        return await publish(db, tenant_id, journey.id)
    return await get_journey(db, tenant_id, journey.id)


async def replace_steps(
    db: AsyncSession, tenant_id: uuid.UUID, journey_id: uuid.UUID, steps: list[dict]
) -> Journey:
    journey = await get_journey(db, tenant_id, journey_id)
    if journey.status not in EDITABLE_STATUSES:
        raise ConflictError(f"Steps of a {journey.status} journey cannot be changed")
    steps = normalize_steps(steps)
    violations = validate_steps(steps)
    if violations:
        raise ValidationError(violations)

    await db.execute(delete(JourneyStep).where(JourneyStep.journey_id == journey.id))
    db.add_all(_step_rows(journey.id, steps))
    await db.commit()
    return await get_journey(db, tenant_id, journey_id)


async def update_journey(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    journey_id: uuid.UUID,
    *,
    name: str | None = None,
    description: str | None = None,
    settings: dict | None = None,
    is_active: bool | None = None,
    steps: list[dict] | None = None,
) -> Journey:
    journey = await get_journey(db, tenant_id, journey_id)
    if journey.status == "archived":
        raise ConflictError("Archived journeys cannot be modified")

    if steps is not None:
        journey = await replace_steps(db, tenant_id, journey_id, steps)

    if name is not None:
        journey.name = name
    if description is not None:
        journey.description = description
    if settings is not None:
        journey.settings = {**(journey.settings or {}), **settings}
    await db.commit()

    if is_active is True and journey.status == "draft":
        return await publish(db, tenant_id, journey_id)
    if is_active is True and journey.status == "paused":
        return await resume(db, tenant_id, journey_id)
    if is_active is False and journey.status == "active":
        return await pause(db, tenant_id, journey_id)
    return await get_journey(db, tenant_id, journey_id)


async def publish(
    db: AsyncSession, tenant_id: uuid.UUID, journey_id: uuid.UUID, now: datetime | None = None
) -> Journey:
    """Validate the whole step graph and make the journey runnable.

    On failure the journey keeps its status and every violation is reported.
    """
    journey = await get_journey(db, tenant_id, journey_id)
    if journey.status not in PUBLISHABLE_STATUSES:
        raise ConflictError(f"A {journey.status} journey cannot be published")

    violations = validate_steps([_row_dict(s) for s in journey.steps], for_publish=True)
    if violations:
        raise ValidationError(violations)

    journey.status = "active"
    journey.version = (journey.version or 0) + 1
    journey.published_at = now or utcnow()
    await db.commit()
    logger.info("Journey %s published as version %d", journey.id, journey.version)
    return await get_journey(db, tenant_id, journey_id)


async def pause(db: AsyncSession, tenant_id: uuid.UUID, journey_id: uuid.UUID) -> Journey:
    journey = await get_journey(db, tenant_id, journey_id)
    if journey.status != "active":
        raise ConflictError(f"A {journey.status} journey cannot be paused")
    journey.status = "paused"
    await db.commit()
    logger.info("Journey %s paused", journey.id)
    return await get_journey(db, tenant_id, journey_id)


async def resume(db: AsyncSession, tenant_id: uuid.UUID, journey_id: uuid.UUID) -> Journey:
    journey = await get_journey(db, tenant_id, journey_id)
    if journey.status != "paused":
        raise ConflictError(f"A {journey.status} journey cannot be resumed")
    journey.status = "active"
    await db.commit()
    logger.info("Journey %s resumed", journey.id)
    return await get_journey(db, tenant_id, journey_id)


async def count_active_executions(db: AsyncSession, journey_id: uuid.UUID) -> int:
    stmt = select(func.count()).select_from(JourneyExecution).where(
        JourneyExecution.journey_id == journey_id,
        JourneyExecution.status.in_(ACTIVE_STATUSES),
    )
    return (await db.execute(stmt)).scalar_one()


async def archive(
    db: AsyncSession,
    tenant_id: uuid.UUID,
    journey_id: uuid.UUID,
    cancel_active: bool = False,
    now: datetime | None = None,
) -> Journey:
    journey = await get_journey(db, tenant_id, journey_id)
    if journey.status == "archived":
        return journey
    active = await count_active_executions(db, journey.id)
    if active and not cancel_active:
        raise ConflictError(f"Journey has {active} in-flight executions")
    if active:
        await execution_svc.cancel_where(
            db,
            JourneyExecution.journey_id == journey.id,
            reason="journey archived",
            now=now,
        )
    journey.status = "archived"
    journey.archived_at = now or utcnow()
    await db.commit()
    logger.info("Journey %s archived", journey.id)
    return await get_journey(db, tenant_id, journey_id)


async def delete_journey(
    db: AsyncSession, tenant_id: uuid.UUID, journey_id: uuid.UUID, now: datetime | None = None
) -> None:
    journey = await get_journey(db, tenant_id, journey_id)
    active = await count_active_executions(db, journey.id)
    if active:
        raise ConflictError(
            f"Journey has {active} in-flight executions; archive it instead"
        )
    journey.deleted_at = now or utcnow()
    await db.commit()
    step_cache.discard(journey.id)
    logger.info("Journey %s deleted", journey.id)


async def journey_stats(db: AsyncSession, journey_id: uuid.UUID) -> dict:
    stmt = (
        select(JourneyExecution.status, func.count())
        .where(JourneyExecution.journey_id == journey_id)
        .group_by(JourneyExecution.status)
    )
    counts = {status: 0 for status in EXECUTION_STATUSES}
    for status, count in (await db.execute(stmt)).all():
        counts[status] = count
    counts["total"] = sum(counts.values())
    return counts


# ── Step definitions ─────────────────────────────────────────────────────

async def get_steps(db: AsyncSession, journey: Journey) -> tuple[StepDefinition, ...]:
    """Ordered, immutable step definitions for a journey's current version."""
    cacheable = journey.status != "draft"
    if cacheable:
        cached = step_cache.get(journey.id, journey.version)
        if cached is not None:
            return cached

    stmt = (
        select(JourneyStep)
        .where(JourneyStep.journey_id == journey.id)
        .order_by(JourneyStep.order_no)
    )
    rows = (await db.execute(stmt)).scalars().all()
    steps = tuple(StepDefinition.from_row(row) for row in rows)
    if cacheable:
        step_cache.put(journey.id, journey.version, steps)
    return steps


# ── Catalog ──────────────────────────────────────────────────────────────

def list_statuses() -> list[dict]:
    return [{"key": key, "label": label} for key, label in JOURNEY_STATUSES.items()]


def list_step_types() -> list[dict]:
    return [
        {
            "key": step_type.value,
            "label": STEP_TYPE_LABELS[step_type],
            "has_side_effect": step_type not in (StepType.WAIT, StepType.CONDITION, StepType.END),
        }
        for step_type in StepType
    ]


def step_type_schema(step_type: str) -> dict:
    if not is_step_type(step_type):
        raise NotFoundError(f"Unknown step type {step_type!r}")
    return {
        "step_type": step_type,
        "label": STEP_TYPE_LABELS[StepType(step_type)],
        "schema": _config_schema(step_type),
    }
