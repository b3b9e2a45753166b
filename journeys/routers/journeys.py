"""Journey definition routes and the manual trigger entry point."""

from __future__ import annotations

import uuid
from datetime import timedelta

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..deps import get_machine, get_tenant_id
from ..engine.machine import ExecutionStateMachine
from ..engine.steps import describe_step
from ..models.journey import JOURNEY_STATUSES, Journey
from ..schemas.journey import ArchiveRequest, JourneyCreate, JourneyUpdate, RunRequest
from ..services import execution_svc, journey_svc, trigger_svc
from .executions import execution_dict

router = APIRouter(prefix="/journeys")


def _iso(value):
    return value.isoformat() if value else None


def journey_dict(journey: Journey, stats: dict | None = None) -> dict:
    data = {
        "id": str(journey.id),
        "name": journey.name,
        "description": journey.description,
        "status": journey.status,
        "is_active": journey.is_active,
        "version": journey.version,
        "settings": journey.settings or {},
        "created_by": journey.created_by,
        "published_at": _iso(journey.published_at),
        "archived_at": _iso(journey.archived_at),
        "created_at": _iso(journey.created_at),
        "updated_at": _iso(journey.updated_at),
        "steps": [
            {
                "id": str(s.id),
                "step_type": s.step_type,
                "order_no": s.order_no,
                "label": s.label,
                "summary": describe_step(s.step_type, s.config),
                "config": s.config or {},
                "conditions": s.conditions,
                "on_true_order_no": s.on_true_order_no,
                "on_false_order_no": s.on_false_order_no,
            }
            for s in journey.steps
        ],
    }
    if stats is not None:
        data["stats"] = stats
    return data


@router.post("", status_code=201)
async def create_journey(
    data: JourneyCreate,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    journey = await journey_svc.create_journey(
        db,
        tenant_id,
        name=data.name,
        description=data.description,
        settings=data.settings,
        status=data.status,
        steps=[s.model_dump() for s in data.steps],
    )
    return journey_dict(journey)


@router.get("")
async def list_journeys(
    status: str | None = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    if status and status not in JOURNEY_STATUSES:
        raise HTTPException(status_code=400, detail=f"Unknown status '{status}'")
    journeys, total = await journey_svc.list_journeys(db, tenant_id, status, page, per_page)
    return {
        "items": [journey_dict(j) for j in journeys],
        "total": total,
        "page": page,
        "per_page": per_page,
    }


@router.get("/statuses")
async def list_statuses():
    return journey_svc.list_statuses()


@router.get("/step-types")
async def list_step_types():
    return journey_svc.list_step_types()


@router.get("/step-types/schema")
async def step_type_schema(step_type: str | None = Query(None)):
    if not step_type:
        raise HTTPException(status_code=400, detail="step_type query parameter is required")
    return journey_svc.step_type_schema(step_type)


@router.get("/{journey_id}")
async def get_journey(
    journey_id: uuid.UUID,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    journey = await journey_svc.get_journey(db, tenant_id, journey_id)
    stats = await journey_svc.journey_stats(db, journey.id)
    return journey_dict(journey, stats)


@router.patch("/{journey_id}")
async def update_journey(
    journey_id: uuid.UUID,
    data: JourneyUpdate,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    update_data = data.model_dump(exclude_unset=True)
    if update_data.get("steps") is not None:
        update_data["steps"] = [s.model_dump() for s in data.steps]
    journey = await journey_svc.update_journey(db, tenant_id, journey_id, **update_data)
    return journey_dict(journey)


@router.delete("/{journey_id}", status_code=204)
async def delete_journey(
    journey_id: uuid.UUID,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    await journey_svc.delete_journey(db, tenant_id, journey_id)
    return Response(status_code=204)


@router.post("/{journey_id}/publish")
async def publish_journey(
    journey_id: uuid.UUID,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    journey = await journey_svc.publish(db, tenant_id, journey_id)
    return journey_dict(journey)


@router.post("/{journey_id}/archive")
async def archive_journey(
    journey_id: uuid.UUID,
    data: ArchiveRequest | None = None,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    cancel_active = data.cancel_active if data else False
    journey = await journey_svc.archive(db, tenant_id, journey_id, cancel_active=cancel_active)
    return journey_dict(journey)


@router.post("/{journey_id}/contacts/{contact_id}/run", status_code=201)
async def run_journey(
    journey_id: uuid.UUID,
    contact_id: uuid.UUID,
    data: RunRequest | None = None,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    machine: ExecutionStateMachine = Depends(get_machine),
):
    data = data or RunRequest()
    execution, created = await trigger_svc.start_journey(
        db,
        machine,
        tenant_id,
        journey_id,
        contact_id,
        trigger_data=data.trigger_data,
        delay=timedelta(seconds=data.delay_seconds),
    )
    return {
        "execution_id": str(execution.id),
        "status": execution.status,
        "created": created,
        "next_step_at": _iso(execution.next_step_at),
    }


@router.get("/{journey_id}/executions")
async def list_executions(
    journey_id: uuid.UUID,
    status: str | None = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    await journey_svc.get_journey(db, tenant_id, journey_id)
    rows, total = await execution_svc.list_executions(
        db, tenant_id, journey_id, status=status, page=page, per_page=per_page
    )
    return {
        "items": [
            {
                **execution_dict(row["execution"]),
                "current_order_no": row["current_order_no"],
                "progress_percentage": row["progress_percentage"],
                "duration_minutes": row["duration_minutes"],
            }
            for row in rows
        ],
        "total": total,
        "page": page,
        "per_page": per_page,
    }
