"""Inbound automation rule events."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..deps import get_machine, get_tenant_id
from ..engine.machine import ExecutionStateMachine
from ..schemas.journey import AutomationEvent, ContactUnsubscribe
from ..services import trigger_svc

router = APIRouter(prefix="/automation", tags=["automation"])


@router.post("/events", status_code=202)
async def receive_event(
    event: AutomationEvent,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
    machine: ExecutionStateMachine = Depends(get_machine),
):
    """Start the event's journey for its contact, after the rule's delay."""
    execution, created = await trigger_svc.handle_automation_event(
        db, machine, tenant_id, event.model_dump()
    )
    return {
        "status": "accepted",
        "execution_id": str(execution.id),
        "execution_status": execution.status,
        "created": created,
        "next_step_at": execution.next_step_at.isoformat() if execution.next_step_at else None,
    }


@router.post("/unsubscribe")
async def unsubscribe_contact(
    data: ContactUnsubscribe,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    """Cancel a contact's in-flight executions."""
    try:
        contact_id = uuid.UUID(data.contact_id)
        journey_id = uuid.UUID(data.journey_id) if data.journey_id else None
    except ValueError:
        raise HTTPException(status_code=422, detail="contact_id and journey_id must be UUIDs")
    cancelled = await trigger_svc.cancel_contact_executions(
        db, tenant_id, contact_id, journey_id=journey_id, reason=data.reason
    )
    return {"cancelled": [str(execution_id) for execution_id in cancelled]}
