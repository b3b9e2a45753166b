"""Execution inspection and cancellation routes."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..database import get_db
from ..deps import get_tenant_id
from ..models.execution import ExecutionStepAttempt, JourneyExecution
from ..schemas.journey import CancelRequest
from ..services import execution_svc, trigger_svc

router = APIRouter(prefix="/executions")


def _iso(value):
    return value.isoformat() if value else None


def execution_dict(execution: JourneyExecution) -> dict:
    return {
        "id": str(execution.id),
        "journey_id": str(execution.journey_id),
        "contact_id": str(execution.contact_id),
        "status": execution.status,
        "current_step_id": str(execution.current_step_id) if execution.current_step_id else None,
        "attempt_count": execution.attempt_count,
        "last_error": execution.last_error,
        "started_at": _iso(execution.started_at),
        "next_step_at": _iso(execution.next_step_at),
        "completed_at": _iso(execution.completed_at),
    }


def attempt_dict(attempt: ExecutionStepAttempt) -> dict:
    return {
        "id": str(attempt.id),
        "sequence": attempt.sequence,
        "step_id": str(attempt.step_id) if attempt.step_id else None,
        "attempt_no": attempt.attempt_no,
        "outcome": attempt.outcome,
        "error": attempt.error,
        "detail": attempt.detail,
        "created_at": _iso(attempt.created_at),
    }


@router.get("/{execution_id}")
async def get_execution(
    execution_id: uuid.UUID,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    execution = await execution_svc.get_execution(db, tenant_id, execution_id)
    return {
        **execution_dict(execution),
        "trigger_data": execution.trigger_data,
        "attempts": [attempt_dict(a) for a in execution.attempts],
    }


@router.post("/{execution_id}/cancel")
async def cancel_execution(
    execution_id: uuid.UUID,
    data: CancelRequest | None = None,
    tenant_id: uuid.UUID = Depends(get_tenant_id),
    db: AsyncSession = Depends(get_db),
):
    reason = data.reason if data else CancelRequest().reason
    execution = await trigger_svc.cancel_execution(db, tenant_id, execution_id, reason=reason)
    return execution_dict(execution)
