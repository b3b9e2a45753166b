"""FastAPI dependencies for tenant resolution and engine collaborators."""

from __future__ import annotations

import uuid

from fastapi import HTTPException, Request

from .config import settings
from .engine.machine import ExecutionStateMachine


async def get_tenant_id(request: Request) -> uuid.UUID:
    """Resolve the tenant from the configured header. Raises 400 if absent or malformed."""
    raw = request.headers.get(settings.tenant_header, "").strip()
    if not raw:
        raise HTTPException(status_code=400, detail=f"{settings.tenant_header} header is required")
    try:
        return uuid.UUID(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{settings.tenant_header} must be a UUID")


def get_machine(request: Request) -> ExecutionStateMachine:
    return request.app.state.machine
