"""FastAPI application factory for the Journey engine."""

from __future__ import annotations

from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .config import JourneySettings, settings
from .contacts import SqlContactStore
from .database import async_session_factory
from .engine.actions import ActionExecutor
from .engine.machine import ExecutionStateMachine
from .errors import ConflictError, ContactStoreError, NotFoundError, ValidationError
from .messaging import MessageSender, ProviderMessageSender
from .worker import DispatchWorkerPool


def build_machine(
    session_factory: async_sessionmaker[AsyncSession] = async_session_factory,
    sender: MessageSender | None = None,
    contacts=None,
    http_transport: httpx.AsyncBaseTransport | None = None,
    settings_obj: JourneySettings = settings,
) -> ExecutionStateMachine:
    """Wire the contact store, messaging sender and executors into a state machine."""
    contacts = contacts or SqlContactStore(session_factory)
    actions = ActionExecutor.build(
        contacts,
        sender or ProviderMessageSender(settings_obj),
        webhook_timeout_seconds=settings_obj.webhook_timeout_seconds,
        message_timeout_seconds=settings_obj.message_send_timeout_seconds,
        http_transport=http_transport,
    )
    return ExecutionStateMachine(actions, contacts, settings_obj)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Auto-create tables for SQLite (local dev)
    if "sqlite" in settings.database_url:
        from .database import engine
        from .models import Base
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    app.state.worker_pool.start()
    yield
    await app.state.worker_pool.stop()


app = FastAPI(title=settings.app_title, lifespan=lifespan)
app.state.machine = build_machine()
app.state.worker_pool = DispatchWorkerPool(async_session_factory, app.state.machine)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": str(exc), "errors": exc.violations})


@app.exception_handler(ConflictError)
async def conflict_error_handler(request: Request, exc: ConflictError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(NotFoundError)
async def not_found_error_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ContactStoreError)
async def contact_store_error_handler(request: Request, exc: ContactStoreError) -> JSONResponse:
    return JSONResponse(status_code=503, content={"detail": str(exc)})


# Import and register routers
from .routers import automation, executions, health, journeys  # noqa: E402

app.include_router(journeys.router)
app.include_router(executions.router)
app.include_router(automation.router)
app.include_router(health.router)
