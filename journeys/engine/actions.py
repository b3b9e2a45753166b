"""Step executors: one per step type, each wrapping a single side effect."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from ..errors import (
    ContactNotFoundError,
    ContactStoreError,
    FatalStepFailure,
    InvalidRecipientError,
    MessageDeliveryError,
    MessagingNotConfigured,
    RetryableStepFailure,
    StepFailure,
)
from ..messaging.sender import OutboundMessage
from .steps import (
    SendMessageConfig,
    StepConfig,
    StepType,
    TagConfig,
    UpdateFieldConfig,
    WebhookCallConfig,
)

logger = logging.getLogger(__name__)

SUCCESS = "success"
RETRYABLE_FAILURE = "retryable_failure"
FATAL_FAILURE = "fatal_failure"


@dataclass(frozen=True)
class StepOutcome:
    status: str  # success/retryable_failure/fatal_failure
    reason: str | None = None
    output: dict = field(default_factory=dict)

    @classmethod
    def success(cls, output: dict | None = None) -> StepOutcome:
        return cls(SUCCESS, output=output or {})

    @classmethod
    def retryable(cls, reason: str) -> StepOutcome:
        return cls(RETRYABLE_FAILURE, reason=reason)

    @classmethod
    def fatal(cls, reason: str) -> StepOutcome:
        return cls(FATAL_FAILURE, reason=reason)

    @property
    def ok(self) -> bool:
        return self.status == SUCCESS


@dataclass(frozen=True)
class StepContext:
    """Identifies the execution a step runs for; tenant is always explicit."""

    tenant_id: uuid.UUID
    journey_id: uuid.UUID
    execution_id: uuid.UUID
    contact_id: uuid.UUID
    step_id: uuid.UUID
    attempt_no: int = 1
    trigger_data: dict | None = None

    @property
    def idempotency_key(self) -> str:
        return f"{self.execution_id}:{self.step_id}"


class StepExecutor(Protocol):
    async def execute(self, config: StepConfig, ctx: StepContext) -> dict:
        """Perform the step's effect; raise a StepFailure subclass on failure."""
        ...


class NoopExecutor:
    """wait/condition/end: no external effect."""

    async def execute(self, config: StepConfig, ctx: StepContext) -> dict:
        return {}


async def _contact_call(coro):
    try:
        return await coro
    except ContactNotFoundError as exc:
        raise FatalStepFailure(str(exc)) from exc
    except ContactStoreError as exc:
        raise RetryableStepFailure(str(exc)) from exc


class SendMessageExecutor:
    def __init__(self, contacts, sender, timeout_seconds: float):
        self.contacts = contacts
        self.sender = sender
        self.timeout_seconds = timeout_seconds

    async def execute(self, config: SendMessageConfig, ctx: StepContext) -> dict:
        snapshot = await _contact_call(
            self.contacts.get_snapshot(ctx.tenant_id, ctx.contact_id, trigger=ctx.trigger_data)
        )
        if snapshot.get("contact.dnd"):
            raise FatalStepFailure("Contact has do-not-disturb enabled")

        to = snapshot.get("contact.email") if config.channel == "email" else snapshot.get("contact.phone")
        if not to:
            raise FatalStepFailure(f"Contact has no {config.channel} address")

        message = OutboundMessage(
            channel=config.channel,
            to=str(to),
            subject=snapshot.resolve_template(config.subject) if config.subject else None,
            body=snapshot.resolve_template(config.body),
            idempotency_key=ctx.idempotency_key,
        )
        try:
            provider_id = await asyncio.wait_for(
                self.sender.send(ctx.tenant_id, message), timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            raise RetryableStepFailure(
                f"Message send timed out after {self.timeout_seconds}s"
            ) from exc
        except (InvalidRecipientError, MessagingNotConfigured) as exc:
            raise FatalStepFailure(str(exc)) from exc
        except MessageDeliveryError as exc:
            raise RetryableStepFailure(str(exc)) from exc
        except OSError as exc:
            # Transport errors from senders that do not wrap them.
            raise RetryableStepFailure(f"Message send failed: {exc}") from exc
        return {"sent": True, "channel": config.channel, "to": message.to, "provider_id": provider_id}


class UpdateFieldExecutor:
    def __init__(self, contacts):
        self.contacts = contacts

    async def execute(self, config: UpdateFieldConfig, ctx: StepContext) -> dict:
        await _contact_call(
            self.contacts.update_field(ctx.tenant_id, ctx.contact_id, config.field, config.value)
        )
        return {"updated": True, "field": config.field}


class AddTagExecutor:
    def __init__(self, contacts):
        self.contacts = contacts

    async def execute(self, config: TagConfig, ctx: StepContext) -> dict:
        await _contact_call(self.contacts.add_tag(ctx.tenant_id, ctx.contact_id, config.tag))
        return {"tagged": True, "tag": config.tag}


class RemoveTagExecutor:
    def __init__(self, contacts):
        self.contacts = contacts

    async def execute(self, config: TagConfig, ctx: StepContext) -> dict:
        await _contact_call(self.contacts.remove_tag(ctx.tenant_id, ctx.contact_id, config.tag))
        return {"untagged": True, "tag": config.tag}


class WebhookCallExecutor:
    """Fire-and-continue HTTP call; only the status code is inspected."""

    def __init__(self, timeout_seconds: float, transport: httpx.AsyncBaseTransport | None = None):
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def execute(self, config: WebhookCallConfig, ctx: StepContext) -> dict:
        timeout = config.timeout_seconds or self.timeout_seconds
        headers = {
            "Idempotency-Key": ctx.idempotency_key,
            **config.headers,
        }
        payload: dict[str, Any] = config.body if config.body is not None else {
            "tenant_id": str(ctx.tenant_id),
            "journey_id": str(ctx.journey_id),
            "execution_id": str(ctx.execution_id),
            "contact_id": str(ctx.contact_id),
            "step_id": str(ctx.step_id),
            "trigger": ctx.trigger_data or {},
        }
        url = str(config.url)

        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
                if config.method in ("GET", "DELETE"):
                    resp = await client.request(config.method, url, headers=headers)
                else:
                    resp = await client.request(config.method, url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise RetryableStepFailure(f"Webhook {url} timed out after {timeout}s") from exc
        except httpx.HTTPError as exc:
            raise RetryableStepFailure(f"Webhook {url} failed: {exc}") from exc

        if resp.status_code >= 500 or resp.status_code == 429:
            raise RetryableStepFailure(f"Webhook {url} returned {resp.status_code}")
        if resp.status_code >= 400:
            raise FatalStepFailure(f"Webhook {url} returned {resp.status_code}")
        return {"status_code": resp.status_code}


class ActionExecutor:
    """Selects the StepExecutor for a step type and classifies its result."""

    def __init__(self, executors: dict[StepType, StepExecutor]):
        self.executors = executors

    @classmethod
    def build(
        cls,
        contacts,
        sender,
        *,
        webhook_timeout_seconds: float,
        message_timeout_seconds: float,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> ActionExecutor:
        noop = NoopExecutor()
        return cls({
            StepType.SEND_MESSAGE: SendMessageExecutor(contacts, sender, message_timeout_seconds),
            StepType.WAIT: noop,
            StepType.CONDITION: noop,
            StepType.UPDATE_FIELD: UpdateFieldExecutor(contacts),
            StepType.ADD_TAG: AddTagExecutor(contacts),
            StepType.REMOVE_TAG: RemoveTagExecutor(contacts),
            StepType.WEBHOOK_CALL: WebhookCallExecutor(webhook_timeout_seconds, http_transport),
            StepType.END: noop,
        })

    async def execute(self, step_type: StepType, config: StepConfig, ctx: StepContext) -> StepOutcome:
        executor = self.executors.get(StepType(step_type))
        if executor is None:
            return StepOutcome.fatal(f"No executor registered for step type {step_type}")
        try:
            output = await executor.execute(config, ctx)
        except StepFailure as failure:
            if failure.retryable:
                logger.warning(
                    "Step %s of execution %s failed (retryable): %s",
                    ctx.step_id, ctx.execution_id, failure.reason,
                )
                return StepOutcome.retryable(failure.reason)
            logger.warning(
                "Step %s of execution %s failed (fatal): %s",
                ctx.step_id, ctx.execution_id, failure.reason,
            )
            return StepOutcome.fatal(failure.reason)
        return StepOutcome.success(output)
