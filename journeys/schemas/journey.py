"""Pydantic models for the journey API."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class StepIn(BaseModel):
    step_type: str  # send_message/wait/condition/update_field/add_tag/remove_tag/webhook_call/end
    order_no: int | None = None
    label: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    conditions: dict[str, Any] | None = None
    on_true_order_no: int | None = None
    on_false_order_no: int | None = None


class JourneyCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = None
    status: str = "draft"  # draft/active
    settings: dict[str, Any] | None = None
    steps: list[StepIn] = Field(default_factory=list)


class JourneyUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = None
    settings: dict[str, Any] | None = None
    is_active: bool | None = None
    steps: list[StepIn] | None = None


class ArchiveRequest(BaseModel):
    cancel_active: bool = False


class RunRequest(BaseModel):
    trigger_data: dict[str, Any] | None = None
    delay_seconds: float = Field(default=0, ge=0)


class CancelRequest(BaseModel):
    reason: str = "cancelled by operator"


class AutomationEvent(BaseModel):
    journey_id: str
    contact_id: str
    event_type: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    delay_seconds: float = Field(default=0, ge=0)


class ContactUnsubscribe(BaseModel):
    contact_id: str
    journey_id: str | None = None
    reason: str = "contact unsubscribed"
