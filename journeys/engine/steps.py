"""Closed set of journey step types and their typed configuration models."""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from pydantic import AnyHttpUrl, BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError


class StepType(str, enum.Enum):
    SEND_MESSAGE = "send_message"
    WAIT = "wait"
    CONDITION = "condition"
    UPDATE_FIELD = "update_field"
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    WEBHOOK_CALL = "webhook_call"
    END = "end"


STEP_TYPE_LABELS = {
    StepType.SEND_MESSAGE: "Send Message",
    StepType.WAIT: "Wait",
    StepType.CONDITION: "If/Else",
    StepType.UPDATE_FIELD: "Update Field",
    StepType.ADD_TAG: "Add Tag",
    StepType.REMOVE_TAG: "Remove Tag",
    StepType.WEBHOOK_CALL: "Webhook Call",
    StepType.END: "End",
}


class StepConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class SendMessageConfig(StepConfig):
    channel: Literal["email", "sms"] = "email"
    subject: str | None = Field(default=None, max_length=255)
    body: str = Field(min_length=1)

    @model_validator(mode="after")
    def _email_needs_subject(self) -> SendMessageConfig:
        if self.channel == "email" and not (self.subject or "").strip():
            raise ValueError("subject is required for email messages")
        return self


class WaitConfig(StepConfig):
    """Either a fixed delay (days/hours/minutes/seconds) or an absolute ``until``."""

    days: int = Field(default=0, ge=0)
    hours: int = Field(default=0, ge=0)
    minutes: int = Field(default=0, ge=0)
    seconds: int = Field(default=0, ge=0)
    until: datetime | None = None

    @model_validator(mode="after")
    def _one_mode(self) -> WaitConfig:
        has_delay = self.delay > timedelta(0)
        if self.until is not None and has_delay:
            raise ValueError("use either a delay or 'until', not both")
        if self.until is None and not has_delay:
            raise ValueError("a positive delay or an 'until' timestamp is required")
        return self

    @property
    def delay(self) -> timedelta:
        return timedelta(
            days=self.days, hours=self.hours, minutes=self.minutes, seconds=self.seconds
        )

    def wake_time(self, now: datetime) -> datetime:
        if self.until is not None:
            until = self.until
            if until.tzinfo is None:
                until = until.replace(tzinfo=timezone.utc)
            return until
        return now + self.delay


class ConditionConfig(StepConfig):
    pass


class UpdateFieldConfig(StepConfig):
    field: str = Field(min_length=1, max_length=100)
    value: Any = None


class TagConfig(StepConfig):
    tag: str = Field(min_length=1, max_length=100)


class WebhookCallConfig(StepConfig):
    url: AnyHttpUrl
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"] = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    body: dict[str, Any] | None = None
    timeout_seconds: float | None = Field(default=None, gt=0, le=120)


class EndConfig(StepConfig):
    pass


STEP_CONFIG_MODELS: dict[StepType, type[StepConfig]] = {
    StepType.SEND_MESSAGE: SendMessageConfig,
    StepType.WAIT: WaitConfig,
    StepType.CONDITION: ConditionConfig,
    StepType.UPDATE_FIELD: UpdateFieldConfig,
    StepType.ADD_TAG: TagConfig,
    StepType.REMOVE_TAG: TagConfig,
    StepType.WEBHOOK_CALL: WebhookCallConfig,
    StepType.END: EndConfig,
}


def is_step_type(value: str) -> bool:
    return value in {t.value for t in StepType}


def parse_step_config(step_type: str | StepType, config: dict | None) -> StepConfig:
    """Validate a raw config against its step type's model."""
    model = STEP_CONFIG_MODELS[StepType(step_type)]
    return model.model_validate(config or {})


def step_config_errors(step_type: str, config: dict | None) -> list[str]:
    """Return human-readable config problems for a step (empty when valid)."""
    if not is_step_type(step_type):
        return [f"unknown step type {step_type!r}"]
    try:
        parse_step_config(step_type, config)
    except PydanticValidationError as exc:
        errors = []
        for err in exc.errors():
            loc = ".".join(str(p) for p in err["loc"])
            errors.append(f"config.{loc}: {err['msg']}" if loc else f"config: {err['msg']}")
        return errors
    return []


def step_type_schema(step_type: str) -> dict:
    """JSON Schema for a step type's config, for client-side form generation."""
    return STEP_CONFIG_MODELS[StepType(step_type)].model_json_schema()


@dataclass(frozen=True)
class StepDefinition:
    """Immutable, validated view of a published JourneyStep."""

    id: uuid.UUID
    journey_id: uuid.UUID
    step_type: StepType
    order_no: int
    config: StepConfig
    conditions: dict | None = None
    on_true_order_no: int | None = None
    on_false_order_no: int | None = None
    label: str | None = None

    @property
    def is_branch(self) -> bool:
        return bool(self.conditions)

    @classmethod
    def from_row(cls, step) -> StepDefinition:
        return cls(
            id=step.id,
            journey_id=step.journey_id,
            step_type=StepType(step.step_type),
            order_no=step.order_no,
            config=parse_step_config(step.step_type, step.config),
            conditions=step.conditions or None,
            on_true_order_no=step.on_true_order_no,
            on_false_order_no=step.on_false_order_no,
            label=step.label,
        )


def describe_step(step_type: str, config: dict | None) -> str:
    """Short human-readable summary of a step for listings."""
    config = config or {}
    if step_type == StepType.SEND_MESSAGE:
        channel = config.get("channel", "email")
        if channel == "email":
            return f"Send email: {config.get('subject') or '(no subject)'}"
        return "Send SMS"
    if step_type == StepType.WAIT:
        if config.get("until"):
            return f"Wait until {config['until']}"
        parts = [
            f"{config[unit]} {unit if config[unit] != 1 else unit[:-1]}"
            for unit in ("days", "hours", "minutes", "seconds")
            if config.get(unit)
        ]
        return "Wait " + (" ".join(parts) or "0 seconds")
    if step_type == StepType.CONDITION:
        return "If/Else branch"
    if step_type == StepType.UPDATE_FIELD:
        return f"Set {config.get('field', '?')} to {config.get('value')!r}"
    if step_type == StepType.ADD_TAG:
        return f"Add tag '{config.get('tag', '')}'"
    if step_type == StepType.REMOVE_TAG:
        return f"Remove tag '{config.get('tag', '')}'"
    if step_type == StepType.WEBHOOK_CALL:
        return f"{config.get('method', 'POST')} {config.get('url', '')}"
    if step_type == StepType.END:
        return "End journey"
    return str(step_type).replace("_", " ").title()
