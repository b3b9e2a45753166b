"""Tests for the execution state machine, end to end through the trigger and dispatcher."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from journeys.app import build_machine
from journeys.engine.machine import retry_backoff
from journeys.errors import InvalidRecipientError
from journeys.models import Contact, ContactTag
from journeys.services import execution_svc, trigger_svc
from journeys.services.dispatch_svc import run_dispatch_cycle
from journeys.timeutil import as_utc

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

NURTURE_STEPS = [
    {"step_type": "send_message", "config": {"channel": "sms", "body": "Hi {{first_name}}, welcome!"}},
    {"step_type": "wait", "config": {"days": 1}},
    {"step_type": "add_tag", "config": {"tag": "nurtured"}},
    {"step_type": "end"},
]


async def _tags(db: AsyncSession, contact_id) -> set[str]:
    rows = await db.execute(select(ContactTag.name).where(ContactTag.contact_id == contact_id))
    return set(rows.scalars().all())


def _assert_wake_invariant(execution):
    if execution.status == "waiting":
        assert execution.next_step_at is not None
    else:
        assert execution.next_step_at is None


class TestNurtureScenario:
    @pytest.mark.asyncio
    async def test_send_wait_tag_complete(
        self, db, session_factory, machine, sender, contact, tenant_id, make_journey
    ):
        journey = await make_journey(NURTURE_STEPS)

        execution, created = await trigger_svc.start_journey(
            db, machine, tenant_id, journey.id, contact.id, now=NOW
        )
        assert created is True
        assert execution.status == "waiting"
        assert as_utc(execution.next_step_at) == NOW + timedelta(days=1)
        assert execution.current_step_id == journey.steps[1].id
        assert len(sender.sent) == 1
        assert sender.sent[0][1].body == "Hi Ada, welcome!"
        assert sender.sent[0][1].to == "+15551234567"
        _assert_wake_invariant(execution)

        # Not due yet
        assert await run_dispatch_cycle(session_factory, machine, now=NOW + timedelta(hours=1)) == 0

        advanced = await run_dispatch_cycle(session_factory, machine, now=NOW + timedelta(days=1, seconds=1))
        assert advanced == 1

        await db.refresh(execution)
        assert execution.status == "completed"
        assert execution.completed_at is not None
        _assert_wake_invariant(execution)
        assert "nurtured" in await _tags(db, contact.id)
        assert len(sender.sent) == 1

        attempts = await execution_svc.list_attempts(db, tenant_id, execution.id)
        assert [a.outcome for a in attempts] == ["success"] * 4
        assert [a.sequence for a in attempts] == [1, 2, 3, 4]


class TestBranching:
    @pytest.mark.asyncio
    async def test_routes_to_false_branch(self, db, machine, contact, tenant_id, make_journey):
        journey = await make_journey([
            {
                "step_type": "condition",
                "conditions": {"field": "tags", "operator": "contains", "value": "vip"},
                "on_true_order_no": 2,
                "on_false_order_no": 4,
            },
            {"step_type": "add_tag", "config": {"tag": "vip-path"}},
            {"step_type": "end"},
            {"step_type": "add_tag", "config": {"tag": "regular-path"}},
            {"step_type": "end"},
        ])

        execution, _ = await trigger_svc.start_journey(db, machine, tenant_id, journey.id, contact.id, now=NOW)

        assert execution.status == "completed"
        tags = await _tags(db, contact.id)
        assert "regular-path" in tags
        assert "vip-path" not in tags
        attempts = await execution_svc.list_attempts(db, tenant_id, execution.id)
        assert attempts[0].detail["branch"] is False
        assert attempts[0].detail["target_order_no"] == 4

    @pytest.mark.asyncio
    async def test_routes_to_true_branch(self, db, machine, contact, tenant_id, make_journey):
        db.add(ContactTag(contact_id=contact.id, name="vip"))
        await db.commit()
        journey = await make_journey([
            {
                "step_type": "condition",
                "conditions": {"field": "tags", "operator": "contains", "value": "vip"},
                "on_true_order_no": 2,
                "on_false_order_no": 3,
            },
            {"step_type": "end"},
            {"step_type": "add_tag", "config": {"tag": "regular-path"}},
        ])

        execution, _ = await trigger_svc.start_journey(db, machine, tenant_id, journey.id, contact.id, now=NOW)

        assert execution.status == "completed"
        assert "regular-path" not in await _tags(db, contact.id)

    @pytest.mark.asyncio
    async def test_missing_branch_target_completes(self, db, machine, contact, tenant_id, make_journey):
        journey = await make_journey([
            {
                "step_type": "condition",
                "conditions": {"field": "fields.plan", "operator": "equals", "value": "pro"},
                "on_false_order_no": 2,
            },
            {"step_type": "add_tag", "config": {"tag": "upsell"}},
        ])

        execution, _ = await trigger_svc.start_journey(db, machine, tenant_id, journey.id, contact.id, now=NOW)

        assert execution.status == "completed"
        assert "upsell" not in await _tags(db, contact.id)

    @pytest.mark.asyncio
    async def test_unknown_path_logs_warning(self, db, machine, contact, tenant_id, make_journey, caplog):
        journey = await make_journey([
            {
                "step_type": "condition",
                "conditions": {"field": "fields.nonexistent", "operator": "equals", "value": 1},
                "on_true_order_no": 2,
                "on_false_order_no": 3,
            },
            {"step_type": "end"},
            {"step_type": "add_tag", "config": {"tag": "fallback"}},
        ])

        with caplog.at_level(logging.WARNING, logger="journeys.engine.machine"):
            execution, _ = await trigger_svc.start_journey(db, machine, tenant_id, journey.id, contact.id, now=NOW)

        assert execution.status == "completed"
        assert "fallback" in await _tags(db, contact.id)
        assert "fields.nonexistent" in caplog.text


class TestRetries:
    @pytest.mark.asyncio
    async def test_three_retryable_failures_fail_execution(
        self, db, session_factory, machine, sender, contact, tenant_id, make_journey
    ):
        journey = await make_journey(NURTURE_STEPS)
        sender.fail_times(3)

        execution, _ = await trigger_svc.start_journey(db, machine, tenant_id, journey.id, contact.id, now=NOW)
        assert execution.status == "waiting"
        assert execution.attempt_count == 1
        assert as_utc(execution.next_step_at) == NOW + timedelta(seconds=60)

        second = NOW + timedelta(seconds=61)
        assert await run_dispatch_cycle(session_factory, machine, now=second) == 1
        await db.refresh(execution)
        assert execution.status == "waiting"
        assert execution.attempt_count == 2
        assert as_utc(execution.next_step_at) == second + timedelta(seconds=120)

        third = second + timedelta(seconds=121)
        assert await run_dispatch_cycle(session_factory, machine, now=third) == 1
        await db.refresh(execution)
        assert execution.status == "failed"
        assert execution.attempt_count == 3
        assert "Gave up after 3 attempts" in execution.last_error
        _assert_wake_invariant(execution)

        attempts = await execution_svc.list_attempts(db, tenant_id, execution.id)
        assert [a.outcome for a in attempts] == ["retryable_failure"] * 3
        assert [a.attempt_no for a in attempts] == [1, 2, 3]
        assert sender.sent == []

        # Nothing left to dispatch
        assert await run_dispatch_cycle(session_factory, machine, now=third + timedelta(days=1)) == 0

    @pytest.mark.asyncio
    async def test_retry_then_success_resets_count(
        self, db, session_factory, machine, sender, contact, tenant_id, make_journey
    ):
        journey = await make_journey(NURTURE_STEPS)
        sender.fail_times(1)

        execution, _ = await trigger_svc.start_journey(db, machine, tenant_id, journey.id, contact.id, now=NOW)
        later = NOW + timedelta(minutes=2)
        await run_dispatch_cycle(session_factory, machine, now=later)

        await db.refresh(execution)
        assert execution.status == "waiting"
        assert execution.attempt_count == 0
        assert execution.last_error is None
        assert as_utc(execution.next_step_at) == later + timedelta(days=1)
        assert len(sender.sent) == 1

    @pytest.mark.asyncio
    async def test_per_type_attempt_override(
        self, db, session_factory, sender, contact, tenant_id, make_journey, test_settings
    ):
        cfg = test_settings.model_copy(update={"step_max_attempts_overrides": {"send_message": 1}})
        machine = build_machine(session_factory, sender=sender, settings_obj=cfg)
        journey = await make_journey(NURTURE_STEPS)
        sender.fail_times(1)

        execution, _ = await trigger_svc.start_journey(db, machine, tenant_id, journey.id, contact.id, now=NOW)

        assert execution.status == "failed"
        assert execution.attempt_count == 1

    def test_backoff_is_exponential_and_capped(self):
        assert retry_backoff(1, 60, 3600) == timedelta(seconds=60)
        assert retry_backoff(2, 60, 3600) == timedelta(seconds=120)
        assert retry_backoff(3, 60, 3600) == timedelta(seconds=240)
        assert retry_backoff(10, 60, 3600) == timedelta(seconds=3600)


class TestFatalFailures:
    @pytest.mark.asyncio
    async def test_invalid_recipient_fails_immediately(
        self, db, machine, sender, contact, tenant_id, make_journey
    ):
        journey = await make_journey(NURTURE_STEPS)
        sender.fail_times(1, InvalidRecipientError("unreachable number"))

        execution, _ = await trigger_svc.start_journey(db, machine, tenant_id, journey.id, contact.id, now=NOW)

        assert execution.status == "failed"
        assert execution.last_error == "unreachable number"
        attempts = await execution_svc.list_attempts(db, tenant_id, execution.id)
        assert [a.outcome for a in attempts] == ["fatal_failure"]

    @pytest.mark.asyncio
    async def test_deleted_contact_fails_without_retrying(
        self, db, session_factory, machine, contact, tenant_id, make_journey
    ):
        journey = await make_journey([
            {"step_type": "wait", "config": {"hours": 1}},
            {"step_type": "update_field", "config": {"field": "fields.stage", "value": "warm"}},
            {"step_type": "end"},
        ])
        execution, _ = await trigger_svc.start_journey(db, machine, tenant_id, journey.id, contact.id, now=NOW)
        assert execution.status == "waiting"

        await db.execute(delete(Contact).where(Contact.id == contact.id))
        await db.commit()

        await run_dispatch_cycle(session_factory, machine, now=NOW + timedelta(hours=2))
        await db.refresh(execution)
        assert execution.status == "failed"
        assert "not found" in execution.last_error
        attempts = await execution_svc.list_attempts(db, tenant_id, execution.id)
        assert attempts[-1].outcome == "fatal_failure"
        assert attempts[-1].attempt_no == 1


class TestGuards:
    @pytest.mark.asyncio
    async def test_steps_per_tick_limit(
        self, db, session_factory, sender, contact, tenant_id, make_journey, test_settings
    ):
        cfg = test_settings.model_copy(update={"max_steps_per_tick": 3})
        machine = build_machine(session_factory, sender=sender, settings_obj=cfg)
        journey = await make_journey(
            [{"step_type": "add_tag", "config": {"tag": f"t{i}"}} for i in range(5)] + [{"step_type": "end"}]
        )

        execution, _ = await trigger_svc.start_journey(db, machine, tenant_id, journey.id, contact.id, now=NOW)
        assert execution.status == "waiting"
        assert as_utc(execution.next_step_at) == NOW
        assert execution.current_step_id == journey.steps[3].id
        assert {"t0", "t1", "t2"} <= await _tags(db, contact.id)

        await run_dispatch_cycle(session_factory, machine, now=NOW)
        await db.refresh(execution)
        assert execution.status == "completed"
        assert {"t3", "t4"} <= await _tags(db, contact.id)

    @pytest.mark.asyncio
    async def test_wait_until_in_past_continues(self, db, machine, contact, tenant_id, make_journey):
        journey = await make_journey([
            {"step_type": "wait", "config": {"until": "2020-01-01T00:00:00Z"}},
            {"step_type": "add_tag", "config": {"tag": "late"}},
        ])

        execution, _ = await trigger_svc.start_journey(db, machine, tenant_id, journey.id, contact.id, now=NOW)

        assert execution.status == "completed"
        assert "late" in await _tags(db, contact.id)

    @pytest.mark.asyncio
    async def test_cancel_mid_step_stops_after_recording(
        self, db, session_factory, contact, tenant_id, make_journey, test_settings
    ):
        class CancellingSender:
            def __init__(self):
                self.sent = 0

            async def send(self, tenant, message):
                async with session_factory() as other:
                    await trigger_svc.cancel_contact_executions(other, tenant, contact.id)
                self.sent += 1
                return "msg-1"

        machine = build_machine(session_factory, sender=CancellingSender(), settings_obj=test_settings)
        journey = await make_journey([
            {"step_type": "send_message", "config": {"channel": "sms", "body": "bye"}},
            {"step_type": "add_tag", "config": {"tag": "after-cancel"}},
        ])

        execution, _ = await trigger_svc.start_journey(db, machine, tenant_id, journey.id, contact.id, now=NOW)

        assert execution.status == "cancelled"
        assert execution.next_step_at is None
        assert "after-cancel" not in await _tags(db, contact.id)
        outcomes = [a.outcome for a in await execution_svc.list_attempts(db, tenant_id, execution.id)]
        assert outcomes == ["cancelled", "success"]
