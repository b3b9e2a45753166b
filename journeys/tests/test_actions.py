"""Tests for step executors and their failure classification."""

from __future__ import annotations

import asyncio
import json
import uuid

import httpx
import pytest
from sqlalchemy import select

from journeys.config import JourneySettings
from journeys.contacts import SqlContactStore
from journeys.engine.actions import (
    ActionExecutor,
    FATAL_FAILURE,
    RETRYABLE_FAILURE,
    SUCCESS,
    StepContext,
)
from journeys.engine.steps import StepType, parse_step_config
from journeys.errors import InvalidRecipientError, MessageDeliveryError, MessagingNotConfigured
from journeys.messaging import OutboundMessage, ProviderMessageSender
from journeys.models import Contact


def _ctx(tenant_id, contact_id, **kwargs) -> StepContext:
    return StepContext(
        tenant_id=tenant_id,
        journey_id=uuid.uuid4(),
        execution_id=uuid.uuid4(),
        contact_id=contact_id,
        step_id=uuid.uuid4(),
        **kwargs,
    )


def _actions(session_factory, sender, handler=None, message_timeout=5.0) -> ActionExecutor:
    transport = httpx.MockTransport(handler) if handler else None
    return ActionExecutor.build(
        SqlContactStore(session_factory),
        sender,
        webhook_timeout_seconds=5.0,
        message_timeout_seconds=message_timeout,
        http_transport=transport,
    )


async def _run(actions, step_type, config, ctx):
    return await actions.execute(step_type, parse_step_config(step_type, config), ctx)


class TestWebhookCall:
    @pytest.mark.asyncio
    async def test_success_sends_idempotency_key_and_default_payload(
        self, session_factory, sender, tenant_id, contact
    ):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"ok": True})

        ctx = _ctx(tenant_id, contact.id, trigger_data={"source": "form"})
        outcome = await _run(
            _actions(session_factory, sender, handler),
            StepType.WEBHOOK_CALL,
            {"url": "https://hooks.example.com/journey"},
            ctx,
        )

        assert outcome.status == SUCCESS
        assert outcome.output == {"status_code": 200}
        request = seen[0]
        assert request.method == "POST"
        assert request.headers["Idempotency-Key"] == f"{ctx.execution_id}:{ctx.step_id}"
        payload = json.loads(request.content)
        assert payload["contact_id"] == str(contact.id)
        assert payload["trigger"] == {"source": "form"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [500, 503, 429])
    async def test_server_errors_are_retryable(self, session_factory, sender, tenant_id, contact, status_code):
        outcome = await _run(
            _actions(session_factory, sender, lambda request: httpx.Response(status_code)),
            StepType.WEBHOOK_CALL,
            {"url": "https://hooks.example.com/journey"},
            _ctx(tenant_id, contact.id),
        )
        assert outcome.status == RETRYABLE_FAILURE
        assert str(status_code) in outcome.reason

    @pytest.mark.asyncio
    async def test_client_error_is_fatal(self, session_factory, sender, tenant_id, contact):
        outcome = await _run(
            _actions(session_factory, sender, lambda request: httpx.Response(404)),
            StepType.WEBHOOK_CALL,
            {"url": "https://hooks.example.com/missing"},
            _ctx(tenant_id, contact.id),
        )
        assert outcome.status == FATAL_FAILURE

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "exc",
        [httpx.ReadTimeout("slow"), httpx.ConnectError("refused")],
    )
    async def test_transport_errors_are_retryable(self, session_factory, sender, tenant_id, contact, exc):
        def handler(request):
            raise exc

        outcome = await _run(
            _actions(session_factory, sender, handler),
            StepType.WEBHOOK_CALL,
            {"url": "https://hooks.example.com/journey"},
            _ctx(tenant_id, contact.id),
        )
        assert outcome.status == RETRYABLE_FAILURE

    @pytest.mark.asyncio
    async def test_get_sends_no_body(self, session_factory, sender, tenant_id, contact):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(204)

        outcome = await _run(
            _actions(session_factory, sender, handler),
            StepType.WEBHOOK_CALL,
            {"url": "https://hooks.example.com/ping", "method": "GET", "headers": {"X-Env": "test"}},
            _ctx(tenant_id, contact.id),
        )
        assert outcome.ok
        assert seen[0].content == b""
        assert seen[0].headers["X-Env"] == "test"


class TestSendMessage:
    @pytest.mark.asyncio
    async def test_renders_templates(self, session_factory, sender, tenant_id, contact):
        ctx = _ctx(tenant_id, contact.id, trigger_data={"offer": "20%"})
        outcome = await _run(
            _actions(session_factory, sender),
            StepType.SEND_MESSAGE,
            {"channel": "sms", "body": "Hi {{first_name}}, your {{fields.plan}} offer: {{trigger.offer}}"},
            ctx,
        )

        assert outcome.ok
        assert outcome.output["provider_id"] == "msg-1"
        message = sender.sent[0][1]
        assert message.to == "+15551234567"
        assert message.body == "Hi Ada, your pro offer: 20%"
        assert message.idempotency_key == ctx.idempotency_key

    @pytest.mark.asyncio
    async def test_missing_phone_is_fatal(self, db, session_factory, sender, tenant_id):
        contact = Contact(tenant_id=tenant_id, first_name="Grace", email="grace@example.com")
        db.add(contact)
        await db.commit()

        outcome = await _run(
            _actions(session_factory, sender),
            StepType.SEND_MESSAGE,
            {"channel": "sms", "body": "Hi"},
            _ctx(tenant_id, contact.id),
        )
        assert outcome.status == FATAL_FAILURE
        assert "no sms address" in outcome.reason
        assert sender.sent == []

    @pytest.mark.asyncio
    async def test_dnd_contact_is_fatal(self, db, session_factory, sender, tenant_id):
        contact = Contact(tenant_id=tenant_id, first_name="Quiet", phone="+15550000000", dnd=True)
        db.add(contact)
        await db.commit()

        outcome = await _run(
            _actions(session_factory, sender),
            StepType.SEND_MESSAGE,
            {"channel": "sms", "body": "Hi"},
            _ctx(tenant_id, contact.id),
        )
        assert outcome.status == FATAL_FAILURE
        assert sender.sent == []

    @pytest.mark.asyncio
    async def test_slow_sender_times_out_as_retryable(self, session_factory, tenant_id, contact):
        class SlowSender:
            async def send(self, tenant_id, message):
                await asyncio.sleep(1)
                return "late"

        outcome = await _run(
            _actions(session_factory, SlowSender(), message_timeout=0.01),
            StepType.SEND_MESSAGE,
            {"channel": "email", "subject": "Hi", "body": "Hello"},
            _ctx(tenant_id, contact.id),
        )
        assert outcome.status == RETRYABLE_FAILURE
        assert "timed out" in outcome.reason

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "exc",
        [MessagingNotConfigured("no provider"), InvalidRecipientError("bad number")],
    )
    async def test_provider_rejections_are_fatal(self, session_factory, sender, tenant_id, contact, exc):
        sender.failures = [exc]
        outcome = await _run(
            _actions(session_factory, sender),
            StepType.SEND_MESSAGE,
            {"channel": "sms", "body": "Hi"},
            _ctx(tenant_id, contact.id),
        )
        assert outcome.status == FATAL_FAILURE

    @pytest.mark.asyncio
    async def test_transport_error_is_retryable(self, session_factory, sender, tenant_id, contact):
        sender.failures = [ConnectionError("connection reset by peer")]
        outcome = await _run(
            _actions(session_factory, sender),
            StepType.SEND_MESSAGE,
            {"channel": "sms", "body": "Hi"},
            _ctx(tenant_id, contact.id),
        )
        assert outcome.status == RETRYABLE_FAILURE
        assert "connection reset by peer" in outcome.reason

    @pytest.mark.asyncio
    async def test_unknown_contact_is_fatal(self, session_factory, sender, tenant_id):
        outcome = await _run(
            _actions(session_factory, sender),
            StepType.SEND_MESSAGE,
            {"channel": "sms", "body": "Hi"},
            _ctx(tenant_id, uuid.uuid4()),
        )
        assert outcome.status == FATAL_FAILURE


class TestProviderSender:
    @pytest.mark.asyncio
    async def test_unconfigured_sms(self, tenant_id):
        sender = ProviderMessageSender(JourneySettings(_env_file=None))
        with pytest.raises(MessagingNotConfigured):
            await sender.send(tenant_id, OutboundMessage(channel="sms", to="+15551234567", body="Hi"))

    @pytest.mark.asyncio
    async def test_unconfigured_email(self, tenant_id):
        sender = ProviderMessageSender(JourneySettings(_env_file=None))
        with pytest.raises(MessagingNotConfigured):
            await sender.send(
                tenant_id, OutboundMessage(channel="email", to="a@example.com", subject="Hi", body="Hi")
            )

    @pytest.mark.asyncio
    async def test_sms_transport_error_is_delivery_error(self, tenant_id, monkeypatch):
        class UnreachableMessages:
            def create(self, **kwargs):
                raise ConnectionError("Max retries exceeded with url: /Messages.json")

        class UnreachableClient:
            def __init__(self, sid, token):
                self.messages = UnreachableMessages()

        monkeypatch.setattr("twilio.rest.Client", UnreachableClient)
        sender = ProviderMessageSender(JourneySettings(
            _env_file=None,
            twilio_account_sid="AC123",
            twilio_auth_token="secret",
            twilio_from_number="+15550000000",
        ))
        with pytest.raises(MessageDeliveryError, match="unreachable"):
            await sender.send(tenant_id, OutboundMessage(channel="sms", to="+15551234567", body="Hi"))


class TestContactWrites:
    @pytest.mark.asyncio
    async def test_update_field_and_tags(self, db, session_factory, sender, tenant_id, contact):
        actions = _actions(session_factory, sender)
        ctx = _ctx(tenant_id, contact.id)

        assert (await _run(actions, StepType.UPDATE_FIELD, {"field": "fields.stage", "value": "mql"}, ctx)).ok
        assert (await _run(actions, StepType.UPDATE_FIELD, {"field": "company_name", "value": "Engines Ltd"}, ctx)).ok
        assert (await _run(actions, StepType.ADD_TAG, {"tag": "nurtured"}, ctx)).ok
        assert (await _run(actions, StepType.ADD_TAG, {"tag": "nurtured"}, ctx)).ok
        assert (await _run(actions, StepType.REMOVE_TAG, {"tag": "lead"}, ctx)).ok

        db.expire_all()
        row = (await db.execute(select(Contact).where(Contact.id == contact.id))).scalar_one()
        assert row.custom_fields == {"plan": "pro", "score": 42, "stage": "mql"}
        assert row.company_name == "Engines Ltd"
        assert sorted(t.name for t in row.tags) == ["nurtured"]

    @pytest.mark.asyncio
    async def test_other_tenant_contact_is_fatal(self, session_factory, sender, contact):
        outcome = await _run(
            _actions(session_factory, sender),
            StepType.ADD_TAG,
            {"tag": "vip"},
            _ctx(uuid.uuid4(), contact.id),
        )
        assert outcome.status == FATAL_FAILURE
