"""Messaging sender: SendGrid email and Twilio SMS.

Senders must be safe to call more than once for the same step attempt: after a
crash mid-step the engine retries the send.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Protocol

from ..config import JourneySettings, settings as default_settings
from ..errors import InvalidRecipientError, MessageDeliveryError, MessagingNotConfigured

log = logging.getLogger(__name__)

# Twilio error codes that mean the destination itself is unusable.
TWILIO_INVALID_RECIPIENT_CODES = {21211, 21214, 21610, 21614}


@dataclass(frozen=True)
class OutboundMessage:
    channel: str  # email/sms
    to: str
    body: str
    subject: str | None = None
    idempotency_key: str | None = None


class MessageSender(Protocol):
    async def send(self, tenant_id: uuid.UUID, message: OutboundMessage) -> str | None:
        """Deliver a rendered message; returns the provider message id if any."""
        ...


class ProviderMessageSender:
    """Delivers email through SendGrid and SMS through Twilio."""

    def __init__(self, settings_obj: JourneySettings | None = None):
        self.settings = settings_obj or default_settings

    async def send(self, tenant_id: uuid.UUID, message: OutboundMessage) -> str | None:
        if message.channel == "sms":
            return await asyncio.to_thread(self._send_sms, message)
        return await asyncio.to_thread(self._send_email, message)

    def _send_sms(self, message: OutboundMessage) -> str | None:
        if not self.settings.twilio_configured:
            raise MessagingNotConfigured("Twilio is not configured. Set JRN_TWILIO_* env vars.")

        from twilio.base.exceptions import TwilioException, TwilioRestException
        from twilio.rest import Client

        client = Client(self.settings.twilio_account_sid, self.settings.twilio_auth_token)
        try:
            tw_msg = client.messages.create(
                body=message.body,
                from_=self.settings.twilio_from_number,
                to=message.to,
            )
        except TwilioRestException as exc:
            if exc.code in TWILIO_INVALID_RECIPIENT_CODES:
                raise InvalidRecipientError(f"Invalid SMS recipient {message.to}: {exc.msg}") from exc
            raise MessageDeliveryError(f"Twilio error {exc.status}: {exc.msg}") from exc
        except TwilioException as exc:
            raise MessageDeliveryError(f"Twilio error: {exc}") from exc
        except OSError as exc:
            raise MessageDeliveryError(f"Twilio unreachable: {exc}") from exc
        log.info("SMS sent via Twilio sid=%s", tw_msg.sid)
        return tw_msg.sid

    def _send_email(self, message: OutboundMessage) -> str | None:
        if not self.settings.sendgrid_configured:
            raise MessagingNotConfigured("SendGrid is not configured. Set JRN_SENDGRID_* env vars.")

        import sendgrid
        from python_http_client.exceptions import HTTPError
        from sendgrid.helpers.mail import Content, Email, Mail, To

        sg = sendgrid.SendGridAPIClient(api_key=self.settings.sendgrid_api_key)
        mail = Mail(
            from_email=Email(self.settings.sendgrid_from_email, self.settings.sendgrid_from_name),
            to_emails=To(message.to),
            subject=message.subject or "",
            html_content=Content("text/html", message.body),
        )
        try:
            response = sg.client.mail.send.post(request_body=mail.get())
        except HTTPError as exc:
            if exc.status_code == 400:
                raise InvalidRecipientError(f"SendGrid rejected {message.to}: {exc.body}") from exc
            raise MessageDeliveryError(f"SendGrid error {exc.status_code}") from exc
        except OSError as exc:
            raise MessageDeliveryError(f"SendGrid unreachable: {exc}") from exc
        provider_id = None
        if hasattr(response, "headers"):
            provider_id = response.headers.get("X-Message-Id")
        log.info("Email sent via SendGrid id=%s", provider_id)
        return provider_id
