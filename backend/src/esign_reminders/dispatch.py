from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime
from functools import partial
from typing import Callable, Literal

from .models import ReminderChannel
from .notifier import EmailTransport, MessagingTransport, TransportResult, mask_contact_target
from .signature_requests import SignatureRequest
from .templates import build_template_context, render_reminder_message
from .tenant_preferences import TenantPreferences

logger = logging.getLogger(__name__)

DispatchStatus = Literal["sent", "failed"]


@dataclass(frozen=True)
class DispatchOutcome:
    channel: ReminderChannel
    status: DispatchStatus
    provider_status: str | None = None
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "sent"

    @classmethod
    def failure(cls, channel: ReminderChannel, error_code: str, error_message: str) -> DispatchOutcome:
        return cls(channel=channel, status="failed", error_code=error_code, error_message=error_message)


class ChannelDispatcher:
    """Renders a reminder for one channel and hands it to that channel's transport.

    Every transport call runs on the dispatcher's own pool and is abandoned
    after ``timeout_seconds``; the provider call itself is not interrupted.
    """

    def __init__(
        self,
        *,
        email_transport: EmailTransport | None,
        sms_transport: MessagingTransport | None,
        whatsapp_transport: MessagingTransport | None,
        timeout_seconds: float = 30.0,
        max_workers: int = 8,
    ) -> None:
        self._email_transport = email_transport
        self._sms_transport = sms_transport
        self._whatsapp_transport = whatsapp_transport
        self._timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="reminder-send")

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def dispatch(
        self,
        request: SignatureRequest,
        preferences: TenantPreferences,
        channel: ReminderChannel,
        *,
        now: datetime,
    ) -> DispatchOutcome:
        email_transport: EmailTransport | None = None
        messaging_transport: MessagingTransport | None = None
        if channel == "email":
            recipient = (request.signer_email or "").strip()
            if not recipient:
                return DispatchOutcome.failure(channel, "email_missing", "Signer has no email address")
            email_transport = self._email_transport
            if email_transport is None:
                return DispatchOutcome.failure(channel, "transport_not_configured", "No email transport configured")
        else:
            if not request.has_phone:
                return DispatchOutcome.failure(channel, "phone_missing", f"Signer has no phone number for {channel}")
            if not preferences.channel_provisioned(channel):
                return DispatchOutcome.failure(
                    channel,
                    "channel_not_provisioned",
                    f"{channel} is not provisioned for tenant {preferences.tenant_id}",
                )
            messaging_transport = self._messaging_transport(channel)
            if messaging_transport is None:
                return DispatchOutcome.failure(
                    channel, "transport_not_configured", f"No {channel} transport configured"
                )
            recipient = (request.signer_phone or "").strip()

        try:
            context = build_template_context(
                signer_name=request.signer_name,
                org_name=preferences.organization_name,
                doc_title=request.title,
                expires_at=request.expires_at,
                now=now,
            )
            message = render_reminder_message(
                channel,
                context,
                custom_template=preferences.template_for(channel),
            )
        except Exception as exc:
            logger.exception(
                "failed to render %s reminder for request %s/%s",
                channel,
                request.tenant_id,
                request.request_id,
            )
            return DispatchOutcome.failure(channel, "template_error", f"Template rendering failed: {exc}")

        send: Callable[[], TransportResult]
        if email_transport is not None:
            send = partial(email_transport.send_email, to=recipient, subject=message.subject or "", html_body=message.body)
        elif messaging_transport is not None:
            send = partial(messaging_transport.send_text, tenant_id=request.tenant_id, to=recipient, text=message.body)
        else:
            return DispatchOutcome.failure(channel, "transport_not_configured", f"No {channel} transport configured")
        return self._send_with_timeout(channel, recipient, send)

    def _messaging_transport(self, channel: ReminderChannel) -> MessagingTransport | None:
        if channel == "sms":
            return self._sms_transport
        if channel == "whatsapp":
            return self._whatsapp_transport
        return None

    def _send_with_timeout(
        self,
        channel: ReminderChannel,
        recipient: str,
        send: Callable[[], TransportResult],
    ) -> DispatchOutcome:
        masked = mask_contact_target(recipient, channel)
        future = self._executor.submit(send)
        try:
            result = future.result(timeout=self._timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            logger.warning("%s send to %s timed out after %ss", channel, masked, self._timeout_seconds)
            return DispatchOutcome.failure(
                channel, "timeout", f"Send did not complete within {self._timeout_seconds} seconds"
            )
        except Exception as exc:
            logger.warning("%s transport raised for %s: %s", channel, masked, exc, exc_info=True)
            return DispatchOutcome.failure(channel, "transport_error", f"Transport error: {exc}")

        if result.succeeded:
            logger.info("%s reminder sent to %s (message_id=%s)", channel, masked, result.provider_message_id)
            return DispatchOutcome(
                channel=channel,
                status="sent",
                provider_status=result.provider_status,
                provider_message_id=result.provider_message_id,
            )

        logger.warning("%s reminder to %s failed: %s", channel, masked, result.error_code)
        return DispatchOutcome(
            channel=channel,
            status="failed",
            provider_status=result.provider_status,
            provider_message_id=result.provider_message_id,
            error_code=result.error_code or "delivery_failed",
            error_message=result.error_message or "Provider reported a failed delivery",
        )
