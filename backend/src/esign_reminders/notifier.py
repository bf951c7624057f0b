from __future__ import annotations

import json
import secrets
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Literal, Protocol

from .models import ReminderChannel

TransportStatus = Literal["sent", "failed"]


@dataclass(frozen=True)
class TransportResult:
    status: TransportStatus
    attempted_at: datetime
    provider_status: str | None = None
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "sent"


class EmailTransport(Protocol):
    def send_email(self, *, to: str, subject: str, html_body: str) -> TransportResult: ...


class MessagingTransport(Protocol):
    def send_text(self, *, tenant_id: str, to: str, text: str) -> TransportResult: ...


def _stub_message_id(prefix: str, attempted_at: datetime) -> str:
    return f"stub-{prefix}-{int(attempted_at.timestamp())}-{secrets.token_hex(3)}"


class StubEmailTransport:
    def __init__(self, *, enabled: bool) -> None:
        self._enabled = enabled

    def send_email(self, *, to: str, subject: str, html_body: str) -> TransportResult:
        attempted_at = datetime.now(timezone.utc)
        if not self._enabled:
            return TransportResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="transport_disabled",
                error_message="Email delivery is disabled",
            )
        if "fail" in to.lower():
            return TransportResult(
                status="failed",
                attempted_at=attempted_at,
                provider_status="REJECTED",
                error_code="stub_delivery_failed",
                error_message=f"Stub transport forced failure for {mask_contact_target(to, 'email')}",
            )
        return TransportResult(
            status="sent",
            attempted_at=attempted_at,
            provider_status="SENT",
            provider_message_id=_stub_message_id("email", attempted_at),
        )


class StubMessagingTransport:
    def __init__(self, *, enabled: bool, channel: ReminderChannel) -> None:
        self._enabled = enabled
        self._channel = channel

    def send_text(self, *, tenant_id: str, to: str, text: str) -> TransportResult:
        attempted_at = datetime.now(timezone.utc)
        if not self._enabled:
            return TransportResult(
                status="failed",
                attempted_at=attempted_at,
                error_code="transport_disabled",
                error_message=f"{self._channel} delivery is disabled",
            )
        if "fail" in to.lower():
            return TransportResult(
                status="failed",
                attempted_at=attempted_at,
                provider_status="FAILED",
                error_code="stub_delivery_failed",
                error_message=f"Stub transport forced failure for {mask_contact_target(to, self._channel)}",
            )
        return TransportResult(
            status="sent",
            attempted_at=attempted_at,
            provider_status="SENT",
            provider_message_id=_stub_message_id(self._channel, attempted_at),
        )


class _TransportSendError(Exception):
    """Internal error raised when a provider HTTP request fails."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class _HttpJsonTransport:
    _path = ""

    def __init__(self, *, base_url: str, api_key: str, timeout_seconds: int = 20) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._timeout_seconds = timeout_seconds

    def _deliver(self, body: dict[str, str], *, masked_recipient: str) -> TransportResult:
        attempted_at = datetime.now(timezone.utc)
        try:
            response_data = self._post(body)
        except _TransportSendError as exc:
            return TransportResult(
                status="failed",
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error_message=f"{exc.message} (recipient: {masked_recipient})",
            )

        provider_status = str(response_data.get("status") or "").strip()
        message_id = response_data.get("message_id")
        if provider_status.upper() != "SENT":
            return TransportResult(
                status="failed",
                attempted_at=attempted_at,
                provider_status=provider_status or None,
                provider_message_id=message_id,
                error_code="provider_rejected",
                error_message=(
                    f"Provider returned status {provider_status or 'unknown'} "
                    f"(recipient: {masked_recipient})"
                ),
            )
        return TransportResult(
            status="sent",
            attempted_at=attempted_at,
            provider_status=provider_status,
            provider_message_id=message_id,
        )

    def _post(self, body: dict[str, str]) -> dict[str, Any]:
        url = f"{self._base_url}{self._path}"
        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise _TransportSendError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
            ) from exc
        except urllib.error.URLError as exc:
            raise _TransportSendError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _TransportSendError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
            ) from exc


class HttpEmailTransport(_HttpJsonTransport):
    """Email transport that posts rendered messages to a mail relay API."""

    _path = "/v1/email/send"

    def send_email(self, *, to: str, subject: str, html_body: str) -> TransportResult:
        return self._deliver(
            {"to": to, "subject": subject, "html": html_body},
            masked_recipient=mask_contact_target(to, "email"),
        )


class HttpMessagingTransport(_HttpJsonTransport):
    """SMS/WhatsApp transport; the provider resolves per-tenant credentials."""

    _path = "/v1/messages/send"

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        channel: ReminderChannel,
        timeout_seconds: int = 20,
    ) -> None:
        super().__init__(base_url=base_url, api_key=api_key, timeout_seconds=timeout_seconds)
        self._channel = channel

    def send_text(self, *, tenant_id: str, to: str, text: str) -> TransportResult:
        return self._deliver(
            {"channel": self._channel, "tenant_id": tenant_id, "to": to, "text": text},
            masked_recipient=mask_contact_target(to, self._channel),
        )


def mask_contact_target(contact_target: str, channel: ReminderChannel) -> str:
    normalized = contact_target.strip()
    if not normalized:
        return "***"

    if channel == "email" and "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"

    if channel in {"sms", "whatsapp"}:
        digits = "".join(ch for ch in normalized if ch.isdigit())
        if len(digits) >= 4:
            return f"***{digits[-4:]}"

    if len(normalized) <= 4:
        return "*" * len(normalized)

    return f"{normalized[:2]}***{normalized[-2:]}"
