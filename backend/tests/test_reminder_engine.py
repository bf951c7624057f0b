from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from esign_reminders.audit import InMemoryAuditSink
from esign_reminders.dispatch import ChannelDispatcher
from esign_reminders.notifier import TransportResult
from esign_reminders.reminder_engine import SignatureReminderEngine
from esign_reminders.reminder_queue import InMemoryReminderQueueRepository
from esign_reminders.signature_requests import (
    InMemorySignatureRequestRepository,
    SignatureRequest,
    SignatureRequestNotFoundError,
    SignatureRequestNotPendingError,
)
from esign_reminders.tenant_preferences import InMemoryTenantPreferenceRepository, TenantPreferences

NOW = datetime(2025, 5, 20, 12, 0, tzinfo=timezone.utc)
TENANT = "tenant-a"


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class RecordingEmailTransport:
    def __init__(self) -> None:
        self.sent: list[str] = []
        self.fail_with: str | None = None

    def send_email(self, *, to: str, subject: str, html_body: str) -> TransportResult:
        self.sent.append(to)
        if self.fail_with:
            return TransportResult(
                status="failed",
                attempted_at=NOW,
                error_code=self.fail_with,
                error_message="mail relay unavailable",
            )
        return TransportResult(status="sent", attempted_at=NOW, provider_status="SENT", provider_message_id="em")


class RecordingMessagingTransport:
    def __init__(self) -> None:
        self.sent: list[str] = []
        self.fail_with: str | None = None

    def send_text(self, *, tenant_id: str, to: str, text: str) -> TransportResult:
        self.sent.append(to)
        if self.fail_with:
            return TransportResult(
                status="failed",
                attempted_at=NOW,
                error_code=self.fail_with,
                error_message="carrier rejected message",
            )
        return TransportResult(status="sent", attempted_at=NOW, provider_status="SENT", provider_message_id="sm")


class FailingAuditSink(InMemoryAuditSink):
    def record(self, **kwargs: Any):  # type: ignore[override]
        raise RuntimeError("audit store offline")


class ExplodingRequestRepository(InMemorySignatureRequestRepository):
    def get(self, tenant_id: str, request_id: str) -> SignatureRequest | None:
        raise RuntimeError("connection reset")


@dataclass
class Harness:
    clock: FakeClock
    requests: InMemorySignatureRequestRepository
    preferences: InMemoryTenantPreferenceRepository
    queue: InMemoryReminderQueueRepository
    audit: InMemoryAuditSink
    email: RecordingEmailTransport
    sms: RecordingMessagingTransport
    whatsapp: RecordingMessagingTransport
    engine: SignatureReminderEngine


def _build(
    *,
    requests: InMemorySignatureRequestRepository | None = None,
    audit: InMemoryAuditSink | None = None,
) -> Harness:
    clock = FakeClock(NOW)
    email = RecordingEmailTransport()
    sms = RecordingMessagingTransport()
    whatsapp = RecordingMessagingTransport()
    harness = Harness(
        clock=clock,
        requests=requests or InMemorySignatureRequestRepository(),
        preferences=InMemoryTenantPreferenceRepository(),
        queue=InMemoryReminderQueueRepository(),
        audit=audit or InMemoryAuditSink(),
        email=email,
        sms=sms,
        whatsapp=whatsapp,
        engine=None,  # type: ignore[arg-type]
    )
    harness.engine = SignatureReminderEngine(
        requests=harness.requests,
        preferences=harness.preferences,
        queue=harness.queue,
        dispatcher=ChannelDispatcher(
            email_transport=email,
            sms_transport=sms,
            whatsapp_transport=whatsapp,
            timeout_seconds=5.0,
        ),
        audit_sink=harness.audit,
        clock=clock,
        sweep_max_workers=2,
        sweep_batch_size=2,
    )
    return harness


@pytest.fixture
def harness():
    built = _build()
    yield built
    built.engine.close()


def _save_prefs(harness: Harness, **overrides: Any) -> TenantPreferences:
    values: dict[str, Any] = {"tenant_id": TENANT, "organization_name": "Acme Legal"}
    values.update(overrides)
    return harness.preferences.save(TenantPreferences(**values))


def _save_request(harness: Harness, request_id: str = "req-1", **overrides: Any) -> SignatureRequest:
    values: dict[str, Any] = {
        "request_id": request_id,
        "tenant_id": TENANT,
        "signer_name": "Jane",
        "signer_email": "jane@example.com",
        "signer_phone": None,
        "title": "Retainer Agreement",
        "status": "pending",
        "expires_at": NOW + timedelta(days=10),
    }
    values.update(overrides)
    _, saved = harness.requests.save(SignatureRequest(**values))
    return saved


def _insert_due(harness: Harness, request_id: str, *, minutes: int = 1, channel: str = "email"):
    entry = harness.queue.insert_if_absent(
        tenant_id=TENANT,
        request_id=request_id,
        channel=channel,  # type: ignore[arg-type]
        scheduled_at=harness.clock() + timedelta(minutes=minutes),
        now=harness.clock(),
    )
    assert entry is not None
    return entry


def test_schedule_creates_one_entry_per_future_offset(harness: Harness) -> None:
    _save_prefs(harness)
    request = _save_request(harness)

    result = harness.engine.schedule_reminders(request)

    expires = NOW + timedelta(days=10)
    assert result.skipped_reason is None
    assert result.scheduled_count == 3
    assert {entry.scheduled_at for entry in result.entries} == {
        expires - timedelta(days=7),
        expires - timedelta(days=3),
        expires - timedelta(days=1),
    }
    assert all(entry.scheduled_at > NOW for entry in result.entries)
    assert {entry.channel for entry in result.entries} == {"email"}


def test_schedule_twice_creates_no_duplicates(harness: Harness) -> None:
    _save_prefs(harness)
    request = _save_request(harness)

    first = harness.engine.schedule_reminders(request)
    second = harness.engine.schedule_reminders(request)

    assert first.scheduled_count == 3
    assert second.scheduled_count == 0
    assert len(harness.engine.get_pending_reminders(TENANT, "req-1")) == 3


def test_schedule_omits_offsets_already_in_the_past(harness: Harness) -> None:
    _save_prefs(harness)
    request = _save_request(harness, expires_at=NOW + timedelta(days=5))

    result = harness.engine.schedule_reminders(request)

    assert sorted(entry.scheduled_at for entry in result.entries) == [
        NOW + timedelta(days=2),
        NOW + timedelta(days=4),
    ]


def test_schedule_skips_messaging_channels_without_phone(harness: Harness) -> None:
    _save_prefs(harness, sms_enabled=True, whatsapp_enabled=True, sms_provisioned=True, whatsapp_provisioned=True)
    request = _save_request(harness, reminder_sms=True, reminder_whatsapp=True, signer_phone=None)

    result = harness.engine.schedule_reminders(request)

    assert result.scheduled_count == 3
    assert {entry.channel for entry in result.entries} == {"email"}


def test_schedule_includes_provisioned_messaging_channels(harness: Harness) -> None:
    _save_prefs(harness, sms_enabled=True, whatsapp_enabled=True, sms_provisioned=True, whatsapp_provisioned=False)
    request = _save_request(harness, reminder_sms=True, reminder_whatsapp=True, signer_phone="+15555550123")

    result = harness.engine.schedule_reminders(request)

    channels = sorted(entry.channel for entry in result.entries)
    assert channels == ["email"] * 3 + ["sms"] * 3


@pytest.mark.parametrize(
    ("setup", "expected_reason"),
    [
        ({"expires_at": None}, "missing_expiry"),
        ({"status": "signed"}, "request_not_pending"),
        ({"reminder_email": False}, "no_deliverable_channels"),
    ],
)
def test_schedule_reports_configuration_skips(harness: Harness, setup: dict[str, Any], expected_reason: str) -> None:
    _save_prefs(harness)
    request = _save_request(harness, **setup)

    result = harness.engine.schedule_reminders(request)

    assert result.scheduled_count == 0
    assert result.skipped_reason == expected_reason


def test_schedule_without_preferences_or_offsets(harness: Harness) -> None:
    request = _save_request(harness)
    assert harness.engine.schedule_reminders(request).skipped_reason == "tenant_preferences_missing"

    _save_prefs(harness, day_offsets=())
    assert harness.engine.schedule_reminders(request).skipped_reason == "no_day_offsets"


def test_sweep_sends_due_entry_and_records_audit(harness: Harness) -> None:
    _save_prefs(harness)
    request = _save_request(harness)
    scheduled = harness.engine.schedule_reminders(request)
    first_due = min(scheduled.entries, key=lambda entry: entry.scheduled_at)
    harness.clock.now = first_due.scheduled_at + timedelta(minutes=1)

    report = harness.engine.process_pending_reminders()

    assert (report.claimed_count, report.sent_count, report.failed_count) == (1, 1, 0)
    sent_entry = harness.queue.get(first_due.entry_id)
    assert sent_entry is not None
    assert sent_entry.status == "sent"
    assert sent_entry.sent_at == harness.clock.now
    updated = harness.requests.get(TENANT, "req-1")
    assert updated is not None
    assert updated.reminder_count == 1
    assert updated.last_reminder_sent_at == harness.clock.now
    events = harness.audit.list_events(TENANT, "req-1")
    assert len(events) == 1
    assert events[0].event_type == "reminder_sent"
    assert events[0].actor_type == "system"
    assert events[0].channel == "email"
    assert events[0].payload == {"channel": "email"}
    assert harness.email.sent == ["jane@example.com"]


def test_sweep_cancels_entries_for_requests_no_longer_pending(harness: Harness) -> None:
    _save_prefs(harness)
    request = _save_request(harness)
    harness.engine.schedule_reminders(request)
    _save_request(harness, status="signed")
    harness.clock.advance(days=4)

    report = harness.engine.process_pending_reminders()

    assert report.cancelled_count == 1
    assert report.items[0].status == "cancelled"
    assert report.items[0].error_code is None
    assert harness.email.sent == []
    assert harness.engine.get_statistics(TENANT).count("cancelled") == 1


def test_sweep_records_transport_failure(harness: Harness) -> None:
    _save_prefs(harness)
    harness.engine.schedule_reminders(_save_request(harness))
    harness.email.fail_with = "relay_down"
    harness.clock.advance(days=4)

    report = harness.engine.process_pending_reminders()

    assert report.failed_count == 1
    item = report.items[0]
    assert item.error_code == "relay_down"
    assert item.error_message
    entry = harness.queue.get(item.entry_id)
    assert entry is not None
    assert entry.status == "failed"
    assert entry.failed_at == harness.clock.now
    assert harness.requests.get(TENANT, "req-1").reminder_count == 0  # type: ignore[union-attr]
    assert harness.audit.list_events(TENANT, "req-1") == []


def test_sweep_fails_entries_for_missing_request(harness: Harness) -> None:
    _save_prefs(harness)
    _insert_due(harness, "ghost-request")
    harness.clock.advance(minutes=5)

    report = harness.engine.process_pending_reminders()

    assert report.items[0].status == "failed"
    assert report.items[0].error_code == "request_not_found"


def test_sweep_fails_entries_for_missing_tenant_preferences(harness: Harness) -> None:
    _save_prefs(harness)
    harness.engine.schedule_reminders(_save_request(harness))
    harness.preferences.reset()
    harness.clock.advance(days=4)

    report = harness.engine.process_pending_reminders()

    assert report.items[0].error_code == "tenant_not_found"
    assert harness.email.sent == []


def test_sweep_processes_every_due_entry_across_batches(harness: Harness) -> None:
    _save_prefs(harness)
    for index in range(5):
        _save_request(harness, f"req-{index}")
        _insert_due(harness, f"req-{index}")
    harness.clock.advance(minutes=5)

    report = harness.engine.process_pending_reminders()

    assert report.claimed_count == 5
    assert report.sent_count == 5
    assert len(harness.email.sent) == 5


def test_sweep_contains_unexpected_errors() -> None:
    harness = _build(requests=ExplodingRequestRepository())
    try:
        _save_prefs(harness)
        _insert_due(harness, "req-1")
        harness.clock.advance(minutes=5)

        report = harness.engine.process_pending_reminders()
    finally:
        harness.engine.close()

    assert report.failed_count == 1
    assert report.items[0].error_code == "internal_error"
    entry = harness.queue.get(report.items[0].entry_id)
    assert entry is not None
    assert entry.status == "failed"


def test_audit_failure_does_not_undo_send() -> None:
    harness = _build(audit=FailingAuditSink())
    try:
        _save_prefs(harness)
        _save_request(harness)
        _insert_due(harness, "req-1")
        harness.clock.advance(minutes=5)

        report = harness.engine.process_pending_reminders()
    finally:
        harness.engine.close()

    assert report.sent_count == 1
    assert harness.requests.get(TENANT, "req-1").reminder_count == 1  # type: ignore[union-attr]


def test_overlapping_claims_never_share_an_entry(harness: Harness) -> None:
    _save_request(harness)
    _insert_due(harness, "req-1")
    harness.clock.advance(minutes=5)

    first = harness.queue.claim_due(now=harness.clock(), max_entries=10)
    second = harness.queue.claim_due(now=harness.clock(), max_entries=10)

    assert len(first) == 1
    assert second == []
    assert first[0].status == "processing"
    assert first[0].tries == 1


def test_retry_resets_only_failures_inside_lookback(harness: Harness) -> None:
    _save_prefs(harness)
    _save_request(harness, "req-old")
    _save_request(harness, "req-recent")
    harness.email.fail_with = "relay_down"

    old_entry = _insert_due(harness, "req-old")
    harness.clock.advance(minutes=5)
    harness.engine.process_pending_reminders()

    harness.clock.advance(hours=46)
    recent_entry = _insert_due(harness, "req-recent")
    harness.clock.advance(minutes=5)
    harness.engine.process_pending_reminders()

    harness.clock.advance(hours=2)
    report = harness.engine.retry_failed_reminders()

    assert report.retried_count == 1
    assert report.expired_claim_count == 0
    old = harness.queue.get(old_entry.entry_id)
    recent = harness.queue.get(recent_entry.entry_id)
    assert old is not None and old.status == "failed"
    assert recent is not None and recent.status == "pending"
    assert recent.error_code is None
    assert recent.error_message is None
    assert recent.failed_at is None


def test_retry_expires_stale_claims(harness: Harness) -> None:
    _save_request(harness)
    entry = _insert_due(harness, "req-1")
    harness.clock.advance(minutes=5)
    harness.queue.claim_due(now=harness.clock(), max_entries=10)

    harness.clock.advance(minutes=5)
    early = harness.engine.retry_failed_reminders()
    assert early.expired_claim_count == 0

    harness.clock.advance(minutes=15)
    report = harness.engine.retry_failed_reminders()

    assert report.expired_claim_count == 1
    assert report.retried_count == 1
    current = harness.queue.get(entry.entry_id)
    assert current is not None
    assert current.status == "pending"


def test_retry_skips_failure_whose_slot_is_already_pending(harness: Harness) -> None:
    _save_prefs(harness)
    _save_request(harness)
    harness.email.fail_with = "relay_down"
    failed_entry = _insert_due(harness, "req-1")
    harness.clock.advance(minutes=5)
    harness.engine.process_pending_reminders()

    replacement = harness.queue.insert_if_absent(
        tenant_id=TENANT,
        request_id="req-1",
        channel="email",
        scheduled_at=failed_entry.scheduled_at,
        now=harness.clock(),
    )
    assert replacement is not None

    report = harness.engine.retry_failed_reminders()

    assert report.retried_count == 0
    current = harness.queue.get(failed_entry.entry_id)
    assert current is not None and current.status == "failed"


def test_retry_stops_after_max_attempts(harness: Harness) -> None:
    _save_prefs(harness)
    _save_request(harness)
    harness.email.fail_with = "relay_down"
    entry = _insert_due(harness, "req-1")

    for _ in range(48):
        harness.clock.advance(hours=1)
        harness.engine.process_pending_reminders()
        harness.engine.retry_failed_reminders()

    current = harness.queue.get(entry.entry_id)
    assert current is not None
    assert current.status == "failed"
    assert current.tries == 3
    assert len(harness.email.sent) == 3
    assert harness.engine.retry_failed_reminders().max_attempts == 3


def test_sweep_cancels_requeued_entry_once_request_expired(harness: Harness) -> None:
    _save_prefs(harness)
    _save_request(harness, expires_at=NOW + timedelta(hours=2))
    harness.email.fail_with = "relay_down"
    entry = _insert_due(harness, "req-1")
    harness.clock.advance(minutes=5)
    harness.engine.process_pending_reminders()
    assert harness.engine.retry_failed_reminders().retried_count == 1

    harness.clock.advance(hours=3)
    report = harness.engine.process_pending_reminders()

    assert report.cancelled_count == 1
    assert len(harness.email.sent) == 1
    current = harness.queue.get(entry.entry_id)
    assert current is not None and current.status == "cancelled"


def test_cancellation_only_touches_pending_entries_of_that_request(harness: Harness) -> None:
    _save_prefs(harness)
    harness.engine.schedule_reminders(_save_request(harness, "req-1"))
    harness.engine.schedule_reminders(_save_request(harness, "req-2"))
    harness.clock.advance(days=4)
    harness.engine.process_pending_reminders()

    cancelled = harness.engine.cancel_reminders(TENANT, "req-1")

    assert cancelled == 2
    assert harness.engine.get_pending_reminders(TENANT, "req-1") == []
    assert len(harness.engine.get_pending_reminders(TENANT, "req-2")) == 2
    statuses = sorted(entry.status for entry in harness.queue.list_for_request(TENANT, "req-1"))
    assert statuses == ["cancelled", "cancelled", "sent"]
    assert harness.engine.cancel_reminders(TENANT, "req-1") == 0


def test_pending_reminders_are_tenant_scoped(harness: Harness) -> None:
    _save_prefs(harness)
    harness.engine.schedule_reminders(_save_request(harness))

    assert harness.engine.get_pending_reminders("tenant-b", "req-1") == []
    assert harness.engine.cancel_reminders("tenant-b", "req-1") == 0


def test_immediate_send_uses_only_enabled_channels(harness: Harness) -> None:
    _save_prefs(harness)
    _save_request(harness, reminder_email=True, reminder_sms=False, signer_phone="+15555550123")

    result = harness.engine.send_immediate_reminder(TENANT, "req-1", "user-42")

    assert [outcome.channel for outcome in result.outcomes] == ["email"]
    assert result.any_sent is True
    assert result.request.reminder_count == 1
    assert harness.sms.sent == []
    events = harness.audit.list_events(TENANT, "req-1")
    assert len(events) == 1
    assert events[0].actor_type == "user"
    assert events[0].actor_id == "user-42"
    assert events[0].channel == "web"
    assert events[0].payload == {"email": True, "sms": False, "whatsapp": False, "user_id": "user-42"}


def test_immediate_send_partial_failure_counts_once(harness: Harness) -> None:
    _save_prefs(harness, sms_provisioned=True, whatsapp_provisioned=True)
    _save_request(
        harness,
        reminder_sms=True,
        reminder_whatsapp=True,
        signer_phone="+15555550123",
    )
    harness.sms.fail_with = "carrier_blocked"

    result = harness.engine.send_immediate_reminder(TENANT, "req-1", "user-42")

    by_channel = {outcome.channel: outcome for outcome in result.outcomes}
    assert set(by_channel) == {"email", "sms", "whatsapp"}
    assert by_channel["sms"].error_code == "carrier_blocked"
    assert by_channel["email"].succeeded and by_channel["whatsapp"].succeeded
    assert result.request.reminder_count == 1
    assert harness.audit.list_events(TENANT, "req-1")[0].payload["sms"] is False


def test_immediate_send_skips_messaging_without_phone(harness: Harness) -> None:
    _save_prefs(harness, sms_provisioned=True)
    _save_request(harness, reminder_sms=True, signer_phone=None)

    result = harness.engine.send_immediate_reminder(TENANT, "req-1", "user-1")

    assert [outcome.channel for outcome in result.outcomes] == ["email"]


def test_immediate_send_without_preferences_fails_every_channel(harness: Harness) -> None:
    _save_request(harness)

    result = harness.engine.send_immediate_reminder(TENANT, "req-1", "user-1")

    assert result.any_sent is False
    assert [outcome.error_code for outcome in result.outcomes] == ["tenant_not_found"]
    assert harness.requests.get(TENANT, "req-1").reminder_count == 0  # type: ignore[union-attr]
    assert harness.audit.list_events(TENANT, "req-1") == []


def test_immediate_send_rejects_missing_or_finished_requests(harness: Harness) -> None:
    _save_prefs(harness)
    with pytest.raises(SignatureRequestNotFoundError) as exc_info:
        harness.engine.send_immediate_reminder(TENANT, "missing", "user-1")
    assert str(exc_info.value) == "signature request not found: missing"

    _save_request(harness, status="declined")
    with pytest.raises(SignatureRequestNotPendingError):
        harness.engine.send_immediate_reminder(TENANT, "req-1", "user-1")


def test_cleanup_removes_only_old_terminal_entries(harness: Harness) -> None:
    _save_prefs(harness)
    _save_request(harness, "req-1")
    _save_request(harness, "req-2")
    sent_entry = _insert_due(harness, "req-1")
    harness.clock.advance(minutes=5)
    harness.engine.process_pending_reminders()
    pending_entry = _insert_due(harness, "req-1", minutes=10)
    _insert_due(harness, "req-2", minutes=20)
    harness.engine.cancel_reminders(TENANT, "req-2")

    harness.clock.advance(days=100)
    report = harness.engine.cleanup_old_reminders(90)

    assert report.deleted_count == 2
    assert report.cutoff == harness.clock() - timedelta(days=90)
    assert harness.queue.get(sent_entry.entry_id) is None
    assert harness.queue.get(pending_entry.entry_id) is not None

    with pytest.raises(ValueError):
        harness.engine.cleanup_old_reminders(0)


def test_statistics_count_every_status(harness: Harness) -> None:
    _save_prefs(harness)
    harness.engine.schedule_reminders(_save_request(harness))
    harness.clock.advance(days=4)
    harness.engine.process_pending_reminders()

    stats = harness.engine.get_statistics(TENANT)

    assert stats.count("pending") == 2
    assert stats.count("sent") == 1
    assert stats.count("processing") == 0
    assert stats.total == 3
    assert harness.engine.get_statistics("tenant-b").total == 0
