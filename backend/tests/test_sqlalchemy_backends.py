from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from esign_reminders.audit import SqlAlchemyAuditSink
from esign_reminders.reminder_queue import SqlAlchemyReminderQueueRepository, create_reminder_queue_repository
from esign_reminders.signature_requests import SignatureRequest, SqlAlchemySignatureRequestRepository
from esign_reminders.tenant_preferences import SqlAlchemyTenantPreferenceRepository, TenantPreferences

NOW = datetime(2025, 5, 20, 12, 0, tzinfo=timezone.utc)


def _database_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'reminders.db'}"


def _insert(repo: SqlAlchemyReminderQueueRepository, request_id: str = "req-1", *, minutes: int = 1, channel: str = "email"):
    return repo.insert_if_absent(
        tenant_id="tenant-a",
        request_id=request_id,
        channel=channel,  # type: ignore[arg-type]
        scheduled_at=NOW + timedelta(minutes=minutes),
        now=NOW,
    )


def test_pending_slot_is_unique(tmp_path: Path) -> None:
    repo = SqlAlchemyReminderQueueRepository(_database_url(tmp_path))

    first = _insert(repo)
    duplicate = _insert(repo)
    other_channel = _insert(repo, channel="sms")

    assert first is not None
    assert first.status == "pending"
    assert first.scheduled_at == NOW + timedelta(minutes=1)
    assert first.scheduled_at.tzinfo == timezone.utc
    assert duplicate is None
    assert other_channel is not None
    assert len(repo.list_for_request("tenant-a", "req-1", status="pending")) == 2


def test_finished_slot_can_be_scheduled_again(tmp_path: Path) -> None:
    repo = SqlAlchemyReminderQueueRepository(_database_url(tmp_path))
    first = _insert(repo)
    assert first is not None
    assert repo.cancel_pending("tenant-a", "req-1", now=NOW) == 1

    again = _insert(repo)

    assert again is not None
    assert again.entry_id != first.entry_id


def test_claim_is_exclusive_across_repository_instances(tmp_path: Path) -> None:
    url = _database_url(tmp_path)
    sweeper_a = SqlAlchemyReminderQueueRepository(url)
    sweeper_b = SqlAlchemyReminderQueueRepository(url)
    for index in range(3):
        _insert(sweeper_a, f"req-{index}")
    _insert(sweeper_a, "req-later", minutes=120)

    claimed_a = sweeper_a.claim_due(now=NOW + timedelta(minutes=5), max_entries=10)
    claimed_b = sweeper_b.claim_due(now=NOW + timedelta(minutes=5), max_entries=10)

    assert sorted(entry.request_id for entry in claimed_a) == ["req-0", "req-1", "req-2"]
    assert all(entry.status == "processing" and entry.tries == 1 for entry in claimed_a)
    assert all(entry.claimed_at == NOW + timedelta(minutes=5) for entry in claimed_a)
    assert claimed_b == []


def test_claim_respects_batch_size(tmp_path: Path) -> None:
    repo = SqlAlchemyReminderQueueRepository(_database_url(tmp_path))
    for index in range(3):
        _insert(repo, f"req-{index}", minutes=index + 1)

    batch = repo.claim_due(now=NOW + timedelta(minutes=10), max_entries=2)

    assert [entry.request_id for entry in batch] == ["req-0", "req-1"]


def test_transitions_require_processing(tmp_path: Path) -> None:
    repo = SqlAlchemyReminderQueueRepository(_database_url(tmp_path))
    entry = _insert(repo)
    assert entry is not None

    assert repo.mark_sent(entry.entry_id, sent_at=NOW) is False

    repo.claim_due(now=NOW + timedelta(minutes=5), max_entries=1)
    assert repo.mark_failed(
        entry.entry_id,
        error_code="relay_down",
        error_message="mail relay unavailable",
        failed_at=NOW + timedelta(minutes=6),
    ) is True
    assert repo.mark_sent(entry.entry_id, sent_at=NOW) is False

    stored = repo.get(entry.entry_id)
    assert stored is not None
    assert stored.status == "failed"
    assert stored.error_code == "relay_down"
    assert stored.failed_at == NOW + timedelta(minutes=6)


def test_requeue_failed_honours_window_and_existing_pending_slot(tmp_path: Path) -> None:
    repo = SqlAlchemyReminderQueueRepository(_database_url(tmp_path))
    old = _insert(repo, "req-old")
    recent = _insert(repo, "req-recent")
    covered = _insert(repo, "req-covered")
    assert old is not None and recent is not None and covered is not None
    repo.claim_due(now=NOW + timedelta(minutes=5), max_entries=10)
    repo.mark_failed(old.entry_id, error_code="x", error_message="x", failed_at=NOW)
    repo.mark_failed(recent.entry_id, error_code="x", error_message="x", failed_at=NOW + timedelta(hours=40))
    repo.mark_failed(covered.entry_id, error_code="x", error_message="x", failed_at=NOW + timedelta(hours=40))
    assert _insert(repo, "req-covered") is not None

    requeued = repo.requeue_failed(
        failed_since=NOW + timedelta(hours=24),
        max_tries=3,
        now=NOW + timedelta(hours=48),
    )

    assert requeued == 1
    statuses = {
        request_id: repo.list_for_request("tenant-a", request_id)[0].status
        for request_id in ("req-old", "req-recent")
    }
    assert statuses == {"req-old": "failed", "req-recent": "pending"}
    covered_statuses = sorted(entry.status for entry in repo.list_for_request("tenant-a", "req-covered"))
    assert covered_statuses == ["failed", "pending"]


def test_requeue_failed_leaves_exhausted_entries_failed(tmp_path: Path) -> None:
    repo = SqlAlchemyReminderQueueRepository(_database_url(tmp_path))
    entry = _insert(repo)
    assert entry is not None

    for attempt in range(1, 4):
        claimed = repo.claim_due(now=NOW + timedelta(minutes=5 * attempt), max_entries=1)
        assert [row.tries for row in claimed] == [attempt]
        repo.mark_failed(
            entry.entry_id,
            error_code="relay_down",
            error_message="mail relay unavailable",
            failed_at=NOW + timedelta(minutes=5 * attempt),
        )
        requeued = repo.requeue_failed(failed_since=NOW, max_tries=3, now=NOW + timedelta(minutes=5 * attempt))
        assert requeued == (1 if attempt < 3 else 0)

    stored = repo.get(entry.entry_id)
    assert stored is not None
    assert stored.status == "failed"
    assert stored.tries == 3


def test_expire_stale_claims(tmp_path: Path) -> None:
    repo = SqlAlchemyReminderQueueRepository(_database_url(tmp_path))
    entry = _insert(repo)
    assert entry is not None
    repo.claim_due(now=NOW + timedelta(minutes=5), max_entries=1)

    assert repo.expire_stale_claims(claimed_before=NOW, now=NOW + timedelta(minutes=10)) == 0
    expired = repo.expire_stale_claims(claimed_before=NOW + timedelta(minutes=30), now=NOW + timedelta(minutes=30))

    assert expired == 1
    stored = repo.get(entry.entry_id)
    assert stored is not None
    assert stored.status == "failed"
    assert stored.error_code == "claim_expired"


def test_delete_terminal_before_keeps_pending_and_counts(tmp_path: Path) -> None:
    repo = SqlAlchemyReminderQueueRepository(_database_url(tmp_path))
    sent = _insert(repo, "req-1", minutes=1)
    _insert(repo, "req-2", minutes=2)
    cancelled = _insert(repo, "req-3", minutes=3)
    assert sent is not None and cancelled is not None
    repo.claim_due(now=NOW + timedelta(minutes=5), max_entries=1)
    repo.mark_sent(sent.entry_id, sent_at=NOW + timedelta(minutes=5))
    repo.cancel_pending("tenant-a", "req-3", now=NOW)

    assert repo.count_by_status("tenant-a") == {
        "pending": 1,
        "processing": 0,
        "sent": 1,
        "failed": 0,
        "cancelled": 1,
    }

    deleted = repo.delete_terminal_before(cutoff=NOW + timedelta(days=1))

    assert deleted == 2
    assert repo.count_by_status("tenant-a")["pending"] == 1


def test_factory_rejects_unknown_backend() -> None:
    with pytest.raises(RuntimeError, match="unsupported REMINDER_STORE_BACKEND"):
        create_reminder_queue_repository(backend="redis", database_url="")


def test_signature_request_save_preserves_reminder_bookkeeping(tmp_path: Path) -> None:
    repo = SqlAlchemySignatureRequestRepository(_database_url(tmp_path))
    request = SignatureRequest(
        request_id="req-1",
        tenant_id="tenant-a",
        signer_name="Jane",
        signer_email="jane@example.com",
        signer_phone="+15555550123",
        title="Retainer Agreement",
        status="pending",
        expires_at=NOW + timedelta(days=10),
    )
    previous, saved = repo.save(request)
    assert previous is None
    assert saved.expires_at == NOW + timedelta(days=10)

    repo.record_reminder_sent("tenant-a", "req-1", sent_at=NOW)
    updated = repo.record_reminder_sent("tenant-a", "req-1", sent_at=NOW + timedelta(hours=1))
    assert updated is not None
    assert updated.reminder_count == 2
    assert updated.last_reminder_sent_at == NOW + timedelta(hours=1)

    previous, resaved = repo.save(request)
    assert previous is not None and previous.reminder_count == 2
    assert resaved.reminder_count == 2
    assert repo.record_reminder_sent("tenant-a", "missing", sent_at=NOW) is None
    assert repo.get("tenant-b", "req-1") is None


def test_tenant_preferences_roundtrip(tmp_path: Path) -> None:
    repo = SqlAlchemyTenantPreferenceRepository(_database_url(tmp_path))
    repo.save(
        TenantPreferences(
            tenant_id="tenant-a",
            organization_name="Acme Legal",
            sms_enabled=True,
            day_offsets=(14, 2),
            sms_template="{org_name}: sign {doc_title}",
            sms_provisioned=True,
        )
    )

    stored = repo.get("tenant-a")

    assert stored is not None
    assert stored.day_offsets == (14, 2)
    assert stored.template_for("sms") == "{org_name}: sign {doc_title}"
    assert stored.template_for("email") is None
    assert stored.channel_provisioned("sms") is True
    assert stored.channel_provisioned("whatsapp") is False


def test_audit_sink_persists_payload(tmp_path: Path) -> None:
    sink = SqlAlchemyAuditSink(_database_url(tmp_path))
    sink.record(
        tenant_id="tenant-a",
        request_id="req-1",
        event_type="reminder_sent",
        payload={"email": True, "sms": False, "whatsapp": False, "user_id": "user-42"},
        actor_type="user",
        actor_id="user-42",
        channel="web",
    )

    events = sink.list_events("tenant-a", "req-1")

    assert len(events) == 1
    assert events[0].payload["user_id"] == "user-42"
    assert events[0].channel == "web"
    assert events[0].created_at.tzinfo == timezone.utc
