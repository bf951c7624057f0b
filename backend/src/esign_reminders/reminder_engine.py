from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from .audit import EVENT_REMINDER_SENT, AuditSink
from .dispatch import ChannelDispatcher, DispatchOutcome
from .models import (
    REMINDER_CHANNELS,
    AuditActorType,
    AuditChannel,
    ReminderChannel,
    SweepItemStatus,
)
from .reminder_queue import QUEUE_STATUSES, ReminderQueueEntry, ReminderQueueRepository
from .signature_requests import (
    SignatureRequest,
    SignatureRequestNotFoundError,
    SignatureRequestNotPendingError,
    SignatureRequestRepository,
)
from .tenant_preferences import TenantPreferenceRepository, TenantPreferences

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ScheduleResult:
    request_id: str
    entries: tuple[ReminderQueueEntry, ...] = ()
    skipped_reason: str | None = None

    @property
    def scheduled_count(self) -> int:
        return len(self.entries)


@dataclass(frozen=True)
class SweepItemResult:
    entry_id: str
    tenant_id: str
    request_id: str
    channel: ReminderChannel
    status: SweepItemStatus
    error_code: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class SweepReport:
    run_at: datetime
    items: tuple[SweepItemResult, ...] = ()

    @property
    def claimed_count(self) -> int:
        return len(self.items)

    @property
    def sent_count(self) -> int:
        return sum(1 for item in self.items if item.status == "sent")

    @property
    def failed_count(self) -> int:
        return sum(1 for item in self.items if item.status == "failed")

    @property
    def cancelled_count(self) -> int:
        return sum(1 for item in self.items if item.status == "cancelled")


@dataclass(frozen=True)
class RetryReport:
    run_at: datetime
    lookback: timedelta
    expired_claim_count: int
    retried_count: int
    max_attempts: int


@dataclass(frozen=True)
class CleanupReport:
    run_at: datetime
    cutoff: datetime
    deleted_count: int


@dataclass(frozen=True)
class ImmediateReminderResult:
    request: SignatureRequest
    outcomes: tuple[DispatchOutcome, ...]

    @property
    def any_sent(self) -> bool:
        return any(outcome.succeeded for outcome in self.outcomes)


@dataclass(frozen=True)
class ReminderStatistics:
    tenant_id: str
    counts: dict[str, int] = field(default_factory=dict)

    def count(self, status: str) -> int:
        return self.counts.get(status, 0)

    @property
    def total(self) -> int:
        return sum(self.counts.values())


class SignatureReminderEngine:
    """Schedules, sweeps and delivers signature reminders for pending requests."""

    def __init__(
        self,
        *,
        requests: SignatureRequestRepository,
        preferences: TenantPreferenceRepository,
        queue: ReminderQueueRepository,
        dispatcher: ChannelDispatcher,
        audit_sink: AuditSink,
        clock: Clock | None = None,
        sweep_max_workers: int = 4,
        sweep_batch_size: int = 100,
        retry_lookback: timedelta = timedelta(hours=24),
        claim_timeout: timedelta = timedelta(minutes=15),
        max_attempts: int = 3,
    ) -> None:
        self._requests = requests
        self._preferences = preferences
        self._queue = queue
        self._dispatcher = dispatcher
        self._audit_sink = audit_sink
        self._clock = clock or _now_utc
        self._sweep_batch_size = sweep_batch_size
        self._retry_lookback = retry_lookback
        self._claim_timeout = claim_timeout
        self._max_attempts = max_attempts
        self._executor = ThreadPoolExecutor(max_workers=sweep_max_workers, thread_name_prefix="reminder-sweep")

    def now(self) -> datetime:
        return self._clock()

    def close(self) -> None:
        self._executor.shutdown(wait=True)
        self._dispatcher.close()

    # Scheduling

    def schedule_reminders(self, request: SignatureRequest) -> ScheduleResult:
        if not request.is_pending:
            logger.info(
                "not scheduling reminders for %s/%s: status is %s",
                request.tenant_id,
                request.request_id,
                request.status,
            )
            return ScheduleResult(request_id=request.request_id, skipped_reason="request_not_pending")

        if request.expires_at is None:
            logger.warning(
                "signature request %s/%s has no expiry; reminders cannot be scheduled until expires_at is set",
                request.tenant_id,
                request.request_id,
            )
            return ScheduleResult(request_id=request.request_id, skipped_reason="missing_expiry")

        preferences = self._preferences.get(request.tenant_id)
        if preferences is None:
            logger.warning(
                "no reminder preferences for tenant %s; skipping request %s",
                request.tenant_id,
                request.request_id,
            )
            return ScheduleResult(request_id=request.request_id, skipped_reason="tenant_preferences_missing")

        if not preferences.day_offsets:
            logger.info("tenant %s has no reminder day offsets configured", request.tenant_id)
            return ScheduleResult(request_id=request.request_id, skipped_reason="no_day_offsets")

        channels = [channel for channel in REMINDER_CHANNELS if _schedulable(request, preferences, channel)]
        if not channels:
            logger.info(
                "no deliverable reminder channels for %s/%s",
                request.tenant_id,
                request.request_id,
            )
            return ScheduleResult(request_id=request.request_id, skipped_reason="no_deliverable_channels")

        now = self._clock()
        created: list[ReminderQueueEntry] = []
        for offset in preferences.day_offsets:
            scheduled_at = request.expires_at - timedelta(days=offset)
            if scheduled_at <= now:
                continue
            for channel in channels:
                entry = self._queue.insert_if_absent(
                    tenant_id=request.tenant_id,
                    request_id=request.request_id,
                    channel=channel,
                    scheduled_at=scheduled_at,
                    now=now,
                )
                if entry is not None:
                    created.append(entry)

        logger.info(
            "scheduled %d reminder(s) for %s/%s across %s",
            len(created),
            request.tenant_id,
            request.request_id,
            ",".join(channels),
        )
        return ScheduleResult(request_id=request.request_id, entries=tuple(created))

    def cancel_reminders(self, tenant_id: str, request_id: str) -> int:
        cancelled = self._queue.cancel_pending(tenant_id, request_id, now=self._clock())
        logger.info("cancelled %d pending reminder(s) for %s/%s", cancelled, tenant_id, request_id)
        return cancelled

    # Sweep

    def process_pending_reminders(self) -> SweepReport:
        run_at = self._clock()
        items: list[SweepItemResult] = []
        while True:
            claimed = self._queue.claim_due(now=run_at, max_entries=self._sweep_batch_size)
            if not claimed:
                break
            futures = [(entry, self._executor.submit(self._process_entry, entry)) for entry in claimed]
            for entry, future in futures:
                try:
                    items.append(future.result())
                except Exception as exc:
                    logger.exception("reminder %s could not be finalized", entry.entry_id)
                    items.append(_item(entry, "failed", "internal_error", str(exc) or type(exc).__name__))
            if len(claimed) < self._sweep_batch_size:
                break

        report = SweepReport(run_at=run_at, items=tuple(items))
        logger.info(
            "reminder sweep claimed=%d sent=%d failed=%d cancelled=%d",
            report.claimed_count,
            report.sent_count,
            report.failed_count,
            report.cancelled_count,
        )
        return report

    def _process_entry(self, entry: ReminderQueueEntry) -> SweepItemResult:
        try:
            return self._deliver_entry(entry)
        except Exception as exc:
            logger.exception("unexpected error while processing reminder %s", entry.entry_id)
            return self._fail(entry, "internal_error", f"Unexpected error: {exc}")

    def _deliver_entry(self, entry: ReminderQueueEntry) -> SweepItemResult:
        request = self._requests.get(entry.tenant_id, entry.request_id)
        if request is None:
            logger.error(
                "reminder %s references missing signature request %s/%s",
                entry.entry_id,
                entry.tenant_id,
                entry.request_id,
            )
            return self._fail(entry, "request_not_found", "Signature request no longer exists")

        if not request.is_pending:
            self._queue.mark_cancelled(entry.entry_id, now=self._clock())
            logger.info(
                "cancelled reminder %s: request %s/%s is %s",
                entry.entry_id,
                entry.tenant_id,
                entry.request_id,
                request.status,
            )
            return _item(entry, "cancelled")

        if request.expires_at is not None and request.expires_at <= self._clock():
            self._queue.mark_cancelled(entry.entry_id, now=self._clock())
            logger.info(
                "cancelled reminder %s: request %s/%s expired at %s",
                entry.entry_id,
                entry.tenant_id,
                entry.request_id,
                request.expires_at.isoformat(),
            )
            return _item(entry, "cancelled")

        preferences = self._preferences.get(entry.tenant_id)
        if preferences is None:
            logger.error("reminder %s references tenant %s without preferences", entry.entry_id, entry.tenant_id)
            return self._fail(entry, "tenant_not_found", f"No reminder preferences for tenant {entry.tenant_id}")

        outcome = self._dispatcher.dispatch(request, preferences, entry.channel, now=self._clock())
        if not outcome.succeeded:
            return self._fail(
                entry,
                outcome.error_code or "delivery_failed",
                outcome.error_message or "Delivery failed",
            )

        sent_at = self._clock()
        if not self._queue.mark_sent(entry.entry_id, sent_at=sent_at):
            logger.warning("reminder %s was delivered after its claim was released", entry.entry_id)
        self._requests.record_reminder_sent(entry.tenant_id, entry.request_id, sent_at=sent_at)
        self._record_audit(
            request,
            payload={"channel": entry.channel},
            actor_type="system",
            actor_id=None,
            channel=entry.channel,
        )
        return _item(entry, "sent")

    def _fail(self, entry: ReminderQueueEntry, error_code: str, error_message: str) -> SweepItemResult:
        self._queue.mark_failed(
            entry.entry_id,
            error_code=error_code,
            error_message=error_message,
            failed_at=self._clock(),
        )
        return _item(entry, "failed", error_code, error_message)

    # Maintenance

    def retry_failed_reminders(self) -> RetryReport:
        now = self._clock()
        expired = self._queue.expire_stale_claims(claimed_before=now - self._claim_timeout, now=now)
        if expired:
            logger.warning("expired %d stale reminder claim(s)", expired)
        retried = self._queue.requeue_failed(
            failed_since=now - self._retry_lookback,
            max_tries=self._max_attempts,
            now=now,
        )
        logger.info("requeued %d failed reminder(s)", retried)
        return RetryReport(
            run_at=now,
            lookback=self._retry_lookback,
            expired_claim_count=expired,
            retried_count=retried,
            max_attempts=self._max_attempts,
        )

    def cleanup_old_reminders(self, max_age_days: int) -> CleanupReport:
        if max_age_days < 1:
            raise ValueError("max_age_days must be at least 1")
        run_at = self._clock()
        cutoff = run_at - timedelta(days=max_age_days)
        deleted = self._queue.delete_terminal_before(cutoff=cutoff)
        logger.info("deleted %d reminder(s) scheduled before %s", deleted, cutoff.isoformat())
        return CleanupReport(run_at=run_at, cutoff=cutoff, deleted_count=deleted)

    # Immediate send

    def send_immediate_reminder(self, tenant_id: str, request_id: str, actor_id: str) -> ImmediateReminderResult:
        request = self._requests.get(tenant_id, request_id)
        if request is None:
            raise SignatureRequestNotFoundError(f"signature request not found: {request_id}")
        if not request.is_pending:
            raise SignatureRequestNotPendingError(f"signature request {request_id} is {request.status}")

        preferences = self._preferences.get(tenant_id)
        channels = [
            channel
            for channel in REMINDER_CHANNELS
            if request.reminder_enabled(channel) and (channel == "email" or request.has_phone)
        ]
        now = self._clock()
        outcomes: list[DispatchOutcome] = []
        for channel in channels:
            if preferences is None:
                outcomes.append(
                    DispatchOutcome.failure(channel, "tenant_not_found", f"No reminder preferences for tenant {tenant_id}")
                )
                continue
            outcomes.append(self._dispatcher.dispatch(request, preferences, channel, now=now))

        sent_channels = {outcome.channel for outcome in outcomes if outcome.succeeded}
        if not sent_channels:
            logger.warning("immediate reminder for %s/%s reached no channel", tenant_id, request_id)
            return ImmediateReminderResult(request=request, outcomes=tuple(outcomes))

        updated = self._requests.record_reminder_sent(tenant_id, request_id, sent_at=self._clock()) or request
        self._record_audit(
            request,
            payload={
                "email": "email" in sent_channels,
                "sms": "sms" in sent_channels,
                "whatsapp": "whatsapp" in sent_channels,
                "user_id": actor_id,
            },
            actor_type="user",
            actor_id=actor_id,
            channel="web",
        )
        logger.info(
            "immediate reminder for %s/%s sent via %s",
            tenant_id,
            request_id,
            ",".join(sorted(sent_channels)),
        )
        return ImmediateReminderResult(request=updated, outcomes=tuple(outcomes))

    # Introspection

    def get_pending_reminders(self, tenant_id: str, request_id: str) -> list[ReminderQueueEntry]:
        return self._queue.list_for_request(tenant_id, request_id, status="pending")

    def get_statistics(self, tenant_id: str) -> ReminderStatistics:
        counts = self._queue.count_by_status(tenant_id)
        return ReminderStatistics(
            tenant_id=tenant_id,
            counts={status: counts.get(status, 0) for status in QUEUE_STATUSES},
        )

    def _record_audit(
        self,
        request: SignatureRequest,
        *,
        payload: dict[str, Any],
        actor_type: AuditActorType,
        actor_id: str | None,
        channel: AuditChannel,
    ) -> None:
        try:
            self._audit_sink.record(
                tenant_id=request.tenant_id,
                request_id=request.request_id,
                event_type=EVENT_REMINDER_SENT,
                payload=payload,
                actor_type=actor_type,
                actor_id=actor_id,
                channel=channel,
            )
        except Exception:
            logger.exception(
                "failed to record %s audit event for %s/%s",
                EVENT_REMINDER_SENT,
                request.tenant_id,
                request.request_id,
            )


def _schedulable(request: SignatureRequest, preferences: TenantPreferences, channel: ReminderChannel) -> bool:
    if not (preferences.channel_enabled(channel) and request.reminder_enabled(channel)):
        return False
    if channel == "email":
        return True
    return request.has_phone and preferences.channel_provisioned(channel)


def _item(
    entry: ReminderQueueEntry,
    status: SweepItemStatus,
    error_code: str | None = None,
    error_message: str | None = None,
) -> SweepItemResult:
    return SweepItemResult(
        entry_id=entry.entry_id,
        tenant_id=entry.tenant_id,
        request_id=entry.request_id,
        channel=entry.channel,
        status=status,
        error_code=error_code,
        error_message=error_message,
    )
