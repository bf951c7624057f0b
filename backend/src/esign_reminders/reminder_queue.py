from __future__ import annotations

import secrets
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy import DateTime, Index, Integer, String, Text, create_engine, delete, func, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import ReminderChannel, ReminderQueueStatus

TERMINAL_STATUSES: frozenset[str] = frozenset({"sent", "failed", "cancelled"})
QUEUE_STATUSES: tuple[ReminderQueueStatus, ...] = ("pending", "processing", "sent", "failed", "cancelled")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _coerce_optional_utc(value: datetime | None) -> datetime | None:
    return _coerce_utc(value) if value is not None else None


@dataclass(frozen=True)
class ReminderQueueEntry:
    entry_id: str
    tenant_id: str
    request_id: str
    channel: ReminderChannel
    scheduled_at: datetime
    status: ReminderQueueStatus
    tries: int
    claimed_at: datetime | None
    sent_at: datetime | None
    failed_at: datetime | None
    error_code: str | None
    error_message: str | None
    created_at: datetime
    updated_at: datetime

    @property
    def slot(self) -> tuple[str, str, str, datetime]:
        return (self.tenant_id, self.request_id, self.channel, self.scheduled_at)


class ReminderQueueRepository(Protocol):
    def reset(self) -> None: ...

    def insert_if_absent(
        self,
        *,
        tenant_id: str,
        request_id: str,
        channel: ReminderChannel,
        scheduled_at: datetime,
        now: datetime,
    ) -> ReminderQueueEntry | None: ...

    def get(self, entry_id: str) -> ReminderQueueEntry | None: ...

    def list_for_request(
        self,
        tenant_id: str,
        request_id: str,
        *,
        status: ReminderQueueStatus | None = None,
    ) -> list[ReminderQueueEntry]: ...

    def claim_due(self, *, now: datetime, max_entries: int) -> list[ReminderQueueEntry]: ...

    def mark_sent(self, entry_id: str, *, sent_at: datetime) -> bool: ...

    def mark_failed(
        self,
        entry_id: str,
        *,
        error_code: str,
        error_message: str,
        failed_at: datetime,
    ) -> bool: ...

    def mark_cancelled(self, entry_id: str, *, now: datetime) -> bool: ...

    def cancel_pending(self, tenant_id: str, request_id: str, *, now: datetime) -> int: ...

    def expire_stale_claims(self, *, claimed_before: datetime, now: datetime) -> int: ...

    def requeue_failed(self, *, failed_since: datetime, max_tries: int, now: datetime) -> int: ...

    def delete_terminal_before(self, *, cutoff: datetime) -> int: ...

    def count_by_status(self, tenant_id: str) -> dict[str, int]: ...


class InMemoryReminderQueueRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._entry_counter = 1
        self._entries: dict[str, ReminderQueueEntry] = {}

    def reset(self) -> None:
        with self._lock:
            self._entry_counter = 1
            self._entries.clear()

    def insert_if_absent(
        self,
        *,
        tenant_id: str,
        request_id: str,
        channel: ReminderChannel,
        scheduled_at: datetime,
        now: datetime,
    ) -> ReminderQueueEntry | None:
        slot = (tenant_id, request_id, channel, _coerce_utc(scheduled_at))
        with self._lock:
            if self._pending_slot_taken(slot):
                return None
            entry_id = f"rem_{self._entry_counter:06d}"
            self._entry_counter += 1
            entry = ReminderQueueEntry(
                entry_id=entry_id,
                tenant_id=tenant_id,
                request_id=request_id,
                channel=channel,
                scheduled_at=slot[3],
                status="pending",
                tries=0,
                claimed_at=None,
                sent_at=None,
                failed_at=None,
                error_code=None,
                error_message=None,
                created_at=now,
                updated_at=now,
            )
            self._entries[entry_id] = entry
            return entry

    def get(self, entry_id: str) -> ReminderQueueEntry | None:
        with self._lock:
            return self._entries.get(entry_id)

    def list_for_request(
        self,
        tenant_id: str,
        request_id: str,
        *,
        status: ReminderQueueStatus | None = None,
    ) -> list[ReminderQueueEntry]:
        with self._lock:
            rows = [
                row
                for row in self._entries.values()
                if row.tenant_id == tenant_id
                and row.request_id == request_id
                and (status is None or row.status == status)
            ]
        return sorted(rows, key=lambda value: (value.scheduled_at, value.channel, value.entry_id))

    def claim_due(self, *, now: datetime, max_entries: int) -> list[ReminderQueueEntry]:
        with self._lock:
            due = sorted(
                (row for row in self._entries.values() if row.status == "pending" and row.scheduled_at <= now),
                key=lambda value: (value.scheduled_at, value.entry_id),
            )
            claimed: list[ReminderQueueEntry] = []
            for row in due[:max_entries]:
                updated = replace(row, status="processing", claimed_at=now, tries=row.tries + 1, updated_at=now)
                self._entries[row.entry_id] = updated
                claimed.append(updated)
            return claimed

    def mark_sent(self, entry_id: str, *, sent_at: datetime) -> bool:
        return self._transition(entry_id, "processing", status="sent", sent_at=sent_at, updated_at=sent_at)

    def mark_failed(
        self,
        entry_id: str,
        *,
        error_code: str,
        error_message: str,
        failed_at: datetime,
    ) -> bool:
        return self._transition(
            entry_id,
            "processing",
            status="failed",
            failed_at=failed_at,
            error_code=error_code,
            error_message=error_message,
            updated_at=failed_at,
        )

    def mark_cancelled(self, entry_id: str, *, now: datetime) -> bool:
        return self._transition(entry_id, "processing", status="cancelled", updated_at=now)

    def cancel_pending(self, tenant_id: str, request_id: str, *, now: datetime) -> int:
        cancelled = 0
        with self._lock:
            for entry_id, row in list(self._entries.items()):
                if row.tenant_id != tenant_id or row.request_id != request_id or row.status != "pending":
                    continue
                self._entries[entry_id] = replace(row, status="cancelled", updated_at=now)
                cancelled += 1
        return cancelled

    def expire_stale_claims(self, *, claimed_before: datetime, now: datetime) -> int:
        expired = 0
        with self._lock:
            for entry_id, row in list(self._entries.items()):
                if row.status != "processing" or row.claimed_at is None or row.claimed_at >= claimed_before:
                    continue
                self._entries[entry_id] = replace(
                    row,
                    status="failed",
                    failed_at=now,
                    error_code="claim_expired",
                    error_message="Dispatch did not finish before the claim timeout",
                    updated_at=now,
                )
                expired += 1
        return expired

    def requeue_failed(self, *, failed_since: datetime, max_tries: int, now: datetime) -> int:
        requeued = 0
        with self._lock:
            for entry_id, row in list(self._entries.items()):
                if row.status != "failed" or row.failed_at is None or row.failed_at < failed_since:
                    continue
                if row.tries >= max_tries:
                    continue
                if self._pending_slot_taken(row.slot):
                    continue
                self._entries[entry_id] = replace(
                    row,
                    status="pending",
                    claimed_at=None,
                    failed_at=None,
                    error_code=None,
                    error_message=None,
                    updated_at=now,
                )
                requeued += 1
        return requeued

    def delete_terminal_before(self, *, cutoff: datetime) -> int:
        with self._lock:
            doomed = [
                entry_id
                for entry_id, row in self._entries.items()
                if row.status in TERMINAL_STATUSES and row.scheduled_at < cutoff
            ]
            for entry_id in doomed:
                del self._entries[entry_id]
            return len(doomed)

    def count_by_status(self, tenant_id: str) -> dict[str, int]:
        counts = {status: 0 for status in QUEUE_STATUSES}
        with self._lock:
            for row in self._entries.values():
                if row.tenant_id == tenant_id:
                    counts[row.status] += 1
        return counts

    def _pending_slot_taken(self, slot: tuple[str, str, str, datetime]) -> bool:
        return any(row.status == "pending" and row.slot == slot for row in self._entries.values())

    def _transition(self, entry_id: str, expected_status: str, **changes: object) -> bool:
        with self._lock:
            row = self._entries.get(entry_id)
            if row is None or row.status != expected_status:
                return False
            self._entries[entry_id] = replace(row, **changes)  # type: ignore[arg-type]
            return True


class ReminderQueueBase(DeclarativeBase):
    pass


class _ReminderQueueRow(ReminderQueueBase):
    __tablename__ = "signature_reminder_queue"
    __table_args__ = (
        Index(
            "uq_signature_reminder_queue_pending_slot",
            "tenant_id",
            "request_id",
            "channel",
            "scheduled_at",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
        Index("ix_signature_reminder_queue_due", "status", "scheduled_at"),
    )

    entry_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    request_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    tries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(128), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _to_record(row: _ReminderQueueRow) -> ReminderQueueEntry:
    return ReminderQueueEntry(
        entry_id=row.entry_id,
        tenant_id=row.tenant_id,
        request_id=row.request_id,
        channel=row.channel,  # type: ignore[arg-type]
        scheduled_at=_coerce_utc(row.scheduled_at),
        status=row.status,  # type: ignore[arg-type]
        tries=row.tries,
        claimed_at=_coerce_optional_utc(row.claimed_at),
        sent_at=_coerce_optional_utc(row.sent_at),
        failed_at=_coerce_optional_utc(row.failed_at),
        error_code=row.error_code,
        error_message=row.error_message,
        created_at=_coerce_utc(row.created_at),
        updated_at=_coerce_utc(row.updated_at),
    )


class SqlAlchemyReminderQueueRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for REMINDER_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            ReminderQueueBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_ReminderQueueRow).delete()

    def insert_if_absent(
        self,
        *,
        tenant_id: str,
        request_id: str,
        channel: ReminderChannel,
        scheduled_at: datetime,
        now: datetime,
    ) -> ReminderQueueEntry | None:
        normalized_at = _coerce_utc(scheduled_at)
        row = _ReminderQueueRow(
            entry_id=f"rem_{secrets.token_hex(8)}",
            tenant_id=tenant_id,
            request_id=request_id,
            channel=channel,
            scheduled_at=normalized_at,
            status="pending",
            tries=0,
            created_at=now,
            updated_at=now,
        )
        with self._session() as session:
            try:
                with session.begin():
                    exists = session.execute(
                        select(_ReminderQueueRow.entry_id)
                        .where(_ReminderQueueRow.tenant_id == tenant_id)
                        .where(_ReminderQueueRow.request_id == request_id)
                        .where(_ReminderQueueRow.channel == channel)
                        .where(_ReminderQueueRow.scheduled_at == normalized_at)
                        .where(_ReminderQueueRow.status == "pending")
                        .limit(1)
                    ).scalar_one_or_none()
                    if exists is not None:
                        return None
                    session.add(row)
            except IntegrityError:
                # A concurrent scheduler won the pending slot.
                return None
            return _to_record(row)

    def get(self, entry_id: str) -> ReminderQueueEntry | None:
        with self._session() as session:
            row = session.get(_ReminderQueueRow, entry_id)
            if row is None:
                return None
            return _to_record(row)

    def list_for_request(
        self,
        tenant_id: str,
        request_id: str,
        *,
        status: ReminderQueueStatus | None = None,
    ) -> list[ReminderQueueEntry]:
        query = (
            select(_ReminderQueueRow)
            .where(_ReminderQueueRow.tenant_id == tenant_id)
            .where(_ReminderQueueRow.request_id == request_id)
        )
        if status is not None:
            query = query.where(_ReminderQueueRow.status == status)
        query = query.order_by(
            _ReminderQueueRow.scheduled_at.asc(),
            _ReminderQueueRow.channel.asc(),
            _ReminderQueueRow.entry_id.asc(),
        )
        with self._session() as session:
            return [_to_record(row) for row in session.execute(query).scalars()]

    def claim_due(self, *, now: datetime, max_entries: int) -> list[ReminderQueueEntry]:
        normalized_now = _coerce_utc(now)
        with self._session() as session:
            with session.begin():
                candidates = session.execute(
                    select(_ReminderQueueRow.entry_id)
                    .where(_ReminderQueueRow.status == "pending")
                    .where(_ReminderQueueRow.scheduled_at <= normalized_now)
                    .order_by(_ReminderQueueRow.scheduled_at.asc(), _ReminderQueueRow.entry_id.asc())
                    .limit(max_entries)
                    .with_for_update(skip_locked=True)
                ).scalars().all()
                claimed_ids: list[str] = []
                for entry_id in candidates:
                    # Only the sweep whose update flips the row out of pending owns the entry.
                    result = session.execute(
                        update(_ReminderQueueRow)
                        .where(_ReminderQueueRow.entry_id == entry_id)
                        .where(_ReminderQueueRow.status == "pending")
                        .values(
                            status="processing",
                            claimed_at=normalized_now,
                            tries=_ReminderQueueRow.tries + 1,
                            updated_at=normalized_now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 1:
                        claimed_ids.append(entry_id)
                if not claimed_ids:
                    return []
                rows = session.execute(
                    select(_ReminderQueueRow)
                    .where(_ReminderQueueRow.entry_id.in_(claimed_ids))
                    .order_by(_ReminderQueueRow.scheduled_at.asc(), _ReminderQueueRow.entry_id.asc())
                    .execution_options(populate_existing=True)
                ).scalars().all()
                return [_to_record(row) for row in rows]

    def mark_sent(self, entry_id: str, *, sent_at: datetime) -> bool:
        return self._transition(
            entry_id,
            "processing",
            status="sent",
            sent_at=_coerce_utc(sent_at),
            updated_at=_coerce_utc(sent_at),
        )

    def mark_failed(
        self,
        entry_id: str,
        *,
        error_code: str,
        error_message: str,
        failed_at: datetime,
    ) -> bool:
        return self._transition(
            entry_id,
            "processing",
            status="failed",
            failed_at=_coerce_utc(failed_at),
            error_code=error_code,
            error_message=error_message,
            updated_at=_coerce_utc(failed_at),
        )

    def mark_cancelled(self, entry_id: str, *, now: datetime) -> bool:
        return self._transition(entry_id, "processing", status="cancelled", updated_at=_coerce_utc(now))

    def cancel_pending(self, tenant_id: str, request_id: str, *, now: datetime) -> int:
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_ReminderQueueRow)
                    .where(_ReminderQueueRow.tenant_id == tenant_id)
                    .where(_ReminderQueueRow.request_id == request_id)
                    .where(_ReminderQueueRow.status == "pending")
                    .values(status="cancelled", updated_at=_coerce_utc(now))
                    .execution_options(synchronize_session=False)
                )
                return int(result.rowcount or 0)

    def expire_stale_claims(self, *, claimed_before: datetime, now: datetime) -> int:
        normalized_now = _coerce_utc(now)
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_ReminderQueueRow)
                    .where(_ReminderQueueRow.status == "processing")
                    .where(_ReminderQueueRow.claimed_at < _coerce_utc(claimed_before))
                    .values(
                        status="failed",
                        failed_at=normalized_now,
                        error_code="claim_expired",
                        error_message="Dispatch did not finish before the claim timeout",
                        updated_at=normalized_now,
                    )
                    .execution_options(synchronize_session=False)
                )
                return int(result.rowcount or 0)

    def requeue_failed(self, *, failed_since: datetime, max_tries: int, now: datetime) -> int:
        normalized_now = _coerce_utc(now)
        with self._session() as session:
            candidates = session.execute(
                select(_ReminderQueueRow.entry_id)
                .where(_ReminderQueueRow.status == "failed")
                .where(_ReminderQueueRow.failed_at >= _coerce_utc(failed_since))
                .where(_ReminderQueueRow.tries < max_tries)
                .order_by(_ReminderQueueRow.failed_at.asc())
            ).scalars().all()

        requeued = 0
        for entry_id in candidates:
            with self._session() as session:
                try:
                    with session.begin():
                        result = session.execute(
                            update(_ReminderQueueRow)
                            .where(_ReminderQueueRow.entry_id == entry_id)
                            .where(_ReminderQueueRow.status == "failed")
                            .values(
                                status="pending",
                                claimed_at=None,
                                failed_at=None,
                                error_code=None,
                                error_message=None,
                                updated_at=normalized_now,
                            )
                            .execution_options(synchronize_session=False)
                        )
                except IntegrityError:
                    # Another pending entry already covers this slot.
                    continue
                requeued += int(result.rowcount or 0)
        return requeued

    def delete_terminal_before(self, *, cutoff: datetime) -> int:
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    delete(_ReminderQueueRow)
                    .where(_ReminderQueueRow.status.in_(sorted(TERMINAL_STATUSES)))
                    .where(_ReminderQueueRow.scheduled_at < _coerce_utc(cutoff))
                    .execution_options(synchronize_session=False)
                )
                return int(result.rowcount or 0)

    def count_by_status(self, tenant_id: str) -> dict[str, int]:
        counts = {status: 0 for status in QUEUE_STATUSES}
        with self._session() as session:
            rows = session.execute(
                select(_ReminderQueueRow.status, func.count())
                .where(_ReminderQueueRow.tenant_id == tenant_id)
                .group_by(_ReminderQueueRow.status)
            ).all()
        for status, total in rows:
            counts[status] = int(total)
        return counts

    def _transition(self, entry_id: str, expected_status: str, **values: object) -> bool:
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_ReminderQueueRow)
                    .where(_ReminderQueueRow.entry_id == entry_id)
                    .where(_ReminderQueueRow.status == expected_status)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount == 1


def create_reminder_queue_repository(*, backend: str, database_url: str) -> ReminderQueueRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyReminderQueueRepository(database_url)
    if normalized == "inmemory":
        return InMemoryReminderQueueRepository()
    raise RuntimeError(f"unsupported REMINDER_STORE_BACKEND: {backend}")
