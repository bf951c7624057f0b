from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Protocol

from sqlalchemy import JSON, DateTime, Index, String, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import AuditActorType, AuditChannel

EVENT_REMINDER_SENT = "reminder_sent"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class AuditEvent:
    event_id: str
    tenant_id: str
    request_id: str
    event_type: str
    actor_type: AuditActorType
    actor_id: str | None
    channel: AuditChannel
    created_at: datetime
    payload: dict[str, Any] = field(default_factory=dict)


class AuditSink(Protocol):
    def record(
        self,
        *,
        tenant_id: str,
        request_id: str,
        event_type: str,
        payload: dict[str, Any],
        actor_type: AuditActorType,
        actor_id: str | None,
        channel: AuditChannel,
    ) -> AuditEvent: ...

    def list_events(self, tenant_id: str, request_id: str) -> list[AuditEvent]: ...

    def reset(self) -> None: ...


class InMemoryAuditSink:
    def __init__(self) -> None:
        self._lock = Lock()
        self._event_counter = 1
        self._events: list[AuditEvent] = []

    def reset(self) -> None:
        with self._lock:
            self._event_counter = 1
            self._events.clear()

    def record(
        self,
        *,
        tenant_id: str,
        request_id: str,
        event_type: str,
        payload: dict[str, Any],
        actor_type: AuditActorType,
        actor_id: str | None,
        channel: AuditChannel,
    ) -> AuditEvent:
        with self._lock:
            event = AuditEvent(
                event_id=f"aud_{self._event_counter:06d}",
                tenant_id=tenant_id,
                request_id=request_id,
                event_type=event_type,
                actor_type=actor_type,
                actor_id=actor_id,
                channel=channel,
                created_at=_now_utc(),
                payload=dict(payload),
            )
            self._event_counter += 1
            self._events.append(event)
            return event

    def list_events(self, tenant_id: str, request_id: str) -> list[AuditEvent]:
        with self._lock:
            return [
                event
                for event in self._events
                if event.tenant_id == tenant_id and event.request_id == request_id
            ]


class AuditBase(DeclarativeBase):
    pass


class _AuditEventRow(AuditBase):
    __tablename__ = "signature_audit_events"
    __table_args__ = (Index("ix_signature_audit_events_request", "tenant_id", "request_id", "created_at"),)

    event_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    request_id: Mapped[str] = mapped_column(String(128), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    actor_type: Mapped[str] = mapped_column(String(16), nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _to_record(row: _AuditEventRow) -> AuditEvent:
    return AuditEvent(
        event_id=row.event_id,
        tenant_id=row.tenant_id,
        request_id=row.request_id,
        event_type=row.event_type,
        actor_type=row.actor_type,  # type: ignore[arg-type]
        actor_id=row.actor_id,
        channel=row.channel,  # type: ignore[arg-type]
        created_at=_coerce_utc(row.created_at),
        payload=dict(row.payload or {}),
    )


class SqlAlchemyAuditSink:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for REMINDER_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            AuditBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_AuditEventRow).delete()

    def record(
        self,
        *,
        tenant_id: str,
        request_id: str,
        event_type: str,
        payload: dict[str, Any],
        actor_type: AuditActorType,
        actor_id: str | None,
        channel: AuditChannel,
    ) -> AuditEvent:
        row = _AuditEventRow(
            event_id=f"aud_{secrets.token_hex(8)}",
            tenant_id=tenant_id,
            request_id=request_id,
            event_type=event_type,
            payload=dict(payload),
            actor_type=actor_type,
            actor_id=actor_id,
            channel=channel,
            created_at=_now_utc(),
        )
        with self._session() as session:
            with session.begin():
                session.add(row)
        return _to_record(row)

    def list_events(self, tenant_id: str, request_id: str) -> list[AuditEvent]:
        with self._session() as session:
            rows = session.execute(
                select(_AuditEventRow)
                .where(_AuditEventRow.tenant_id == tenant_id)
                .where(_AuditEventRow.request_id == request_id)
                .order_by(_AuditEventRow.created_at.asc(), _AuditEventRow.event_id.asc())
            ).scalars()
            return [_to_record(row) for row in rows]


def create_audit_sink(*, backend: str, database_url: str) -> AuditSink:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyAuditSink(database_url)
    if normalized == "inmemory":
        return InMemoryAuditSink()
    raise RuntimeError(f"unsupported REMINDER_STORE_BACKEND: {backend}")
