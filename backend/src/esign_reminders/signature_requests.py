from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy import Boolean, DateTime, Integer, String, create_engine, select, update
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import ReminderChannel, SignatureRequestStatus


class SignatureRequestNotFoundError(LookupError):
    """Raised when a signature request id does not exist under the given tenant."""


class SignatureRequestNotPendingError(ValueError):
    """Raised when an operation requires a pending signature request."""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _coerce_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _coerce_optional_utc(value: datetime | None) -> datetime | None:
    return _coerce_utc(value) if value is not None else None


@dataclass(frozen=True)
class SignatureRequest:
    request_id: str
    tenant_id: str
    signer_name: str
    signer_email: str
    signer_phone: str | None
    title: str
    status: SignatureRequestStatus
    expires_at: datetime | None
    reminder_email: bool = True
    reminder_sms: bool = False
    reminder_whatsapp: bool = False
    last_reminder_sent_at: datetime | None = None
    reminder_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == "pending"

    @property
    def has_phone(self) -> bool:
        return bool(self.signer_phone and self.signer_phone.strip())

    def reminder_enabled(self, channel: ReminderChannel) -> bool:
        if channel == "email":
            return self.reminder_email
        if channel == "sms":
            return self.reminder_sms
        return self.reminder_whatsapp


class SignatureRequestRepository(Protocol):
    def reset(self) -> None: ...

    def get(self, tenant_id: str, request_id: str) -> SignatureRequest | None: ...

    def save(self, request: SignatureRequest) -> tuple[SignatureRequest | None, SignatureRequest]: ...

    def record_reminder_sent(self, tenant_id: str, request_id: str, *, sent_at: datetime) -> SignatureRequest | None: ...


class InMemorySignatureRequestRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._requests: dict[tuple[str, str], SignatureRequest] = {}

    def reset(self) -> None:
        with self._lock:
            self._requests.clear()

    def get(self, tenant_id: str, request_id: str) -> SignatureRequest | None:
        with self._lock:
            return self._requests.get((tenant_id, request_id))

    def save(self, request: SignatureRequest) -> tuple[SignatureRequest | None, SignatureRequest]:
        """Insert or replace a request; returns ``(previous, saved)``.

        Reminder bookkeeping (``reminder_count``, ``last_reminder_sent_at``)
        is owned by :meth:`record_reminder_sent` and survives replacement.
        """
        key = (request.tenant_id, request.request_id)
        now = _now_utc()
        with self._lock:
            previous = self._requests.get(key)
            if previous is None:
                saved = replace(request, created_at=request.created_at or now, updated_at=now)
            else:
                saved = replace(
                    request,
                    reminder_count=previous.reminder_count,
                    last_reminder_sent_at=previous.last_reminder_sent_at,
                    created_at=previous.created_at,
                    updated_at=now,
                )
            self._requests[key] = saved
            return previous, saved

    def record_reminder_sent(self, tenant_id: str, request_id: str, *, sent_at: datetime) -> SignatureRequest | None:
        key = (tenant_id, request_id)
        with self._lock:
            row = self._requests.get(key)
            if row is None:
                return None
            updated = replace(
                row,
                reminder_count=row.reminder_count + 1,
                last_reminder_sent_at=sent_at,
                updated_at=_now_utc(),
            )
            self._requests[key] = updated
            return updated


class SignatureRequestsBase(DeclarativeBase):
    pass


class _SignatureRequestRow(SignatureRequestsBase):
    __tablename__ = "signature_requests"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    request_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    signer_name: Mapped[str] = mapped_column(String(256), nullable=False)
    signer_email: Mapped[str] = mapped_column(String(320), nullable=False)
    signer_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reminder_email: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    reminder_sms: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reminder_whatsapp: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    last_reminder_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    reminder_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _to_record(row: _SignatureRequestRow) -> SignatureRequest:
    return SignatureRequest(
        request_id=row.request_id,
        tenant_id=row.tenant_id,
        signer_name=row.signer_name,
        signer_email=row.signer_email,
        signer_phone=row.signer_phone,
        title=row.title,
        status=row.status,  # type: ignore[arg-type]
        expires_at=_coerce_optional_utc(row.expires_at),
        reminder_email=row.reminder_email,
        reminder_sms=row.reminder_sms,
        reminder_whatsapp=row.reminder_whatsapp,
        last_reminder_sent_at=_coerce_optional_utc(row.last_reminder_sent_at),
        reminder_count=row.reminder_count,
        created_at=_coerce_utc(row.created_at),
        updated_at=_coerce_utc(row.updated_at),
    )


class SqlAlchemySignatureRequestRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for REMINDER_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            SignatureRequestsBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_SignatureRequestRow).delete()

    def get(self, tenant_id: str, request_id: str) -> SignatureRequest | None:
        with self._session() as session:
            row = session.get(_SignatureRequestRow, (tenant_id, request_id))
            if row is None:
                return None
            return _to_record(row)

    def save(self, request: SignatureRequest) -> tuple[SignatureRequest | None, SignatureRequest]:
        now = _now_utc()
        with self._session() as session:
            with session.begin():
                row = session.get(_SignatureRequestRow, (request.tenant_id, request.request_id))
                previous = _to_record(row) if row is not None else None
                if row is None:
                    row = _SignatureRequestRow(
                        tenant_id=request.tenant_id,
                        request_id=request.request_id,
                        reminder_count=request.reminder_count,
                        last_reminder_sent_at=request.last_reminder_sent_at,
                        created_at=request.created_at or now,
                    )
                    session.add(row)
                row.signer_name = request.signer_name
                row.signer_email = request.signer_email
                row.signer_phone = request.signer_phone
                row.title = request.title
                row.status = request.status
                row.expires_at = request.expires_at
                row.reminder_email = request.reminder_email
                row.reminder_sms = request.reminder_sms
                row.reminder_whatsapp = request.reminder_whatsapp
                row.updated_at = now
                session.flush()
                saved = _to_record(row)
        return previous, saved

    def record_reminder_sent(self, tenant_id: str, request_id: str, *, sent_at: datetime) -> SignatureRequest | None:
        with self._session() as session:
            with session.begin():
                result = session.execute(
                    update(_SignatureRequestRow)
                    .where(_SignatureRequestRow.tenant_id == tenant_id)
                    .where(_SignatureRequestRow.request_id == request_id)
                    .values(
                        reminder_count=_SignatureRequestRow.reminder_count + 1,
                        last_reminder_sent_at=_coerce_utc(sent_at),
                        updated_at=_now_utc(),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    return None
            row = session.execute(
                select(_SignatureRequestRow)
                .where(_SignatureRequestRow.tenant_id == tenant_id)
                .where(_SignatureRequestRow.request_id == request_id)
                .execution_options(populate_existing=True)
            ).scalar_one()
            return _to_record(row)


def create_signature_request_repository(*, backend: str, database_url: str) -> SignatureRequestRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemySignatureRequestRepository(database_url)
    if normalized == "inmemory":
        return InMemorySignatureRequestRepository()
    raise RuntimeError(f"unsupported REMINDER_STORE_BACKEND: {backend}")
