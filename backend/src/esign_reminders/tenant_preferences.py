from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Protocol

from sqlalchemy import Boolean, DateTime, String, Text, create_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import DEFAULT_DAY_OFFSETS, ReminderChannel


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TenantPreferences:
    tenant_id: str
    organization_name: str
    email_enabled: bool = True
    sms_enabled: bool = False
    whatsapp_enabled: bool = False
    day_offsets: tuple[int, ...] = DEFAULT_DAY_OFFSETS
    email_template: str | None = None
    sms_template: str | None = None
    whatsapp_template: str | None = None
    sms_provisioned: bool = False
    whatsapp_provisioned: bool = False

    def channel_enabled(self, channel: ReminderChannel) -> bool:
        if channel == "email":
            return self.email_enabled
        if channel == "sms":
            return self.sms_enabled
        return self.whatsapp_enabled

    def channel_provisioned(self, channel: ReminderChannel) -> bool:
        # Email goes through the platform mailer; SMS and WhatsApp need tenant credentials.
        if channel == "email":
            return True
        if channel == "sms":
            return self.sms_provisioned
        return self.whatsapp_provisioned

    def template_for(self, channel: ReminderChannel) -> str | None:
        if channel == "email":
            template = self.email_template
        elif channel == "sms":
            template = self.sms_template
        else:
            template = self.whatsapp_template
        if template is None or not template.strip():
            return None
        return template


class TenantPreferenceRepository(Protocol):
    def reset(self) -> None: ...

    def get(self, tenant_id: str) -> TenantPreferences | None: ...

    def save(self, preferences: TenantPreferences) -> TenantPreferences: ...


class InMemoryTenantPreferenceRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._preferences: dict[str, TenantPreferences] = {}

    def reset(self) -> None:
        with self._lock:
            self._preferences.clear()

    def get(self, tenant_id: str) -> TenantPreferences | None:
        with self._lock:
            return self._preferences.get(tenant_id)

    def save(self, preferences: TenantPreferences) -> TenantPreferences:
        with self._lock:
            self._preferences[preferences.tenant_id] = preferences
            return preferences


class TenantPreferencesBase(DeclarativeBase):
    pass


class _TenantPreferencesRow(TenantPreferencesBase):
    __tablename__ = "tenant_reminder_preferences"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    organization_name: Mapped[str] = mapped_column(String(256), nullable=False)
    email_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sms_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    whatsapp_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    day_offsets_json: Mapped[str] = mapped_column(Text, nullable=False, default="[7,3,1]")
    email_template: Mapped[str | None] = mapped_column(Text, nullable=True)
    sms_template: Mapped[str | None] = mapped_column(Text, nullable=True)
    whatsapp_template: Mapped[str | None] = mapped_column(Text, nullable=True)
    sms_provisioned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    whatsapp_provisioned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _to_record(row: _TenantPreferencesRow) -> TenantPreferences:
    raw_offsets = json.loads(row.day_offsets_json or "[]")
    return TenantPreferences(
        tenant_id=row.tenant_id,
        organization_name=row.organization_name,
        email_enabled=row.email_enabled,
        sms_enabled=row.sms_enabled,
        whatsapp_enabled=row.whatsapp_enabled,
        day_offsets=tuple(int(value) for value in raw_offsets if isinstance(value, int)),
        email_template=row.email_template,
        sms_template=row.sms_template,
        whatsapp_template=row.whatsapp_template,
        sms_provisioned=row.sms_provisioned,
        whatsapp_provisioned=row.whatsapp_provisioned,
    )


class SqlAlchemyTenantPreferenceRepository:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for REMINDER_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            TenantPreferencesBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_TenantPreferencesRow).delete()

    def get(self, tenant_id: str) -> TenantPreferences | None:
        with self._session() as session:
            row = session.get(_TenantPreferencesRow, tenant_id)
            if row is None:
                return None
            return _to_record(row)

    def save(self, preferences: TenantPreferences) -> TenantPreferences:
        with self._session() as session:
            with session.begin():
                row = session.get(_TenantPreferencesRow, preferences.tenant_id)
                if row is None:
                    row = _TenantPreferencesRow(tenant_id=preferences.tenant_id)
                    session.add(row)
                row.organization_name = preferences.organization_name
                row.email_enabled = preferences.email_enabled
                row.sms_enabled = preferences.sms_enabled
                row.whatsapp_enabled = preferences.whatsapp_enabled
                row.day_offsets_json = json.dumps(list(preferences.day_offsets), separators=(",", ":"))
                row.email_template = preferences.email_template
                row.sms_template = preferences.sms_template
                row.whatsapp_template = preferences.whatsapp_template
                row.sms_provisioned = preferences.sms_provisioned
                row.whatsapp_provisioned = preferences.whatsapp_provisioned
                row.updated_at = _now_utc()
        return preferences


def create_tenant_preference_repository(*, backend: str, database_url: str) -> TenantPreferenceRepository:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyTenantPreferenceRepository(database_url)
    if normalized == "inmemory":
        return InMemoryTenantPreferenceRepository()
    raise RuntimeError(f"unsupported REMINDER_STORE_BACKEND: {backend}")
