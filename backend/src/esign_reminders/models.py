from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field, field_validator

ReminderChannel = Literal["email", "sms", "whatsapp"]
ReminderQueueStatus = Literal["pending", "processing", "sent", "failed", "cancelled"]
SignatureRequestStatus = Literal["pending", "signed", "declined", "expired", "cancelled"]
ChannelOutcomeStatus = Literal["sent", "failed"]
SweepItemStatus = Literal["sent", "failed", "cancelled"]
AuditActorType = Literal["system", "user"]
AuditChannel = Literal["email", "sms", "whatsapp", "web"]

REMINDER_CHANNELS: tuple[ReminderChannel, ...] = ("email", "sms", "whatsapp")
DEFAULT_DAY_OFFSETS: tuple[int, ...] = (7, 3, 1)


def _normalize_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TenantPreferencesRequest(BaseModel):
    organization_name: str = Field(min_length=1, max_length=256)
    email_enabled: bool = True
    sms_enabled: bool = False
    whatsapp_enabled: bool = False
    day_offsets: list[int] = Field(default_factory=lambda: list(DEFAULT_DAY_OFFSETS), max_length=30)
    email_template: str | None = Field(default=None, max_length=20000)
    sms_template: str | None = Field(default=None, max_length=1600)
    whatsapp_template: str | None = Field(default=None, max_length=4096)
    sms_provisioned: bool = False
    whatsapp_provisioned: bool = False

    @field_validator("organization_name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("organization_name cannot be blank")
        return normalized

    @field_validator("day_offsets")
    @classmethod
    def _normalize_offsets(cls, value: list[int]) -> list[int]:
        for offset in value:
            if offset < 0 or offset > 365:
                raise ValueError("day_offsets entries must be between 0 and 365")
        return sorted(set(value), reverse=True)

    @field_validator("email_template", "sms_template", "whatsapp_template")
    @classmethod
    def _blank_template_to_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value


class TenantPreferencesResponse(TenantPreferencesRequest):
    tenant_id: str


class SignatureRequestUpsertRequest(BaseModel):
    signer_name: str = Field(min_length=1, max_length=256)
    signer_email: str = Field(min_length=3, max_length=320)
    signer_phone: str | None = Field(default=None, max_length=32)
    title: str = Field(min_length=1, max_length=512)
    status: SignatureRequestStatus = "pending"
    expires_at: datetime | None = None
    reminder_email: bool = True
    reminder_sms: bool = False
    reminder_whatsapp: bool = False

    @field_validator("signer_phone")
    @classmethod
    def _blank_phone_to_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        return normalized or None

    @field_validator("expires_at")
    @classmethod
    def _normalize_expiry(cls, value: datetime | None) -> datetime | None:
        return _normalize_utc(value)


class SignatureRequestResponse(BaseModel):
    request_id: str
    tenant_id: str
    signer_name: str
    signer_phone_present: bool
    title: str
    status: SignatureRequestStatus
    expires_at: datetime | None = None
    reminder_email: bool
    reminder_sms: bool
    reminder_whatsapp: bool
    last_reminder_sent_at: datetime | None = None
    reminder_count: int
    scheduled_count: int = 0
    cancelled_count: int = 0


class ReminderQueueItem(BaseModel):
    entry_id: str
    tenant_id: str
    request_id: str
    channel: ReminderChannel
    scheduled_at: datetime
    status: ReminderQueueStatus
    tries: int
    sent_at: datetime | None = None
    failed_at: datetime | None = None
    error_code: str | None = None
    error_message: str | None = None
    created_at: datetime


class ReminderListResponse(BaseModel):
    request_id: str
    items: list[ReminderQueueItem]


class ReminderScheduleResponse(BaseModel):
    request_id: str
    scheduled_count: int
    skipped_reason: str | None = None
    items: list[ReminderQueueItem]


class ReminderCancelResponse(BaseModel):
    request_id: str
    cancelled_count: int


class ReminderSweepItem(BaseModel):
    entry_id: str
    request_id: str
    channel: ReminderChannel
    status: SweepItemStatus
    error_code: str | None = None
    error_message: str | None = None


class ReminderSweepResponse(BaseModel):
    run_at: datetime
    claimed_count: int
    sent_count: int
    failed_count: int
    cancelled_count: int
    results: list[ReminderSweepItem]


class ReminderRetryResponse(BaseModel):
    run_at: datetime
    lookback_hours: float
    expired_claim_count: int
    retried_count: int
    max_attempts: int


class ReminderCleanupRequest(BaseModel):
    max_age_days: int | None = Field(default=None, ge=1, le=3650)


class ReminderCleanupResponse(BaseModel):
    cutoff: datetime
    deleted_count: int


class ImmediateReminderRequest(BaseModel):
    actor_id: str = Field(min_length=1, max_length=128)


class ReminderChannelResult(BaseModel):
    channel: ReminderChannel
    status: ChannelOutcomeStatus
    provider_status: str | None = None
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class ImmediateReminderResponse(BaseModel):
    request_id: str
    any_sent: bool
    reminder_count: int
    last_reminder_sent_at: datetime | None = None
    channel_results: list[ReminderChannelResult]


class ReminderStatisticsResponse(BaseModel):
    tenant_id: str
    pending_count: int
    processing_count: int
    sent_count: int
    failed_count: int
    cancelled_count: int
    total_count: int
