from __future__ import annotations

import logging
from datetime import timedelta

from fastapi import APIRouter, HTTPException

from .audit import AuditSink, create_audit_sink
from .config import Settings, get_settings
from .dispatch import ChannelDispatcher
from .models import (
    ImmediateReminderRequest,
    ImmediateReminderResponse,
    ReminderCancelResponse,
    ReminderChannel,
    ReminderChannelResult,
    ReminderCleanupRequest,
    ReminderCleanupResponse,
    ReminderListResponse,
    ReminderQueueItem,
    ReminderRetryResponse,
    ReminderScheduleResponse,
    ReminderStatisticsResponse,
    ReminderSweepItem,
    ReminderSweepResponse,
    SignatureRequestResponse,
    SignatureRequestUpsertRequest,
    TenantPreferencesRequest,
    TenantPreferencesResponse,
)
from .notifier import (
    EmailTransport,
    HttpEmailTransport,
    HttpMessagingTransport,
    MessagingTransport,
    StubEmailTransport,
    StubMessagingTransport,
)
from .reminder_engine import Clock, SignatureReminderEngine
from .reminder_queue import ReminderQueueEntry, ReminderQueueRepository, create_reminder_queue_repository
from .signature_requests import (
    SignatureRequest,
    SignatureRequestNotFoundError,
    SignatureRequestNotPendingError,
    SignatureRequestRepository,
    create_signature_request_repository,
)
from .tenant_preferences import TenantPreferenceRepository, TenantPreferences, create_tenant_preference_repository

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/signatures", tags=["signatures"])


def _create_email_transport(settings: Settings) -> EmailTransport | None:
    if settings.email_sender_type == "http":
        if not settings.email_api_base_url.strip() or not settings.email_api_key.strip():
            logger.warning("EMAIL_SENDER_TYPE=http without credentials; email reminders are disabled")
            return None
        return HttpEmailTransport(
            base_url=settings.email_api_base_url,
            api_key=settings.email_api_key,
            timeout_seconds=settings.transport_timeout_seconds,
        )
    return StubEmailTransport(enabled=settings.email_enabled)


def _create_messaging_transport(settings: Settings, channel: ReminderChannel) -> MessagingTransport | None:
    if settings.messaging_sender_type == "http":
        if not settings.messaging_api_base_url.strip() or not settings.messaging_api_key.strip():
            logger.warning("MESSAGING_SENDER_TYPE=http without credentials; %s reminders are disabled", channel)
            return None
        return HttpMessagingTransport(
            base_url=settings.messaging_api_base_url,
            api_key=settings.messaging_api_key,
            channel=channel,
            timeout_seconds=settings.transport_timeout_seconds,
        )
    return StubMessagingTransport(enabled=settings.messaging_enabled, channel=channel)


def _create_dispatcher(settings: Settings) -> ChannelDispatcher:
    return ChannelDispatcher(
        email_transport=_create_email_transport(settings),
        sms_transport=_create_messaging_transport(settings, "sms"),
        whatsapp_transport=_create_messaging_transport(settings, "whatsapp"),
        timeout_seconds=settings.reminder_send_timeout_seconds,
        max_workers=settings.reminder_sweep_max_workers * 2,
    )


def _create_engine(
    settings: Settings,
    *,
    dispatcher: ChannelDispatcher,
    clock: Clock | None = None,
) -> SignatureReminderEngine:
    return SignatureReminderEngine(
        requests=request_repo,
        preferences=preference_repo,
        queue=queue_repo,
        dispatcher=dispatcher,
        audit_sink=audit_sink,
        clock=clock,
        sweep_max_workers=settings.reminder_sweep_max_workers,
        sweep_batch_size=settings.reminder_sweep_batch_size,
        retry_lookback=timedelta(hours=settings.reminder_retry_lookback_hours),
        claim_timeout=timedelta(minutes=settings.reminder_claim_timeout_minutes),
        max_attempts=settings.reminder_max_attempts,
    )


request_repo: SignatureRequestRepository = create_signature_request_repository(
    backend=_settings.reminder_store_backend,
    database_url=_settings.database_url,
)
preference_repo: TenantPreferenceRepository = create_tenant_preference_repository(
    backend=_settings.reminder_store_backend,
    database_url=_settings.database_url,
)
queue_repo: ReminderQueueRepository = create_reminder_queue_repository(
    backend=_settings.reminder_store_backend,
    database_url=_settings.database_url,
)
audit_sink: AuditSink = create_audit_sink(
    backend=_settings.reminder_store_backend,
    database_url=_settings.database_url,
)
reminder_engine: SignatureReminderEngine = _create_engine(_settings, dispatcher=_create_dispatcher(_settings))


def reset_runtime_state_for_tests() -> None:
    request_repo.reset()
    preference_repo.reset()
    queue_repo.reset()
    audit_sink.reset()


def _queue_item(entry: ReminderQueueEntry) -> ReminderQueueItem:
    return ReminderQueueItem(
        entry_id=entry.entry_id,
        tenant_id=entry.tenant_id,
        request_id=entry.request_id,
        channel=entry.channel,
        scheduled_at=entry.scheduled_at,
        status=entry.status,
        tries=entry.tries,
        sent_at=entry.sent_at,
        failed_at=entry.failed_at,
        error_code=entry.error_code,
        error_message=entry.error_message,
        created_at=entry.created_at,
    )


def _request_response(
    request: SignatureRequest,
    *,
    scheduled_count: int = 0,
    cancelled_count: int = 0,
) -> SignatureRequestResponse:
    return SignatureRequestResponse(
        request_id=request.request_id,
        tenant_id=request.tenant_id,
        signer_name=request.signer_name,
        signer_phone_present=request.has_phone,
        title=request.title,
        status=request.status,
        expires_at=request.expires_at,
        reminder_email=request.reminder_email,
        reminder_sms=request.reminder_sms,
        reminder_whatsapp=request.reminder_whatsapp,
        last_reminder_sent_at=request.last_reminder_sent_at,
        reminder_count=request.reminder_count,
        scheduled_count=scheduled_count,
        cancelled_count=cancelled_count,
    )


def _preferences_response(preferences: TenantPreferences) -> TenantPreferencesResponse:
    return TenantPreferencesResponse(
        tenant_id=preferences.tenant_id,
        organization_name=preferences.organization_name,
        email_enabled=preferences.email_enabled,
        sms_enabled=preferences.sms_enabled,
        whatsapp_enabled=preferences.whatsapp_enabled,
        day_offsets=list(preferences.day_offsets),
        email_template=preferences.email_template,
        sms_template=preferences.sms_template,
        whatsapp_template=preferences.whatsapp_template,
        sms_provisioned=preferences.sms_provisioned,
        whatsapp_provisioned=preferences.whatsapp_provisioned,
    )


def _require_request(tenant_id: str, request_id: str) -> SignatureRequest:
    request = request_repo.get(tenant_id, request_id)
    if request is None:
        raise HTTPException(status_code=404, detail=f"signature request not found: {request_id}")
    return request


@router.put("/tenants/{tenant_id}/reminder-preferences", response_model=TenantPreferencesResponse)
def put_reminder_preferences(tenant_id: str, payload: TenantPreferencesRequest) -> TenantPreferencesResponse:
    saved = preference_repo.save(
        TenantPreferences(
            tenant_id=tenant_id,
            organization_name=payload.organization_name,
            email_enabled=payload.email_enabled,
            sms_enabled=payload.sms_enabled,
            whatsapp_enabled=payload.whatsapp_enabled,
            day_offsets=tuple(payload.day_offsets),
            email_template=payload.email_template,
            sms_template=payload.sms_template,
            whatsapp_template=payload.whatsapp_template,
            sms_provisioned=payload.sms_provisioned,
            whatsapp_provisioned=payload.whatsapp_provisioned,
        )
    )
    return _preferences_response(saved)


@router.get("/tenants/{tenant_id}/reminder-preferences", response_model=TenantPreferencesResponse)
def get_reminder_preferences(tenant_id: str) -> TenantPreferencesResponse:
    preferences = preference_repo.get(tenant_id)
    if preferences is None:
        raise HTTPException(status_code=404, detail=f"reminder preferences not found: {tenant_id}")
    return _preferences_response(preferences)


@router.put("/tenants/{tenant_id}/requests/{request_id}", response_model=SignatureRequestResponse)
def upsert_signature_request(
    tenant_id: str,
    request_id: str,
    payload: SignatureRequestUpsertRequest,
) -> SignatureRequestResponse:
    previous, saved = request_repo.save(
        SignatureRequest(
            request_id=request_id,
            tenant_id=tenant_id,
            signer_name=payload.signer_name,
            signer_email=payload.signer_email,
            signer_phone=payload.signer_phone,
            title=payload.title,
            status=payload.status,
            expires_at=payload.expires_at,
            reminder_email=payload.reminder_email,
            reminder_sms=payload.reminder_sms,
            reminder_whatsapp=payload.reminder_whatsapp,
        )
    )

    cancelled_count = 0
    scheduled_count = 0
    if not saved.is_pending:
        if previous is not None and previous.is_pending:
            cancelled_count = reminder_engine.cancel_reminders(tenant_id, request_id)
    else:
        if previous is not None and previous.is_pending and previous.expires_at != saved.expires_at:
            # Reminders keyed to the old expiry no longer apply.
            cancelled_count = reminder_engine.cancel_reminders(tenant_id, request_id)
        scheduled_count = reminder_engine.schedule_reminders(saved).scheduled_count

    return _request_response(saved, scheduled_count=scheduled_count, cancelled_count=cancelled_count)


@router.post(
    "/tenants/{tenant_id}/requests/{request_id}/reminders/schedule",
    response_model=ReminderScheduleResponse,
)
def schedule_request_reminders(tenant_id: str, request_id: str) -> ReminderScheduleResponse:
    request = _require_request(tenant_id, request_id)
    result = reminder_engine.schedule_reminders(request)
    return ReminderScheduleResponse(
        request_id=request_id,
        scheduled_count=result.scheduled_count,
        skipped_reason=result.skipped_reason,
        items=[_queue_item(entry) for entry in result.entries],
    )


@router.post(
    "/tenants/{tenant_id}/requests/{request_id}/reminders/cancel",
    response_model=ReminderCancelResponse,
)
def cancel_request_reminders(tenant_id: str, request_id: str) -> ReminderCancelResponse:
    cancelled = reminder_engine.cancel_reminders(tenant_id, request_id)
    return ReminderCancelResponse(request_id=request_id, cancelled_count=cancelled)


@router.post(
    "/tenants/{tenant_id}/requests/{request_id}/reminders/send-now",
    response_model=ImmediateReminderResponse,
)
def send_reminder_now(
    tenant_id: str,
    request_id: str,
    payload: ImmediateReminderRequest,
) -> ImmediateReminderResponse:
    try:
        result = reminder_engine.send_immediate_reminder(tenant_id, request_id, payload.actor_id)
    except SignatureRequestNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"signature request not found: {request_id}") from exc
    except SignatureRequestNotPendingError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    return ImmediateReminderResponse(
        request_id=request_id,
        any_sent=result.any_sent,
        reminder_count=result.request.reminder_count,
        last_reminder_sent_at=result.request.last_reminder_sent_at,
        channel_results=[
            ReminderChannelResult(
                channel=outcome.channel,
                status=outcome.status,
                provider_status=outcome.provider_status,
                provider_message_id=outcome.provider_message_id,
                error_code=outcome.error_code,
                error_message=outcome.error_message,
            )
            for outcome in result.outcomes
        ],
    )


@router.get("/tenants/{tenant_id}/requests/{request_id}/reminders", response_model=ReminderListResponse)
def list_pending_reminders(tenant_id: str, request_id: str) -> ReminderListResponse:
    entries = reminder_engine.get_pending_reminders(tenant_id, request_id)
    return ReminderListResponse(request_id=request_id, items=[_queue_item(entry) for entry in entries])


@router.get("/tenants/{tenant_id}/reminders/statistics", response_model=ReminderStatisticsResponse)
def reminder_statistics(tenant_id: str) -> ReminderStatisticsResponse:
    stats = reminder_engine.get_statistics(tenant_id)
    return ReminderStatisticsResponse(
        tenant_id=tenant_id,
        pending_count=stats.count("pending"),
        processing_count=stats.count("processing"),
        sent_count=stats.count("sent"),
        failed_count=stats.count("failed"),
        cancelled_count=stats.count("cancelled"),
        total_count=stats.total,
    )


@router.post("/reminders/sweep", response_model=ReminderSweepResponse)
def sweep_reminders() -> ReminderSweepResponse:
    report = reminder_engine.process_pending_reminders()
    return ReminderSweepResponse(
        run_at=report.run_at,
        claimed_count=report.claimed_count,
        sent_count=report.sent_count,
        failed_count=report.failed_count,
        cancelled_count=report.cancelled_count,
        results=[
            ReminderSweepItem(
                entry_id=item.entry_id,
                request_id=item.request_id,
                channel=item.channel,
                status=item.status,
                error_code=item.error_code,
                error_message=item.error_message,
            )
            for item in report.items
        ],
    )


@router.post("/reminders/retry", response_model=ReminderRetryResponse)
def retry_reminders() -> ReminderRetryResponse:
    report = reminder_engine.retry_failed_reminders()
    return ReminderRetryResponse(
        run_at=report.run_at,
        lookback_hours=report.lookback.total_seconds() / 3600,
        expired_claim_count=report.expired_claim_count,
        retried_count=report.retried_count,
        max_attempts=report.max_attempts,
    )


@router.post("/reminders/cleanup", response_model=ReminderCleanupResponse)
def cleanup_reminders(payload: ReminderCleanupRequest | None = None) -> ReminderCleanupResponse:
    max_age_days = _settings.reminder_cleanup_default_days
    if payload is not None and payload.max_age_days is not None:
        max_age_days = payload.max_age_days
    try:
        report = reminder_engine.cleanup_old_reminders(max_age_days)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ReminderCleanupResponse(cutoff=report.cutoff, deleted_count=report.deleted_count)
