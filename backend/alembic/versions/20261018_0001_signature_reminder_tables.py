"""Create signature request, reminder preference, reminder queue, and audit tables."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "signature_requests",
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("request_id", sa.String(length=128), nullable=False),
        sa.Column("signer_name", sa.String(length=256), nullable=False),
        sa.Column("signer_email", sa.String(length=320), nullable=False),
        sa.Column("signer_phone", sa.String(length=32), nullable=True),
        sa.Column("title", sa.String(length=512), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reminder_email", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("reminder_sms", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("reminder_whatsapp", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_reminder_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reminder_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("tenant_id", "request_id"),
    )
    op.create_index("ix_signature_requests_status", "signature_requests", ["status"], unique=False)

    op.create_table(
        "tenant_reminder_preferences",
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("organization_name", sa.String(length=256), nullable=False),
        sa.Column("email_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("sms_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("whatsapp_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("day_offsets_json", sa.Text(), nullable=False, server_default="[7,3,1]"),
        sa.Column("email_template", sa.Text(), nullable=True),
        sa.Column("sms_template", sa.Text(), nullable=True),
        sa.Column("whatsapp_template", sa.Text(), nullable=True),
        sa.Column("sms_provisioned", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("whatsapp_provisioned", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("tenant_id"),
    )

    op.create_table(
        "signature_reminder_queue",
        sa.Column("entry_id", sa.String(length=64), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("request_id", sa.String(length=128), nullable=False),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False, server_default="pending"),
        sa.Column("tries", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_code", sa.String(length=128), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("entry_id"),
    )
    op.create_index(
        "ix_signature_reminder_queue_tenant_id",
        "signature_reminder_queue",
        ["tenant_id"],
        unique=False,
    )
    op.create_index(
        "ix_signature_reminder_queue_request_id",
        "signature_reminder_queue",
        ["request_id"],
        unique=False,
    )
    op.create_index(
        "ix_signature_reminder_queue_due",
        "signature_reminder_queue",
        ["status", "scheduled_at"],
        unique=False,
    )
    op.create_index(
        "uq_signature_reminder_queue_pending_slot",
        "signature_reminder_queue",
        ["tenant_id", "request_id", "channel", "scheduled_at"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
        sqlite_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "signature_audit_events",
        sa.Column("event_id", sa.String(length=64), nullable=False),
        sa.Column("tenant_id", sa.String(length=64), nullable=False),
        sa.Column("request_id", sa.String(length=128), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("actor_type", sa.String(length=16), nullable=False),
        sa.Column("actor_id", sa.String(length=128), nullable=True),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_index(
        "ix_signature_audit_events_request",
        "signature_audit_events",
        ["tenant_id", "request_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_signature_audit_events_request", table_name="signature_audit_events")
    op.drop_table("signature_audit_events")

    op.drop_index("uq_signature_reminder_queue_pending_slot", table_name="signature_reminder_queue")
    op.drop_index("ix_signature_reminder_queue_due", table_name="signature_reminder_queue")
    op.drop_index("ix_signature_reminder_queue_request_id", table_name="signature_reminder_queue")
    op.drop_index("ix_signature_reminder_queue_tenant_id", table_name="signature_reminder_queue")
    op.drop_table("signature_reminder_queue")

    op.drop_table("tenant_reminder_preferences")

    op.drop_index("ix_signature_requests_status", table_name="signature_requests")
    op.drop_table("signature_requests")
