"""Initial schema - all tables for the intake funnel.

Revision ID: 001
Revises:
Create Date: 2026-10-17
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Leads
    op.create_table(
        "leads",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("channel", sa.String(20), nullable=False),
        sa.Column("channel_user_id", sa.String(100), nullable=False),
        sa.Column("source", sa.String(50), nullable=False),
        sa.Column("status", sa.String(30), nullable=False, server_default="NEW"),
        sa.Column("previous_status", sa.String(30)),
        sa.Column("language", sa.String(10)),
        sa.Column("country", sa.String(100)),
        sa.Column("timezone", sa.String(64)),
        sa.Column("desire_score", sa.Float),
        sa.Column("treatment_category", sa.String(50)),
        sa.Column("tags", postgresql.JSONB, server_default="[]"),
        sa.Column("consent_given_at", sa.DateTime(timezone=True)),
        sa.Column("pricing_sent_at", sa.DateTime(timezone=True)),
        sa.Column("doctor_approved_at", sa.DateTime(timezone=True)),
        sa.Column("metadata", postgresql.JSONB, server_default="{}"),
        sa.Column("last_inbound_at", sa.DateTime(timezone=True)),
        sa.Column("last_outbound_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint("channel", "channel_user_id", name="uq_leads_channel_user"),
    )
    op.create_index("ix_leads_status", "leads", ["status"])
    op.create_index("ix_leads_created_at", "leads", ["created_at"])

    # Lead profiles
    op.create_table(
        "lead_profiles",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("lead_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("leads.id"), nullable=False, unique=True),
        sa.Column("name", sa.String(200)),
        sa.Column("phone", sa.String(40)),
        sa.Column("email", sa.String(255)),
        sa.Column("city", sa.String(100)),
        sa.Column("country", sa.String(100)),
        sa.Column("age_range", sa.String(20)),
        sa.Column("birth_date", sa.String(20)),
        sa.Column("height_cm", sa.Float),
        sa.Column("weight_kg", sa.Float),
        sa.Column("language_preference", sa.String(10)),
        sa.Column("treatment_category", sa.String(50)),
        sa.Column("complaint", sa.Text),
        sa.Column("has_previous_treatment", sa.Boolean),
        sa.Column("urgency", sa.String(30)),
        sa.Column("budget_mentioned", sa.String(100)),
        sa.Column("has_allergies", sa.Boolean),
        sa.Column("allergies_detail", sa.Text),
        sa.Column("has_chronic_disease", sa.Boolean),
        sa.Column("chronic_disease_detail", sa.Text),
        sa.Column("has_previous_surgery", sa.Boolean),
        sa.Column("previous_surgery_detail", sa.Text),
        sa.Column("medications", sa.Text),
        sa.Column("alcohol_use", sa.String(50)),
        sa.Column("smoking_use", sa.String(50)),
        sa.Column("consent_given", sa.Boolean),
        sa.Column("consent_at", sa.DateTime(timezone=True)),
        sa.Column("agent_name", sa.String(50)),
        sa.Column("preferred_flow", sa.String(10)),
        sa.Column("photo_status", sa.String(20), server_default="none"),
        sa.Column("photo_template_sent", sa.Boolean, server_default=sa.false()),
        sa.Column("extracted_fields_json", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Conversations
    op.create_table(
        "conversations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("lead_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("leads.id"), nullable=False),
        sa.Column("channel", sa.String(20), nullable=False),
        sa.Column("is_active", sa.Boolean, server_default=sa.true()),
        sa.Column("state", sa.String(30)),
        sa.Column("message_count", sa.Integer, server_default="0"),
        sa.Column("inbound_count", sa.Integer, server_default="0"),
        sa.Column("outbound_count", sa.Integer, server_default="0"),
        sa.Column("last_message_at", sa.DateTime(timezone=True)),
        sa.Column("closed_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_conversations_lead_active", "conversations", ["lead_id", "is_active"])

    # AI runs (before messages, which reference them)
    op.create_table(
        "ai_runs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("lead_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("leads.id"), nullable=False),
        sa.Column("conversation_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("conversations.id")),
        sa.Column("job_type", sa.String(40), nullable=False),
        sa.Column("model", sa.String(60)),
        sa.Column("tokens_used", sa.Integer),
        sa.Column("latency_ms", sa.Integer),
        sa.Column("request_payload", postgresql.JSONB),
        sa.Column("response_payload", postgresql.JSONB),
        sa.Column("error", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_ai_runs_lead_id", "ai_runs", ["lead_id"])

    # Messages
    op.create_table(
        "messages",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("conversation_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("conversations.id"), nullable=False),
        sa.Column("lead_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("leads.id"), nullable=False),
        sa.Column("direction", sa.String(5), nullable=False),
        sa.Column("sender_type", sa.String(10), nullable=False),
        sa.Column("content", sa.Text),
        sa.Column("media_type", sa.String(20)),
        sa.Column("media_url", sa.Text),
        sa.Column("channel_message_id", sa.String(100), unique=True),
        sa.Column("ai_run_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("ai_runs.id")),
        sa.Column("metadata", postgresql.JSONB, server_default="{}"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_messages_conversation_created", "messages", ["conversation_id", "created_at"])
    op.create_index("ix_messages_lead_id", "messages", ["lead_id"])

    # Follow-ups
    op.create_table(
        "followups",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("lead_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("leads.id"), nullable=False),
        sa.Column("conversation_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("conversations.id")),
        sa.Column("attempt_number", sa.Integer, server_default="1"),
        sa.Column("followup_type", sa.String(20), server_default="reminder"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(20), server_default="pending"),
        sa.Column("sent_at", sa.DateTime(timezone=True)),
        sa.Column("skip_reason", sa.Text),
        sa.Column("message_content", sa.Text),
        sa.Column("last_error", sa.Text),
        sa.Column("ai_strategy", sa.String(20)),
        sa.Column("ai_tone", sa.String(30)),
        sa.Column("ai_suggested_message", sa.Text),
        sa.Column("ai_reasoning", sa.Text),
        sa.Column("ai_confidence", sa.Float),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_followups_pending", "followups", ["status", "scheduled_at"])
    op.create_index("ix_followups_lead_id", "followups", ["lead_id"])

    # Handoffs
    op.create_table(
        "handoffs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("lead_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("leads.id"), nullable=False),
        sa.Column("conversation_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("conversations.id")),
        sa.Column("reason", sa.Text, nullable=False),
        sa.Column("triggered_by", sa.String(20), server_default="ai"),
        sa.Column("resolved_at", sa.DateTime(timezone=True)),
        sa.Column("resolved_by", sa.String(100)),
        sa.Column("resolution_notes", sa.Text),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_handoffs_lead_id", "handoffs", ["lead_id"])

    # Photo assets
    op.create_table(
        "photo_assets",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("lead_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("leads.id"), nullable=False),
        sa.Column("message_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("messages.id")),
        sa.Column("storage_path", sa.Text, nullable=False),
        sa.Column("slot", sa.String(30), server_default="unknown"),
        sa.Column("confidence", sa.Float, server_default="0"),
        sa.Column("quality_score", sa.Float),
        sa.Column("quality_issues", postgresql.JSONB, server_default="[]"),
        sa.Column("is_usable", sa.Boolean, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_photo_assets_lead_id", "photo_assets", ["lead_id"])

    # Operator notifications
    op.create_table(
        "notifications",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("lead_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("leads.id")),
        sa.Column("type", sa.String(30), nullable=False),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("body", sa.Text),
        sa.Column("tags", postgresql.JSONB, server_default="[]"),
        sa.Column("data", postgresql.JSONB),
        sa.Column("is_read", sa.Boolean, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_notifications_type", "notifications", ["type"])
    op.create_index("ix_notifications_lead_id", "notifications", ["lead_id"])

    # Audit trail
    op.create_table(
        "event_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("lead_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("leads.id")),
        sa.Column("action", sa.String(100), nullable=False),
        sa.Column("status", sa.String(20), server_default="success"),
        sa.Column("duration_ms", sa.Integer),
        sa.Column("message", sa.Text),
        sa.Column("error_message", sa.Text),
        sa.Column("data", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_events_lead_id", "event_logs", ["lead_id"])
    op.create_index("ix_events_action", "event_logs", ["action"])

    # Task queue
    op.create_table(
        "task_queue",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("task_type", sa.String(50), nullable=False),
        sa.Column("lead_id", sa.String(64)),
        sa.Column("payload", postgresql.JSONB),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("priority", sa.Integer, server_default="5"),
        sa.Column("retry_count", sa.Integer, server_default="0"),
        sa.Column("max_retries", sa.Integer, server_default="3"),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime(timezone=True)),
        sa.Column("completed_at", sa.DateTime(timezone=True)),
        sa.Column("error_message", sa.Text),
        sa.Column("result_data", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_task_queue_due", "task_queue", ["status", "scheduled_at", "priority"])
    op.create_index("ix_task_queue_lead", "task_queue", ["lead_id", "task_type"])


def downgrade() -> None:
    op.drop_table("task_queue")
    op.drop_table("event_logs")
    op.drop_table("notifications")
    op.drop_table("photo_assets")
    op.drop_table("handoffs")
    op.drop_table("followups")
    op.drop_table("messages")
    op.drop_table("ai_runs")
    op.drop_table("conversations")
    op.drop_table("lead_profiles")
    op.drop_table("leads")
