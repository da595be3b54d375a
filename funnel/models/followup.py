"""
Followup model - scheduled nudges for leads that went quiet.
Types: reminder, check_in, final. Pending rows are bulk-cancelled on every inbound message.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, Float, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from funnel.database import Base


class Followup(Base):
    __tablename__ = "followups"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    lead_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("leads.id"), nullable=False
    )
    conversation_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("conversations.id")
    )

    attempt_number: Mapped[int] = mapped_column(Integer, default=1)
    followup_type: Mapped[str] = mapped_column(String(20), default="reminder")
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), default="pending"
    )  # pending, sent, responded, cancelled, failed
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    skip_reason: Mapped[Optional[str]] = mapped_column(Text)
    message_content: Mapped[Optional[str]] = mapped_column(Text)
    last_error: Mapped[Optional[str]] = mapped_column(Text)

    # AI-authored plan (analyze-followup)
    ai_strategy: Mapped[Optional[str]] = mapped_column(String(20))  # immediate, wait
    ai_tone: Mapped[Optional[str]] = mapped_column(String(30))
    ai_suggested_message: Mapped[Optional[str]] = mapped_column(Text)
    ai_reasoning: Mapped[Optional[str]] = mapped_column(Text)
    ai_confidence: Mapped[Optional[float]] = mapped_column(Float)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_followups_pending", "status", "scheduled_at"),
        Index("ix_followups_lead_id", "lead_id"),
    )

    def __repr__(self) -> str:
        return f"<Followup #{self.attempt_number} {self.followup_type} status={self.status}>"
