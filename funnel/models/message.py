"""
Message model - every inbound and outbound unit of a conversation.
Immutable once written. channel_message_id is the inbound idempotency key.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from funnel.database import Base


class Message(Base):
    __tablename__ = "messages"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("conversations.id"), nullable=False
    )
    lead_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("leads.id"), nullable=False
    )

    direction: Mapped[str] = mapped_column(String(5), nullable=False)  # in, out
    sender_type: Mapped[str] = mapped_column(
        String(10), nullable=False
    )  # patient, ai, system, human
    content: Mapped[Optional[str]] = mapped_column(Text)
    media_type: Mapped[Optional[str]] = mapped_column(String(20))  # image, video, audio, document
    media_url: Mapped[Optional[str]] = mapped_column(Text)

    channel_message_id: Mapped[Optional[str]] = mapped_column(String(100), unique=True)
    ai_run_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("ai_runs.id")
    )

    extra_data: Mapped[Optional[dict]] = mapped_column("metadata", JSONB, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
        Index("ix_messages_lead_id", "lead_id"),
    )

    def __repr__(self) -> str:
        return f"<Message {self.direction} sender={self.sender_type}>"
