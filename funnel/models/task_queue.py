"""
TaskQueue model - the single table behind both background queues.

ai_analysis rows carry an analysis job, channel_send rows one outbound
message. Rows become eligible at scheduled_at and are claimed highest
priority first. A failed attempt is pushed back with exponential backoff
until max_retries is reached.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, Text, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from funnel.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskQueue(Base):
    __tablename__ = "task_queue"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    task_type: Mapped[str] = mapped_column(String(50), nullable=False)
    # Denormalized from the payload for per-lead lookups, not a foreign key
    lead_id: Mapped[Optional[str]] = mapped_column(String(64))
    payload: Mapped[Optional[dict]] = mapped_column(JSONB)

    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    priority: Mapped[int] = mapped_column(Integer, default=5)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)

    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    result_data: Mapped[Optional[dict]] = mapped_column(JSONB)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_task_queue_due", "status", "scheduled_at", "priority"),
        Index("ix_task_queue_lead", "lead_id", "task_type"),
    )

    @property
    def retries_left(self) -> int:
        return max(0, (self.max_retries or 0) - (self.retry_count or 0))

    def __repr__(self) -> str:
        return f"<TaskQueue {self.task_type} {self.status} retry={self.retry_count}/{self.max_retries}>"
