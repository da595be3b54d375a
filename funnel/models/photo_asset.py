"""
PhotoAsset model - a stored patient photo with its vision analysis.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Float, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from funnel.database import Base


class PhotoAsset(Base):
    __tablename__ = "photo_assets"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    lead_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("leads.id"), nullable=False
    )
    message_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("messages.id")
    )

    storage_path: Mapped[str] = mapped_column(Text, nullable=False)
    slot: Mapped[str] = mapped_column(String(30), default="unknown")
    confidence: Mapped[float] = mapped_column(Float, default=0.0)
    quality_score: Mapped[Optional[float]] = mapped_column(Float)
    quality_issues: Mapped[Optional[list]] = mapped_column(JSONB, default=list)
    is_usable: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_photo_assets_lead_id", "lead_id"),
    )

    def __repr__(self) -> str:
        return f"<PhotoAsset slot={self.slot} usable={self.is_usable}>"
