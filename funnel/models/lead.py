"""
Lead model - one prospective patient per (channel, channel_user_id).
Lifecycle status is driven by services.state_machine; the consent and
photo-template gates additionally park leads in waiting_consent / waiting_photos.
Leads are never hard-deleted.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Float, DateTime, Index, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from funnel.database import Base


class Lead(Base):
    __tablename__ = "leads"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )

    # Channel identity
    channel: Mapped[str] = mapped_column(String(20), nullable=False)  # telegram, whatsapp, web
    channel_user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    source: Mapped[str] = mapped_column(String(50), nullable=False)  # telegram_organic, ...

    # Lifecycle
    status: Mapped[str] = mapped_column(String(30), default="NEW", nullable=False)
    previous_status: Mapped[Optional[str]] = mapped_column(String(30))

    # Locale
    language: Mapped[Optional[str]] = mapped_column(String(10))
    country: Mapped[Optional[str]] = mapped_column(String(100))
    timezone: Mapped[Optional[str]] = mapped_column(String(64))

    # Qualification
    desire_score: Mapped[Optional[float]] = mapped_column(Float)
    treatment_category: Mapped[Optional[str]] = mapped_column(String(50))
    tags: Mapped[Optional[list]] = mapped_column(JSONB, default=list)

    # Consent / pricing / approval metadata
    consent_given_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    pricing_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    doctor_approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    extra_data: Mapped[Optional[dict]] = mapped_column("metadata", JSONB, default=dict)

    last_inbound_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_outbound_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        UniqueConstraint("channel", "channel_user_id", name="uq_leads_channel_user"),
        Index("ix_leads_status", "status"),
        Index("ix_leads_created_at", "created_at"),
    )

    def add_tag(self, tag: str) -> bool:
        """Add a tag if missing. Returns True when the tag list changed."""
        current = list(self.tags or [])
        if tag in current:
            return False
        self.tags = current + [tag]
        return True

    def __repr__(self) -> str:
        return f"<Lead {self.channel}:{self.channel_user_id} status={self.status}>"
