"""
LeadProfile - structured facts extracted from the conversation.
One row per lead, patched field by field. Medical booleans stay NULL until
the patient answers explicitly.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Float, Boolean, DateTime, ForeignKey
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from funnel.database import Base


class LeadProfile(Base):
    __tablename__ = "lead_profiles"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    lead_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("leads.id"), nullable=False, unique=True
    )

    # Personal
    name: Mapped[Optional[str]] = mapped_column(String(200))
    phone: Mapped[Optional[str]] = mapped_column(String(40))
    email: Mapped[Optional[str]] = mapped_column(String(255))
    city: Mapped[Optional[str]] = mapped_column(String(100))
    country: Mapped[Optional[str]] = mapped_column(String(100))
    age_range: Mapped[Optional[str]] = mapped_column(String(20))
    birth_date: Mapped[Optional[str]] = mapped_column(String(20))
    height_cm: Mapped[Optional[float]] = mapped_column(Float)
    weight_kg: Mapped[Optional[float]] = mapped_column(Float)
    language_preference: Mapped[Optional[str]] = mapped_column(String(10))

    # Treatment interest
    treatment_category: Mapped[Optional[str]] = mapped_column(String(50))
    complaint: Mapped[Optional[str]] = mapped_column(Text)
    has_previous_treatment: Mapped[Optional[bool]] = mapped_column(Boolean)
    urgency: Mapped[Optional[str]] = mapped_column(String(30))
    budget_mentioned: Mapped[Optional[str]] = mapped_column(String(100))

    # Medical history
    has_allergies: Mapped[Optional[bool]] = mapped_column(Boolean)
    allergies_detail: Mapped[Optional[str]] = mapped_column(Text)
    has_chronic_disease: Mapped[Optional[bool]] = mapped_column(Boolean)
    chronic_disease_detail: Mapped[Optional[str]] = mapped_column(Text)
    has_previous_surgery: Mapped[Optional[bool]] = mapped_column(Boolean)
    previous_surgery_detail: Mapped[Optional[str]] = mapped_column(Text)
    medications: Mapped[Optional[str]] = mapped_column(Text)
    alcohol_use: Mapped[Optional[str]] = mapped_column(String(50))
    smoking_use: Mapped[Optional[str]] = mapped_column(String(50))

    # Consent
    consent_given: Mapped[Optional[bool]] = mapped_column(Boolean)
    consent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Conversation flow
    agent_name: Mapped[Optional[str]] = mapped_column(String(50))
    preferred_flow: Mapped[Optional[str]] = mapped_column(String(10))  # form, chat
    photo_status: Mapped[str] = mapped_column(String(20), default="none")  # none, partial, complete
    photo_template_sent: Mapped[bool] = mapped_column(Boolean, default=False)

    extracted_fields_json: Mapped[Optional[dict]] = mapped_column(JSONB)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def has_minimum_info(self) -> bool:
        """Name plus at least one answered medical question."""
        if not self.name:
            return False
        return any(
            value is not None
            for value in (self.has_allergies, self.has_chronic_disease, self.has_previous_surgery)
        )

    def __repr__(self) -> str:
        return f"<LeadProfile lead={str(self.lead_id)[:8]} photos={self.photo_status}>"
