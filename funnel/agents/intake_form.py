"""
Intake form receiver - applies a completed external form to its lead.

The submission is matched to a lead (lead id, then phone, then email), its
answers are merged into the profile through the same mapping the AI
extraction uses, form photos are recorded, and the lead goes to the doctor.
A redelivered submission id is acknowledged without touching anything.
"""
import logging
import uuid
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import desc, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from funnel.agents.conductor import AI_SILENT_STATUSES
from funnel.agents.responder import mark_ready_for_doctor, merge_profile_fields, mirror_onto_lead
from funnel.models.lead import Lead
from funnel.models.lead_profile import LeadProfile
from funnel.models.photo_asset import PhotoAsset
from funnel.schemas.form_submission import FormSubmission, MedicalInfo
from funnel.services.leads import create_notification, get_or_create_profile, log_event
from funnel.services.photos import get_photo_progress, photo_status_for

logger = logging.getLogger(__name__)

# Chronic conditions that always need a doctor's eye (en + tr)
RISK_CONDITIONS = ("heart", "kalp", "diabetes", "diyabet", "cancer", "kanser")

PROCESSED_KEY = "form_submissions"


@dataclass
class FormOutcome:
    status: str  # applied, duplicate, unmatched
    lead_id: Optional[str] = None
    updated_fields: list[str] = field(default_factory=list)
    photos_added: int = 0
    medical_risk: bool = False


def medical_risk_details(medical: Optional[MedicalInfo]) -> list[str]:
    """Human-readable risk lines, empty when nothing in the answers is a risk."""
    if medical is None:
        return []
    risks = []
    if medical.uses_blood_thinners:
        risks.append(f"Blood thinners: {medical.blood_thinner_detail or 'not specified'}")
    detail = (medical.chronic_disease_detail or "").lower()
    if medical.has_chronic_disease and any(word in detail for word in RISK_CONDITIONS):
        risks.append(f"Chronic disease: {medical.chronic_disease_detail}")
    if risks and medical.current_medications:
        risks.append(f"Medications: {medical.current_medications}")
    return risks


async def find_form_lead(db: AsyncSession, submission: FormSubmission) -> Optional[Lead]:
    if submission.lead_id:
        try:
            lead = await db.get(Lead, uuid.UUID(submission.lead_id))
        except ValueError:
            lead = None
        if lead is not None:
            return lead

    phone = submission.contact_phone
    if phone:
        result = await db.execute(
            select(Lead)
            .outerjoin(LeadProfile, LeadProfile.lead_id == Lead.id)
            .where(or_(Lead.channel_user_id == phone, LeadProfile.phone == phone))
            .order_by(desc(Lead.created_at))
            .limit(1)
        )
        lead = result.scalar_one_or_none()
        if lead is not None:
            return lead

    email = submission.contact_email
    if email:
        result = await db.execute(
            select(Lead)
            .join(LeadProfile, LeadProfile.lead_id == Lead.id)
            .where(LeadProfile.email == email)
            .order_by(desc(Lead.created_at))
            .limit(1)
        )
        return result.scalar_one_or_none()
    return None


def _already_processed(lead: Lead, key: Optional[str]) -> bool:
    return bool(key) and key in (lead.extra_data or {}).get(PROCESSED_KEY, [])


def _remember(lead: Lead, key: Optional[str]) -> None:
    if not key:
        return
    data = dict(lead.extra_data or {})
    data[PROCESSED_KEY] = [*data.get(PROCESSED_KEY, []), key]
    lead.extra_data = data


async def apply_form_submission(db: AsyncSession, submission: FormSubmission) -> FormOutcome:
    """Apply one submission. The caller commits."""
    lead = await find_form_lead(db, submission)
    if lead is None:
        logger.warning(
            "Form submission %s matched no lead", submission.dedup_key or "-",
            extra={"error_code": "form_unmatched"},
        )
        log_event(
            db, None, "form_submitted", status="skipped",
            message="no matching lead",
            data=submission.model_dump(mode="json", exclude_none=True),
        )
        await db.flush()
        return FormOutcome(status="unmatched")

    lead_tag = str(lead.id)[:8]
    if _already_processed(lead, submission.dedup_key):
        logger.info("Form submission %s already applied to lead %s", submission.dedup_key, lead_tag)
        return FormOutcome(status="duplicate", lead_id=str(lead.id))

    outcome = FormOutcome(status="applied", lead_id=str(lead.id))
    profile = await get_or_create_profile(db, lead.id)
    profile.preferred_flow = "form"
    outcome.updated_fields = merge_profile_fields(profile, submission.extraction())
    mirror_onto_lead(lead, profile)

    for photo in submission.photos:
        db.add(PhotoAsset(lead_id=lead.id, storage_path=photo.url, slot=photo.slot or "unknown"))
    if submission.photos:
        await db.flush()
        profile.photo_status = photo_status_for(await get_photo_progress(db, lead))
        outcome.photos_added = len(submission.photos)

    risks = medical_risk_details(submission.medical_info)
    if risks:
        outcome.medical_risk = True
        lead.add_tag("MEDICAL_RISK")
        create_notification(
            db, lead.id, "medical_risk",
            title="Medical risk reported in intake form",
            body="; ".join(risks),
            tags=["MEDICAL_RISK"],
            data={"source": "form", "submission_id": submission.dedup_key},
        )

    if lead.status in AI_SILENT_STATUSES:
        logger.info("Lead %s is %s, form stored without readiness change", lead_tag, lead.status)
    else:
        mark_ready_for_doctor(db, lead, profile, reason="intake form submitted")

    _remember(lead, submission.dedup_key)
    log_event(
        db, lead.id, "form_submitted",
        data={
            "submission_id": submission.dedup_key,
            "fields": outcome.updated_fields,
            "photos": outcome.photos_added,
            "medical_risk": outcome.medical_risk,
        },
    )
    await db.flush()
    logger.info(
        "Form submission applied to lead %s: %d field(s), %d photo(s)",
        lead_tag, len(outcome.updated_fields), outcome.photos_added,
        extra={"lead_id": str(lead.id)},
    )
    return outcome
