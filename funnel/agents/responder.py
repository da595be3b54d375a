"""
Response applier - turns one AI analysis into side effects for a lead.

Branches run in this order:
  1. safety: toxic content or a handoff flag escalates and stops everything
  2. button callbacks (consent, flow selection) go to the consent handlers
  3. extracted fields merge into the profile (never overwriting with null)
  4. medical risk alert
  5. doctor readiness
  6. photo-template gating, which may replace or suppress the AI text
  7. reply delivery
  8. follow-up (re)scheduling, for every outcome except the safety branch
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from funnel.agents.consent import handle_flow_selection, resolve_consent
from funnel.models.conversation import Conversation
from funnel.models.lead import Lead
from funnel.models.lead_profile import LeadProfile
from funnel.schemas.ai_responses import AiAnalysis
from funnel.services.delivery import deliver_reply
from funnel.services.followups import escalate_to_human, schedule_followup
from funnel.services.leads import (
    create_notification,
    get_or_create_profile,
    log_event,
    save_message,
    save_system_note,
    set_status,
)
from funnel.services.photos import get_template_url
from funnel.services.state_machine import LeadStatus
from funnel.services.task_dispatch import enqueue_channel_send
from funnel.utils import templates
from funnel.utils.keywords import is_photo_request
from funnel.utils.timezone import get_timezone_from_country

logger = logging.getLogger(__name__)

# Extraction key -> LeadProfile column
FIELD_MAP = {
    "name": "name",
    "phone": "phone",
    "email": "email",
    "city": "city",
    "country": "country",
    "age": "age_range",
    "age_range": "age_range",
    "birth_date": "birth_date",
    "height_cm": "height_cm",
    "weight_kg": "weight_kg",
    "treatment_category": "treatment_category",
    "complaint": "complaint",
    "previous_treatment": "has_previous_treatment",
    "has_previous_treatment": "has_previous_treatment",
    "urgency": "urgency",
    "budget_mentioned": "budget_mentioned",
    "has_allergies": "has_allergies",
    "allergies_detail": "allergies_detail",
    "has_chronic_disease": "has_chronic_disease",
    "chronic_disease_detail": "chronic_disease_detail",
    "has_previous_surgery": "has_previous_surgery",
    "previous_surgery_detail": "previous_surgery_detail",
    "alcohol_use": "alcohol_use",
    "smoking_use": "smoking_use",
    "medications": "medications",
    "language": "language_preference",
    "detected_language": "language_preference",
    "consent_given": "consent_given",
}

BOOLEAN_FIELDS = frozenset({
    "has_previous_treatment",
    "has_allergies",
    "has_chronic_disease",
    "has_previous_surgery",
    "consent_given",
})

NUMERIC_FIELDS = frozenset({"height_cm", "weight_kg"})

ANGRY_SENTIMENTS = frozenset({"angry", "very_negative", "frustrated"})


@dataclass
class ApplyOutcome:
    action: str  # handoff, callback, photo_info_missing, template_sent, photo_request_suppressed, replied, no_reply
    updated_fields: list[str] = field(default_factory=list)
    followup_scheduled: bool = False
    notes: list[str] = field(default_factory=list)


def coerce_yes(value: Any) -> bool:
    """Values shaped like "yes" are True, everything else False."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "yes"
    return False


def _coerce_number(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def map_extraction_to_profile(extraction: dict) -> dict:
    """
    Profile column updates for an AI extraction map. Unknown keys and
    null/empty values are dropped so a merge never erases known data.
    """
    updates: dict = {}
    for key, value in (extraction or {}).items():
        column = FIELD_MAP.get(key)
        if column is None or value is None or value == "":
            continue
        if column in BOOLEAN_FIELDS:
            value = coerce_yes(value)
        elif column in NUMERIC_FIELDS:
            value = _coerce_number(value)
            if value is None:
                continue
        elif not isinstance(value, str):
            value = str(value)
        updates[column] = value
    return updates


def merge_profile_fields(profile: LeadProfile, extraction: dict, now: Optional[datetime] = None) -> list[str]:
    """Apply extracted fields to the profile. Returns the columns written."""
    updates = map_extraction_to_profile(extraction)
    written = []
    for column, value in updates.items():
        if column == "consent_given":
            if value and profile.consent_given is not True:
                profile.consent_given = True
                profile.consent_at = profile.consent_at or now or datetime.now(timezone.utc)
                written.append(column)
            continue
        if getattr(profile, column) != value:
            setattr(profile, column, value)
            written.append(column)

    if extraction:
        merged = dict(profile.extracted_fields_json or {})
        merged.update({k: v for k, v in extraction.items() if v is not None})
        profile.extracted_fields_json = merged
    return written


def mirror_onto_lead(lead: Lead, profile: LeadProfile) -> None:
    if profile.treatment_category:
        lead.treatment_category = profile.treatment_category
    if profile.language_preference:
        lead.language = profile.language_preference
    if profile.country and profile.country != lead.country:
        lead.country = profile.country
        tz_name = get_timezone_from_country(profile.country)
        if tz_name:
            lead.timezone = tz_name
    if profile.consent_given and profile.consent_at and not lead.consent_given_at:
        lead.consent_given_at = profile.consent_at


def is_high_medical_risk(extraction: dict) -> bool:
    flag = extraction.get("high_medical_risk")
    if flag is not None and coerce_yes(flag):
        return True
    return str(extraction.get("medical_risk") or "").lower() == "high"


async def apply_ai_response(
    db: AsyncSession,
    lead: Lead,
    conversation: Conversation,
    analysis: AiAnalysis,
    ai_run_id=None,
) -> ApplyOutcome:
    """Apply an analysis to the lead. The caller commits."""
    lead_tag = str(lead.id)[:8]

    if analysis.sentiment and analysis.sentiment.lower() in ANGRY_SENTIMENTS:
        if lead.add_tag("ANGRY"):
            logger.info("Lead %s tagged ANGRY", lead_tag)

    # 1. Safety short-circuit
    if analysis.is_toxic or analysis.should_handoff:
        reason = analysis.handoff_reason or ("Toxic content detected" if analysis.is_toxic else "AI requested handoff")
        await escalate_to_human(db, lead, conversation, reason=reason, triggered_by="ai")
        notice = templates.localized(templates.HANDOFF_NOTICES, lead.language)
        await save_message(db, conversation, direction="out", sender_type="system", content=notice)
        await enqueue_channel_send(
            channel=lead.channel,
            channel_user_id=lead.channel_user_id,
            content=notice,
            lead_id=str(lead.id),
            language=lead.language,
            db=db,
        )
        return ApplyOutcome(action="handoff")

    # 2. Callback branches
    if analysis.is_callback:
        if analysis.consent_response is not None:
            await resolve_consent(
                db, lead, conversation,
                approved=analysis.consent_response == "approved",
                source="callback",
            )
        if analysis.flow_selection is not None:
            await handle_flow_selection(db, lead, conversation, analysis.flow_selection)
        outcome = ApplyOutcome(action="callback")
        outcome.followup_scheduled = await _reschedule(db, lead, conversation)
        return outcome

    profile = await get_or_create_profile(db, lead.id)

    # 3. Field merge
    if analysis.desire_score is not None:
        lead.desire_score = analysis.desire_score.value
    written = merge_profile_fields(profile, analysis.extraction)
    mirror_onto_lead(lead, profile)
    if analysis.agent_name and not profile.agent_name:
        profile.agent_name = analysis.agent_name
    if written:
        log_event(db, lead.id, "profile_updated", data={"fields": written})

    outcome = ApplyOutcome(action="no_reply", updated_fields=written)

    # 4. Medical risk
    if is_high_medical_risk(analysis.extraction):
        lead.add_tag("MEDICAL_RISK")
        create_notification(
            db, lead.id, "medical_risk",
            title="High medical risk reported",
            body=analysis.extraction.get("medical_risk_reason") or "",
            tags=["MEDICAL_RISK"],
            data={"extraction": analysis.extraction},
        )
        outcome.notes.append("medical_risk")

    # 5. Readiness
    if analysis.ready_for_doctor and mark_ready_for_doctor(db, lead, profile):
        outcome.notes.append("ready_for_doctor")

    # 6. Photo-template gating
    reply = analysis.reply_draft or ""
    gated = await _apply_photo_gating(db, lead, conversation, profile, reply)
    if gated is not None:
        outcome.action = gated
    else:
        # 7. Delivery
        stored = await deliver_reply(db, lead, conversation, reply, ai_run_id=ai_run_id)
        if stored is not None:
            outcome.action = "replied"
            lead.last_outbound_at = datetime.now(timezone.utc)

    # 8. Follow-up
    outcome.followup_scheduled = await _reschedule(db, lead, conversation)
    await db.flush()
    logger.info(
        "AI response applied for lead %s: %s (%d field(s))",
        lead_tag, outcome.action, len(written),
        extra={"lead_id": str(lead.id)},
    )
    return outcome


def mark_ready_for_doctor(
    db: AsyncSession,
    lead: Lead,
    profile: LeadProfile,
    reason: str = "AI readiness flag",
) -> bool:
    """
    Move the lead to READY_FOR_DOCTOR and notify the clinic.
    A lead already waiting for the doctor is left alone, so the notification
    is created once per readiness.
    """
    previous = lead.status
    if not set_status(lead, LeadStatus.READY_FOR_DOCTOR, reason=reason):
        return False
    tags = ["READY_FOR_DOCTOR"]
    if profile.photo_status != "complete":
        lead.add_tag("NO_PHOTOS")
        tags.append("NO_PHOTOS")
    create_notification(
        db, lead.id, "doctor_ready",
        title=f"{profile.name or 'Lead'} is ready for doctor review",
        body=profile.treatment_category or "",
        tags=tags,
        data={"photo_status": profile.photo_status, "previous_status": previous, "reason": reason},
    )
    log_event(db, lead.id, "ready_for_doctor", message=f"{previous} -> {lead.status}")
    return True


async def _apply_photo_gating(
    db: AsyncSession,
    lead: Lead,
    conversation: Conversation,
    profile: LeadProfile,
    reply: str,
) -> Optional[str]:
    """
    None lets the AI reply go out. Otherwise the reply is replaced or
    suppressed and the returned action names what happened.
    """
    treatment = lead.treatment_category or profile.treatment_category
    if not reply or not treatment or not is_photo_request(reply, lead.language):
        return None

    if not profile.has_minimum_info():
        await save_system_note(db, conversation, "[Photo request skipped: collecting medical history first]")
        log_event(db, lead.id, "photo_request_skipped", status="skipped", message="minimum info missing")
        return "photo_info_missing"

    if profile.photo_template_sent:
        await save_system_note(db, conversation, "[Photo request suppressed: template already sent]")
        log_event(db, lead.id, "photo_request_skipped", status="skipped", message="template already sent")
        return "photo_request_suppressed"

    template_url = get_template_url(treatment)
    if not template_url:
        # No template image for this deployment, the AI text asks instead
        return None

    caption = templates.photo_template_caption(treatment, lead.language)
    await enqueue_channel_send(
        channel=lead.channel,
        channel_user_id=lead.channel_user_id,
        content=caption,
        lead_id=str(lead.id),
        media_url=template_url,
        message_type="template",
        language=lead.language,
        db=db,
    )
    profile.photo_template_sent = True
    await save_message(
        db, conversation, direction="out", sender_type="system", content=caption,
        media_type="image", media_url=template_url, metadata={"message_type": "template"},
    )
    set_status(lead, LeadStatus.WAITING_PHOTOS, reason="photo template sent")
    log_event(db, lead.id, "photo_template_sent", data={"treatment": treatment, "url": template_url})
    return "template_sent"


async def _reschedule(db: AsyncSession, lead: Lead, conversation: Conversation) -> bool:
    followup = await schedule_followup(db, lead, conversation, attempt=1)
    return followup is not None
