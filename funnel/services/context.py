"""
Conversation history and lead context handed to the AI service.
"""
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from funnel.config import get_settings
from funnel.models.lead import Lead
from funnel.models.lead_profile import LeadProfile
from funnel.models.message import Message
from funnel.services.leads import get_profile, get_recent_messages
from funnel.services.photos import get_photo_progress
from funnel.utils.timezone import get_timezone_context

MEDIA_PLACEHOLDERS = {
    "image": "[User sent a photo]",
    "photo": "[User sent a photo]",
    "video": "[User sent a video]",
    "audio": "[User sent a voice message]",
    "voice": "[User sent a voice message]",
    "document": "[User sent a document]",
    "sticker": "[User sent a sticker]",
}

PROFILE_SNAPSHOT_FIELDS = (
    "name", "phone", "email", "city", "country", "age_range", "birth_date",
    "height_cm", "weight_kg", "treatment_category", "complaint", "urgency",
    "budget_mentioned", "has_previous_treatment",
    "has_allergies", "allergies_detail", "has_chronic_disease", "chronic_disease_detail",
    "has_previous_surgery", "previous_surgery_detail", "medications",
    "alcohol_use", "smoking_use", "consent_given", "preferred_flow", "photo_status",
)


def render_message_content(message: Message) -> str:
    if message.content:
        return message.content
    if message.media_type:
        return MEDIA_PLACEHOLDERS.get(message.media_type, f"[User sent a {message.media_type}]")
    return ""


def format_history(messages: list[Message]) -> list[dict]:
    """Stored messages as AI chat turns. Inbound is `user`, everything else `assistant`."""
    history = []
    for message in messages:
        content = render_message_content(message)
        if not content:
            continue
        history.append({
            "role": "user" if message.direction == "in" else "assistant",
            "content": content,
        })
    return history


def profile_snapshot(profile: Optional[LeadProfile]) -> dict:
    if profile is None:
        return {}
    snapshot = {}
    for name in PROFILE_SNAPSHOT_FIELDS:
        value = getattr(profile, name, None)
        if value is not None:
            snapshot[name] = value
    return snapshot


async def build_lead_context(db: AsyncSession, lead: Lead) -> dict:
    profile = await get_profile(db, lead.id)
    progress = await get_photo_progress(db, lead)
    return {
        "lead_id": str(lead.id),
        "status": lead.status,
        "channel": lead.channel,
        "language": lead.language or "en",
        "country": lead.country,
        "timezone_context": get_timezone_context(lead.country, lead.timezone),
        "treatment_category": lead.treatment_category,
        "desire_score": lead.desire_score,
        "tags": list(lead.tags or []),
        "agent_name": profile.agent_name if profile else None,
        "profile": profile_snapshot(profile),
        "photo_progress": progress,
    }


async def load_history(db: AsyncSession, conversation_id, limit: Optional[int] = None) -> list[dict]:
    limit = limit or get_settings().ai_context_window
    return format_history(await get_recent_messages(db, conversation_id, limit=limit))
