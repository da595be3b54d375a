"""
Store helpers for leads, profiles, conversations and messages.
Queries are kept here so the pipeline modules read as business logic.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Optional, Union

from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession

from funnel.models.conversation import Conversation
from funnel.models.event_log import EventLog
from funnel.models.followup import Followup
from funnel.models.lead import Lead
from funnel.models.lead_profile import LeadProfile
from funnel.models.message import Message
from funnel.models.notification import Notification

logger = logging.getLogger(__name__)


class DataIntegrityError(Exception):
    """A row the pipeline depends on is missing. Fatal for the current job only."""


class LeadNotFoundError(DataIntegrityError):
    def __init__(self, lead_id):
        self.lead_id = lead_id
        super().__init__(f"Lead not found: {lead_id}")


class ConversationNotFoundError(DataIntegrityError):
    def __init__(self, conversation_id):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation not found: {conversation_id}")


def _as_uuid(value: Union[str, uuid.UUID]) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


async def require_lead(db: AsyncSession, lead_id) -> Lead:
    lead = await db.get(Lead, _as_uuid(lead_id))
    if not lead:
        raise LeadNotFoundError(lead_id)
    return lead


async def require_conversation(db: AsyncSession, conversation_id) -> Conversation:
    conversation = await db.get(Conversation, _as_uuid(conversation_id))
    if not conversation:
        raise ConversationNotFoundError(conversation_id)
    return conversation


async def get_message_by_channel_id(
    db: AsyncSession, channel_message_id: Optional[str]
) -> Optional[Message]:
    if not channel_message_id:
        return None
    result = await db.execute(
        select(Message).where(Message.channel_message_id == channel_message_id).limit(1)
    )
    return result.scalar_one_or_none()


async def find_lead_by_channel_user(
    db: AsyncSession, channel: str, channel_user_id: str
) -> Optional[Lead]:
    result = await db.execute(
        select(Lead).where(
            and_(Lead.channel == channel, Lead.channel_user_id == channel_user_id)
        ).limit(1)
    )
    return result.scalar_one_or_none()


async def get_profile(db: AsyncSession, lead_id) -> Optional[LeadProfile]:
    result = await db.execute(
        select(LeadProfile).where(LeadProfile.lead_id == _as_uuid(lead_id)).limit(1)
    )
    return result.scalar_one_or_none()


async def get_or_create_profile(db: AsyncSession, lead_id) -> LeadProfile:
    profile = await get_profile(db, lead_id)
    if profile is None:
        profile = LeadProfile(lead_id=_as_uuid(lead_id), photo_status="none", photo_template_sent=False)
        db.add(profile)
        await db.flush()
    return profile


async def upsert_profile(db: AsyncSession, lead_id, fields: dict) -> LeadProfile:
    """
    Patch profile columns field by field. None values are skipped so an
    extraction can never blank out a known fact.
    """
    profile = await get_or_create_profile(db, lead_id)
    for key, value in fields.items():
        if value is None or not hasattr(LeadProfile, key):
            continue
        setattr(profile, key, value)
    await db.flush()
    return profile


async def get_active_conversation(db: AsyncSession, lead_id) -> Optional[Conversation]:
    result = await db.execute(
        select(Conversation)
        .where(and_(Conversation.lead_id == _as_uuid(lead_id), Conversation.is_active.is_(True)))
        .order_by(Conversation.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_or_create_conversation(db: AsyncSession, lead: Lead) -> Conversation:
    """Reuse the lead's active conversation or open a new one."""
    conversation = await get_active_conversation(db, lead.id)
    if conversation is None:
        conversation = Conversation(
            lead_id=lead.id,
            channel=lead.channel,
            is_active=True,
            state=lead.status,
            message_count=0,
            inbound_count=0,
            outbound_count=0,
        )
        db.add(conversation)
        await db.flush()
        logger.info("Conversation opened for lead %s", str(lead.id)[:8])
    return conversation


async def save_message(
    db: AsyncSession,
    conversation: Conversation,
    direction: str,
    sender_type: str,
    content: Optional[str],
    media_type: Optional[str] = None,
    media_url: Optional[str] = None,
    channel_message_id: Optional[str] = None,
    ai_run_id: Optional[uuid.UUID] = None,
    metadata: Optional[dict] = None,
) -> Message:
    now = datetime.now(timezone.utc)
    message = Message(
        conversation_id=conversation.id,
        lead_id=conversation.lead_id,
        direction=direction,
        sender_type=sender_type,
        content=content,
        media_type=media_type,
        media_url=media_url,
        channel_message_id=channel_message_id,
        ai_run_id=ai_run_id,
        extra_data=metadata or {},
        created_at=now,
    )
    db.add(message)

    conversation.message_count = (conversation.message_count or 0) + 1
    if direction == "in":
        conversation.inbound_count = (conversation.inbound_count or 0) + 1
    else:
        conversation.outbound_count = (conversation.outbound_count or 0) + 1
    conversation.last_message_at = now

    await db.flush()
    return message


async def save_system_note(db: AsyncSession, conversation: Conversation, note: str) -> Message:
    """Internal note in the transcript (never sent to the patient)."""
    return await save_message(
        db, conversation, direction="out", sender_type="system", content=note,
        metadata={"internal": True},
    )


async def get_recent_messages(db: AsyncSession, conversation_id, limit: int = 20) -> list[Message]:
    """Last `limit` messages, oldest first."""
    result = await db.execute(
        select(Message)
        .where(Message.conversation_id == _as_uuid(conversation_id))
        .order_by(Message.created_at.desc())
        .limit(limit)
    )
    return list(reversed(result.scalars().all()))


async def cancel_pending_followups(db: AsyncSession, lead_id, reason: str = "lead_responded") -> int:
    """Bulk-cancel every pending follow-up for a lead. Returns the number cancelled."""
    result = await db.execute(
        update(Followup)
        .where(and_(Followup.lead_id == _as_uuid(lead_id), Followup.status == "pending"))
        .values(status="cancelled", skip_reason=reason)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount or 0


async def mark_followups_responded(db: AsyncSession, lead_id) -> int:
    """Sent follow-ups that got an answer become responded."""
    result = await db.execute(
        update(Followup)
        .where(and_(Followup.lead_id == _as_uuid(lead_id), Followup.status == "sent"))
        .values(status="responded")
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount or 0


def set_status(lead: Lead, new_status, reason: str = "") -> bool:
    """Apply a status change. Returns False when the status is unchanged."""
    value = getattr(new_status, "value", new_status)
    if lead.status == value:
        return False
    logger.info(
        "Lead %s status %s -> %s%s",
        str(lead.id)[:8], lead.status, value, f" ({reason})" if reason else "",
        extra={"lead_id": str(lead.id)},
    )
    lead.previous_status = lead.status
    lead.status = value
    return True


def log_event(
    db: AsyncSession,
    lead_id,
    action: str,
    message: str = "",
    status: str = "success",
    data: Optional[dict] = None,
    error_message: Optional[str] = None,
) -> EventLog:
    event = EventLog(
        lead_id=lead_id,
        action=action,
        status=status,
        message=message or None,
        data=data,
        error_message=error_message,
    )
    db.add(event)
    return event


def create_notification(
    db: AsyncSession,
    lead_id,
    type: str,
    title: str,
    body: str = "",
    tags: Optional[list] = None,
    data: Optional[dict] = None,
) -> Notification:
    notification = Notification(
        lead_id=lead_id,
        type=type,
        title=title,
        body=body or None,
        tags=tags or [],
        data=data,
    )
    db.add(notification)
    logger.info("Notification %s created for lead %s", type, str(lead_id)[:8])
    return notification
