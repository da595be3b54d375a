"""
Conductor - ingestion pipeline for every inbound chat message.

Order matters:
  1. idempotency gate on the channel message id
  2. lead resolution (+ follow-up cancellation for returning leads)
  3. conversation resolution
  4. message persistence, photo capture isolated in a savepoint
  5. language propagation
  6. consent gate (may stop here)
  7. state transition
  8. AI dispatch: text immediately, photos through the debounce registry

The caller owns the transaction. AI jobs for text join it, so the caller
commits and then wakes the task processor with IngestResult.ai_task_id.
Photo bursts are handed back as IngestResult.photo_burst and only reach the
debounce registry through arm_photo_burst() once the caller has committed.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from funnel.agents.consent import (
    CONSENT_CALLBACKS,
    has_consent,
    resolve_consent,
    send_consent_prompt,
    send_consent_reminder,
)
from funnel.agents.responder import mark_ready_for_doctor
from funnel.config import get_settings
from funnel.models.conversation import Conversation
from funnel.models.lead import Lead
from funnel.models.message import Message
from funnel.schemas.inbound_message import NormalizedMessage
from funnel.services.debounce import DebounceEntry, DebounceRegistry
from funnel.services.leads import (
    cancel_pending_followups,
    find_lead_by_channel_user,
    get_message_by_channel_id,
    get_or_create_conversation,
    get_or_create_profile,
    get_profile,
    log_event,
    mark_followups_responded,
    save_message,
    set_status,
    upsert_profile,
)
from funnel.services.photos import capture_photo, get_photo_progress
from funnel.services.state_machine import LeadEvent, LeadStatus, derive_inbound_event, transition
from funnel.services.task_dispatch import enqueue_ai_job
from funnel.utils.keywords import match_consent_reply
from funnel.utils.metrics import Timer

logger = logging.getLogger(__name__)

# Inbound messages are stored for these leads but never reach the AI
AI_SILENT_STATUSES = frozenset({
    LeadStatus.HANDOFF_HUMAN.value,
    LeadStatus.CONVERTED.value,
    LeadStatus.CLOSED.value,
})


@dataclass(frozen=True)
class PhotoBurst:
    """An image waiting to be counted into its lead's debounce window."""
    lead_id: str
    conversation_id: str
    message_id: str
    language: Optional[str] = None


@dataclass
class IngestResult:
    status: str  # duplicate, consent_requested, consent_pending, consent_declined, stored, dispatched, debounced
    lead_id: Optional[str] = None
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    ai_task_id: Optional[str] = None
    photo_burst: Optional[PhotoBurst] = None
    new_lead: bool = False
    cancelled_followups: int = 0
    response_ms: int = 0
    notes: list[str] = field(default_factory=list)


# === PHOTO DEBOUNCE ===

_photo_debounce: Optional[DebounceRegistry] = None


async def _enqueue_photo_analysis(entry: DebounceEntry) -> None:
    await enqueue_ai_job(
        lead_id=entry.lead_id,
        conversation_id=entry.conversation_id,
        message_id=entry.message_id,
        language=entry.language,
        extra={"photo_count": entry.photo_count, "trigger": "photo_debounce"},
    )


def get_photo_debounce() -> DebounceRegistry:
    """Process-wide registry of open photo bursts."""
    global _photo_debounce
    if _photo_debounce is None:
        _photo_debounce = DebounceRegistry(
            delay_seconds=get_settings().photo_debounce_seconds,
            on_fire=_enqueue_photo_analysis,
        )
    return _photo_debounce


def reset_photo_debounce() -> None:
    global _photo_debounce
    if _photo_debounce is not None:
        _photo_debounce.cancel_all()
    _photo_debounce = None


def arm_photo_burst(result: IngestResult, debounce: Optional[DebounceRegistry] = None) -> bool:
    """
    Count a committed image into its lead's debounce window.
    Must run after the ingest transaction commits: a rolled-back message
    never opens or extends a burst.
    """
    burst = result.photo_burst
    if burst is None:
        return False
    registry = debounce if debounce is not None else get_photo_debounce()
    registry.arm(burst.lead_id, burst.conversation_id, burst.message_id, burst.language)
    return True


# === PIPELINE ===

async def handle_incoming_message(db: AsyncSession, message: NormalizedMessage) -> IngestResult:
    """
    Run one normalized inbound message through the pipeline.
    A channel message id that was already stored is a successful no-op.
    """
    timer = Timer().start()

    # 1. Idempotency gate
    existing = await get_message_by_channel_id(db, message.channel_message_id)
    if existing is not None:
        logger.debug("Duplicate channel message %s ignored", message.channel_message_id)
        return IngestResult(
            status="duplicate",
            lead_id=str(existing.lead_id),
            conversation_id=str(existing.conversation_id),
            message_id=str(existing.id),
            response_ms=timer.stop(),
        )

    # 2. Lead resolution
    lead = await find_lead_by_channel_user(db, message.channel, message.channel_user_id)
    new_lead = lead is None
    cancelled = 0
    if new_lead:
        lead = await _create_lead(db, message)
    else:
        cancelled = await cancel_pending_followups(db, lead.id)
        responded = await mark_followups_responded(db, lead.id)
        if cancelled or responded:
            logger.info(
                "Lead %s responded: %d follow-up(s) cancelled, %d marked responded",
                str(lead.id)[:8], cancelled, responded,
                extra={"lead_id": str(lead.id)},
            )

    # 3. Conversation resolution
    conversation = await get_or_create_conversation(db, lead)

    # 4. Persistence
    stored = await save_message(
        db,
        conversation,
        direction="in",
        sender_type="patient",
        content=message.content,
        media_type=message.media.type if message.media else None,
        media_url=message.media.ref if message.media else None,
        channel_message_id=message.channel_message_id,
        metadata=message.metadata(),
    )
    lead.last_inbound_at = datetime.now(timezone.utc)

    result = IngestResult(
        status="stored",
        lead_id=str(lead.id),
        conversation_id=str(conversation.id),
        message_id=str(stored.id),
        new_lead=new_lead,
        cancelled_followups=cancelled,
    )

    if message.is_image:
        await _capture_photo_isolated(db, lead, stored, message, result)

    # 5. Language propagation, before any copy is chosen below
    if message.detected_language and message.detected_language != lead.language:
        logger.info(
            "Lead %s language %s -> %s", str(lead.id)[:8], lead.language, message.detected_language,
        )
        lead.language = message.detected_language

    log_event(
        db, lead.id, "message_received",
        message=f"{message.channel} {'image' if message.is_image else 'text'}",
        data={"channel_message_id": message.channel_message_id, "new_lead": new_lead},
    )

    # 6. Consent gate
    if not await _pass_consent_gate(db, lead, conversation, message, result):
        await db.flush()
        result.response_ms = timer.stop()
        return result

    if lead.status in AI_SILENT_STATUSES:
        logger.info(
            "Lead %s is %s, message stored without AI dispatch", str(lead.id)[:8], lead.status,
            extra={"lead_id": str(lead.id)},
        )
        await db.flush()
        result.response_ms = timer.stop()
        return result

    # 7. State transition
    await _apply_inbound_transition(db, lead, message.is_image)

    # 8. AI dispatch
    language = message.detected_language or lead.language or "en"
    if message.is_image:
        result.photo_burst = PhotoBurst(str(lead.id), str(conversation.id), str(stored.id), language)
        result.status = "debounced"
    else:
        extra = {"callback_data": message.callback_data} if message.callback_data else None
        result.ai_task_id = await enqueue_ai_job(
            lead_id=str(lead.id),
            conversation_id=str(conversation.id),
            message_id=str(stored.id),
            language=language,
            extra=extra,
            db=db,
        )
        result.status = "dispatched"

    await db.flush()
    result.response_ms = timer.stop()
    logger.info(
        "Inbound %s processed for lead %s: %s in %dms",
        message.channel, str(lead.id)[:8], result.status, result.response_ms,
        extra={"lead_id": str(lead.id), "channel": message.channel},
    )
    return result


async def _create_lead(db: AsyncSession, message: NormalizedMessage) -> Lead:
    lead = Lead(
        channel=message.channel,
        channel_user_id=message.channel_user_id,
        source=f"{message.channel}_organic",
        status=LeadStatus.NEW.value,
        language=message.detected_language,
        tags=[],
        extra_data={},
    )
    db.add(lead)
    await db.flush()

    if message.sender.name or message.sender.phone:
        await upsert_profile(db, lead.id, {
            "name": message.sender.name,
            "phone": message.sender.phone,
        })

    logger.info(
        "New lead created: %s (%s)", str(lead.id)[:8], message.channel,
        extra={"lead_id": str(lead.id), "channel": message.channel},
    )
    return lead


async def _capture_photo_isolated(
    db: AsyncSession,
    lead: Lead,
    stored: Message,
    message: NormalizedMessage,
    result: IngestResult,
) -> None:
    """Photo capture inside a savepoint. Failures are logged and never abort ingestion."""
    try:
        async with db.begin_nested():
            await capture_photo(
                db, lead, stored, message.media.ref, mime_type=message.media.mime_type,
            )
    except Exception as e:
        logger.error(
            "Photo capture failed for lead %s: %s", str(lead.id)[:8], str(e),
            extra={"lead_id": str(lead.id), "error_code": "photo_capture_failed"},
        )
        result.notes.append("photo_capture_failed")
        log_event(db, lead.id, "photo_capture", status="failure", error_message=str(e)[:500])


async def _pass_consent_gate(
    db: AsyncSession,
    lead: Lead,
    conversation: Conversation,
    message: NormalizedMessage,
    result: IngestResult,
) -> bool:
    """True when processing may continue to the AI."""
    if lead.status not in (LeadStatus.NEW.value, LeadStatus.WAITING_CONSENT.value):
        return True

    profile = await get_profile(db, lead.id)
    if has_consent(profile):
        return True

    if lead.status == LeadStatus.NEW.value:
        await send_consent_prompt(db, lead, conversation)
        result.status = "consent_requested"
        return False

    answer = CONSENT_CALLBACKS.get(message.callback_data or "")
    source = "button"
    if answer is None:
        answer = match_consent_reply(message.content, lead.language)
        source = "keyword"

    if answer is None:
        await send_consent_reminder(db, lead, conversation)
        result.status = "consent_pending"
        return False

    outcome = await resolve_consent(db, lead, conversation, approved=answer, source=source)
    if not outcome.approved:
        result.status = "consent_declined"
        return False
    if not outcome.should_dispatch_ai:
        result.status = "consent_approved"
        return False
    return True


# Status a photo leaves behind -> event that closes the set once every slot is covered
_PHOTO_COMPLETION_EVENTS = {
    LeadStatus.PHOTO_COLLECTING.value: LeadEvent.PHOTOS_COMPLETE,
    LeadStatus.PHOTO_QA_FIX.value: LeadEvent.PHOTOS_FIXED,
}


def _step(db: AsyncSession, lead: Lead, event: LeadEvent, context: dict) -> bool:
    outcome = transition(lead.status, event, context)
    if not outcome.success:
        logger.debug("No %s transition for lead %s: %s", event.value, str(lead.id)[:8], outcome.error)
        return False
    previous = lead.status
    if set_status(lead, outcome.new_state, reason=event.value):
        log_event(
            db, lead.id, "status_changed",
            message=f"{previous} -> {lead.status}",
            data={"event": event.value, "from": previous, "to": lead.status},
        )
    return True


async def _apply_inbound_transition(db: AsyncSession, lead: Lead, is_image: bool) -> None:
    event = derive_inbound_event(lead.status, is_image)
    if event is None:
        return
    if event != LeadEvent.PHOTO_RECEIVED:
        _step(db, lead, event, {"consent_given": True})
        return

    # Photo guards compare the captured set against the treatment's slots
    context = {"consent_given": True, **await get_photo_progress(db, lead)}
    _step(db, lead, event, context)

    completion = _PHOTO_COMPLETION_EVENTS.get(lead.status)
    if completion is None or not context["is_complete"]:
        return
    outcome = transition(lead.status, completion, context)
    if outcome.success and outcome.new_state == LeadStatus.READY_FOR_DOCTOR:
        profile = await get_or_create_profile(db, lead.id)
        mark_ready_for_doctor(db, lead, profile, reason=f"{completion.value}: photo set complete")
