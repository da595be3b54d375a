"""
Follow-up planning - when the next nudge goes out and what it says.

Two ways to schedule:
- fixed ladder: followup_intervals_hours[attempt - 1], the last interval repeats
- AI timing: analyze-followup picks immediate / wait / give_up / escalate;
  any AI failure falls back to the fixed ladder

Either way a new follow-up replaces every pending one for the lead and its
time is pushed into the lead's local send window.
"""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from funnel.config import get_settings
from funnel.models.conversation import Conversation
from funnel.models.followup import Followup
from funnel.models.handoff import Handoff
from funnel.models.lead import Lead
from funnel.services import ai as ai_service
from funnel.services.context import build_lead_context, load_history
from funnel.services.leads import cancel_pending_followups, create_notification, log_event, set_status
from funnel.services.state_machine import LeadEvent, transition
from funnel.utils import templates
from funnel.utils.timezone import calculate_optimal_send_time, get_country_code

logger = logging.getLogger(__name__)


def next_interval_hours(attempt: int, intervals: Optional[list[int]] = None) -> float:
    """Hours to wait before follow-up number `attempt` (1-based)."""
    intervals = intervals or get_settings().followup_intervals_hours
    if not intervals:
        return 24.0
    index = max(0, min(attempt - 1, len(intervals) - 1))
    return float(intervals[index])


def followup_type_for(attempt: int, max_attempts: Optional[int] = None) -> str:
    max_attempts = max_attempts or get_settings().followup_max_attempts
    if attempt >= max_attempts:
        return "final"
    if attempt == 2:
        return "check_in"
    return "reminder"


def windowed_send_time(lead: Lead, delay_hours: float, now: Optional[datetime] = None) -> datetime:
    settings = get_settings()
    return calculate_optimal_send_time(
        lead.timezone,
        delay_hours,
        country_code=get_country_code(lead.country),
        start_hour=settings.send_window_start_hour,
        end_hour=settings.send_window_end_hour,
        avoid_weekends=settings.send_window_avoid_weekends,
        now=now,
    )


async def schedule_next_followup(
    db: AsyncSession,
    lead: Lead,
    conversation: Optional[Conversation],
    attempt: int = 1,
    now: Optional[datetime] = None,
) -> Optional[Followup]:
    """Fixed-ladder scheduling. Returns None once attempts are exhausted."""
    settings = get_settings()
    if attempt > settings.followup_max_attempts:
        return None

    await cancel_pending_followups(db, lead.id, reason="rescheduled")
    followup = Followup(
        lead_id=lead.id,
        conversation_id=conversation.id if conversation else None,
        attempt_number=attempt,
        followup_type=followup_type_for(attempt),
        scheduled_at=windowed_send_time(lead, next_interval_hours(attempt), now=now),
        status="pending",
    )
    db.add(followup)
    await db.flush()
    logger.info(
        "Follow-up #%d (%s) scheduled for lead %s at %s",
        attempt, followup.followup_type, str(lead.id)[:8], followup.scheduled_at.isoformat(),
        extra={"lead_id": str(lead.id), "followup_id": str(followup.id)},
    )
    return followup


async def schedule_ai_followup(
    db: AsyncSession,
    lead: Lead,
    conversation: Conversation,
    attempt: int = 1,
    now: Optional[datetime] = None,
) -> Optional[Followup]:
    """
    Let analyze-followup pick the strategy for the next nudge.
    give_up schedules nothing, escalate hands the lead to a human.
    """
    settings = get_settings()
    if attempt > settings.followup_max_attempts:
        return None

    history = await load_history(db, conversation.id)
    context = await build_lead_context(db, lead)
    last_response = lead.last_inbound_at.isoformat() if lead.last_inbound_at else None
    result = await ai_service.analyze_followup(history, context, last_response, attempt - 1)

    if result["error"]:
        logger.info(
            "Follow-up AI unavailable for lead %s (%s), using fixed interval",
            str(lead.id)[:8], result["error"],
        )
        return await schedule_next_followup(db, lead, conversation, attempt, now=now)

    plan = result["analysis"]
    await cancel_pending_followups(db, lead.id, reason="rescheduled")

    if plan.followup_strategy == "give_up" or not plan.should_followup:
        log_event(
            db, lead.id, "followup_give_up",
            message=plan.reasoning or "",
            data={"confidence": plan.confidence, "attempt": attempt},
        )
        logger.info("AI gave up on lead %s", str(lead.id)[:8], extra={"lead_id": str(lead.id)})
        return None

    if plan.followup_strategy == "escalate":
        await escalate_to_human(
            db, lead, conversation,
            reason=plan.escalation_reason or plan.reasoning or "Follow-up escalation",
            triggered_by="followup",
        )
        return None

    delay_hours = 0.0 if plan.followup_strategy == "immediate" else max(plan.wait_hours, 0.0)
    followup = Followup(
        lead_id=lead.id,
        conversation_id=conversation.id,
        attempt_number=attempt,
        followup_type=followup_type_for(attempt),
        scheduled_at=windowed_send_time(lead, delay_hours, now=now),
        status="pending",
        ai_strategy=plan.followup_strategy,
        ai_tone=plan.followup_tone,
        ai_suggested_message=plan.suggested_message,
        ai_reasoning=plan.reasoning,
        ai_confidence=plan.confidence,
    )
    db.add(followup)
    await db.flush()
    logger.info(
        "AI follow-up #%d (%s, %s) scheduled for lead %s at %s",
        attempt, plan.followup_strategy, plan.followup_tone, str(lead.id)[:8],
        followup.scheduled_at.isoformat(),
        extra={"lead_id": str(lead.id), "followup_id": str(followup.id)},
    )
    return followup


async def schedule_followup(
    db: AsyncSession,
    lead: Lead,
    conversation: Conversation,
    attempt: int = 1,
) -> Optional[Followup]:
    if get_settings().followup_use_ai_timing:
        return await schedule_ai_followup(db, lead, conversation, attempt)
    return await schedule_next_followup(db, lead, conversation, attempt)


async def generate_followup_message(
    db: AsyncSession,
    lead: Lead,
    conversation: Optional[Conversation],
    followup: Followup,
    name: Optional[str] = None,
) -> tuple[str, str]:
    """
    Text for a due follow-up and where it came from (ai_plan, ai, template).
    AI failures fall back to the localized template for the attempt.
    """
    if followup.ai_suggested_message:
        return followup.ai_suggested_message, "ai_plan"

    if conversation is not None:
        history = await load_history(db, conversation.id)
        context = await build_lead_context(db, lead)
        context["followup_attempt"] = followup.attempt_number
        result = await ai_service.analyze_conversation(
            history,
            context,
            system_hint=templates.followup_hint(lead.language, followup.attempt_number),
        )
        analysis = result["analysis"]
        if not result["error"] and analysis is not None and analysis.reply_draft.strip():
            return analysis.reply_draft.replace("|||", " ").strip(), "ai"

    return templates.followup_fallback(lead.language, followup.attempt_number, name), "template"


async def escalate_to_human(
    db: AsyncSession,
    lead: Lead,
    conversation: Optional[Conversation],
    reason: str,
    triggered_by: str = "ai",
) -> Handoff:
    """Record a Handoff, move the lead to HANDOFF_HUMAN and alert operators."""
    handoff = Handoff(
        lead_id=lead.id,
        conversation_id=conversation.id if conversation else None,
        reason=reason,
        triggered_by=triggered_by,
    )
    db.add(handoff)

    result = transition(lead.status, LeadEvent.HANDOFF_REQUESTED)
    previous = lead.status
    if result.success:
        set_status(lead, result.new_state, reason="handoff")
    else:
        # Leads outside the active set still stop receiving AI replies
        set_status(lead, "HANDOFF_HUMAN", reason="handoff (forced)")

    await cancel_pending_followups(db, lead.id, reason="handoff")
    create_notification(
        db, lead.id, "handoff",
        title="Conversation needs a human",
        body=reason,
        tags=["HANDOFF"],
        data={"triggered_by": triggered_by, "previous_status": previous},
    )
    log_event(
        db, lead.id, "handoff_created",
        message=reason,
        data={"triggered_by": triggered_by, "from": previous},
    )
    await db.flush()
    logger.warning(
        "Lead %s handed off to a human (%s): %s", str(lead.id)[:8], triggered_by, reason,
        extra={"lead_id": str(lead.id)},
    )
    return handoff
