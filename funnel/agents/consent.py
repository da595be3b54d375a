"""
Consent gate and intake flow selection.

A NEW lead without consent on file gets the consent prompt and waits in
WAITING_CONSENT. The reply (typed or a button) resolves consent; approval
assigns the lead's agent name and moves it to QUALIFYING. When an intake form
is configured the patient then chooses between the form and the chat.

Agent name assignment runs once per lead. Approving again after a name exists
changes nothing except the status.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from funnel.config import get_settings
from funnel.models.conversation import Conversation
from funnel.models.lead import Lead
from funnel.models.lead_profile import LeadProfile
from funnel.services.leads import get_or_create_profile, log_event, save_message, set_status
from funnel.services.state_machine import LeadEvent, LeadStatus, transition
from funnel.services.task_dispatch import enqueue_channel_send
from funnel.utils import templates

logger = logging.getLogger(__name__)

CONSENT_CALLBACKS = {
    "consent_approve": True,
    "consent_decline": False,
}

FLOW_CALLBACKS = {
    "flow_form": "form",
    "flow_chat": "chat",
}


@dataclass
class ConsentOutcome:
    approved: bool
    agent_name: Optional[str] = None
    agent_name_assigned: bool = False
    status_changed: bool = False
    awaiting_flow_selection: bool = False

    @property
    def should_dispatch_ai(self) -> bool:
        return self.approved and not self.awaiting_flow_selection


def has_consent(profile: Optional[LeadProfile]) -> bool:
    return profile is not None and profile.consent_given is True


def ensure_agent_name(lead: Lead, profile: LeadProfile) -> tuple[str, bool]:
    """The lead's agent name, assigning one if missing. Returns (name, newly_assigned)."""
    if profile.agent_name:
        return profile.agent_name, False
    profile.agent_name = templates.pick_agent_name(str(lead.id), lead.language)
    logger.info(
        "Agent name %s assigned to lead %s", profile.agent_name, str(lead.id)[:8],
        extra={"lead_id": str(lead.id)},
    )
    return profile.agent_name, True


async def send_consent_prompt(db: AsyncSession, lead: Lead, conversation: Conversation) -> None:
    """Queue the consent prompt and park the lead in WAITING_CONSENT."""
    settings = get_settings()
    await enqueue_channel_send(
        channel=lead.channel,
        channel_user_id=lead.channel_user_id,
        lead_id=str(lead.id),
        message_type="consent_prompt",
        language=lead.language,
        extra={"consent_link_url": settings.consent_link_url},
        db=db,
    )
    await save_message(
        db, conversation, direction="out", sender_type="system",
        content="[Consent prompt sent]", metadata={"message_type": "consent_prompt"},
    )
    set_status(lead, LeadStatus.WAITING_CONSENT, reason="consent required")
    log_event(db, lead.id, "consent_requested", message=f"Consent prompt sent ({lead.language or 'en'})")


async def send_consent_reminder(db: AsyncSession, lead: Lead, conversation: Conversation) -> None:
    reminder = templates.localized(templates.CONSENT_REMINDERS, lead.language)
    await save_message(db, conversation, direction="out", sender_type="system", content=reminder)
    await enqueue_channel_send(
        channel=lead.channel,
        channel_user_id=lead.channel_user_id,
        content=reminder,
        lead_id=str(lead.id),
        language=lead.language,
        db=db,
    )
    log_event(db, lead.id, "consent_reminder_sent", status="skipped")


async def resolve_consent(
    db: AsyncSession,
    lead: Lead,
    conversation: Conversation,
    approved: bool,
    source: str = "keyword",
) -> ConsentOutcome:
    """
    Record the patient's consent answer.

    Approval stamps consent once, assigns the agent name once and moves the
    lead to QUALIFYING. A decline is recorded as an explicit False and the
    lead stays in the gate so it can still approve later.
    """
    profile = await get_or_create_profile(db, lead.id)
    now = datetime.now(timezone.utc)

    if not approved:
        profile.consent_given = False
        notice = templates.localized(templates.CONSENT_DECLINED, lead.language)
        await save_message(db, conversation, direction="out", sender_type="system", content=notice)
        await enqueue_channel_send(
            channel=lead.channel,
            channel_user_id=lead.channel_user_id,
            content=notice,
            lead_id=str(lead.id),
            language=lead.language,
            db=db,
        )
        log_event(db, lead.id, "consent_declined", data={"source": source})
        logger.info("Consent declined by lead %s (%s)", str(lead.id)[:8], source)
        return ConsentOutcome(approved=False)

    if profile.consent_given is not True:
        profile.consent_given = True
        profile.consent_at = profile.consent_at or now
    lead.consent_given_at = lead.consent_given_at or profile.consent_at or now

    outcome = ConsentOutcome(approved=True)
    settings = get_settings()
    if settings.intake_form_url and not profile.preferred_flow:
        # Name is assigned when the patient picks the chat flow
        await enqueue_channel_send(
            channel=lead.channel,
            channel_user_id=lead.channel_user_id,
            lead_id=str(lead.id),
            message_type="flow_selection",
            language=lead.language,
            extra={"form_url": settings.intake_form_url},
            db=db,
        )
        outcome.awaiting_flow_selection = True
        outcome.agent_name = profile.agent_name
    else:
        outcome.agent_name, outcome.agent_name_assigned = ensure_agent_name(lead, profile)

    result = transition(lead.status, LeadEvent.MESSAGE_RECEIVED, {"consent_given": True})
    if result.success:
        outcome.status_changed = set_status(lead, result.new_state, reason=f"consent approved ({source})")

    log_event(
        db, lead.id, "consent_approved",
        data={
            "source": source,
            "agent_name": outcome.agent_name,
            "agent_name_assigned": outcome.agent_name_assigned,
        },
    )
    await db.flush()
    return outcome


async def handle_flow_selection(
    db: AsyncSession,
    lead: Lead,
    conversation: Conversation,
    flow: str,
) -> Optional[str]:
    """
    Apply the patient's intake choice. `form` sends the form link, `chat`
    greets with the agent name the first time. Returns the text queued, if any.
    """
    profile = await get_or_create_profile(db, lead.id)
    profile.preferred_flow = flow

    if flow == "form":
        settings = get_settings()
        text = templates.render(
            templates.localized(templates.FORM_LINK_MESSAGES, lead.language),
            form_url=settings.intake_form_url,
        )
    else:
        agent_name, assigned = ensure_agent_name(lead, profile)
        if not assigned:
            log_event(db, lead.id, "flow_selected", message="chat (already greeted)", data={"flow": flow})
            return None
        text = templates.render(
            templates.localized(templates.CHAT_FLOW_MESSAGES, lead.language),
            agent_name=agent_name,
        )

    await save_message(db, conversation, direction="out", sender_type="ai", content=text)
    await enqueue_channel_send(
        channel=lead.channel,
        channel_user_id=lead.channel_user_id,
        content=text,
        lead_id=str(lead.id),
        language=lead.language,
        db=db,
    )
    log_event(db, lead.id, "flow_selected", message=flow, data={"flow": flow})
    logger.info("Lead %s chose the %s flow", str(lead.id)[:8], flow, extra={"lead_id": str(lead.id)})
    return text
