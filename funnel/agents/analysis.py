"""
AI analysis job - load context, call the AI service, record the run and
apply the result.

Button callbacks never reach the AI service: the triggering message's
callback id is turned into an analysis carrying only the consent or flow
answer, and the applier's callback branch handles it.
"""
import logging
import uuid
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from funnel.agents.conductor import AI_SILENT_STATUSES
from funnel.agents.consent import CONSENT_CALLBACKS, FLOW_CALLBACKS
from funnel.agents.responder import apply_ai_response
from funnel.models.ai_run import AiRun
from funnel.models.message import Message
from funnel.schemas.ai_responses import AiAnalysis
from funnel.services import ai as ai_service
from funnel.services.context import build_lead_context, load_history
from funnel.services.leads import log_event, require_conversation, require_lead
from funnel.services.task_dispatch import ANALYZE_AND_DRAFT_REPLY

logger = logging.getLogger(__name__)


class AiAnalysisError(Exception):
    """The AI service failed; the job is retried by the task queue."""


def analysis_from_callback(callback_data: Optional[str]) -> Optional[AiAnalysis]:
    if not callback_data:
        return None
    if callback_data in CONSENT_CALLBACKS:
        response = "approved" if CONSENT_CALLBACKS[callback_data] else "declined"
        return AiAnalysis(consent_response=response)
    if callback_data in FLOW_CALLBACKS:
        return AiAnalysis(flow_selection=FLOW_CALLBACKS[callback_data])
    return None


async def _trigger_callback(db: AsyncSession, payload: dict) -> Optional[str]:
    if payload.get("callback_data"):
        return payload["callback_data"]
    message_id = payload.get("message_id")
    if not message_id:
        return None
    message = await db.get(Message, uuid.UUID(str(message_id)))
    if message is None:
        return None
    return (message.extra_data or {}).get("callback_data")


async def run_analysis_job(db: AsyncSession, payload: dict) -> dict:
    """
    Execute one ai_analysis task inside the caller's session.

    Raises:
        LeadNotFoundError / ConversationNotFoundError: payload points at missing rows
        AiAnalysisError: the AI call failed (its AiRun is already committed)
    """
    lead = await require_lead(db, payload.get("lead_id"))
    conversation = await require_conversation(db, payload.get("conversation_id"))
    job_type = payload.get("job_type") or ANALYZE_AND_DRAFT_REPLY

    if lead.status in AI_SILENT_STATUSES:
        logger.info("Lead %s is %s, analysis skipped", str(lead.id)[:8], lead.status)
        return {"status": "skipped", "reason": f"lead status {lead.status}"}

    callback_analysis = analysis_from_callback(await _trigger_callback(db, payload))
    if callback_analysis is not None:
        outcome = await apply_ai_response(db, lead, conversation, callback_analysis)
        await db.commit()
        return {"status": "applied", "action": outcome.action, "source": "callback"}

    history = await load_history(db, conversation.id)
    context = await build_lead_context(db, lead)
    if payload.get("photo_count"):
        context["photos_in_burst"] = payload["photo_count"]

    result = await ai_service.analyze_conversation(history, context, job_type=job_type)
    analysis: Optional[AiAnalysis] = result["analysis"]

    run = AiRun(
        lead_id=lead.id,
        conversation_id=conversation.id,
        job_type=job_type,
        model=analysis.model if analysis else None,
        tokens_used=analysis.tokens_used if analysis else None,
        latency_ms=result["latency_ms"],
        request_payload={
            "message_count": len(history),
            "status": lead.status,
            "trigger": payload.get("trigger", "message"),
        },
        response_payload=result["raw"],
        error=result["error"],
    )
    db.add(run)
    await db.flush()

    if result["error"] or analysis is None:
        log_event(
            db, lead.id, "ai_analysis", status="failure",
            error_message=str(result["error"])[:500],
            data={"ai_run_id": str(run.id)},
        )
        await db.commit()
        raise AiAnalysisError(result["error"] or "empty analysis")

    outcome = await apply_ai_response(db, lead, conversation, analysis, ai_run_id=run.id)
    log_event(
        db, lead.id, "ai_analysis",
        message=outcome.action,
        data={
            "ai_run_id": str(run.id),
            "intent": analysis.intent.label,
            "latency_ms": result["latency_ms"],
        },
    )
    await db.commit()

    logger.info(
        "Analysis applied for lead %s: intent=%s action=%s latency=%dms",
        str(lead.id)[:8], analysis.intent.label, outcome.action, result["latency_ms"],
        extra={"lead_id": str(lead.id)},
    )
    return {
        "status": "applied",
        "action": outcome.action,
        "ai_run_id": str(run.id),
        "intent": analysis.intent.label,
    }
