"""
AI service client - the external inference service behind a request/response contract.
Bounded timeout on every call. Failures come back as {"error": ...} results and
callers fall back to deterministic behavior; nothing here raises.
"""
import logging
from typing import Optional

import httpx
from pydantic import ValidationError

from funnel.config import get_settings
from funnel.schemas.ai_responses import AiAnalysis, FollowupAnalysis
from funnel.utils.metrics import Timer

logger = logging.getLogger(__name__)

ANALYZE_PATH = "/api/v1/analyze"
ANALYZE_FOLLOWUP_PATH = "/api/v1/analyze-followup"


def _error_result(error_msg: str, latency_ms: int = 0) -> dict:
    return {
        "analysis": None,
        "raw": None,
        "latency_ms": latency_ms,
        "error": error_msg,
    }


async def _post(path: str, payload: dict) -> dict:
    settings = get_settings()
    headers = {"Content-Type": "application/json"}
    if settings.ai_worker_api_key:
        headers["Authorization"] = f"Bearer {settings.ai_worker_api_key}"

    async with httpx.AsyncClient(
        base_url=settings.ai_worker_url,
        timeout=settings.ai_timeout_seconds,
    ) as client:
        response = await client.post(path, json=payload, headers=headers)
        response.raise_for_status()
        return response.json()


async def analyze_conversation(
    messages: list[dict],
    lead_context: dict,
    job_type: str = "ANALYZE_AND_DRAFT_REPLY",
    system_hint: Optional[str] = None,
) -> dict:
    """
    Analyze the conversation and draft the next reply.

    Args:
        messages: [{"role": "user"|"assistant"|"system", "content": str}], oldest first
        lead_context: status, language, profile snapshot, timezone context, ...
        job_type: Analysis job type, echoed to the service
        system_hint: Extra instruction appended as a trailing system message

    Returns:
        {"analysis": AiAnalysis|None, "raw": dict|None, "latency_ms": int, "error": str|None}
    """
    timer = Timer().start()
    conversation = list(messages)
    if system_hint:
        conversation.append({"role": "system", "content": system_hint})

    payload = {
        "job_type": job_type,
        "messages": conversation,
        "lead_context": lead_context,
    }

    try:
        raw = await _post(ANALYZE_PATH, payload)
        analysis = AiAnalysis.model_validate(raw)
    except httpx.TimeoutException:
        logger.warning("AI analyze timed out after %dms", timer.elapsed_ms)
        return _error_result("timeout", timer.stop())
    except httpx.HTTPError as e:
        logger.warning("AI analyze failed: %s", str(e))
        return _error_result(f"http_error: {e}", timer.stop())
    except (ValidationError, ValueError) as e:
        logger.warning("AI analyze returned an invalid payload: %s", str(e))
        return _error_result(f"invalid_response: {e}", timer.stop())

    latency = timer.stop()
    return {
        "analysis": analysis,
        "raw": raw,
        "latency_ms": analysis.latency_ms or latency,
        "error": None,
    }


async def analyze_followup(
    messages: list[dict],
    lead_context: dict,
    last_response_at: Optional[str],
    followup_count: int,
) -> dict:
    """
    Ask the service for a follow-up strategy (immediate, wait, give_up, escalate).

    Returns:
        {"analysis": FollowupAnalysis|None, "raw": dict|None, "latency_ms": int, "error": str|None}
    """
    timer = Timer().start()
    payload = {
        "messages": messages,
        "lead_context": lead_context,
        "last_response_at": last_response_at,
        "followup_count": followup_count,
    }

    try:
        raw = await _post(ANALYZE_FOLLOWUP_PATH, payload)
        analysis = FollowupAnalysis.model_validate(raw)
    except httpx.TimeoutException:
        logger.warning("AI followup analysis timed out after %dms", timer.elapsed_ms)
        return _error_result("timeout", timer.stop())
    except httpx.HTTPError as e:
        logger.warning("AI followup analysis failed: %s", str(e))
        return _error_result(f"http_error: {e}", timer.stop())
    except (ValidationError, ValueError) as e:
        logger.warning("AI followup analysis returned an invalid payload: %s", str(e))
        return _error_result(f"invalid_response: {e}", timer.stop())

    return {"analysis": analysis, "raw": raw, "latency_ms": timer.stop(), "error": None}
