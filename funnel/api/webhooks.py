"""
Webhook endpoints - receive chat messages from every channel.
Each webhook normalizes its payload with the channel adapter and hands every
message to the conductor, committing per message.

Providers retry on non-2xx responses. Replays are harmless because the
conductor drops channel message ids it has already stored. The form webhook
is the exception to the chat shape: it applies a completed intake form and
is idempotent on the provider's submission id.
"""
import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from funnel.agents.conductor import arm_photo_burst, handle_incoming_message
from funnel.agents.intake_form import apply_form_submission
from funnel.channels.registry import get_channel_adapter
from funnel.config import get_settings
from funnel.database import get_db
from funnel.schemas.form_submission import FormSubmission
from funnel.services.task_dispatch import notify_processor

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/webhook", tags=["webhooks"])


async def _read_json(request: Request) -> dict:
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Expected a JSON object")
    return payload


async def _ingest(db: AsyncSession, channel: str, payload: dict) -> dict:
    """Normalize and ingest every message in a provider payload."""
    adapter = get_channel_adapter(channel)
    messages = adapter.normalize(payload)
    if not messages:
        return {"status": "ignored", "processed": 0}

    results = []
    for message in messages:
        try:
            result = await handle_incoming_message(db, message)
            await db.commit()
        except Exception as e:
            await db.rollback()
            logger.error(
                "Inbound %s message %s failed: %s", channel, message.channel_message_id, str(e),
                extra={"channel": channel, "error_code": "ingest_failed"},
            )
            raise HTTPException(status_code=500, detail="Message processing failed")

        arm_photo_burst(result)
        if result.status != "duplicate":
            await notify_processor(result.ai_task_id or result.message_id)
        results.append({"message_id": message.channel_message_id, "status": result.status})

    return {"status": "ok", "processed": len(results), "results": results}


@router.post("/telegram")
async def telegram_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    settings = get_settings()
    if settings.telegram_webhook_secret:
        provided = request.headers.get("X-Telegram-Bot-Api-Secret-Token", "")
        if not hmac.compare_digest(provided, settings.telegram_webhook_secret):
            logger.warning("Telegram webhook rejected: bad secret token")
            raise HTTPException(status_code=403, detail="Invalid secret token")

    payload = await _read_json(request)
    return await _ingest(db, "telegram", payload)


@router.get("/whatsapp")
async def whatsapp_verify(
    mode: Optional[str] = Query(default=None, alias="hub.mode"),
    token: Optional[str] = Query(default=None, alias="hub.verify_token"),
    challenge: Optional[str] = Query(default=None, alias="hub.challenge"),
):
    """Meta subscription handshake: echo the challenge when the verify token matches."""
    settings = get_settings()
    if (
        mode == "subscribe"
        and settings.whatsapp_verify_token
        and token is not None
        and hmac.compare_digest(token, settings.whatsapp_verify_token)
    ):
        logger.info("WhatsApp webhook verified")
        return PlainTextResponse(challenge or "")
    raise HTTPException(status_code=403, detail="Verification failed")


@router.post("/whatsapp")
async def whatsapp_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    payload = await _read_json(request)
    return await _ingest(db, "whatsapp", payload)


@router.post("/web")
async def web_chat_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    payload = await _read_json(request)
    return await _ingest(db, "web", payload)


@router.post("/form")
async def form_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    """Completed intake form from the external form provider."""
    settings = get_settings()
    if settings.form_webhook_secret:
        provided = request.headers.get("X-Form-Secret", "")
        if not hmac.compare_digest(provided, settings.form_webhook_secret):
            logger.warning("Form webhook rejected: bad secret")
            raise HTTPException(status_code=403, detail="Invalid secret")

    payload = await _read_json(request)
    try:
        submission = FormSubmission.model_validate(payload)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False))

    try:
        outcome = await apply_form_submission(db, submission)
        await db.commit()
    except Exception as e:
        await db.rollback()
        logger.error(
            "Form submission %s failed: %s", submission.dedup_key or "-", str(e),
            extra={"error_code": "form_failed"},
        )
        raise HTTPException(status_code=500, detail="Form processing failed")

    return {"status": outcome.status, "lead_id": outcome.lead_id}
