"""
Task dispatch service - enqueue jobs for the task processor.

Two logical queues share the task_queue table:
- ai_analysis: analyze-and-draft-reply jobs (priority 10) and other analysis jobs (5)
- channel_send: outbound sends, optionally delayed (human-like pacing)

Undelayed tasks also push a Redis notification so the processor wakes via
BRPOP instead of waiting for its next poll.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from funnel.database import async_session_factory
from funnel.models.task_queue import TaskQueue

logger = logging.getLogger(__name__)

TASK_NOTIFY_KEY = "funnel:task_notify"

AI_ANALYSIS = "ai_analysis"
CHANNEL_SEND = "channel_send"

ANALYZE_AND_DRAFT_REPLY = "ANALYZE_AND_DRAFT_REPLY"

PRIORITY_HIGH = 10
PRIORITY_NORMAL = 5

AI_MAX_RETRIES = 3
CHANNEL_MAX_RETRIES = 5


async def enqueue_task(
    task_type: str,
    payload: Optional[dict] = None,
    priority: int = PRIORITY_NORMAL,
    delay_ms: int = 0,
    max_retries: int = 3,
    lead_id: Optional[str] = None,
    db: Optional[AsyncSession] = None,
) -> str:
    """
    Enqueue a task for background processing.

    Args:
        task_type: ai_analysis or channel_send
        payload: Task-specific data as JSON-serializable dict
        priority: 0=low, 5=normal, 10=high
        delay_ms: Delay before the task becomes eligible
        max_retries: Maximum attempts before the task is marked failed
        lead_id: Lead the task belongs to, when there is one
        db: When given, the task joins the caller's unit of work (committed with it,
            no wake-up is sent)

    Returns:
        Task ID as string
    """
    scheduled_at = datetime.now(timezone.utc)
    if delay_ms > 0:
        scheduled_at = scheduled_at + timedelta(milliseconds=delay_ms)

    task = TaskQueue(
        task_type=task_type,
        lead_id=lead_id,
        payload=payload or {},
        priority=priority,
        max_retries=max_retries,
        scheduled_at=scheduled_at,
    )

    if db is not None:
        db.add(task)
        await db.flush()
        task_id = str(task.id)
    else:
        async with async_session_factory() as session:
            session.add(task)
            await session.commit()
            task_id = str(task.id)

    logger.info(
        "Task enqueued: type=%s priority=%d delay=%dms id=%s",
        task_type, priority, delay_ms, task_id[:8],
        extra={"task_type": task_type},
    )

    # Tasks joined to a caller's session are invisible until that commit;
    # the caller notifies after committing.
    if delay_ms == 0 and db is None:
        await notify_processor(task_id)

    return task_id


async def notify_processor(task_id: str) -> None:
    """Best-effort wake-up for the task processor."""
    try:
        from funnel.utils.redis_client import get_redis
        redis = await get_redis()
        await redis.lpush(TASK_NOTIFY_KEY, task_id)
    except Exception as e:
        logger.debug("Failed to notify task processor: %s", str(e))


async def enqueue_ai_job(
    lead_id: str,
    conversation_id: str,
    message_id: Optional[str] = None,
    job_type: str = ANALYZE_AND_DRAFT_REPLY,
    language: Optional[str] = None,
    extra: Optional[dict] = None,
    db: Optional[AsyncSession] = None,
) -> str:
    """Queue an AI analysis job. Reply analysis outranks every other job type."""
    payload = {
        "job_type": job_type,
        "lead_id": lead_id,
        "conversation_id": conversation_id,
        "message_id": message_id,
        "language": language,
    }
    if extra:
        payload.update(extra)

    priority = PRIORITY_HIGH if job_type == ANALYZE_AND_DRAFT_REPLY else PRIORITY_NORMAL
    return await enqueue_task(
        AI_ANALYSIS,
        payload=payload,
        priority=priority,
        max_retries=AI_MAX_RETRIES,
        lead_id=lead_id,
        db=db,
    )


async def enqueue_channel_send(
    channel: str,
    channel_user_id: str,
    content: str = "",
    lead_id: Optional[str] = None,
    media_url: Optional[str] = None,
    message_type: str = "standard",
    language: Optional[str] = None,
    delay_ms: int = 0,
    extra: Optional[dict] = None,
    db: Optional[AsyncSession] = None,
) -> str:
    """
    Queue an outbound send.
    message_type: standard, template, consent_prompt, flow_selection
    """
    payload = {
        "channel": channel,
        "channel_user_id": channel_user_id,
        "content": content,
        "lead_id": lead_id,
        "media_url": media_url,
        "message_type": message_type,
        "language": language,
    }
    if extra:
        payload.update(extra)

    return await enqueue_task(
        CHANNEL_SEND,
        payload=payload,
        priority=PRIORITY_NORMAL,
        delay_ms=delay_ms,
        max_retries=CHANNEL_MAX_RETRIES,
        lead_id=lead_id,
        db=db,
    )
