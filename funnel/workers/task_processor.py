"""
Task processor worker - claims due rows from task_queue and runs them.

Wakes on a Redis BRPOP notification, with a timeout sized to the next
delayed task (1-30s) so delayed reply parts go out on time and a DB poll
still happens when Redis is down.

Claimed tasks run concurrently under a semaphore, each in its own session.
Channel sends for the same recipient form one group that runs sequentially
so multi-part replies keep their order.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select, and_, func

from funnel.agents.analysis import run_analysis_job
from funnel.channels.registry import get_channel_adapter
from funnel.config import get_settings
from funnel.database import async_session_factory
from funnel.models.task_queue import TaskQueue
from funnel.services.task_dispatch import AI_ANALYSIS, CHANNEL_SEND, TASK_NOTIFY_KEY
from funnel.utils.logging import set_correlation_id
from funnel.utils.redis_client import get_redis, write_heartbeat

logger = logging.getLogger(__name__)

MAX_TASKS_PER_CYCLE = 20
MIN_WAIT_SECONDS = 1
MAX_WAIT_SECONDS = 30

# Exponential backoff base per task type: base * 2 ** (retry - 1)
BACKOFF_BASE_SECONDS = {
    AI_ANALYSIS: 1,
    CHANNEL_SEND: 2,
}


@dataclass
class ClaimedTask:
    id: uuid.UUID
    task_type: str
    payload: dict
    scheduled_at: datetime

    @property
    def group_key(self) -> tuple:
        if self.task_type == CHANNEL_SEND:
            return (CHANNEL_SEND, self.payload.get("channel"), self.payload.get("channel_user_id"))
        return (self.task_type, str(self.id))


def compute_backoff_seconds(task_type: str, retry_count: int) -> int:
    base = BACKOFF_BASE_SECONDS.get(task_type, 2)
    return base * (2 ** max(retry_count - 1, 0))


def group_tasks(tasks: list[ClaimedTask]) -> list[list[ClaimedTask]]:
    """Per-recipient send groups (in schedule order) and one group per other task."""
    groups: dict[tuple, list[ClaimedTask]] = {}
    for task in tasks:
        groups.setdefault(task.group_key, []).append(task)
    for group in groups.values():
        group.sort(key=lambda t: t.scheduled_at)
    return list(groups.values())


async def run_task_processor():
    """Main loop - run due tasks, then wait for a notification or the next delayed task."""
    logger.info("Task processor started (BRPOP %d-%ds adaptive timeout)", MIN_WAIT_SECONDS, MAX_WAIT_SECONDS)

    while True:
        processed = 0
        try:
            processed = await process_cycle()
        except Exception as e:
            logger.error("Task processor cycle error: %s", str(e))

        await write_heartbeat("task_processor")

        # Work done may have queued more work (reply parts after an analysis)
        if processed:
            continue

        wait_seconds = await _next_wait_seconds()
        try:
            redis = await get_redis()
            result = await redis.brpop(TASK_NOTIFY_KEY, timeout=wait_seconds)
            if result:
                while await redis.rpop(TASK_NOTIFY_KEY):
                    pass
        except Exception as e:
            logger.debug("Redis BRPOP unavailable, falling back to sleep: %s", str(e))
            await asyncio.sleep(wait_seconds)


async def _next_wait_seconds() -> int:
    """Seconds until the earliest pending task is due, clamped to [1, 30]."""
    try:
        async with async_session_factory() as db:
            result = await db.execute(
                select(func.min(TaskQueue.scheduled_at)).where(TaskQueue.status == "pending")
            )
            next_at = result.scalar()
    except Exception as e:
        logger.debug("Next-task lookup failed: %s", str(e))
        return MAX_WAIT_SECONDS

    if next_at is None:
        return MAX_WAIT_SECONDS
    if next_at.tzinfo is None:
        next_at = next_at.replace(tzinfo=timezone.utc)
    seconds = (next_at - datetime.now(timezone.utc)).total_seconds()
    return int(max(MIN_WAIT_SECONDS, min(MAX_WAIT_SECONDS, seconds)))


async def process_cycle() -> int:
    """Claim due tasks and run them. Returns the number of tasks claimed."""
    claimed = await claim_due_tasks()
    if not claimed:
        return 0

    logger.info("Processing %d pending tasks", len(claimed))
    semaphore = asyncio.Semaphore(get_settings().channel_send_concurrency)

    async def run_group(group: list[ClaimedTask]) -> None:
        async with semaphore:
            for task in group:
                await execute_task(task)

    await asyncio.gather(*(run_group(group) for group in group_tasks(claimed)))
    return len(claimed)


async def claim_due_tasks(limit: int = MAX_TASKS_PER_CYCLE) -> list[ClaimedTask]:
    now = datetime.now(timezone.utc)
    async with async_session_factory() as db:
        result = await db.execute(
            select(TaskQueue)
            .where(
                and_(
                    TaskQueue.status == "pending",
                    TaskQueue.scheduled_at <= now,
                )
            )
            .order_by(TaskQueue.priority.desc(), TaskQueue.scheduled_at, TaskQueue.created_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        tasks = result.scalars().all()

        claimed = []
        for task in tasks:
            task.status = "processing"
            task.started_at = now
            claimed.append(ClaimedTask(
                id=task.id,
                task_type=task.task_type,
                payload=dict(task.payload or {}),
                scheduled_at=task.scheduled_at,
            ))
        await db.commit()
    return claimed


async def execute_task(task: ClaimedTask) -> None:
    """Run one task and record success, retry or failure."""
    set_correlation_id(f"task-{str(task.id)[:8]}")
    error_msg: Optional[str] = None
    result: Optional[dict] = None

    try:
        result = await _dispatch_task(task.task_type, task.payload)
    except Exception as e:
        error_msg = str(e) or e.__class__.__name__

    async with async_session_factory() as db:
        row = await db.get(TaskQueue, task.id)
        if row is None:
            logger.warning("Task %s vanished before completion", str(task.id)[:8])
            return

        now = datetime.now(timezone.utc)
        if error_msg is None:
            row.status = "completed"
            row.completed_at = now
            row.result_data = result
            logger.info(
                "Task completed: id=%s type=%s", str(task.id)[:8], task.task_type,
                extra={"task_type": task.task_type},
            )
        else:
            row.retry_count = (row.retry_count or 0) + 1
            row.error_message = error_msg[:2000]
            if row.retries_left == 0:
                row.status = "failed"
                row.completed_at = now
                logger.error(
                    "Task failed (max retries): id=%s type=%s error=%s",
                    str(task.id)[:8], task.task_type, error_msg,
                    extra={"task_type": task.task_type, "error_code": "task_failed"},
                )
            else:
                backoff = compute_backoff_seconds(task.task_type, row.retry_count)
                row.status = "pending"
                row.scheduled_at = now + timedelta(seconds=backoff)
                logger.warning(
                    "Task retry %d/%d: id=%s type=%s backoff=%ds error=%s",
                    row.retry_count, row.max_retries,
                    str(task.id)[:8], task.task_type, backoff, error_msg,
                    extra={"task_type": task.task_type},
                )
        await db.commit()


async def _dispatch_task(task_type: str, payload: dict) -> dict:
    """
    Route task to its handler function.
    Each handler receives the payload dict and returns a result dict.
    """
    handlers = {
        AI_ANALYSIS: _handle_ai_analysis,
        CHANNEL_SEND: _handle_channel_send,
    }

    handler = handlers.get(task_type)
    if not handler:
        logger.warning("Unknown task type: %s", task_type)
        return {"status": "skipped", "reason": f"unknown task type: {task_type}"}

    return await handler(payload)


async def _handle_ai_analysis(payload: dict) -> dict:
    async with async_session_factory() as db:
        return await run_analysis_job(db, payload)


async def _handle_channel_send(payload: dict) -> dict:
    """Deliver one outbound message. ChannelSendError propagates for retry."""
    adapter = get_channel_adapter(payload["channel"])
    user = payload["channel_user_id"]
    message_type = payload.get("message_type") or "standard"
    language = payload.get("language")

    if message_type == "consent_prompt":
        message_id = await adapter.send_consent_prompt(user, language, payload.get("consent_link_url") or "")
    elif message_type == "flow_selection":
        message_id = await adapter.send_flow_selection_prompt(user, language, payload.get("form_url") or "")
    else:
        message_id = await adapter.send_message(user, payload.get("content") or "", payload.get("media_url"))

    logger.info(
        "Sent %s message on %s to %s", message_type, payload["channel"], str(user)[-4:],
        extra={"channel": payload["channel"], "lead_id": payload.get("lead_id")},
    )
    return {"status": "sent", "channel_message_id": message_id, "message_type": message_type}
