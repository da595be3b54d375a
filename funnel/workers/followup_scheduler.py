"""
Follow-up scheduler worker - sends due nudges to leads that went quiet.
Runs every 60 seconds. A sweep that starts while another is running is
dropped, not queued.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from funnel.channels.base import ChannelSendError
from funnel.channels.registry import get_channel_adapter
from funnel.config import get_settings
from funnel.database import async_session_factory
from funnel.models.conversation import Conversation
from funnel.models.followup import Followup
from funnel.models.lead import Lead
from funnel.services.followups import generate_followup_message, schedule_next_followup
from funnel.services.leads import get_profile, log_event, save_message, set_status
from funnel.services.state_machine import NUDGEABLE_STATUSES, LeadEvent, transition
from funnel.utils.logging import set_correlation_id
from funnel.utils.redis_client import write_heartbeat
from funnel.utils.timezone import get_country_code, get_messaging_window_status

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 60
MAX_FOLLOWUPS_PER_SWEEP = 50

_NUDGEABLE = frozenset(status.value for status in NUDGEABLE_STATUSES)


@dataclass
class SweepResult:
    due: int = 0
    sent: int = 0
    cancelled: int = 0
    postponed: int = 0
    failed: int = 0


class FollowupScheduler:
    """Single-flight sweep over due follow-ups."""

    def __init__(self, session_factory=async_session_factory):
        self._session_factory = session_factory
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def run_once(self, now: Optional[datetime] = None) -> Optional[SweepResult]:
        """Process every due follow-up. Returns None when a sweep is already in progress."""
        if self._running:
            logger.info("Follow-up sweep already running, skipping")
            return None

        self._running = True
        try:
            return await self._sweep(now or datetime.now(timezone.utc))
        finally:
            self._running = False

    async def _sweep(self, now: datetime) -> SweepResult:
        sweep = SweepResult()
        async with self._session_factory() as db:
            result = await db.execute(
                select(Followup.id)
                .where(
                    and_(
                        Followup.status == "pending",
                        Followup.scheduled_at <= now,
                    )
                )
                .order_by(Followup.scheduled_at)
                .limit(MAX_FOLLOWUPS_PER_SWEEP)
            )
            followup_ids = result.scalars().all()
            sweep.due = len(followup_ids)
            if not followup_ids:
                return sweep

            logger.info("Processing %d due follow-ups", len(followup_ids))

            for followup_id in followup_ids:
                set_correlation_id(f"followup-{str(followup_id)[:8]}")
                try:
                    followup = await db.get(Followup, followup_id)
                    outcome = await self._process(db, followup, now)
                except Exception as e:
                    logger.error(
                        "Follow-up %s failed: %s", str(followup_id)[:8], str(e),
                        extra={"followup_id": str(followup_id), "error_code": "followup_error"},
                    )
                    await db.rollback()
                    await self._mark_failed(db, followup_id, str(e))
                    outcome = "failed"
                else:
                    await db.commit()

                if outcome == "sent":
                    sweep.sent += 1
                elif outcome == "cancelled":
                    sweep.cancelled += 1
                elif outcome == "postponed":
                    sweep.postponed += 1
                elif outcome == "failed":
                    sweep.failed += 1

        logger.info(
            "Follow-up sweep done: %d sent, %d cancelled, %d postponed, %d failed",
            sweep.sent, sweep.cancelled, sweep.postponed, sweep.failed,
        )
        return sweep

    async def _mark_failed(self, db: AsyncSession, followup_id, error: str) -> None:
        row = await db.get(Followup, followup_id)
        if row is not None:
            row.status = "failed"
            row.last_error = error[:1000]
            await db.commit()

    async def _process(self, db: AsyncSession, followup: Followup, now: datetime) -> str:
        settings = get_settings()
        lead = await db.get(Lead, followup.lead_id)
        if lead is None or lead.status not in _NUDGEABLE:
            followup.status = "cancelled"
            followup.skip_reason = f"lead status {lead.status}" if lead else "lead missing"
            return "cancelled"

        if lead.timezone:
            window = get_messaging_window_status(
                lead.timezone,
                get_country_code(lead.country),
                start_hour=settings.send_window_start_hour,
                end_hour=settings.send_window_end_hour,
                avoid_weekends=settings.send_window_avoid_weekends,
                now=now,
            )
            if not window.can_send:
                followup.scheduled_at = now + timedelta(hours=max(window.wait_hours, 1))
                followup.skip_reason = window.reason
                logger.info(
                    "Follow-up %s postponed %sh for lead %s (%s)",
                    str(followup.id)[:8], window.wait_hours, str(lead.id)[:8], window.reason,
                    extra={"followup_id": str(followup.id), "lead_id": str(lead.id)},
                )
                return "postponed"

        conversation = None
        if followup.conversation_id:
            conversation = await db.get(Conversation, followup.conversation_id)
        profile = await get_profile(db, lead.id)
        first_name = (profile.name or "").split(" ")[0] if profile and profile.name else None

        content, source = await generate_followup_message(db, lead, conversation, followup, name=first_name)

        adapter = get_channel_adapter(lead.channel)
        try:
            await adapter.send_message(lead.channel_user_id, content)
        except ChannelSendError as e:
            followup.status = "failed"
            followup.last_error = str(e)[:1000]
            log_event(
                db, lead.id, "followup_send", status="failure",
                error_message=str(e)[:500],
                data={"followup_id": str(followup.id), "attempt": followup.attempt_number},
            )
            logger.warning(
                "Follow-up %s send failed for lead %s: %s", str(followup.id)[:8], str(lead.id)[:8], str(e),
                extra={"followup_id": str(followup.id), "lead_id": str(lead.id), "channel": lead.channel},
            )
            return "failed"

        followup.status = "sent"
        followup.sent_at = now
        followup.message_content = content
        lead.last_outbound_at = now
        if conversation is not None:
            await save_message(
                db, conversation, direction="out", sender_type="ai", content=content,
                metadata={"followup_id": str(followup.id), "source": source},
            )

        self._advance(db, lead, followup, settings.followup_max_attempts)
        if followup.attempt_number < settings.followup_max_attempts:
            await schedule_next_followup(db, lead, conversation, attempt=followup.attempt_number + 1, now=now)

        log_event(
            db, lead.id, "followup_sent",
            message=f"#{followup.attempt_number} {followup.followup_type}",
            data={"followup_id": str(followup.id), "source": source},
        )
        return "sent"

    def _advance(self, db: AsyncSession, lead: Lead, followup: Followup, max_attempts: int) -> None:
        previous = lead.status
        context = {"followup_attempt": followup.attempt_number, "max_followups": max_attempts}
        result = transition(lead.status, LeadEvent.MAX_FOLLOWUPS_REACHED, context)
        if not result.success:
            result = transition(lead.status, LeadEvent.FOLLOWUP_SENT, context)
        if result.success and set_status(lead, result.new_state, reason=f"follow-up #{followup.attempt_number}"):
            log_event(db, lead.id, "status_changed", message=f"{previous} -> {lead.status}")


_scheduler: Optional[FollowupScheduler] = None


def get_followup_scheduler() -> FollowupScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = FollowupScheduler()
    return _scheduler


async def run_followup_scheduler():
    """Main loop - sweep due follow-ups every minute."""
    logger.info("Follow-up scheduler started (poll every %ds)", POLL_INTERVAL_SECONDS)
    scheduler = get_followup_scheduler()

    while True:
        try:
            await scheduler.run_once()
        except Exception as e:
            logger.error("Follow-up scheduler error: %s", str(e))

        await write_heartbeat("followup_scheduler", ttl_seconds=300)
        await asyncio.sleep(POLL_INTERVAL_SECONDS)
