"""
Tests for funnel/services/followups.py - follow-up planning, drafting and
human escalation.
"""
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from funnel.models.followup import Followup
from funnel.models.handoff import Handoff
from funnel.models.notification import Notification
from funnel.schemas.ai_responses import AiAnalysis, FollowupAnalysis
from funnel.services.followups import (
    escalate_to_human,
    followup_type_for,
    generate_followup_message,
    next_interval_hours,
    schedule_ai_followup,
    schedule_followup,
    schedule_next_followup,
)
from funnel.utils.timezone import get_local_time
from conftest import create_lead, make_settings

TUESDAY_15_NEW_YORK = datetime(2026, 10, 13, 19, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _plan(**kwargs) -> dict:
    return {"analysis": FollowupAnalysis(**kwargs), "raw": {}, "latency_ms": 5, "error": None}


def _ai_error() -> dict:
    return {"analysis": None, "raw": None, "latency_ms": 0, "error": "timeout"}


async def _followups(db, status: str = None) -> list[Followup]:
    query = select(Followup).order_by(Followup.created_at)
    if status:
        query = query.where(Followup.status == status)
    return list((await db.execute(query)).scalars().all())


# ---------------------------------------------------------------------------
# Interval ladder
# ---------------------------------------------------------------------------

class TestLadder:
    def test_intervals_by_attempt(self):
        assert next_interval_hours(1, [2, 24, 72]) == 2
        assert next_interval_hours(3, [2, 24, 72]) == 72

    def test_last_interval_repeats(self):
        assert next_interval_hours(7, [2, 24, 72]) == 72

    def test_followup_types(self):
        assert followup_type_for(1, 3) == "reminder"
        assert followup_type_for(2, 3) == "check_in"
        assert followup_type_for(3, 3) == "final"


class TestScheduleNextFollowup:
    @pytest.mark.asyncio
    async def test_schedules_first_attempt_after_first_interval(self, db):
        lead, conversation = await create_lead(db)

        followup = await schedule_next_followup(db, lead, conversation, attempt=1, now=TUESDAY_15_NEW_YORK)

        assert followup.attempt_number == 1
        assert followup.followup_type == "reminder"
        assert followup.scheduled_at == TUESDAY_15_NEW_YORK + timedelta(hours=2)

    @pytest.mark.asyncio
    async def test_new_schedule_replaces_pending(self, db):
        lead, conversation = await create_lead(db)
        await schedule_next_followup(db, lead, conversation, attempt=1)
        await schedule_next_followup(db, lead, conversation, attempt=2)

        assert [f.attempt_number for f in await _followups(db, "pending")] == [2]
        cancelled = await _followups(db, "cancelled")
        assert cancelled[0].skip_reason == "rescheduled"

    @pytest.mark.asyncio
    async def test_exhausted_attempts_schedule_nothing(self, db):
        lead, conversation = await create_lead(db)
        assert await schedule_next_followup(db, lead, conversation, attempt=4) is None
        assert await _followups(db) == []

    @pytest.mark.asyncio
    async def test_send_time_respects_local_window(self, db):
        lead, conversation = await create_lead(db, country="US", timezone="America/New_York")

        # 15:00 local + 72h lands on Friday 15:00, a weekday
        followup = await schedule_next_followup(db, lead, conversation, attempt=3, now=TUESDAY_15_NEW_YORK)
        local = get_local_time("America/New_York", followup.scheduled_at)
        assert local.weekday() == 4
        assert 9 <= local.hour < 21


# ---------------------------------------------------------------------------
# AI timing
# ---------------------------------------------------------------------------

class TestScheduleAiFollowup:
    @pytest.mark.asyncio
    async def test_wait_strategy_stores_plan(self, db):
        lead, conversation = await create_lead(db)
        plan = _plan(
            followup_strategy="wait", wait_hours=6, followup_tone="value_add",
            suggested_message="Did you get a chance to think about it?", confidence=0.8,
        )

        with patch("funnel.services.followups.ai_service.analyze_followup",
                   new_callable=AsyncMock, return_value=plan) as mock_ai:
            followup = await schedule_ai_followup(db, lead, conversation, attempt=2)

        assert followup.ai_strategy == "wait"
        assert followup.ai_tone == "value_add"
        assert followup.ai_suggested_message.startswith("Did you")
        # followup_count is the number already sent
        assert mock_ai.call_args[0][3] == 1

    @pytest.mark.asyncio
    async def test_immediate_strategy_has_no_delay(self, db):
        lead, conversation = await create_lead(db)
        before = datetime.now(timezone.utc)

        with patch("funnel.services.followups.ai_service.analyze_followup",
                   new_callable=AsyncMock, return_value=_plan(followup_strategy="immediate")):
            followup = await schedule_ai_followup(db, lead, conversation)

        assert followup.scheduled_at - before < timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_give_up_cancels_and_schedules_nothing(self, db):
        lead, conversation = await create_lead(db)
        await schedule_next_followup(db, lead, conversation, attempt=1)

        with patch("funnel.services.followups.ai_service.analyze_followup",
                   new_callable=AsyncMock, return_value=_plan(followup_strategy="give_up")):
            result = await schedule_ai_followup(db, lead, conversation, attempt=2)

        assert result is None
        assert await _followups(db, "pending") == []

    @pytest.mark.asyncio
    async def test_escalate_hands_off(self, db):
        lead, conversation = await create_lead(db, status="WAITING_FOR_USER")

        with patch("funnel.services.followups.ai_service.analyze_followup",
                   new_callable=AsyncMock,
                   return_value=_plan(followup_strategy="escalate", escalation_reason="Asked for price twice")):
            result = await schedule_ai_followup(db, lead, conversation, attempt=2)

        assert result is None
        assert lead.status == "HANDOFF_HUMAN"
        handoff = (await db.execute(select(Handoff))).scalar_one()
        assert handoff.triggered_by == "followup"
        assert handoff.reason == "Asked for price twice"

    @pytest.mark.asyncio
    async def test_ai_failure_falls_back_to_ladder(self, db):
        lead, conversation = await create_lead(db)

        with patch("funnel.services.followups.ai_service.analyze_followup",
                   new_callable=AsyncMock, return_value=_ai_error()):
            followup = await schedule_ai_followup(db, lead, conversation, attempt=1)

        assert followup is not None
        assert followup.ai_strategy is None

    @pytest.mark.asyncio
    async def test_schedule_followup_switches_on_setting(self, db):
        lead, conversation = await create_lead(db)

        with patch("funnel.services.followups.get_settings",
                   return_value=make_settings(followup_use_ai_timing=False)), \
             patch("funnel.services.followups.ai_service.analyze_followup",
                   new_callable=AsyncMock) as mock_ai:
            followup = await schedule_followup(db, lead, conversation)

        mock_ai.assert_not_awaited()
        assert followup.attempt_number == 1


# ---------------------------------------------------------------------------
# Drafting
# ---------------------------------------------------------------------------

class TestGenerateFollowupMessage:
    @pytest.mark.asyncio
    async def test_uses_planned_message(self, db):
        lead, conversation = await create_lead(db)
        followup = Followup(attempt_number=1, ai_suggested_message="Still thinking about it?")
        text, source = await generate_followup_message(db, lead, conversation, followup)
        assert (text, source) == ("Still thinking about it?", "ai_plan")

    @pytest.mark.asyncio
    async def test_ai_draft_is_flattened(self, db):
        lead, conversation = await create_lead(db)
        followup = Followup(attempt_number=2)
        result = {"analysis": AiAnalysis(replyDraft="Hi! ||| Any questions?"), "error": None}

        with patch("funnel.services.followups.ai_service.analyze_conversation",
                   new_callable=AsyncMock, return_value=result) as mock_ai:
            text, source = await generate_followup_message(db, lead, conversation, followup)

        assert source == "ai"
        assert "|||" not in text
        assert mock_ai.call_args.kwargs["system_hint"].startswith("[SYSTEM: Second")

    @pytest.mark.asyncio
    async def test_ai_failure_uses_template(self, db):
        lead, conversation = await create_lead(db, language="tr")
        followup = Followup(attempt_number=3)

        with patch("funnel.services.followups.ai_service.analyze_conversation",
                   new_callable=AsyncMock, return_value=_ai_error()):
            text, source = await generate_followup_message(db, lead, conversation, followup, name="Ayşe Kaya")

        assert source == "template"
        assert text.startswith("Merhaba Ayşe")


# ---------------------------------------------------------------------------
# Escalation
# ---------------------------------------------------------------------------

class TestEscalateToHuman:
    @pytest.mark.asyncio
    async def test_creates_handoff_and_notification(self, db):
        lead, conversation = await create_lead(db)
        await schedule_next_followup(db, lead, conversation, attempt=1)

        handoff = await escalate_to_human(db, lead, conversation, reason="Wants to talk to a doctor")

        assert handoff.triggered_by == "ai"
        assert lead.status == "HANDOFF_HUMAN"
        assert lead.previous_status == "QUALIFYING"
        assert await _followups(db, "pending") == []
        notification = (await db.execute(select(Notification))).scalar_one()
        assert notification.tags == ["HANDOFF"]

    @pytest.mark.asyncio
    async def test_inactive_status_is_forced(self, db):
        lead, conversation = await create_lead(db, status="CONVERTED")
        await escalate_to_human(db, lead, conversation, reason="Complaint after booking", triggered_by="admin")
        assert lead.status == "HANDOFF_HUMAN"
