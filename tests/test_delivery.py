"""
Tests for funnel/services/delivery.py - multi-part replies with typing delays.
"""
import random

import pytest
from sqlalchemy import select

from funnel.models.message import Message
from funnel.models.task_queue import TaskQueue
from funnel.services.delivery import (
    build_delivery_plan,
    calculate_typing_delay,
    deliver_reply,
    split_message_parts,
)
from conftest import create_lead


# ---------------------------------------------------------------------------
# split_message_parts
# ---------------------------------------------------------------------------

class TestSplitMessageParts:
    def test_splits_and_trims(self):
        assert split_message_parts("Hi there ||| How are you?||| ") == ["Hi there", "How are you?"]

    def test_single_part(self):
        assert split_message_parts("Just one") == ["Just one"]

    def test_stray_delimiter_is_removed(self):
        assert split_message_parts("|||Only this|||") == ["Only this"]

    def test_empty(self):
        assert split_message_parts("") == []
        assert split_message_parts(" ||| ") == []


# ---------------------------------------------------------------------------
# Typing delays
# ---------------------------------------------------------------------------

class TestTypingDelay:
    def test_first_part_is_immediate(self):
        assert calculate_typing_delay("a" * 500, 0) == 0

    def test_short_part_clamped_to_minimum(self):
        assert calculate_typing_delay("ok", 1, random.Random(1)) == 2000

    def test_long_part_clamped_to_maximum(self):
        assert calculate_typing_delay("x" * 1000, 3, random.Random(1)) == 15000

    def test_delays_stay_in_bounds(self):
        rng = random.Random(42)
        for length in (1, 20, 60, 101, 250):
            delay = calculate_typing_delay("y" * length, 2, rng)
            assert 2000 <= delay <= 15000


class TestDeliveryPlan:
    def test_cumulative_delays_non_decreasing(self):
        plan = build_delivery_plan(
            "Hello! ||| I can help with that. ||| " + "Some longer detail " * 8,
            random.Random(7),
        )
        assert [p.index for p in plan] == [0, 1, 2]
        assert plan[0].delay_ms == 0
        delays = [p.delay_ms for p in plan]
        assert delays == sorted(delays)
        assert plan[1].delay_ms >= 2000


# ---------------------------------------------------------------------------
# deliver_reply
# ---------------------------------------------------------------------------

class TestDeliverReply:
    @pytest.mark.asyncio
    async def test_stores_one_message_and_queues_each_part(self, db):
        lead, conversation = await create_lead(db)

        stored = await deliver_reply(db, lead, conversation, "First ||| Second")
        await db.commit()

        assert stored.content == "First\n\nSecond"
        messages = (await db.execute(select(Message))).scalars().all()
        assert len(messages) == 1

        tasks = (await db.execute(
            select(TaskQueue).order_by(TaskQueue.scheduled_at)
        )).scalars().all()
        assert [t.payload["content"] for t in tasks] == ["First", "Second"]
        assert all(t.task_type == "channel_send" for t in tasks)
        assert tasks[1].payload["part_index"] == 1

    @pytest.mark.asyncio
    async def test_empty_reply_stores_nothing(self, db):
        lead, conversation = await create_lead(db)
        assert await deliver_reply(db, lead, conversation, "  ") is None
        assert (await db.execute(select(Message))).first() is None
