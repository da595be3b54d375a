"""
Tests for funnel/workers/task_processor.py - claiming, grouping, retries and
handler routing.
"""
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from sqlalchemy import select

from funnel.channels.base import ChannelSendError
from funnel.models.task_queue import TaskQueue
from funnel.services.task_dispatch import enqueue_ai_job, enqueue_channel_send, enqueue_task
from funnel.workers.task_processor import (
    ClaimedTask,
    _dispatch_task,
    _handle_channel_send,
    claim_due_tasks,
    compute_backoff_seconds,
    execute_task,
    group_tasks,
)

T0 = datetime(2026, 10, 13, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _send(user: str, offset_ms: int, content: str = "") -> ClaimedTask:
    return ClaimedTask(
        id=uuid.uuid4(),
        task_type="channel_send",
        payload={"channel": "telegram", "channel_user_id": user, "content": content},
        scheduled_at=T0 + timedelta(milliseconds=offset_ms),
    )


def _claimed(row: TaskQueue) -> ClaimedTask:
    return ClaimedTask(id=row.id, task_type=row.task_type, payload=row.payload, scheduled_at=row.scheduled_at)


@pytest.fixture
def processor_sessions(session_factory):
    with patch("funnel.workers.task_processor.async_session_factory", session_factory):
        yield session_factory


# ---------------------------------------------------------------------------
# Backoff and grouping
# ---------------------------------------------------------------------------

class TestBackoff:
    def test_ai_backoff_doubles_from_one_second(self):
        assert [compute_backoff_seconds("ai_analysis", n) for n in (1, 2, 3)] == [1, 2, 4]

    def test_channel_backoff_doubles_from_two_seconds(self):
        assert [compute_backoff_seconds("channel_send", n) for n in (1, 2, 3, 4)] == [2, 4, 8, 16]


class TestGrouping:
    def test_sends_to_same_recipient_share_a_group_in_order(self):
        late = _send("1", 4000, "second")
        early = _send("1", 0, "first")
        other = _send("2", 0)

        groups = group_tasks([late, other, early])

        assert len(groups) == 2
        first_group = next(g for g in groups if g[0].payload["channel_user_id"] == "1")
        assert [t.payload["content"] for t in first_group] == ["first", "second"]

    def test_ai_jobs_run_independently(self):
        jobs = [
            ClaimedTask(id=uuid.uuid4(), task_type="ai_analysis", payload={"lead_id": "x"}, scheduled_at=T0)
            for _ in range(3)
        ]
        assert len(group_tasks(jobs)) == 3


# ---------------------------------------------------------------------------
# Claiming
# ---------------------------------------------------------------------------

class TestClaimDueTasks:
    @pytest.mark.asyncio
    async def test_claims_due_tasks_by_priority(self, db, processor_sessions):
        await enqueue_channel_send("telegram", "1", "hello", db=db)
        await enqueue_ai_job("lead-1", "conv-1", db=db)
        await enqueue_channel_send("telegram", "1", "later", delay_ms=60_000, db=db)
        await db.commit()

        claimed = await claim_due_tasks()

        assert [t.task_type for t in claimed] == ["ai_analysis", "channel_send"]
        db.expire_all()
        rows = {str(t.id): t for t in await _all_tasks(db)}
        assert all(rows[str(t.id)].status == "processing" for t in claimed)

    @pytest.mark.asyncio
    async def test_claimed_tasks_are_not_claimed_twice(self, db, processor_sessions):
        await enqueue_channel_send("telegram", "1", "hello", db=db)
        await db.commit()

        assert len(await claim_due_tasks()) == 1
        assert await claim_due_tasks() == []


async def _all_tasks(db) -> list[TaskQueue]:
    return list((await db.execute(select(TaskQueue))).scalars().all())


# ---------------------------------------------------------------------------
# Execution and retries
# ---------------------------------------------------------------------------

class TestExecuteTask:
    @pytest.mark.asyncio
    async def test_success_marks_completed(self, db, processor_sessions):
        await enqueue_channel_send("telegram", "1", "hello", db=db)
        await db.commit()
        claimed = _claimed((await _all_tasks(db))[0])
        await db.commit()

        with patch("funnel.workers.task_processor._dispatch_task",
                   new_callable=AsyncMock, return_value={"status": "sent"}):
            await execute_task(claimed)

        db.expunge_all()
        row = await db.get(TaskQueue, claimed.id)
        assert row.status == "completed"
        assert row.result_data == {"status": "sent"}

    @pytest.mark.asyncio
    async def test_failure_schedules_retry_with_backoff(self, db, processor_sessions):
        await enqueue_channel_send("telegram", "1", "hello", db=db)
        await db.commit()
        claimed = _claimed((await _all_tasks(db))[0])
        await db.commit()
        before = datetime.now(timezone.utc).replace(tzinfo=None)

        with patch("funnel.workers.task_processor._dispatch_task",
                   new_callable=AsyncMock, side_effect=ChannelSendError("telegram", "429 Too Many Requests")):
            await execute_task(claimed)

        db.expunge_all()
        row = await db.get(TaskQueue, claimed.id)
        assert row.status == "pending"
        assert row.retry_count == 1
        assert "429" in row.error_message
        delay = row.scheduled_at.replace(tzinfo=None) - before
        assert timedelta(seconds=1) <= delay <= timedelta(seconds=3)

    @pytest.mark.asyncio
    async def test_last_retry_marks_failed(self, db, processor_sessions):
        await enqueue_task("ai_analysis", {"lead_id": "x"}, max_retries=3, db=db)
        await db.commit()
        row = (await _all_tasks(db))[0]
        row.retry_count = 2
        await db.commit()
        claimed = _claimed(row)
        await db.commit()

        with patch("funnel.workers.task_processor._dispatch_task",
                   new_callable=AsyncMock, side_effect=RuntimeError("AI service down")):
            await execute_task(claimed)

        db.expunge_all()
        row = await db.get(TaskQueue, claimed.id)
        assert row.status == "failed"
        assert row.retry_count == 3


# ---------------------------------------------------------------------------
# Handler routing
# ---------------------------------------------------------------------------

class TestDispatch:
    @pytest.mark.asyncio
    async def test_unknown_task_type_is_skipped(self):
        result = await _dispatch_task("send_fax", {})
        assert result["status"] == "skipped"

    @pytest.mark.asyncio
    async def test_ai_analysis_runs_analysis_job(self, processor_sessions):
        with patch("funnel.workers.task_processor.run_analysis_job",
                   new_callable=AsyncMock, return_value={"status": "applied"}) as mock_job:
            result = await _dispatch_task("ai_analysis", {"lead_id": "x"})
        assert result == {"status": "applied"}
        assert mock_job.call_args[0][1] == {"lead_id": "x"}


class TestChannelSendHandler:
    def _adapter(self):
        adapter = MagicMock()
        adapter.send_message = AsyncMock(return_value="m-1")
        adapter.send_consent_prompt = AsyncMock(return_value="m-2")
        adapter.send_flow_selection_prompt = AsyncMock(return_value="m-3")
        return adapter

    @pytest.mark.asyncio
    async def test_standard_message_with_media(self):
        adapter = self._adapter()
        payload = {
            "channel": "whatsapp", "channel_user_id": "905551112233",
            "content": "caption", "media_url": "https://cdn/x.jpg", "message_type": "template",
        }
        with patch("funnel.workers.task_processor.get_channel_adapter", return_value=adapter):
            result = await _handle_channel_send(payload)

        adapter.send_message.assert_awaited_once_with("905551112233", "caption", "https://cdn/x.jpg")
        assert result["channel_message_id"] == "m-1"

    @pytest.mark.asyncio
    async def test_consent_prompt_uses_buttons(self):
        adapter = self._adapter()
        payload = {
            "channel": "telegram", "channel_user_id": "1", "message_type": "consent_prompt",
            "language": "tr", "consent_link_url": "https://clinic.example/kvkk",
        }
        with patch("funnel.workers.task_processor.get_channel_adapter", return_value=adapter):
            await _handle_channel_send(payload)

        adapter.send_consent_prompt.assert_awaited_once_with("1", "tr", "https://clinic.example/kvkk")
        adapter.send_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_flow_selection_prompt(self):
        adapter = self._adapter()
        payload = {
            "channel": "web", "channel_user_id": "s-1", "message_type": "flow_selection",
            "form_url": "https://clinic.example/form",
        }
        with patch("funnel.workers.task_processor.get_channel_adapter", return_value=adapter):
            result = await _handle_channel_send(payload)

        adapter.send_flow_selection_prompt.assert_awaited_once_with("s-1", None, "https://clinic.example/form")
        assert result["message_type"] == "flow_selection"

    @pytest.mark.asyncio
    async def test_send_error_propagates_for_retry(self):
        adapter = self._adapter()
        adapter.send_message.side_effect = ChannelSendError("telegram", "blocked", 403)
        with patch("funnel.workers.task_processor.get_channel_adapter", return_value=adapter):
            with pytest.raises(ChannelSendError):
                await _handle_channel_send({"channel": "telegram", "channel_user_id": "1", "content": "x"})
