"""
Tests for funnel/api/webhooks.py - channel webhook endpoints.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import HTTPException
from sqlalchemy import select

from funnel.agents.conductor import IngestResult, PhotoBurst
from funnel.api.webhooks import (
    form_webhook,
    telegram_webhook,
    web_chat_webhook,
    whatsapp_verify,
    whatsapp_webhook,
)
from funnel.models.event_log import EventLog
from funnel.models.lead import Lead
from funnel.models.notification import Notification
from funnel.models.photo_asset import PhotoAsset
from funnel.services.debounce import DebounceRegistry
from funnel.services.leads import get_profile
from conftest import create_lead, make_settings


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_request(payload=None, headers: dict | None = None, json_error: Exception | None = None):
    """Build a mock FastAPI Request with the fields the webhook handlers access."""
    req = MagicMock()
    req.headers = headers or {}
    if json_error:
        req.json = AsyncMock(side_effect=json_error)
    else:
        req.json = AsyncMock(return_value=payload)
    return req


def _telegram_update(message_id: int = 1, text: str = "Hello") -> dict:
    return {
        "update_id": message_id,
        "message": {
            "message_id": message_id,
            "chat": {"id": 2002},
            "from": {"id": 2002, "first_name": "Ana", "language_code": "en"},
            "text": text,
        },
    }


# ---------------------------------------------------------------------------
# Telegram
# ---------------------------------------------------------------------------

class TestTelegramWebhook:
    @pytest.mark.asyncio
    async def test_bad_secret_is_rejected(self, db):
        settings = make_settings(telegram_webhook_secret="s3cret")
        request = _make_request(_telegram_update(), headers={"X-Telegram-Bot-Api-Secret-Token": "wrong"})

        with patch("funnel.api.webhooks.get_settings", return_value=settings):
            with pytest.raises(HTTPException) as exc_info:
                await telegram_webhook(request, db)

        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_new_lead_ingested_and_processor_notified(self, db, mock_redis):
        settings = make_settings(telegram_webhook_secret="s3cret")
        request = _make_request(_telegram_update(), headers={"X-Telegram-Bot-Api-Secret-Token": "s3cret"})

        with patch("funnel.api.webhooks.get_settings", return_value=settings):
            result = await telegram_webhook(request, db)

        assert result["status"] == "ok"
        assert result["results"] == [{"message_id": "tg_2002_1", "status": "consent_requested"}]
        lead = (await db.execute(select(Lead))).scalar_one()
        assert lead.status == "WAITING_CONSENT"
        mock_redis.lpush.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_replay_is_acknowledged_without_notify(self, db, mock_redis):
        await telegram_webhook(_make_request(_telegram_update()), db)
        mock_redis.lpush.reset_mock()

        result = await telegram_webhook(_make_request(_telegram_update()), db)

        assert result["results"][0]["status"] == "duplicate"
        mock_redis.lpush.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_update_without_message_is_ignored(self, db):
        result = await telegram_webhook(_make_request({"update_id": 9, "my_chat_member": {}}), db)
        assert result == {"status": "ignored", "processed": 0}

    @pytest.mark.asyncio
    async def test_invalid_json(self, db):
        with pytest.raises(HTTPException) as exc_info:
            await telegram_webhook(_make_request(json_error=ValueError("bad json")), db)
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_pipeline_failure_returns_500_for_provider_retry(self, db):
        with patch("funnel.api.webhooks.handle_incoming_message",
                   new_callable=AsyncMock, side_effect=RuntimeError("db down")):
            with pytest.raises(HTTPException) as exc_info:
                await telegram_webhook(_make_request(_telegram_update()), db)
        assert exc_info.value.status_code == 500


# ---------------------------------------------------------------------------
# WhatsApp
# ---------------------------------------------------------------------------

class TestWhatsAppVerify:
    @pytest.mark.asyncio
    async def test_challenge_echoed_on_match(self):
        with patch("funnel.api.webhooks.get_settings", return_value=make_settings(whatsapp_verify_token="tok")):
            response = await whatsapp_verify(mode="subscribe", token="tok", challenge="12345")
        assert response.body == b"12345"

    @pytest.mark.asyncio
    async def test_wrong_token_rejected(self):
        with patch("funnel.api.webhooks.get_settings", return_value=make_settings(whatsapp_verify_token="tok")):
            with pytest.raises(HTTPException) as exc_info:
                await whatsapp_verify(mode="subscribe", token="nope", challenge="12345")
        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_unconfigured_token_rejects_everything(self):
        with patch("funnel.api.webhooks.get_settings", return_value=make_settings(whatsapp_verify_token="")):
            with pytest.raises(HTTPException):
                await whatsapp_verify(mode="subscribe", token="", challenge="1")


class TestWhatsAppWebhook:
    @pytest.mark.asyncio
    async def test_every_message_in_payload_is_ingested(self, db, mock_redis):
        payload = {"entry": [{"changes": [{"value": {
            "contacts": [{"wa_id": "905551112233", "profile": {"name": "Ayşe"}}],
            "messages": [
                {"from": "905551112233", "id": "wamid.1", "type": "text", "text": {"body": "Merhaba"}},
                {"from": "905551112233", "id": "wamid.2", "type": "text", "text": {"body": "Fiyat?"}},
            ],
        }}]}]}

        result = await whatsapp_webhook(_make_request(payload), db)

        assert result["processed"] == 2
        assert [r["status"] for r in result["results"]] == ["consent_requested", "consent_pending"]


class TestWebWebhook:
    @pytest.mark.asyncio
    async def test_dispatched_message_notifies_with_task_id(self, db, mock_redis):
        ingest = IngestResult(status="dispatched", message_id="m-1", ai_task_id="task-1")
        payload = {"user_id": "sess-1", "message_id": "abc", "text": "Hi"}

        with patch("funnel.api.webhooks.handle_incoming_message", new_callable=AsyncMock, return_value=ingest):
            result = await web_chat_webhook(_make_request(payload), db)

        assert result["results"] == [{"message_id": "web_abc", "status": "dispatched"}]
        mock_redis.lpush.assert_awaited_once()
        assert mock_redis.lpush.call_args[0][1] == "task-1"


# ---------------------------------------------------------------------------
# Photo bursts
# ---------------------------------------------------------------------------

class _Recorder:
    def __init__(self):
        self.fired = []

    async def __call__(self, entry):
        self.fired.append(entry.message_id)


def _debounced() -> IngestResult:
    return IngestResult(
        status="debounced",
        lead_id="lead-1",
        message_id="m-1",
        photo_burst=PhotoBurst("lead-1", "conv-1", "m-1", "en"),
    )


class TestPhotoBurstArming:
    @pytest.mark.asyncio
    async def test_burst_armed_after_commit(self, db, mock_redis):
        registry = DebounceRegistry(60, _Recorder())

        with patch("funnel.api.webhooks.handle_incoming_message", new_callable=AsyncMock, return_value=_debounced()), \
             patch("funnel.agents.conductor.get_photo_debounce", return_value=registry):
            result = await telegram_webhook(_make_request(_telegram_update()), db)

        assert result["results"][0]["status"] == "debounced"
        assert registry.get("lead-1").message_id == "m-1"
        registry.cancel_all()

    @pytest.mark.asyncio
    async def test_failed_commit_never_opens_a_burst(self, db):
        recorder = _Recorder()
        registry = DebounceRegistry(0.05, recorder)

        with patch("funnel.api.webhooks.handle_incoming_message", new_callable=AsyncMock, return_value=_debounced()), \
             patch("funnel.agents.conductor.get_photo_debounce", return_value=registry), \
             patch.object(db, "commit", new=AsyncMock(side_effect=RuntimeError("unique violation"))):
            with pytest.raises(HTTPException) as exc_info:
                await telegram_webhook(_make_request(_telegram_update()), db)
            await asyncio.sleep(0.2)

        assert exc_info.value.status_code == 500
        assert len(registry) == 0
        assert recorder.fired == []


# ---------------------------------------------------------------------------
# Intake form
# ---------------------------------------------------------------------------

def _form(**overrides) -> dict:
    payload = {
        "submission_id": "sub-1",
        "personal_info": {"name": "Ana Lima", "country": "Brazil", "height_cm": 168},
        "medical_info": {"has_allergies": True, "allergies_detail": "penicillin", "current_medications": "none"},
        "treatment_info": {"treatment_category": "dental", "complaint": "missing molar"},
    }
    payload.update(overrides)
    return payload


async def _notifications(db, type_: str) -> list[Notification]:
    result = await db.execute(select(Notification).where(Notification.type == type_))
    return list(result.scalars().all())


class TestFormWebhook:
    @pytest.fixture(autouse=True)
    def _settings(self):
        with patch("funnel.api.webhooks.get_settings", return_value=make_settings(form_webhook_secret="")):
            yield

    @pytest.mark.asyncio
    async def test_submission_fills_profile_and_readies_lead(self, db):
        lead, _ = await create_lead(db, profile={"consent_given": True})

        result = await form_webhook(_make_request(_form(lead_id=str(lead.id))), db)

        assert result == {"status": "applied", "lead_id": str(lead.id)}
        assert lead.status == "READY_FOR_DOCTOR"
        assert lead.treatment_category == "dental"
        assert "NO_PHOTOS" in lead.tags
        profile = await get_profile(db, lead.id)
        assert profile.name == "Ana Lima"
        assert profile.has_allergies is True
        assert profile.height_cm == 168
        assert profile.medications == "none"
        assert profile.preferred_flow == "form"
        ready = await _notifications(db, "doctor_ready")
        assert len(ready) == 1
        assert ready[0].body == "dental"
        assert await _notifications(db, "medical_risk") == []

    @pytest.mark.asyncio
    async def test_matches_lead_by_profile_phone(self, db):
        lead, _ = await create_lead(db, channel_user_id="7007", profile={"phone": "+905551112233"})

        result = await form_webhook(_make_request(_form(personal_info={"phone": "+905551112233"})), db)

        assert result["lead_id"] == str(lead.id)

    @pytest.mark.asyncio
    async def test_matches_lead_by_email(self, db):
        lead, _ = await create_lead(db, profile={"email": "ana@example.com"})

        result = await form_webhook(_make_request(_form(email="ana@example.com")), db)

        assert result["lead_id"] == str(lead.id)
        assert lead.status == "READY_FOR_DOCTOR"

    @pytest.mark.asyncio
    async def test_redelivered_submission_is_applied_once(self, db):
        lead, _ = await create_lead(db)
        payload = _form(lead_id=str(lead.id))

        first = await form_webhook(_make_request(payload), db)
        second = await form_webhook(_make_request(payload), db)

        assert first["status"] == "applied"
        assert second == {"status": "duplicate", "lead_id": str(lead.id)}
        assert len(await _notifications(db, "doctor_ready")) == 1
        events = (await db.execute(
            select(EventLog).where(EventLog.action == "form_submitted")
        )).scalars().all()
        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_blood_thinners_raise_medical_alert(self, db):
        lead, _ = await create_lead(db)
        payload = _form(
            lead_id=str(lead.id),
            medical_info={"uses_blood_thinners": True, "blood_thinner_detail": "warfarin"},
            photos=[{"url": "https://forms.example/f.jpg", "slot": "front"},
                    {"url": "https://forms.example/t.jpg", "slot": "top"}],
        )

        await form_webhook(_make_request(payload), db)

        assert "MEDICAL_RISK" in lead.tags
        alert = (await _notifications(db, "medical_risk"))[0]
        assert "warfarin" in alert.body
        assets = (await db.execute(select(PhotoAsset))).scalars().all()
        assert {a.storage_path for a in assets} == {"https://forms.example/f.jpg", "https://forms.example/t.jpg"}
        profile = await get_profile(db, lead.id)
        assert profile.photo_status == "complete"
        assert "NO_PHOTOS" not in lead.tags

    @pytest.mark.asyncio
    async def test_closed_lead_keeps_its_status(self, db):
        lead, _ = await create_lead(db, status="CLOSED")

        result = await form_webhook(_make_request(_form(lead_id=str(lead.id))), db)

        assert result["status"] == "applied"
        assert lead.status == "CLOSED"
        assert await _notifications(db, "doctor_ready") == []

    @pytest.mark.asyncio
    async def test_unmatched_submission_is_logged(self, db):
        result = await form_webhook(_make_request(_form(email="nobody@example.com")), db)

        assert result == {"status": "unmatched", "lead_id": None}
        event = (await db.execute(select(EventLog))).scalar_one()
        assert event.status == "skipped"
        assert event.lead_id is None

    @pytest.mark.asyncio
    async def test_bad_secret_is_rejected(self, db):
        with patch("funnel.api.webhooks.get_settings", return_value=make_settings(form_webhook_secret="s3cret")):
            with pytest.raises(HTTPException) as exc_info:
                await form_webhook(_make_request(_form(), headers={"X-Form-Secret": "nope"}), db)
        assert exc_info.value.status_code == 403

    @pytest.mark.asyncio
    async def test_malformed_submission(self, db):
        with pytest.raises(HTTPException) as exc_info:
            await form_webhook(_make_request({"photos": [{"slot": "front"}]}), db)
        assert exc_info.value.status_code == 422
