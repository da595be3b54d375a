"""
Tests for funnel/agents/consent.py - consent resolution and intake flow selection.
"""
from unittest.mock import patch

import pytest
from sqlalchemy import select

from funnel.agents.consent import handle_flow_selection, has_consent, resolve_consent, send_consent_prompt
from funnel.models.lead_profile import LeadProfile
from funnel.models.task_queue import TaskQueue
from conftest import create_lead, make_settings


async def _sends(db) -> list[dict]:
    rows = (await db.execute(select(TaskQueue).where(TaskQueue.task_type == "channel_send"))).scalars().all()
    return [r.payload for r in rows]


class TestHasConsent:
    def test_only_explicit_true_counts(self):
        assert has_consent(LeadProfile(consent_given=True))
        assert not has_consent(LeadProfile(consent_given=False))
        assert not has_consent(LeadProfile())
        assert not has_consent(None)


class TestSendConsentPrompt:
    @pytest.mark.asyncio
    async def test_parks_lead_and_queues_prompt(self, db):
        lead, conversation = await create_lead(db, status="NEW", language="tr")

        with patch("funnel.agents.consent.get_settings", return_value=make_settings()):
            await send_consent_prompt(db, lead, conversation)

        assert lead.status == "WAITING_CONSENT"
        [send] = await _sends(db)
        assert send["message_type"] == "consent_prompt"
        assert send["language"] == "tr"
        assert send["consent_link_url"]


class TestResolveConsent:
    @pytest.mark.asyncio
    async def test_approval_stamps_consent_once(self, db):
        lead, conversation = await create_lead(db, status="WAITING_CONSENT")

        with patch("funnel.agents.consent.get_settings", return_value=make_settings()):
            first = await resolve_consent(db, lead, conversation, approved=True)
            stamped_at = lead.consent_given_at
            second = await resolve_consent(db, lead, conversation, approved=True)

        assert first.status_changed is True
        assert first.agent_name_assigned is True
        assert first.should_dispatch_ai is True
        assert second.agent_name == first.agent_name
        assert second.agent_name_assigned is False
        assert lead.consent_given_at == stamped_at
        assert lead.status == "QUALIFYING"

    @pytest.mark.asyncio
    async def test_decline_keeps_lead_in_gate(self, db):
        lead, conversation = await create_lead(db, status="WAITING_CONSENT")

        outcome = await resolve_consent(db, lead, conversation, approved=False)

        assert outcome.approved is False
        assert lead.status == "WAITING_CONSENT"
        profile = (await db.execute(select(LeadProfile))).scalar_one()
        assert profile.consent_given is False
        assert len(await _sends(db)) == 1

    @pytest.mark.asyncio
    async def test_intake_form_defers_agent_name(self, db):
        lead, conversation = await create_lead(db, status="WAITING_CONSENT")
        settings = make_settings(intake_form_url="https://clinic.example/form")

        with patch("funnel.agents.consent.get_settings", return_value=settings):
            outcome = await resolve_consent(db, lead, conversation, approved=True)

        assert outcome.awaiting_flow_selection is True
        assert outcome.should_dispatch_ai is False
        assert outcome.agent_name is None
        [send] = await _sends(db)
        assert send["message_type"] == "flow_selection"
        assert send["form_url"] == "https://clinic.example/form"


class TestFlowSelection:
    @pytest.mark.asyncio
    async def test_form_sends_link(self, db):
        lead, conversation = await create_lead(db, profile={"consent_given": True})
        settings = make_settings(intake_form_url="https://clinic.example/form")

        with patch("funnel.agents.consent.get_settings", return_value=settings):
            text = await handle_flow_selection(db, lead, conversation, "form")

        assert "https://clinic.example/form" in text
        profile = (await db.execute(select(LeadProfile))).scalar_one()
        assert profile.preferred_flow == "form"

    @pytest.mark.asyncio
    async def test_chat_greets_once_with_agent_name(self, db):
        lead, conversation = await create_lead(db, profile={"consent_given": True})

        text = await handle_flow_selection(db, lead, conversation, "chat")
        again = await handle_flow_selection(db, lead, conversation, "chat")

        profile = (await db.execute(select(LeadProfile))).scalar_one()
        assert profile.agent_name in text
        assert again is None
        assert len(await _sends(db)) == 1
