"""
Tests for funnel/services/state_machine.py - lead lifecycle rule table.
"""
import pytest

from funnel.services.state_machine import (
    LeadEvent,
    LeadStatus,
    NUDGEABLE_STATUSES,
    RULES,
    derive_inbound_event,
    transition,
)

S = LeadStatus
E = LeadEvent


# ---------------------------------------------------------------------------
# Inbound messages
# ---------------------------------------------------------------------------

class TestInboundTransitions:
    def test_new_lead_starts_qualifying(self):
        result = transition(S.NEW, E.MESSAGE_RECEIVED)
        assert result.success
        assert result.new_state == S.QUALIFYING

    def test_dormant_lead_resurrects(self):
        assert transition(S.DORMANT, E.MESSAGE_RECEIVED).new_state == S.QUALIFYING

    def test_waiting_for_user_returns_to_qualifying(self):
        assert transition(S.WAITING_FOR_USER, E.MESSAGE_RECEIVED).new_state == S.QUALIFYING

    def test_waiting_consent_needs_consent_in_context(self):
        """Guarded rule does not match without consent_given."""
        assert not transition(S.WAITING_CONSENT, E.MESSAGE_RECEIVED).success
        assert not transition(S.WAITING_CONSENT, E.MESSAGE_RECEIVED, {"consent_given": False}).success

        result = transition(S.WAITING_CONSENT, E.MESSAGE_RECEIVED, {"consent_given": True})
        assert result.new_state == S.QUALIFYING

    def test_string_inputs_are_accepted(self):
        result = transition("NEW", "MESSAGE_RECEIVED")
        assert result.new_state == S.QUALIFYING

    def test_unknown_state_fails_cleanly(self):
        result = transition("BOGUS", E.MESSAGE_RECEIVED)
        assert not result.success
        assert "BOGUS" in result.error


# ---------------------------------------------------------------------------
# Guards and rule order
# ---------------------------------------------------------------------------

class TestGuardedTransitions:
    def test_qualifying_complete_requires_treatment(self):
        assert not transition(S.QUALIFYING, E.QUALIFYING_COMPLETE, {}).success
        result = transition(S.QUALIFYING, E.QUALIFYING_COMPLETE, {"treatment_category": "hair"})
        assert result.new_state == S.PHOTO_REQUESTED

    def test_medical_complete_with_missing_photos_requests_photos(self):
        ctx = {"medical_complete": True, "photo_count": 1, "required_photo_count": 5}
        assert transition(S.QUALIFYING, E.MEDICAL_COMPLETE, ctx).new_state == S.PHOTO_REQUESTED

    def test_medical_complete_with_photos_goes_to_doctor(self):
        ctx = {"medical_complete": True, "photo_count": 5, "required_photo_count": 5}
        assert transition(S.QUALIFYING, E.MEDICAL_COMPLETE, ctx).new_state == S.READY_FOR_DOCTOR

    def test_guard_without_context_does_not_match(self):
        assert not transition(S.PHOTO_COLLECTING, E.PHOTOS_COMPLETE).success

    def test_photos_complete_needs_required_count(self):
        assert not transition(S.PHOTO_COLLECTING, E.PHOTOS_COMPLETE, {"photo_count": 3}).success
        ctx = {"photo_count": 3, "required_photo_count": 3}
        assert transition(S.PHOTO_COLLECTING, E.PHOTOS_COMPLETE, ctx).new_state == S.READY_FOR_DOCTOR

    def test_photos_fixed_falls_back_to_collecting(self):
        """Failing guard skips to the next unguarded rule."""
        ctx = {"photo_count": 1, "required_photo_count": 4}
        assert transition(S.PHOTO_QA_FIX, E.PHOTOS_FIXED, ctx).new_state == S.PHOTO_COLLECTING

    def test_max_followups_needs_exhausted_attempts(self):
        ctx = {"followup_attempt": 2, "max_followups": 3}
        assert not transition(S.WAITING_FOR_USER, E.MAX_FOLLOWUPS_REACHED, ctx).success

        ctx["followup_attempt"] = 3
        assert transition(S.WAITING_FOR_USER, E.MAX_FOLLOWUPS_REACHED, ctx).new_state == S.DORMANT


# ---------------------------------------------------------------------------
# Escalation, closing and terminal states
# ---------------------------------------------------------------------------

class TestEscalationAndTerminal:
    @pytest.mark.parametrize("status", [S.NEW, S.QUALIFYING, S.WAITING_PHOTOS, S.DORMANT])
    def test_handoff_from_active_statuses(self, status):
        assert transition(status, E.HANDOFF_REQUESTED).new_state == S.HANDOFF_HUMAN

    def test_handoff_human_can_be_closed(self):
        assert transition(S.HANDOFF_HUMAN, E.CLOSED_BY_ADMIN).new_state == S.CLOSED

    def test_closed_is_terminal(self):
        assert not [rule for rule in RULES if S.CLOSED in rule.sources]
        assert not transition(S.CLOSED, E.MESSAGE_RECEIVED).success

    def test_followup_sent_not_allowed_from_handoff(self):
        assert not transition(S.HANDOFF_HUMAN, E.FOLLOWUP_SENT).success
        assert S.HANDOFF_HUMAN not in NUDGEABLE_STATUSES

    def test_sales_offer_leads_can_be_nudged(self):
        assert transition(S.READY_FOR_SALES, E.FOLLOWUP_SENT).new_state == S.WAITING_FOR_USER
        assert S.READY_FOR_DOCTOR not in NUDGEABLE_STATUSES


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class TestDeriveInboundEvent:
    def test_image_while_photos_requested_is_photo_event(self):
        assert derive_inbound_event(S.PHOTO_REQUESTED, is_image=True) == E.PHOTO_RECEIVED
        assert derive_inbound_event("WAITING_PHOTOS", is_image=True) == E.PHOTO_RECEIVED

    def test_image_while_qualifying_is_plain_message(self):
        assert derive_inbound_event(S.QUALIFYING, is_image=True) == E.MESSAGE_RECEIVED

    def test_unknown_status(self):
        assert derive_inbound_event("NOPE", is_image=False) is None
