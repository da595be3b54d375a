"""
Lead lifecycle state machine - pure rule table, no persistence.

transition(state, event, context) walks RULES in order and returns the first
rule whose source set, event and guard all match. A failing guard skips the
rule; it is never retried with a relaxed guard. When nothing matches the
result is a failure and the caller must leave the lead untouched.

WAITING_CONSENT and WAITING_PHOTOS are gate statuses owned by the consent gate
and the photo-template gate; they only appear here as sources.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional


class LeadStatus(str, Enum):
    NEW = "NEW"
    QUALIFYING = "QUALIFYING"
    PHOTO_REQUESTED = "PHOTO_REQUESTED"
    PHOTO_COLLECTING = "PHOTO_COLLECTING"
    PHOTO_QA_FIX = "PHOTO_QA_FIX"
    READY_FOR_DOCTOR = "READY_FOR_DOCTOR"
    READY_FOR_SALES = "READY_FOR_SALES"
    WAITING_FOR_USER = "WAITING_FOR_USER"
    DORMANT = "DORMANT"
    HANDOFF_HUMAN = "HANDOFF_HUMAN"
    CONVERTED = "CONVERTED"
    CLOSED = "CLOSED"
    # Gate statuses
    WAITING_CONSENT = "WAITING_CONSENT"
    WAITING_PHOTOS = "WAITING_PHOTOS"


class LeadEvent(str, Enum):
    MESSAGE_RECEIVED = "MESSAGE_RECEIVED"
    PHOTO_RECEIVED = "PHOTO_RECEIVED"
    QUALIFYING_COMPLETE = "QUALIFYING_COMPLETE"
    MEDICAL_COMPLETE = "MEDICAL_COMPLETE"
    PHOTOS_COMPLETE = "PHOTOS_COMPLETE"
    PHOTOS_DECLINED = "PHOTOS_DECLINED"
    PHOTOS_NEED_FIX = "PHOTOS_NEED_FIX"
    PHOTOS_FIXED = "PHOTOS_FIXED"
    FOLLOWUP_SENT = "FOLLOWUP_SENT"
    MAX_FOLLOWUPS_REACHED = "MAX_FOLLOWUPS_REACHED"
    HANDOFF_REQUESTED = "HANDOFF_REQUESTED"
    DOCTOR_APPROVED = "DOCTOR_APPROVED"
    SALES_OFFER_SENT = "SALES_OFFER_SENT"
    CONVERTED = "CONVERTED"
    CLOSED_BY_USER = "CLOSED_BY_USER"
    CLOSED_BY_ADMIN = "CLOSED_BY_ADMIN"


S = LeadStatus
E = LeadEvent

Guard = Callable[[dict], bool]


@dataclass(frozen=True)
class TransitionRule:
    sources: frozenset
    target: LeadStatus
    event: LeadEvent
    guard: Optional[Guard] = None
    description: str = ""


@dataclass(frozen=True)
class TransitionResult:
    success: bool
    new_state: Optional[LeadStatus] = None
    error: Optional[str] = None
    rule: Optional[TransitionRule] = None


# === GUARDS ===

def has_treatment_category(ctx: dict) -> bool:
    return bool(ctx.get("treatment_category"))


def medical_history_complete(ctx: dict) -> bool:
    return bool(ctx.get("medical_complete"))


def photos_still_missing(ctx: dict) -> bool:
    return ctx.get("photo_count", 0) < ctx.get("required_photo_count", 0)


def photos_sufficient(ctx: dict) -> bool:
    required = ctx.get("required_photo_count")
    if required is None:
        return False
    return ctx.get("photo_count", 0) >= required


def consent_on_file(ctx: dict) -> bool:
    return ctx.get("consent_given") is True


def followups_exhausted(ctx: dict) -> bool:
    return ctx.get("followup_attempt", 0) >= ctx.get("max_followups", 0) > 0


def _medical_complete_photos_missing(ctx: dict) -> bool:
    return medical_history_complete(ctx) and not photos_sufficient(ctx)


def _rule(sources, target, event, guard=None, description="") -> TransitionRule:
    return TransitionRule(frozenset(sources), target, event, guard, description)


# Statuses from which a lead can still be escalated or closed
ACTIVE_STATUSES = (
    S.NEW,
    S.WAITING_CONSENT,
    S.QUALIFYING,
    S.PHOTO_REQUESTED,
    S.PHOTO_COLLECTING,
    S.PHOTO_QA_FIX,
    S.WAITING_PHOTOS,
    S.READY_FOR_DOCTOR,
    S.READY_FOR_SALES,
    S.WAITING_FOR_USER,
    S.DORMANT,
)

# Statuses a follow-up can fire from. READY_FOR_DOCTOR waits on the clinic, not the patient
NUDGEABLE_STATUSES = (
    S.NEW,
    S.WAITING_CONSENT,
    S.QUALIFYING,
    S.PHOTO_REQUESTED,
    S.PHOTO_COLLECTING,
    S.PHOTO_QA_FIX,
    S.WAITING_PHOTOS,
    S.READY_FOR_SALES,
    S.WAITING_FOR_USER,
)


RULES: list[TransitionRule] = [
    # Inbound text
    _rule([S.NEW, S.DORMANT], S.QUALIFYING, E.MESSAGE_RECEIVED,
          description="first contact or resurrection"),
    _rule([S.QUALIFYING, S.WAITING_FOR_USER], S.QUALIFYING, E.MESSAGE_RECEIVED,
          description="conversation continues"),
    _rule([S.WAITING_CONSENT], S.QUALIFYING, E.MESSAGE_RECEIVED, consent_on_file,
          description="consent resolved"),
    _rule([S.PHOTO_REQUESTED], S.QUALIFYING, E.MESSAGE_RECEIVED,
          description="text instead of photos"),

    # Qualification
    _rule([S.QUALIFYING], S.PHOTO_REQUESTED, E.QUALIFYING_COMPLETE, has_treatment_category),
    _rule([S.QUALIFYING], S.PHOTO_REQUESTED, E.MEDICAL_COMPLETE, _medical_complete_photos_missing),
    _rule([S.QUALIFYING], S.READY_FOR_DOCTOR, E.MEDICAL_COMPLETE, medical_history_complete),

    # Photos
    _rule([S.PHOTO_REQUESTED, S.WAITING_PHOTOS], S.PHOTO_COLLECTING, E.PHOTO_RECEIVED),
    _rule([S.PHOTO_COLLECTING], S.PHOTO_COLLECTING, E.PHOTO_RECEIVED, photos_still_missing),
    _rule([S.PHOTO_QA_FIX], S.PHOTO_QA_FIX, E.PHOTO_RECEIVED, description="replacement photo"),
    _rule([S.PHOTO_COLLECTING], S.READY_FOR_DOCTOR, E.PHOTOS_COMPLETE, photos_sufficient),
    _rule([S.PHOTO_REQUESTED, S.PHOTO_COLLECTING, S.WAITING_PHOTOS], S.READY_FOR_DOCTOR,
          E.PHOTOS_DECLINED, description="doctor review without photos"),
    _rule([S.PHOTO_COLLECTING, S.READY_FOR_DOCTOR], S.PHOTO_QA_FIX, E.PHOTOS_NEED_FIX),
    _rule([S.PHOTO_QA_FIX], S.READY_FOR_DOCTOR, E.PHOTOS_FIXED, photos_sufficient),
    _rule([S.PHOTO_QA_FIX], S.PHOTO_COLLECTING, E.PHOTOS_FIXED,
          description="fixed but set still incomplete"),

    # Follow-ups
    _rule(NUDGEABLE_STATUSES, S.WAITING_FOR_USER, E.FOLLOWUP_SENT),
    _rule(NUDGEABLE_STATUSES, S.DORMANT, E.MAX_FOLLOWUPS_REACHED, followups_exhausted),

    # Doctor / sales
    _rule([S.READY_FOR_DOCTOR], S.READY_FOR_SALES, E.DOCTOR_APPROVED),
    _rule([S.READY_FOR_SALES], S.WAITING_FOR_USER, E.SALES_OFFER_SENT),
    _rule([S.READY_FOR_SALES, S.READY_FOR_DOCTOR, S.WAITING_FOR_USER, S.HANDOFF_HUMAN],
          S.CONVERTED, E.CONVERTED),
]

# Escalation and closing: one explicit rule per source status
RULES += [_rule([status], S.HANDOFF_HUMAN, E.HANDOFF_REQUESTED) for status in ACTIVE_STATUSES]
RULES += [
    _rule([status], S.CLOSED, event)
    for event in (E.CLOSED_BY_USER, E.CLOSED_BY_ADMIN)
    for status in ACTIVE_STATUSES + (S.HANDOFF_HUMAN,)
]


def _coerce(value, enum_cls):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        return None


def find_transition(state, event, context: Optional[dict] = None) -> Optional[TransitionRule]:
    """First rule matching (state, event) whose guard passes. Guarded rules need a context."""
    current = _coerce(state, LeadStatus)
    evt = _coerce(event, LeadEvent)
    if current is None or evt is None:
        return None

    for rule in RULES:
        if rule.event != evt or current not in rule.sources:
            continue
        if rule.guard is not None:
            if context is None or not rule.guard(context):
                continue
        return rule
    return None


def transition(state, event, context: Optional[dict] = None) -> TransitionResult:
    """Resolve (state, event, context) to the next status or a failed result."""
    rule = find_transition(state, event, context)
    if rule is None:
        state_label = getattr(state, "value", state)
        event_label = getattr(event, "value", event)
        return TransitionResult(
            success=False,
            error=f"No transition from {state_label} on {event_label}",
        )
    return TransitionResult(success=True, new_state=rule.target, rule=rule)


def derive_inbound_event(status, is_image: bool) -> Optional[LeadEvent]:
    """
    Event for an inbound message given the current status.
    Images only count as photo events once photos have been asked for.
    """
    current = _coerce(status, LeadStatus)
    if current is None:
        return None
    if is_image and current in (
        S.PHOTO_REQUESTED, S.PHOTO_COLLECTING, S.PHOTO_QA_FIX, S.WAITING_PHOTOS,
    ):
        return E.PHOTO_RECEIVED
    return E.MESSAGE_RECEIVED
