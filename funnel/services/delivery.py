"""
Human-like reply delivery.

A reply may contain several chat bubbles separated by |||. The full reply is
stored once for history; each bubble becomes its own delayed channel-send job.
The first bubble goes out immediately, every later one waits for a simulated
typing time, and the waits accumulate so bubbles arrive in order.
"""
import logging
import random
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from funnel.config import get_settings
from funnel.models.conversation import Conversation
from funnel.models.lead import Lead
from funnel.models.message import Message
from funnel.services.leads import save_message
from funnel.services.task_dispatch import enqueue_channel_send

logger = logging.getLogger(__name__)

PART_DELIMITER = "|||"
HISTORY_JOINER = "\n\n"
JITTER_RATIO = 0.2


@dataclass(frozen=True)
class DeliveryPart:
    index: int
    content: str
    delay_ms: int  # cumulative, from the moment the reply is scheduled


def split_message_parts(message: str) -> list[str]:
    """Split on the part delimiter, trimming and dropping empty parts."""
    if not message:
        return []
    parts = [part.strip() for part in message.split(PART_DELIMITER)]
    parts = [part for part in parts if part]
    if len(parts) <= 1:
        stripped = message.replace(PART_DELIMITER, " ").strip()
        return [stripped] if stripped else []
    return parts


def calculate_typing_delay(part: str, index: int, rng: Optional[random.Random] = None) -> int:
    """
    Milliseconds to wait before sending part `index`, measured from the previous part.
    Part 0 is immediate. Later parts scale with length, get +/-20% jitter and a
    bonus for long texts, then are clamped to the configured bounds.
    """
    if index == 0:
        return 0

    settings = get_settings()
    rng = rng or random
    chars = len(part)

    delay = settings.typing_base_delay_ms + chars * settings.typing_per_char_ms
    delay *= 1 + rng.uniform(-JITTER_RATIO, JITTER_RATIO)
    if chars > settings.typing_long_message_chars:
        delay += settings.typing_long_message_bonus_ms

    delay = max(settings.typing_min_delay_ms, min(settings.typing_max_delay_ms, delay))
    return int(round(delay))


def build_delivery_plan(message: str, rng: Optional[random.Random] = None) -> list[DeliveryPart]:
    """Ordered parts with cumulative send delays."""
    plan: list[DeliveryPart] = []
    cumulative = 0
    for index, part in enumerate(split_message_parts(message)):
        cumulative += calculate_typing_delay(part, index, rng)
        plan.append(DeliveryPart(index=index, content=part, delay_ms=cumulative))
    return plan


async def deliver_reply(
    db: AsyncSession,
    lead: Lead,
    conversation: Conversation,
    reply: str,
    sender_type: str = "ai",
    ai_run_id=None,
    metadata: Optional[dict] = None,
) -> Optional[Message]:
    """
    Persist the reply as one outbound message and queue one send per part.
    Returns the stored message, or None when the reply is empty.
    """
    plan = build_delivery_plan(reply)
    if not plan:
        logger.info("Empty reply for lead %s, nothing to deliver", str(lead.id)[:8])
        return None

    stored = await save_message(
        db,
        conversation,
        direction="out",
        sender_type=sender_type,
        content=HISTORY_JOINER.join(part.content for part in plan),
        ai_run_id=ai_run_id,
        metadata={**(metadata or {}), "parts": len(plan)},
    )

    for part in plan:
        await enqueue_channel_send(
            channel=lead.channel,
            channel_user_id=lead.channel_user_id,
            content=part.content,
            lead_id=str(lead.id),
            language=lead.language,
            delay_ms=part.delay_ms,
            extra={"message_id": str(stored.id), "part_index": part.index},
            db=db,
        )

    logger.info(
        "Reply queued for lead %s: %d part(s), last at +%dms",
        str(lead.id)[:8], len(plan), plan[-1].delay_ms,
        extra={"lead_id": str(lead.id), "channel": lead.channel},
    )
    return stored
