"""
Trailing debounce for photo bursts.

Each image message re-arms a per-lead timer; when the lead has been quiet for
the full delay the entry is removed and on_fire runs once with the latest
message id and the number of photos in the burst.

State lives in this process only. A restart drops in-flight windows, which
costs at most one extra AI call per burst once photos keep arriving.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class DebounceEntry:
    lead_id: str
    conversation_id: str
    message_id: str
    language: Optional[str] = None
    photo_count: int = 0
    task: Optional[asyncio.Task] = field(default=None, repr=False)


FireCallback = Callable[[DebounceEntry], Awaitable[None]]


class DebounceRegistry:
    """Owns the per-lead photo timers."""

    def __init__(self, delay_seconds: float, on_fire: FireCallback):
        self.delay_seconds = delay_seconds
        self._on_fire = on_fire
        self._entries: dict[str, DebounceEntry] = {}

    def __contains__(self, lead_id: str) -> bool:
        return lead_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, lead_id: str) -> Optional[DebounceEntry]:
        return self._entries.get(lead_id)

    def arm(
        self,
        lead_id: str,
        conversation_id: str,
        message_id: str,
        language: Optional[str] = None,
    ) -> DebounceEntry:
        """Count a photo and restart the lead's quiet-period timer."""
        entry = self._entries.get(lead_id)
        if entry is None:
            entry = DebounceEntry(
                lead_id=lead_id,
                conversation_id=conversation_id,
                message_id=message_id,
                language=language,
            )
            self._entries[lead_id] = entry
        elif entry.task is not None:
            entry.task.cancel()

        entry.photo_count += 1
        entry.message_id = message_id
        entry.conversation_id = conversation_id
        if language:
            entry.language = language
        entry.task = asyncio.create_task(self._wait_then_fire(lead_id, entry))

        logger.debug(
            "Photo debounce armed for lead %s (count=%d)", lead_id[:8], entry.photo_count
        )
        return entry

    def cancel(self, lead_id: str) -> bool:
        """Drop a pending window without firing."""
        entry = self._entries.pop(lead_id, None)
        if entry is None:
            return False
        if entry.task is not None:
            entry.task.cancel()
        return True

    def cancel_all(self) -> int:
        count = 0
        for lead_id in list(self._entries):
            count += int(self.cancel(lead_id))
        return count

    async def _wait_then_fire(self, lead_id: str, entry: DebounceEntry) -> None:
        try:
            await asyncio.sleep(self.delay_seconds)
        except asyncio.CancelledError:
            return

        # A newer arm replaced this entry's task while we slept
        if self._entries.get(lead_id) is not entry or entry.task is not asyncio.current_task():
            return
        del self._entries[lead_id]

        logger.info(
            "Photo burst closed for lead %s: %d photo(s), latest message %s",
            lead_id[:8], entry.photo_count, entry.message_id[:8],
            extra={"lead_id": lead_id},
        )
        try:
            await self._on_fire(entry)
        except Exception as e:
            logger.error("Photo debounce callback failed for lead %s: %s", lead_id[:8], str(e))
