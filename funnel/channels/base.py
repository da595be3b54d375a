"""
Channel adapter interface - every chat channel implements this.
Sends are fire-and-forget from the caller's view: they return the
channel-native message id or raise ChannelSendError with the provider's error.
"""
from abc import ABC, abstractmethod
from typing import Optional

from funnel.schemas.inbound_message import NormalizedMessage
from funnel.utils import templates


class ChannelSendError(Exception):
    """Provider rejected or failed a send."""

    def __init__(self, channel: str, message: str, status_code: Optional[int] = None):
        self.channel = channel
        self.status_code = status_code
        super().__init__(f"{channel} send failed: {message}")


def response_json(response) -> dict:
    """Provider response body as a dict. Empty, non-JSON (proxy error pages) and non-object bodies read as {}."""
    if not response.content:
        return {}
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


class ChannelAdapter(ABC):
    """Abstract base class for chat channels."""

    name: str = ""

    @abstractmethod
    async def send_message(
        self,
        channel_user_id: str,
        content: str,
        media_url: Optional[str] = None,
    ) -> str:
        """
        Send text, or an image with `content` as caption when media_url is set.
        Returns the channel-native message id.
        """
        ...

    @abstractmethod
    async def send_buttons(
        self,
        channel_user_id: str,
        body: str,
        buttons: list[tuple[str, str]],
        footer: Optional[str] = None,
    ) -> str:
        """Send a message with reply buttons given as (id, title) pairs."""
        ...

    @abstractmethod
    async def download_media(self, media_ref: str) -> Optional[bytes]:
        """Fetch inbound media by its channel reference. None when unavailable."""
        ...

    @abstractmethod
    def normalize(self, payload: dict) -> list[NormalizedMessage]:
        """Turn a provider webhook payload into zero or more normalized messages."""
        ...

    async def send_consent_prompt(
        self, channel_user_id: str, language: Optional[str], consent_link_url: str
    ) -> str:
        prompt = templates.localized(templates.CONSENT_PROMPTS, language)
        return await self.send_buttons(
            channel_user_id,
            templates.render(prompt["body"], consent_link_url=consent_link_url),
            [("consent_approve", prompt["approve"]), ("consent_decline", prompt["decline"])],
            footer=prompt.get("footer"),
        )

    async def send_flow_selection_prompt(
        self, channel_user_id: str, language: Optional[str], form_url: str
    ) -> str:
        prompt = templates.localized(templates.FLOW_SELECTION_PROMPTS, language)
        return await self.send_buttons(
            channel_user_id,
            prompt["body"],
            [("flow_form", prompt["form"]), ("flow_chat", prompt["chat"])],
        )
