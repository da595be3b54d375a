"""
Web chat widget adapter. Outbound messages are pushed to the widget backend;
inbound payloads arrive already close to the normalized shape.
"""
import logging
from typing import Optional

import httpx

from funnel.channels.base import ChannelAdapter, ChannelSendError, response_json
from funnel.config import get_settings
from funnel.schemas.inbound_message import MediaInfo, NormalizedMessage, SenderInfo

logger = logging.getLogger(__name__)


class WebAdapter(ChannelAdapter):
    name = "web"

    def __init__(self, push_url: Optional[str] = None):
        settings = get_settings()
        self.push_url = push_url or settings.web_chat_push_url
        self.timeout = settings.channel_timeout_seconds

    async def _push(self, payload: dict) -> str:
        if not self.push_url:
            raise ChannelSendError(self.name, "web_chat_push_url not configured")
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.push_url, json=payload)
        except httpx.HTTPError as e:
            raise ChannelSendError(self.name, str(e)) from e
        if response.status_code >= 400:
            raise ChannelSendError(
                self.name, f"HTTP {response.status_code}", status_code=response.status_code
            )
        data = response_json(response)
        return str(data.get("id", ""))

    async def send_message(
        self, channel_user_id: str, content: str, media_url: Optional[str] = None
    ) -> str:
        return await self._push({
            "user_id": channel_user_id,
            "type": "image" if media_url else "text",
            "content": content,
            "media_url": media_url,
        })

    async def send_buttons(
        self,
        channel_user_id: str,
        body: str,
        buttons: list[tuple[str, str]],
        footer: Optional[str] = None,
    ) -> str:
        return await self._push({
            "user_id": channel_user_id,
            "type": "buttons",
            "content": body,
            "footer": footer,
            "buttons": [{"id": button_id, "title": title} for button_id, title in buttons],
        })

    async def download_media(self, media_ref: str) -> Optional[bytes]:
        # Widget uploads are referenced by URL
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(media_ref)
                response.raise_for_status()
                return response.content
        except httpx.HTTPError as e:
            logger.warning("Web media download failed: %s", str(e))
            return None

    def normalize(self, payload: dict) -> list[NormalizedMessage]:
        user_id = payload.get("user_id")
        message_id = payload.get("message_id")
        if not user_id or not message_id:
            return []

        media = None
        if payload.get("media_url"):
            media = MediaInfo(
                type=payload.get("media_type") or "image",
                ref=payload["media_url"],
                mime_type=payload.get("mime_type"),
            )

        return [NormalizedMessage(
            channel=self.name,
            channel_user_id=str(user_id),
            channel_message_id=f"web_{message_id}",
            content=payload.get("text") or "",
            media=media,
            callback_data=payload.get("callback_data"),
            detected_language=payload.get("language"),
            sender=SenderInfo(
                name=payload.get("name"),
                phone=payload.get("phone"),
            ),
        )]
