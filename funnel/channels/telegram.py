"""
Telegram Bot API adapter.
"""
import logging
from typing import Optional

import httpx

from funnel.channels.base import ChannelAdapter, ChannelSendError, response_json
from funnel.config import get_settings
from funnel.schemas.inbound_message import (
    LocationInfo,
    MediaInfo,
    NormalizedMessage,
    SenderInfo,
)

logger = logging.getLogger(__name__)

API_BASE = "https://api.telegram.org"


class TelegramAdapter(ChannelAdapter):
    name = "telegram"

    def __init__(self, bot_token: Optional[str] = None):
        settings = get_settings()
        self.bot_token = bot_token or settings.telegram_bot_token
        self.timeout = settings.channel_timeout_seconds

    @property
    def api_url(self) -> str:
        return f"{API_BASE}/bot{self.bot_token}"

    async def _call(self, method: str, payload: dict) -> dict:
        if not self.bot_token:
            raise ChannelSendError(self.name, "bot token not configured")
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(f"{self.api_url}/{method}", json=payload)
        except httpx.HTTPError as e:
            raise ChannelSendError(self.name, str(e)) from e

        data = response_json(response)
        if response.status_code >= 400 or not data.get("ok", False):
            raise ChannelSendError(
                self.name,
                data.get("description") or f"HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return data.get("result") or {}

    async def send_message(
        self, channel_user_id: str, content: str, media_url: Optional[str] = None
    ) -> str:
        if media_url:
            result = await self._call("sendPhoto", {
                "chat_id": channel_user_id,
                "photo": media_url,
                "caption": content[:1024] if content else None,
            })
        else:
            result = await self._call("sendMessage", {
                "chat_id": channel_user_id,
                "text": content,
            })
        return str(result.get("message_id", ""))

    async def send_buttons(
        self,
        channel_user_id: str,
        body: str,
        buttons: list[tuple[str, str]],
        footer: Optional[str] = None,
    ) -> str:
        text = f"{body}\n\n{footer}" if footer else body
        result = await self._call("sendMessage", {
            "chat_id": channel_user_id,
            "text": text,
            "reply_markup": {
                "inline_keyboard": [[
                    {"text": title, "callback_data": button_id} for button_id, title in buttons
                ]],
            },
        })
        return str(result.get("message_id", ""))

    async def download_media(self, media_ref: str) -> Optional[bytes]:
        try:
            file_info = await self._call("getFile", {"file_id": media_ref})
        except ChannelSendError as e:
            logger.warning("Telegram getFile failed: %s", str(e))
            return None

        file_path = file_info.get("file_path")
        if not file_path:
            return None
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(f"{API_BASE}/file/bot{self.bot_token}/{file_path}")
                response.raise_for_status()
                return response.content
        except httpx.HTTPError as e:
            logger.warning("Telegram file download failed: %s", str(e))
            return None

    def normalize(self, payload: dict) -> list[NormalizedMessage]:
        callback = payload.get("callback_query")
        if callback:
            sender = callback.get("from") or {}
            chat = (callback.get("message") or {}).get("chat") or {}
            return [NormalizedMessage(
                channel=self.name,
                channel_user_id=str(chat.get("id") or sender.get("id")),
                channel_message_id=f"tg_cb_{callback.get('id')}",
                content=callback.get("data") or "",
                callback_data=callback.get("data"),
                detected_language=sender.get("language_code"),
                sender=_sender(sender),
            )]

        message = payload.get("message") or payload.get("edited_message")
        if not message:
            return []

        chat = message.get("chat") or {}
        sender = message.get("from") or {}
        content = message.get("text") or message.get("caption") or ""
        media = None

        if message.get("photo"):
            largest = message["photo"][-1]
            media = MediaInfo(type="image", ref=largest["file_id"], caption=message.get("caption"))
        elif message.get("document"):
            doc = message["document"]
            mime = doc.get("mime_type") or ""
            media = MediaInfo(
                type="image" if mime.startswith("image/") else "document",
                ref=doc["file_id"],
                mime_type=mime or None,
                caption=message.get("caption"),
            )
        elif message.get("video"):
            media = MediaInfo(type="video", ref=message["video"]["file_id"])
        elif message.get("voice") or message.get("audio"):
            audio = message.get("voice") or message.get("audio")
            media = MediaInfo(type="audio", ref=audio["file_id"])

        location = None
        if message.get("location"):
            location = LocationInfo(
                latitude=message["location"]["latitude"],
                longitude=message["location"]["longitude"],
            )

        contact = message.get("contact") or {}
        info = _sender(sender)
        if contact.get("phone_number"):
            info.phone = contact["phone_number"]

        return [NormalizedMessage(
            channel=self.name,
            channel_user_id=str(chat.get("id")),
            channel_message_id=f"tg_{chat.get('id')}_{message.get('message_id')}",
            content=content,
            media=media,
            detected_language=sender.get("language_code"),
            sender=info,
            location=location,
        )]


def _sender(user: dict) -> SenderInfo:
    name = " ".join(p for p in (user.get("first_name"), user.get("last_name")) if p) or None
    return SenderInfo(name=name, username=user.get("username"))
