"""
WhatsApp Cloud API adapter.
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

# Cloud API limits
BUTTON_TITLE_MAX = 20
MAX_BUTTONS = 3


class WhatsAppAdapter(ChannelAdapter):
    name = "whatsapp"

    def __init__(
        self,
        access_token: Optional[str] = None,
        phone_number_id: Optional[str] = None,
    ):
        settings = get_settings()
        self.access_token = access_token or settings.whatsapp_access_token
        self.phone_number_id = phone_number_id or settings.whatsapp_phone_number_id
        self.api_url = settings.whatsapp_api_url.rstrip("/")
        self.timeout = settings.channel_timeout_seconds

    @property
    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.access_token}"}

    async def _post_message(self, payload: dict) -> str:
        if not self.access_token or not self.phone_number_id:
            raise ChannelSendError(self.name, "credentials not configured")

        body = {"messaging_product": "whatsapp", "recipient_type": "individual", **payload}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.api_url}/{self.phone_number_id}/messages",
                    json=body,
                    headers=self._headers,
                )
        except httpx.HTTPError as e:
            raise ChannelSendError(self.name, str(e)) from e

        data = response_json(response)
        if response.status_code >= 400:
            error = (data.get("error") or {}).get("message") or f"HTTP {response.status_code}"
            raise ChannelSendError(self.name, error, status_code=response.status_code)

        messages = data.get("messages") or [{}]
        return messages[0].get("id", "")

    async def send_message(
        self, channel_user_id: str, content: str, media_url: Optional[str] = None
    ) -> str:
        if media_url:
            image = {"link": media_url}
            if content:
                image["caption"] = content
            return await self._post_message({"to": channel_user_id, "type": "image", "image": image})
        return await self._post_message({
            "to": channel_user_id,
            "type": "text",
            "text": {"body": content, "preview_url": True},
        })

    async def send_buttons(
        self,
        channel_user_id: str,
        body: str,
        buttons: list[tuple[str, str]],
        footer: Optional[str] = None,
    ) -> str:
        interactive = {
            "type": "button",
            "body": {"text": body},
            "action": {
                "buttons": [
                    {"type": "reply", "reply": {"id": button_id, "title": title[:BUTTON_TITLE_MAX]}}
                    for button_id, title in buttons[:MAX_BUTTONS]
                ],
            },
        }
        if footer:
            interactive["footer"] = {"text": footer}
        return await self._post_message({
            "to": channel_user_id,
            "type": "interactive",
            "interactive": interactive,
        })

    async def download_media(self, media_ref: str) -> Optional[bytes]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                meta = await client.get(f"{self.api_url}/{media_ref}", headers=self._headers)
                meta.raise_for_status()
                url = meta.json().get("url")
                if not url:
                    return None
                response = await client.get(url, headers=self._headers)
                response.raise_for_status()
                return response.content
        except httpx.HTTPError as e:
            logger.warning("WhatsApp media download failed for %s: %s", media_ref, str(e))
            return None

    def normalize(self, payload: dict) -> list[NormalizedMessage]:
        normalized: list[NormalizedMessage] = []
        for entry in payload.get("entry") or []:
            for change in entry.get("changes") or []:
                value = change.get("value") or {}
                names = {
                    c.get("wa_id"): (c.get("profile") or {}).get("name")
                    for c in value.get("contacts") or []
                }
                # Status callbacks (sent/delivered/read) carry no messages
                for message in value.get("messages") or []:
                    parsed = self._normalize_message(message, names)
                    if parsed is not None:
                        normalized.append(parsed)
        return normalized

    def _normalize_message(self, message: dict, names: dict) -> Optional[NormalizedMessage]:
        sender_id = message.get("from")
        msg_type = message.get("type")
        if not sender_id or not message.get("id"):
            return None

        content = ""
        media = None
        callback_data = None
        location = None

        if msg_type == "text":
            content = (message.get("text") or {}).get("body", "")
        elif msg_type in ("image", "video", "audio", "document", "sticker"):
            body = message.get(msg_type) or {}
            mime = body.get("mime_type")
            media_kind = msg_type
            if msg_type == "document" and (mime or "").startswith("image/"):
                media_kind = "image"
            elif msg_type == "sticker":
                media_kind = "image"
            content = body.get("caption") or ""
            media = MediaInfo(type=media_kind, ref=body.get("id", ""), mime_type=mime, caption=body.get("caption"))
        elif msg_type == "interactive":
            interactive = message.get("interactive") or {}
            reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
            callback_data = reply.get("id")
            content = reply.get("title") or callback_data or ""
        elif msg_type == "button":
            button = message.get("button") or {}
            callback_data = button.get("payload")
            content = button.get("text") or callback_data or ""
        elif msg_type == "location":
            loc = message.get("location") or {}
            location = LocationInfo(latitude=loc.get("latitude", 0.0), longitude=loc.get("longitude", 0.0))
            content = loc.get("name") or loc.get("address") or ""
        else:
            logger.debug("Ignoring WhatsApp message type %s", msg_type)
            return None

        return NormalizedMessage(
            channel=self.name,
            channel_user_id=sender_id,
            channel_message_id=message["id"],
            content=content,
            media=media,
            callback_data=callback_data,
            sender=SenderInfo(name=names.get(sender_id), phone=f"+{sender_id}"),
            location=location,
        )
