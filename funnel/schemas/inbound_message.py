"""
NormalizedMessage - the single inbound shape every channel webhook produces.
The ingestion pipeline never sees provider-specific payloads.
"""
from typing import Optional
from pydantic import BaseModel, Field


class SenderInfo(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    username: Optional[str] = None


class MediaInfo(BaseModel):
    type: str = Field(..., description="image, video, audio, document")
    ref: str = Field(..., description="Channel-native file/media id or URL")
    mime_type: Optional[str] = None
    caption: Optional[str] = None


class LocationInfo(BaseModel):
    latitude: float
    longitude: float


class NormalizedMessage(BaseModel):
    channel: str = Field(..., description="telegram, whatsapp, web")
    channel_user_id: str
    channel_message_id: str = Field(..., description="Idempotency key")
    content: str = ""
    media: Optional[MediaInfo] = None
    callback_data: Optional[str] = Field(
        default=None, description="Button payload: consent_approve, flow_chat, ..."
    )
    detected_language: Optional[str] = None
    sender: SenderInfo = Field(default_factory=SenderInfo)
    location: Optional[LocationInfo] = None

    @property
    def is_image(self) -> bool:
        return self.media is not None and self.media.type == "image"

    def metadata(self) -> dict:
        data: dict = {}
        if self.sender.name:
            data["sender_name"] = self.sender.name
        if self.sender.phone:
            data["sender_phone"] = self.sender.phone
        if self.location:
            data["location"] = self.location.model_dump()
        if self.callback_data:
            data["callback_data"] = self.callback_data
        return data
