"""
Channel name -> adapter instance.
"""
from funnel.channels.base import ChannelAdapter
from funnel.channels.telegram import TelegramAdapter
from funnel.channels.web import WebAdapter
from funnel.channels.whatsapp import WhatsAppAdapter

_ADAPTER_CLASSES = {
    "telegram": TelegramAdapter,
    "whatsapp": WhatsAppAdapter,
    "web": WebAdapter,
}

_adapters: dict[str, ChannelAdapter] = {}


def get_channel_adapter(channel: str) -> ChannelAdapter:
    """Cached adapter for a channel. Raises ValueError for unknown channels."""
    adapter = _adapters.get(channel)
    if adapter is None:
        cls = _ADAPTER_CLASSES.get(channel)
        if cls is None:
            raise ValueError(f"Unknown channel: {channel}")
        adapter = cls()
        _adapters[channel] = adapter
    return adapter


def reset_adapters() -> None:
    _adapters.clear()
