"""
Simulate inbound patient messages against a running API.

Usage:
    python scripts/simulate_message.py
    python scripts/simulate_message.py --channel telegram --text "Evet"
    python scripts/simulate_message.py --channel whatsapp --user 905551112233 --text "Merhaba"
    python scripts/simulate_message.py --channel telegram --callback consent_approve
"""
import argparse
import asyncio
import logging
import time

import httpx

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

BASE_URL = "http://localhost:8000"


async def simulate_telegram(user: str, text: str, callback: str | None, secret: str | None):
    """Send a Telegram Bot API update (message or button press)."""
    message_id = int(time.time() * 1000) % 1_000_000_000
    sender = {"id": int(user), "first_name": "Test", "language_code": "en"}
    if callback:
        payload = {
            "update_id": message_id,
            "callback_query": {
                "id": str(message_id),
                "from": sender,
                "message": {"chat": {"id": int(user)}},
                "data": callback,
            },
        }
    else:
        payload = {
            "update_id": message_id,
            "message": {"message_id": message_id, "chat": {"id": int(user)}, "from": sender, "text": text},
        }

    headers = {"X-Telegram-Bot-Api-Secret-Token": secret} if secret else {}
    async with httpx.AsyncClient(timeout=30) as client:
        resp = await client.post(f"{BASE_URL}/api/v1/webhook/telegram", json=payload, headers=headers)
        logger.info("Telegram webhook response: %s %s", resp.status_code, resp.json())
        return resp


async def simulate_whatsapp(user: str, text: str, callback: str | None):
    """Send a WhatsApp Cloud API notification."""
    message = {"from": user, "id": f"wamid.sim{int(time.time() * 1000)}"}
    if callback:
        message["type"] = "interactive"
        message["interactive"] = {"type": "button_reply", "button_reply": {"id": callback, "title": callback}}
    else:
        message["type"] = "text"
        message["text"] = {"body": text}

    payload = {
        "object": "whatsapp_business_account",
        "entry": [{"changes": [{"value": {
            "contacts": [{"wa_id": user, "profile": {"name": "Test Patient"}}],
            "messages": [message],
        }}]}],
    }
    async with httpx.AsyncClient(timeout=30) as client:
        resp = await client.post(f"{BASE_URL}/api/v1/webhook/whatsapp", json=payload)
        logger.info("WhatsApp webhook response: %s %s", resp.status_code, resp.json())
        return resp


async def simulate_web(user: str, text: str, callback: str | None, language: str):
    """Send a web chat widget message."""
    payload = {
        "user_id": user,
        "message_id": str(int(time.time() * 1000)),
        "text": text,
        "language": language,
    }
    if callback:
        payload["callback_data"] = callback
    async with httpx.AsyncClient(timeout=30) as client:
        resp = await client.post(f"{BASE_URL}/api/v1/webhook/web", json=payload)
        logger.info("Web chat response: %s %s", resp.status_code, resp.json())
        return resp


async def main():
    parser = argparse.ArgumentParser(description="Simulate inbound patient messages")
    parser.add_argument("--channel", default="web", choices=["telegram", "whatsapp", "web"])
    parser.add_argument("--user", default="1001")
    parser.add_argument("--text", default="Hello, I'm interested in a hair transplant")
    parser.add_argument("--callback", default=None, help="Button id, e.g. consent_approve or flow_chat")
    parser.add_argument("--language", default="en")
    parser.add_argument("--secret", default=None, help="Telegram webhook secret token")
    args = parser.parse_args()

    logger.info("Simulating %s message from %s...", args.channel, args.user)

    if args.channel == "telegram":
        await simulate_telegram(args.user, args.text, args.callback, args.secret)
    elif args.channel == "whatsapp":
        await simulate_whatsapp(args.user, args.text, args.callback)
    else:
        await simulate_web(args.user, args.text, args.callback, args.language)


if __name__ == "__main__":
    asyncio.run(main())
