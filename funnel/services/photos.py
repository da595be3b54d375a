"""
Photo capture - download, vision analysis, storage and bookkeeping for
inbound patient photos, plus the per-treatment slot requirements that drive
photo progress.
"""
import asyncio
import logging
import uuid
from pathlib import Path
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from funnel.channels.registry import get_channel_adapter
from funnel.config import get_settings
from funnel.models.lead import Lead
from funnel.models.message import Message
from funnel.models.photo_asset import PhotoAsset
from funnel.services.leads import get_or_create_profile
from funnel.services.vision import analyze_photo

logger = logging.getLogger(__name__)

REQUIRED_PHOTO_SLOTS = {
    "hair_transplant": ["front", "top", "back"],
    "dental": ["front", "top"],
    "rhinoplasty": ["front", "side_left", "side_right"],
    "breast": ["front", "side_left", "side_right"],
    "liposuction": ["front", "back", "side_left", "side_right"],
    "bbl": ["back", "side_left", "side_right"],
    "facelift": ["front", "side_left", "side_right"],
    "arm_lift": ["front", "back"],
}
DEFAULT_REQUIRED_SLOTS = ["front"]

_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/heic": ".heic",
}


def get_required_slots(treatment_category: Optional[str]) -> list[str]:
    return REQUIRED_PHOTO_SLOTS.get(treatment_category or "", DEFAULT_REQUIRED_SLOTS)


def photo_progress(assets: list[PhotoAsset], treatment_category: Optional[str]) -> dict:
    """
    Coverage of the required slots by usable photos.
    Photos with an unknown slot (vision disabled or unsure) each fill one
    uncovered slot, so intake still completes without the vision service.
    """
    required = get_required_slots(treatment_category)
    usable = [a for a in assets if a.is_usable]
    covered = {a.slot for a in usable if a.slot in required}
    unknown = sum(1 for a in usable if a.slot not in required)

    uploaded = min(len(required), len(covered) + unknown)
    missing = [slot for slot in required if slot not in covered][: len(required) - uploaded] \
        if uploaded < len(required) else []
    return {
        "required_photo_count": len(required),
        "photo_count": uploaded,
        "missing_slots": missing,
        "is_complete": uploaded >= len(required),
    }


def photo_status_for(progress: dict) -> str:
    if progress["photo_count"] == 0:
        return "none"
    return "complete" if progress["is_complete"] else "partial"


def get_template_url(treatment_category: Optional[str]) -> Optional[str]:
    """Reference photo for a treatment, None when templates are not configured."""
    base = get_settings().photo_template_base_url
    if not base or not treatment_category:
        return None
    return f"{base.rstrip('/')}/{treatment_category}.jpg"


async def list_photo_assets(db: AsyncSession, lead_id) -> list[PhotoAsset]:
    result = await db.execute(
        select(PhotoAsset).where(PhotoAsset.lead_id == lead_id).order_by(PhotoAsset.created_at)
    )
    return list(result.scalars().all())


async def get_photo_progress(db: AsyncSession, lead: Lead) -> dict:
    assets = await list_photo_assets(db, lead.id)
    return photo_progress(assets, lead.treatment_category)


def _write_file(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


async def _store(lead_id, data: bytes, mime_type: Optional[str]) -> str:
    settings = get_settings()
    ext = _EXTENSIONS.get(mime_type or "", ".jpg")
    path = Path(settings.media_storage_dir) / str(lead_id) / f"{uuid.uuid4().hex}{ext}"
    loop = asyncio.get_running_loop()
    await loop.run_in_executor(None, _write_file, path, data)
    return str(path)


async def capture_photo(
    db: AsyncSession,
    lead: Lead,
    message: Message,
    media_ref: str,
    mime_type: Optional[str] = None,
) -> Optional[PhotoAsset]:
    """
    Download an inbound photo, analyze it and record a PhotoAsset.
    Returns None when the media could not be downloaded. The profile's
    photo_status is refreshed from the new progress.
    """
    adapter = get_channel_adapter(lead.channel)
    data = await adapter.download_media(media_ref)
    if not data:
        logger.warning(
            "Photo download returned nothing for lead %s", str(lead.id)[:8],
            extra={"lead_id": str(lead.id), "channel": lead.channel},
        )
        return None

    vision = await analyze_photo(data, lead.treatment_category, mime_type or "image/jpeg")
    storage_path = await _store(lead.id, data, mime_type)

    asset = PhotoAsset(
        lead_id=lead.id,
        message_id=message.id,
        storage_path=storage_path,
        slot=vision.slot,
        confidence=vision.confidence,
        quality_score=vision.quality_score,
        quality_issues=vision.quality_issues,
        is_usable=vision.is_usable,
    )
    db.add(asset)
    await db.flush()

    progress = await get_photo_progress(db, lead)
    profile = await get_or_create_profile(db, lead.id)
    profile.photo_status = photo_status_for(progress)
    await db.flush()

    logger.info(
        "Photo stored for lead %s: slot=%s usable=%s progress=%d/%d",
        str(lead.id)[:8], asset.slot, asset.is_usable,
        progress["photo_count"], progress["required_photo_count"],
        extra={"lead_id": str(lead.id)},
    )
    return asset

