"""
Vision service client - photo slot detection and quality scoring.
When the service is not configured or fails, the neutral result
("unknown" slot, usable) is returned so photo intake never blocks.
"""
import logging
from typing import Optional

import httpx
from pydantic import ValidationError

from funnel.config import get_settings
from funnel.schemas.ai_responses import VisionResult

logger = logging.getLogger(__name__)


def neutral_result(error: Optional[str] = None) -> VisionResult:
    return VisionResult(slot="unknown", confidence=0.0, is_usable=True, error=error)


async def analyze_photo(
    image: bytes,
    treatment_category: Optional[str],
    mime_type: str = "image/jpeg",
) -> VisionResult:
    settings = get_settings()
    if not settings.vision_service_url:
        return neutral_result()

    try:
        async with httpx.AsyncClient(timeout=settings.vision_timeout_seconds) as client:
            response = await client.post(
                settings.vision_service_url,
                headers={"Authorization": f"Bearer {settings.ai_worker_api_key}"}
                if settings.ai_worker_api_key else None,
                data={"treatment_category": treatment_category or "unknown"},
                files={"image": ("photo", image, mime_type)},
            )
            response.raise_for_status()
            return VisionResult.model_validate(response.json())
    except httpx.HTTPError as e:
        logger.warning("Vision analysis failed, using neutral result: %s", str(e))
        return neutral_result(str(e))
    except (ValidationError, ValueError) as e:
        logger.warning("Vision service returned an invalid payload: %s", str(e))
        return neutral_result(str(e))
