# backend/app/ai_client.py
import asyncio
import logging
from dataclasses import dataclass, field

import httpx

from app import config
from app.errors import AIServiceError, AIServiceTimeout

logger = logging.getLogger(__name__)


@dataclass
class AIScore:
    """Scoring payload for one image. Scores are in [0, 1]."""
    deepfake_score: float | None
    visual_quality_score: float | None
    reason: str = ""
    model: str = config.AI_MODEL_NAME
    image_hash: str | None = None
    format_valid: bool = True
    issues: list[str] = field(default_factory=list)


def _unit_interval(payload: dict, key: str, required: bool) -> float | None:
    value = payload.get(key)
    if value is None:
        if required:
            raise AIServiceError(f"AI service response missing {key}")
        return None
    try:
        value = float(value)
    except (TypeError, ValueError) as e:
        raise AIServiceError(f"AI service returned non-numeric {key}: {value!r}") from e
    if not 0.0 <= value <= 1.0:
        raise AIServiceError(f"AI service returned {key} outside [0, 1]: {value}")
    return value


async def _post_score(url: str, context: dict) -> dict:
    headers = {}
    if config.AI_SERVICE_TOKEN:
        headers["Authorization"] = f"Bearer {config.AI_SERVICE_TOKEN}"

    async with httpx.AsyncClient(timeout=config.AI_TIMEOUT_SECONDS) as client:
        resp = await client.post(
            config.AI_SERVICE_URL,
            json={
                "imageUrl": url,
                "batchId": context.get("batchId"),
                "stageName": context.get("stageName"),
                "farmerId": context.get("farmerId"),
                "model": config.AI_MODEL_NAME,
            },
            headers=headers,
        )
    resp.raise_for_status()
    return resp.json()


async def score_image(url: str, context: dict) -> AIScore:
    """
    Ask the AI validation service for authenticity + quality scores.

    Raises AIServiceTimeout / AIServiceError; callers degrade those to a
    human review rather than failing the upload.
    """
    try:
        payload = await asyncio.wait_for(
            _post_score(url, context), timeout=config.AI_TIMEOUT_SECONDS
        )
    except (asyncio.TimeoutError, httpx.TimeoutException) as e:
        raise AIServiceTimeout(f"AI scoring timed out for {url}") from e
    except httpx.HTTPStatusError as e:
        raise AIServiceError(
            f"AI service returned {e.response.status_code} for {url}"
        ) from e
    except (httpx.HTTPError, ValueError) as e:
        raise AIServiceError(f"AI service unreachable: {e}") from e

    if not isinstance(payload, dict):
        raise AIServiceError("AI service returned a malformed payload")

    return AIScore(
        deepfake_score=_unit_interval(payload, "deepfakeScore", required=True),
        visual_quality_score=_unit_interval(payload, "visualQualityScore", required=False),
        reason=payload.get("reason") or "",
        model=payload.get("model") or config.AI_MODEL_NAME,
    )
