"""
Vision Analysis Provider

Sends one photo URL to an OpenAI-compatible chat completions endpoint and
normalizes the JSON answer into a PhotoAnalysis. No retries happen here;
the orchestrator owns the retry budget.
"""

import json
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from listing_pipeline.core.config import settings
from listing_pipeline.core.exceptions import (
    CircuitBreaker,
    TransientProviderError,
    get_circuit_breaker,
)
from listing_pipeline.core.logging import get_logger
from listing_pipeline.pipeline.provider_http import call_provider
from listing_pipeline.pipeline.schemas import PhotoAnalysis

logger = get_logger(__name__)


ANALYSIS_PROMPT = """You are a professional real estate photo analyst. Analyze this property photo and report what it needs before it is listed.

Return ONLY a valid JSON object (no markdown, no explanation) with exactly these keys:
{
  "room_type": "exterior_front | exterior_back | kitchen | living | bedroom | bathroom | dining | office | drone | detail | other",
  "is_exterior": true,
  "sky_condition": "clear | overcast | blown_out | stormy | none",
  "lighting_quality": "well_lit | dark | overexposed | mixed",
  "clutter_level": "none | low | moderate | high",
  "sky_needs_replacement": false,
  "lawn_needs_repair": false,
  "window_exposure_issue": false,
  "needs_hdr": false,
  "vertical_alignment_issue": false,
  "room_empty": false,
  "hero_score": 0-100 (potential as the listing cover photo),
  "twilight_score": 0-100 (how good this would look as a dusk photo; exteriors only)
}"""

# Keys the prompt asks for; completeness is the share the provider returned
EXPECTED_FIELDS = (
    "room_type",
    "is_exterior",
    "sky_condition",
    "lighting_quality",
    "clutter_level",
    "sky_needs_replacement",
    "lawn_needs_repair",
    "window_exposure_issue",
    "needs_hdr",
    "vertical_alignment_issue",
    "room_empty",
    "hero_score",
    "twilight_score",
)

BOOL_FIELDS = (
    "is_exterior",
    "sky_needs_replacement",
    "lawn_needs_repair",
    "window_exposure_issue",
    "needs_hdr",
    "vertical_alignment_issue",
    "room_empty",
)


class VisionAnalysisProvider(ABC):
    """Photo URL in, structured PhotoAnalysis out."""

    @abstractmethod
    async def analyze(self, photo_id: str, image_url: str) -> PhotoAnalysis:
        """
        Raises:
            TransientProviderError: retryable failure
            ProviderRejectedError: the provider refused this photo
        """


def normalize_score(value: Any) -> float:
    """Accept 0-1 or 0-100 scores and clamp into 0-1."""
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0.0
    if score > 1.0:
        score = score / 100.0
    return min(1.0, max(0.0, score))


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return bool(value)


def extract_json(content: Any) -> Dict[str, Any]:
    """Parse a model answer that may be wrapped in a markdown fence."""
    if not isinstance(content, str):
        # Refusals come back as a null content
        raise ValueError(f"expected text content, got {type(content).__name__}")
    text = content.strip()
    if text.startswith("```"):
        text = text.strip("`")
        if text.lower().startswith("json"):
            text = text[4:]
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end == -1:
        raise ValueError("no JSON object in response")
    data = json.loads(text[start:end + 1])
    if not isinstance(data, dict):
        raise ValueError("answer is not a JSON object")
    return data


def parse_analysis(photo_id: str, data: Dict[str, Any]) -> PhotoAnalysis:
    """Normalize a raw provider answer into a PhotoAnalysis."""
    present = sum(1 for key in EXPECTED_FIELDS if data.get(key) is not None)
    room_type = str(data.get("room_type") or "unknown").lower()

    fields: Dict[str, Any] = {
        "photo_id": photo_id,
        "room_type": room_type,
        "sky_condition": str(data.get("sky_condition") or "none").lower(),
        "lighting_quality": str(data.get("lighting_quality") or "well_lit").lower(),
        "clutter_level": str(data.get("clutter_level") or "none").lower(),
        "hero_score": normalize_score(data.get("hero_score")),
        "twilight_score": normalize_score(data.get("twilight_score")),
        "completeness": present / len(EXPECTED_FIELDS),
    }
    for key in BOOL_FIELDS:
        fields[key] = _as_bool(data.get(key, False))
    if data.get("is_exterior") is None:
        fields["is_exterior"] = room_type.startswith("exterior") or room_type == "drone"

    return PhotoAnalysis(**fields)


class OpenAIVisionProvider(VisionAnalysisProvider):
    """OpenAI-compatible chat completions client."""

    service = "vision"

    def __init__(
        self,
        api_url: str = settings.VISION_API_URL,
        api_key: Optional[str] = settings.VISION_API_KEY,
        model: str = settings.VISION_MODEL,
        timeout: float = settings.VISION_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
        circuit: Optional[CircuitBreaker] = None
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.client = client
        self.circuit = circuit or get_circuit_breaker(self.service)

    async def _post(self, payload: Dict[str, Any], headers: Dict[str, str]) -> httpx.Response:
        if self.client is not None:
            return await self.client.post(self.api_url, json=payload, headers=headers, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.api_url, json=payload, headers=headers)

    async def analyze(self, photo_id: str, image_url: str) -> PhotoAnalysis:
        payload = {
            "model": self.model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": ANALYSIS_PROMPT},
                        {"type": "image_url", "image_url": {"url": image_url, "detail": "high"}},
                    ],
                }
            ],
            "max_tokens": 800,
            "temperature": 0.1,
            "response_format": {"type": "json_object"},
        }
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        response = await call_provider(
            self.service,
            lambda: self._post(payload, headers),
            circuit=self.circuit
        )

        try:
            content = response.json()["choices"][0]["message"]["content"]
            data = extract_json(content)
        except (KeyError, IndexError, TypeError, ValueError, AttributeError) as e:
            # Model answers vary run to run, a malformed one is worth retrying
            logger.warning("vision_malformed_response", photo_id=photo_id, error=str(e))
            raise TransientProviderError(
                f"Malformed analysis for photo {photo_id}: {e}",
                service=self.service,
                http_status=response.status_code,
                failure_kind="malformed_response"
            )

        analysis = parse_analysis(photo_id, data)
        logger.info(
            "photo_analyzed",
            photo_id=photo_id,
            room_type=analysis.room_type,
            hero_score=analysis.hero_score,
            completeness=analysis.completeness
        )
        return analysis
