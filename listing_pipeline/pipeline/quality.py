"""
Quality Validator

Asks the vision model to review an enhanced photo for generative artifacts
(warped lines, color shifts, mismatched sky edges) before it is listed.
A failed review never fails the photo: the output stays unvalidated and
the caller keeps it as is.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field

from listing_pipeline.core.config import settings
from listing_pipeline.core.exceptions import (
    CircuitBreaker,
    ProviderRejectedError,
    TransientProviderError,
    get_circuit_breaker,
)
from listing_pipeline.core.logging import get_logger
from listing_pipeline.pipeline.provider_http import call_provider
from listing_pipeline.pipeline.vision import extract_json, normalize_score

logger = get_logger(__name__)


VALIDATION_PROMPT = """You are a quality control expert for real estate photo enhancements. Review this enhanced photo.

Look for AI artifacts, warped or stretched lines, unnatural colors or banding, blur where the
photo should be sharp, and elements that do not match (sky meeting the roof, grass edges).

Return ONLY a valid JSON object:
{
  "overall_quality": 0-100,
  "issues": ["short description of each issue"],
  "recommendation": "approve | review | reject"
}"""


class QualityVerdict(BaseModel):
    photo_id: str
    quality: float = Field(ge=0.0, le=1.0)
    acceptable: bool
    issues: List[str] = Field(default_factory=list)
    recommendation: str = "approve"


class QualityValidator(ABC):
    """Enhanced photo URL in, verdict out; None when no verdict could be obtained."""

    @abstractmethod
    async def validate(self, photo_id: str, image_url: str) -> Optional[QualityVerdict]:
        pass


def parse_verdict(photo_id: str, data: Dict[str, Any], min_quality: float) -> QualityVerdict:
    quality = normalize_score(data.get("overall_quality", 70))
    recommendation = str(data.get("recommendation") or "approve").lower()
    raw_issues = data.get("issues")
    issues = [str(issue) for issue in raw_issues if issue] if isinstance(raw_issues, list) else []
    return QualityVerdict(
        photo_id=photo_id,
        quality=quality,
        acceptable=quality >= min_quality and recommendation != "reject",
        issues=issues[:10],
        recommendation=recommendation
    )


class OpenAIQualityValidator(QualityValidator):
    """Reviews enhanced photos on the same chat completions endpoint as analysis."""

    service = "vision"

    def __init__(
        self,
        api_url: str = settings.VISION_API_URL,
        api_key: Optional[str] = settings.VISION_API_KEY,
        model: str = settings.VISION_MODEL,
        timeout: float = settings.VISION_TIMEOUT_SECONDS,
        min_quality: float = settings.QUALITY_MIN_SCORE,
        client: Optional[httpx.AsyncClient] = None,
        circuit: Optional[CircuitBreaker] = None
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.model = model
        self.timeout = timeout
        self.min_quality = min_quality
        self.client = client
        self.circuit = circuit or get_circuit_breaker(self.service)

    async def _post(self, payload: Dict[str, Any], headers: Dict[str, str]) -> httpx.Response:
        if self.client is not None:
            return await self.client.post(self.api_url, json=payload, headers=headers, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.api_url, json=payload, headers=headers)

    async def validate(self, photo_id: str, image_url: str) -> Optional[QualityVerdict]:
        payload = {
            "model": self.model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": VALIDATION_PROMPT},
                        {"type": "image_url", "image_url": {"url": image_url, "detail": "high"}},
                    ],
                }
            ],
            "max_tokens": 500,
            "temperature": 0.1,
            "response_format": {"type": "json_object"},
        }
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            response = await call_provider(
                self.service,
                lambda: self._post(payload, headers),
                circuit=self.circuit
            )
            content = response.json()["choices"][0]["message"]["content"]
            verdict = parse_verdict(photo_id, extract_json(content), self.min_quality)
        except (TransientProviderError, ProviderRejectedError) as e:
            logger.warning("quality_review_unavailable", photo_id=photo_id, error=e.message)
            return None
        except (KeyError, IndexError, TypeError, ValueError, AttributeError) as e:
            logger.warning("quality_review_malformed", photo_id=photo_id, error=str(e))
            return None

        logger.info(
            "quality_reviewed",
            photo_id=photo_id,
            quality=verdict.quality,
            acceptable=verdict.acceptable,
            issues=len(verdict.issues)
        )
        return verdict
