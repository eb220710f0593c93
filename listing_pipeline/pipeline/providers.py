"""
Enhancement Provider

Remote image-generation client for the Replicate predictions API:
create a prediction, poll its handle until it reaches a terminal state,
then download the first output image.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from listing_pipeline.core.config import settings
from listing_pipeline.core.exceptions import (
    CircuitBreaker,
    ProviderRejectedError,
    TransientProviderError,
    get_circuit_breaker,
)
from listing_pipeline.core.logging import get_logger
from listing_pipeline.pipeline.provider_http import call_provider
from listing_pipeline.pipeline.schemas import InvocationDescriptor

logger = get_logger(__name__)

TERMINAL_PREDICTION_STATES = ("succeeded", "failed", "canceled")


class EnhancementProvider(ABC):
    """Runs one remote invocation and returns the output image bytes."""

    @abstractmethod
    async def run(self, descriptor: InvocationDescriptor, timeout: float) -> bytes:
        """
        Raises:
            TransientProviderError: timeout, rate limit, 5xx, failed prediction
            ProviderRejectedError: invalid input or canceled prediction
        """


def extract_output_url(output: Any) -> Optional[str]:
    """Replicate returns either a URL or a list of URLs."""
    if not output:
        return None
    if isinstance(output, list):
        return extract_output_url(output[0])
    if isinstance(output, dict):
        return output.get("url") or output.get("image")
    return str(output)


def parse_prediction(service: str, response: httpx.Response) -> Dict[str, Any]:
    """
    Decode a prediction body.

    Raises:
        TransientProviderError: the body is not a JSON object (gateway pages, truncated bodies)
    """
    try:
        prediction = response.json()
    except ValueError as e:
        raise TransientProviderError(
            f"{service} returned a non-JSON body: {e}",
            service=service,
            http_status=response.status_code,
            failure_kind="malformed_response"
        )
    if not isinstance(prediction, dict):
        raise TransientProviderError(
            f"{service} returned {type(prediction).__name__} instead of a prediction",
            service=service,
            http_status=response.status_code,
            failure_kind="malformed_response"
        )
    return prediction


class ReplicateProvider(EnhancementProvider):
    """Replicate predictions API client over httpx."""

    service = "replicate"

    def __init__(
        self,
        api_url: str = settings.REPLICATE_API_URL,
        api_token: Optional[str] = settings.REPLICATE_API_TOKEN,
        poll_interval: float = settings.REPLICATE_POLL_INTERVAL_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
        circuit: Optional[CircuitBreaker] = None
    ):
        self.api_url = api_url.rstrip("/")
        self.api_token = api_token
        self.poll_interval = poll_interval
        self.client = client
        self.circuit = circuit or get_circuit_breaker(self.service)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        return headers

    async def run(self, descriptor: InvocationDescriptor, timeout: float) -> bytes:
        if self.client is not None:
            return await self._run_with_deadline(self.client, descriptor, timeout)
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await self._run_with_deadline(client, descriptor, timeout)

    async def _run_with_deadline(
        self,
        client: httpx.AsyncClient,
        descriptor: InvocationDescriptor,
        timeout: float
    ) -> bytes:
        try:
            return await asyncio.wait_for(self._run(client, descriptor), timeout=timeout)
        except asyncio.TimeoutError:
            self.circuit.record_failure()
            raise TransientProviderError(
                f"{descriptor.model} did not finish within {timeout:.0f}s",
                service=self.service,
                failure_kind="timeout"
            )

    async def _run(self, client: httpx.AsyncClient, descriptor: InvocationDescriptor) -> bytes:
        headers = self._headers()

        response = await call_provider(
            self.service,
            lambda: client.post(
                f"{self.api_url}/models/{descriptor.model}/predictions",
                json={"input": descriptor.input},
                headers=headers
            ),
            circuit=self.circuit
        )
        prediction = parse_prediction(self.service, response)
        logger.info(
            "prediction_created",
            model=descriptor.model,
            tool_id=descriptor.tool_id,
            prediction_id=prediction.get("id")
        )

        while prediction.get("status") not in TERMINAL_PREDICTION_STATES:
            await asyncio.sleep(self.poll_interval)
            poll_url = (prediction.get("urls") or {}).get("get")
            if not poll_url:
                raise ProviderRejectedError(
                    f"Prediction for {descriptor.model} has no polling handle",
                    service=self.service
                )
            response = await call_provider(
                self.service,
                lambda: client.get(poll_url, headers=headers),
                circuit=self.circuit
            )
            prediction = parse_prediction(self.service, response)

        status = prediction.get("status")
        if status == "failed":
            raise TransientProviderError(
                f"Prediction failed on {descriptor.model}: {prediction.get('error')}",
                service=self.service,
                failure_kind="prediction_failed"
            )
        if status == "canceled":
            raise ProviderRejectedError(
                f"Prediction on {descriptor.model} was canceled",
                service=self.service
            )

        output_url = extract_output_url(prediction.get("output"))
        if not output_url:
            raise ProviderRejectedError(
                f"{descriptor.model} returned no output",
                service=self.service
            )

        output = await call_provider(
            self.service,
            lambda: client.get(output_url),
            circuit=self.circuit
        )
        logger.info(
            "prediction_completed",
            model=descriptor.model,
            tool_id=descriptor.tool_id,
            prediction_id=prediction.get("id"),
            output_size=len(output.content)
        )
        return output.content
