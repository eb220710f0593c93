"""
Shared HTTP handling for external providers.

Maps transport failures and status codes onto the error taxonomy:
timeouts, 429 and 5xx are transient; other 4xx are rejections. Every call
goes through the provider's circuit breaker and is counted in Prometheus.
"""

from typing import Awaitable, Callable, Optional

import httpx

from listing_pipeline.core.exceptions import (
    CircuitBreaker,
    ProviderRejectedError,
    TransientProviderError,
)
from listing_pipeline.core.metrics import record_provider_call


def raise_for_provider_status(service: str, response: httpx.Response):
    """Raise the taxonomy error matching a non-2xx/3xx response."""
    status = response.status_code
    if status < 400:
        return

    body = response.text[:500]
    if status == 429:
        raise TransientProviderError(
            f"{service} rate limited the request",
            service=service,
            http_status=status,
            failure_kind="rate_limited"
        )
    if status >= 500:
        raise TransientProviderError(
            f"{service} unavailable ({status}): {body}",
            service=service,
            http_status=status,
            failure_kind="provider_unavailable"
        )
    raise ProviderRejectedError(
        f"{service} rejected the request ({status}): {body}",
        service=service,
        http_status=status
    )


async def call_provider(
    service: str,
    send: Callable[[], Awaitable[httpx.Response]],
    circuit: Optional[CircuitBreaker] = None
) -> httpx.Response:
    """
    Perform one HTTP exchange with a provider.

    Args:
        service: Provider name used for metrics and error details
        send: Zero-argument coroutine factory performing the request
        circuit: Breaker guarding the provider; open circuits fail fast

    Raises:
        TransientProviderError: timeout, transport failure, 429, 5xx, open circuit
        ProviderRejectedError: any other 4xx
    """
    if circuit is not None and not circuit.can_execute():
        record_provider_call(service, "circuit_open", 0)
        raise TransientProviderError(
            f"{service} is temporarily unavailable (circuit open)",
            service=service,
            failure_kind="circuit_open"
        )

    try:
        response = await send()
    except httpx.TimeoutException as e:
        record_provider_call(service, "timeout", 0)
        if circuit is not None:
            circuit.record_failure(e)
        raise TransientProviderError(
            f"{service} timed out",
            service=service,
            failure_kind="timeout"
        )
    except httpx.TransportError as e:
        record_provider_call(service, "error", 0)
        if circuit is not None:
            circuit.record_failure(e)
        raise TransientProviderError(
            f"{service} transport failure: {e}",
            service=service,
            failure_kind="provider_unavailable"
        )

    record_provider_call(
        service,
        "success" if response.status_code < 400 else "error",
        response.status_code
    )

    try:
        raise_for_provider_status(service, response)
    except TransientProviderError as e:
        if circuit is not None:
            circuit.record_failure(e)
        raise

    if circuit is not None and response.status_code < 400:
        circuit.record_success()
    return response
