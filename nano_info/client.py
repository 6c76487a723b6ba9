"""Streaming image-generation client.

Flow for one call: build the dialect request, route it through the proxy
adapter, stream the response body into a text buffer, then hand the buffer to
the dialect's tiered extractor. Every outcome, including unexpected faults, is
returned as a ``GenerationResult``; nothing propagates past ``generate_image``.

There is no retry. Exactly one HTTP request is issued per call, and no timeout
is applied unless the caller passes one.
"""

import asyncio
import logging
from typing import List, Optional, Sequence

import httpx

from .dialects import get_dialect
from .errors import (
    GENERIC_FAILURE_MESSAGE,
    SAME_ORIGIN_HOST_MESSAGE,
    ConfigurationError,
    ImageGenerationError,
    ImageNotFoundError,
)
from .models import GenerationRequest, GenerationResult, ProviderConfig
from .proxy import ProxyAdapter
from .streaming import ensure_success, read_response_text

logger = logging.getLogger(__name__)
if not logger.handlers:
    logger.addHandler(logging.NullHandler())


def _request_summary(config: ProviderConfig, request: GenerationRequest) -> str:
    """One-line description of a call with credentials and image data omitted."""
    return (
        f"provider={config.provider} | model={config.model} | aspect={request.aspect_ratio} "
        f"| size={request.resolution} | reference_image={'yes' if request.reference_image else 'no'}"
    )


def _own_client(proxy: ProxyAdapter, timeout: Optional[float]) -> httpx.AsyncClient:
    """Client for callers that did not supply one; relative relay URLs need an origin."""
    if proxy.mode == "same_origin" and not proxy.client_base_url:
        raise ConfigurationError(SAME_ORIGIN_HOST_MESSAGE)
    return httpx.AsyncClient(base_url=proxy.client_base_url, timeout=timeout)


async def _call_provider(
    client: httpx.AsyncClient,
    config: ProviderConfig,
    request: GenerationRequest,
    proxy: ProxyAdapter,
) -> str:
    dialect = get_dialect(config.provider)
    provider_request = dialect.build_request(config, request)
    url = proxy.wrap(provider_request.url)
    logger.info("Requesting image: %s", _request_summary(config, request))

    async with client.stream(
        provider_request.method,
        url,
        headers=provider_request.headers,
        json=provider_request.json_body,
    ) as response:
        await ensure_success(response)
        buffer = await read_response_text(response)

    extraction = dialect.extract_image(buffer)
    if not extraction.hit:
        logger.error("No image found in %d characters of %s response", len(buffer), dialect.name)
        raise ImageNotFoundError(dialect.not_found_message)
    return extraction.image


async def generate_image(
    config: ProviderConfig,
    request: GenerationRequest,
    *,
    client: Optional[httpx.AsyncClient] = None,
    proxy: Optional[ProxyAdapter] = None,
    timeout: Optional[float] = None,
) -> GenerationResult:
    """Generate one image and normalise every outcome to a GenerationResult.

    Args:
        config: Provider endpoint, model and credential.
        request: Prompt and image-shape parameters.
        client: Shared HTTP client. A short-lived one is created when omitted.
        proxy: Relay routing. Defaults to direct calls.
        timeout: Seconds before the HTTP request is abandoned; ``None`` waits
            indefinitely. Only used when ``client`` is omitted.

    Returns:
        ``GenerationResult.ok(image)`` or ``GenerationResult.fail(message)``.
    """
    if not config.is_configured():
        logger.error("Image generation requested without base URL or API key")
        return GenerationResult.fail(str(ConfigurationError()))

    proxy = proxy or ProxyAdapter()
    try:
        if client is not None:
            image = await _call_provider(client, config, request, proxy)
        else:
            async with _own_client(proxy, timeout) as own_client:
                image = await _call_provider(own_client, config, request, proxy)
        return GenerationResult.ok(image)
    except ImageGenerationError as exc:
        logger.error("Image generation failed: %s", exc)
        return GenerationResult.fail(str(exc) or GENERIC_FAILURE_MESSAGE)
    except Exception as exc:
        logger.error("Unexpected error during image generation: %s", exc)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Full traceback:", exc_info=True)
        return GenerationResult.fail(str(exc) or GENERIC_FAILURE_MESSAGE)


async def generate_images(
    config: ProviderConfig,
    requests: Sequence[GenerationRequest],
    *,
    client: Optional[httpx.AsyncClient] = None,
    proxy: Optional[ProxyAdapter] = None,
    timeout: Optional[float] = None,
) -> List[GenerationResult]:
    """Run one independent generation per request concurrently, preserving order.

    The HTTP client's connection pool is the only thing the calls share.
    """
    if not requests:
        return []
    if client is not None:
        return list(
            await asyncio.gather(*(generate_image(config, r, client=client, proxy=proxy) for r in requests))
        )
    if not config.is_configured():
        return [GenerationResult.fail(str(ConfigurationError())) for _ in requests]
    proxy = proxy or ProxyAdapter()
    try:
        shared_client = _own_client(proxy, timeout)
    except ConfigurationError as exc:
        logger.error("Image generation failed: %s", exc)
        return [GenerationResult.fail(str(exc)) for _ in requests]
    async with shared_client:
        return list(
            await asyncio.gather(
                *(generate_image(config, r, client=shared_client, proxy=proxy) for r in requests)
            )
        )
