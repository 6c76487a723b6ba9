"""Failure taxonomy for one image-generation call.

Every exception here is terminal for the call that raised it; the client's
outer boundary turns it into a failed ``GenerationResult`` using ``str(exc)``.
"""

from typing import Optional

CONFIG_MISSING_MESSAGE = "please configure the image-generation API first."
STREAM_UNREADABLE_MESSAGE = "cannot read response stream"
GENERIC_FAILURE_MESSAGE = "image generation failed"
SAME_ORIGIN_HOST_MESSAGE = "same-origin proxy needs a host when no HTTP client is supplied."


class ImageGenerationError(Exception):
    """Base class for expected generation failures."""


class ConfigurationError(ImageGenerationError):
    def __init__(self, message: str = CONFIG_MISSING_MESSAGE):
        super().__init__(message)


class ApiRequestError(ImageGenerationError):
    """Non-2xx response from the provider (or the proxy in front of it)."""

    def __init__(self, status_code: int, body: Optional[str] = None):
        self.status_code = status_code
        self.body = body or ""
        super().__init__(f"API request failed: {status_code} - {self.body}")


class StreamReadError(ImageGenerationError):
    def __init__(self, message: str = STREAM_UNREADABLE_MESSAGE):
        super().__init__(message)


class ImageNotFoundError(ImageGenerationError):
    """The stream completed but no extraction tier located an image."""
