"""
Nano Info image generation.
Streaming client for Gemini-style and OpenAI-compatible image APIs, plus the
Open WebUI pipe (``nano_info.nano_info_pipe``) built on it.
"""
from .client import generate_image, generate_images
from .models import GenerationRequest, GenerationResult, ProviderConfig
from .proxy import ProxyAdapter

__all__ = [
    "generate_image",
    "generate_images",
    "GenerationRequest",
    "GenerationResult",
    "ProviderConfig",
    "ProxyAdapter",
]
