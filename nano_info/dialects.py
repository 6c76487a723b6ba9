"""Request construction and image extraction for the two supported API dialects.

Providers observed in the wild do not agree on the response shape. Some stream
proper SSE, some buffer the whole reply into one JSON document despite the
stream request, and some emit a bare data URI with no JSON around it. Each
dialect therefore tries a fixed sequence of extraction tiers and stops at the
first one that yields a payload. The regex tiers are last-resort scans; their
position in each sequence is fixed.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from .models import GenerationRequest, ProviderConfig, ProviderRequest
from .streaming import SSE_DONE, parse_events

logger = logging.getLogger(__name__)
if not logger.handlers:
    logger.addHandler(logging.NullHandler())

GEMINI_EVENT_ALLOWLIST = frozenset({"result", "message", ""})
GEMINI_INLINE_DATA_PATTERN = re.compile(r'"inlineData"\s*:\s*\{\s*"data"\s*:\s*"([A-Za-z0-9+/=]+)"')
DATA_URI_PATTERN = re.compile(r"data:image/[^;]+;base64,([A-Za-z0-9+/=]+)")

REFERENCE_IMAGE_MIME = "image/jpeg"

_NOT_JSON = object()


@dataclass(frozen=True)
class Extraction:
    """Outcome of one extraction tier: a hit carries the base64 payload."""

    tier: str
    image: Optional[str] = None

    @property
    def hit(self) -> bool:
        return bool(self.image)


def _normalise_base_url(base_url: str) -> str:
    return (base_url or "").rstrip("/")


def _json_headers(api_key: str) -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }


def _load_json(text: str) -> Any:
    """Parse JSON, returning the _NOT_JSON marker instead of raising."""
    try:
        return json.loads(text)
    except ValueError:
        return _NOT_JSON


def _first(value: Any) -> Any:
    if isinstance(value, list) and value:
        return value[0]
    return None


def _match_data_uri(text: Any) -> Optional[str]:
    if not isinstance(text, str):
        return None
    match = DATA_URI_PATTERN.search(text)
    return match.group(1) if match else None


class Dialect:
    """One request/response shape. Subclasses fill in both halves."""

    name = ""
    not_found_message = "no image data found."

    def build_request(self, config: ProviderConfig, request: GenerationRequest) -> ProviderRequest:
        raise NotImplementedError("Subclasses must implement build_request")

    def extraction_tiers(self) -> List[Tuple[str, Callable[[str], Optional[str]]]]:
        raise NotImplementedError("Subclasses must implement extraction_tiers")

    def extract_image(self, buffer: str) -> Extraction:
        """Run each tier in order and return the first hit, or a miss."""
        for tier_name, tier in self.extraction_tiers():
            result = Extraction(tier=tier_name, image=tier(buffer))
            if result.hit:
                logger.info("%s: image located by tier '%s'", self.name, tier_name)
                return result
            logger.debug("%s: tier '%s' missed", self.name, tier_name)
        return Extraction(tier="none")


class GeminiDialect(Dialect):
    name = "gemini"
    not_found_message = "no image data found, check the API response."

    def build_url(self, config: ProviderConfig) -> str:
        base_url = _normalise_base_url(config.base_url)
        return f"{base_url}/models/{config.model}:streamGenerateContent?alt=sse"

    def build_request(self, config: ProviderConfig, request: GenerationRequest) -> ProviderRequest:
        parts: List[Dict[str, Any]] = [{"text": request.prompt}]
        if request.reference_image:
            parts.append(
                {
                    "inlineData": {
                        "data": request.reference_image,
                        "mimeType": REFERENCE_IMAGE_MIME,
                    }
                }
            )
        payload = {
            "contents": [{"role": "user", "parts": parts}],
            "streamGenerateContent": {
                "imageConfig": {
                    "aspectRatio": request.aspect_ratio,
                    "imageSize": request.resolution,
                }
            },
        }
        return ProviderRequest(url=self.build_url(config), headers=_json_headers(config.api_key), json_body=payload)

    @staticmethod
    def _inline_data(document: Any) -> Optional[str]:
        """Return candidates[0].content.parts[*].inlineData.data for the first part with inlineData."""
        if not isinstance(document, dict):
            return None
        candidate = _first(document.get("candidates"))
        content = candidate.get("content") if isinstance(candidate, dict) else None
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list):
            return None
        for part in parts:
            if not isinstance(part, dict):
                continue
            inline = part.get("inlineData")
            # Any object counts as present, even an empty one.
            if isinstance(inline, (dict, list)) or inline:
                data = inline.get("data") if isinstance(inline, dict) else None
                return data if isinstance(data, str) and data else None
        return None

    def _from_events(self, buffer: str) -> Optional[str]:
        for event in parse_events(buffer):
            if event.name not in GEMINI_EVENT_ALLOWLIST or event.is_done:
                continue
            document = _load_json(event.data)
            if document is _NOT_JSON:
                continue
            image = self._inline_data(document)
            if image:
                return image
        return None

    def _from_whole_buffer(self, buffer: str) -> Optional[str]:
        document = _load_json(buffer)
        if document is _NOT_JSON:
            return None
        return self._inline_data(document)

    @staticmethod
    def _from_raw_scan(buffer: str) -> Optional[str]:
        match = GEMINI_INLINE_DATA_PATTERN.search(buffer)
        return match.group(1) if match else None

    def extraction_tiers(self):
        return [
            ("sse_events", self._from_events),
            ("json_document", self._from_whole_buffer),
            ("inline_data_scan", self._from_raw_scan),
        ]


class OpenAICompatibleDialect(Dialect):
    name = "openai-compatible"
    not_found_message = "no image data found."

    def build_url(self, config: ProviderConfig) -> str:
        return f"{_normalise_base_url(config.base_url)}/chat/completions"

    def build_request(self, config: ProviderConfig, request: GenerationRequest) -> ProviderRequest:
        content: List[Dict[str, Any]] = [{"type": "text", "text": request.prompt}]
        if request.reference_image:
            content.append(
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:{REFERENCE_IMAGE_MIME};base64,{request.reference_image}"},
                }
            )
        payload = {
            "model": config.model,
            "messages": [{"role": "user", "content": content}],
            "generationConfig": {
                "imageConfig": {
                    "aspectRatio": request.aspect_ratio,
                    "imageSize": request.resolution,
                }
            },
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        return ProviderRequest(url=self.build_url(config), headers=_json_headers(config.api_key), json_body=payload)

    @staticmethod
    def _choice_content(document: Any, *keys: str) -> Any:
        if not isinstance(document, dict):
            return None
        choice = _first(document.get("choices"))
        if not isinstance(choice, dict):
            return None
        for key in keys:
            holder = choice.get(key)
            value = holder.get("content") if isinstance(holder, dict) else None
            if value:
                return value
        return None

    @staticmethod
    def _from_raw_data_uri(buffer: str) -> Optional[str]:
        return _match_data_uri(buffer)

    def _from_stream_lines(self, buffer: str) -> Optional[str]:
        for raw_line in buffer.split("\n"):
            line = raw_line.strip()
            if not line or line == f"data: {SSE_DONE}" or not line.startswith("data: "):
                continue
            document = _load_json(line[6:])
            if document is _NOT_JSON:
                continue
            image = _match_data_uri(self._choice_content(document, "delta", "message"))
            if image:
                return image
        return None

    def _from_whole_buffer(self, buffer: str) -> Optional[str]:
        document = _load_json(buffer)
        if document is _NOT_JSON:
            return None
        return _match_data_uri(self._choice_content(document, "message"))

    def extraction_tiers(self):
        return [
            ("data_uri_scan", self._from_raw_data_uri),
            ("stream_chunks", self._from_stream_lines),
            ("json_document", self._from_whole_buffer),
        ]


DIALECTS: Dict[str, Dialect] = {
    "gemini": GeminiDialect(),
    "openai-compatible": OpenAICompatibleDialect(),
}


def get_dialect(provider: str) -> Dialect:
    try:
        return DIALECTS[provider]
    except KeyError:
        raise ValueError(f"Unknown image provider: {provider}") from None
