"""
title: Nano Info Illustration Pipe
description: Illustrates a block of text with a Gemini-style or OpenAI-compatible streaming image API
id: nano-info
version: 0.3.0
features:
  - Text-to-image generation for content blocks via a configurable provider.
  - Two API dialects: Gemini streamGenerateContent (SSE) and OpenAI-compatible chat/completions (SSE).
  - Tolerates providers that stream, buffer the whole reply, or emit a bare data URI.
  - Optional reference image (last image in the chat) to keep a consistent visual style.
  - Optional relay proxy (remote host or same-origin) for endpoints that must be reached indirectly.
  - Uploads generated images to the WebUI file store and returns Markdown image links.
  - Configurable via valves (provider, API key, base URL, model, aspect ratio, resolution, proxy, timeout).
"""

import base64
import io
import json
import logging
import re
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Tuple

import httpx
from fastapi import BackgroundTasks, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from PIL import Image
from pydantic import BaseModel, Field
from starlette.datastructures import Headers
from starlette.responses import StreamingResponse

from .client import generate_image
from .models import GenerationRequest, GenerationResult, ProviderConfig
from .proxy import ProxyAdapter

logger = logging.getLogger(__name__)
# Avoid 'No handler could be found' warnings; rely on host/root handlers.
if not logger.handlers:
    logger.addHandler(logging.NullHandler())

# Covers the client/dialect/streaming modules as well as this one.
package_logger = logging.getLogger(__name__.rpartition(".")[0] or __name__)

MAX_REFERENCE_IMAGE_BYTES = 10 * 1024 * 1024

SUPPORTED_ASPECT_RATIOS = ("1:1", "2:3", "3:2", "3:4", "4:3", "4:5", "5:4", "9:16", "16:9", "21:9")
SUPPORTED_RESOLUTIONS = ("1K", "2K", "4K")

_PIL_FORMAT_MIME = {"PNG": "image/png", "JPEG": "image/jpeg", "WEBP": "image/webp", "GIF": "image/gif"}
_MIME_EXTENSION = {"image/png": "png", "image/jpeg": "jpg", "image/webp": "webp", "image/gif": "gif"}


class Pipe:
    class Valves(BaseModel):
        # Auth and endpoint
        API_KEY: str = Field(default="", description="API key (Bearer)")
        API_BASE_URL: str = Field(
            default="https://generativelanguage.googleapis.com/v1beta",
            description="API base URL (no trailing slash needed)",
        )
        PROVIDER: Literal["gemini", "openai-compatible"] = Field(
            default="gemini",
            description="'gemini' uses models/{model}:streamGenerateContent, "
            "'openai-compatible' uses /chat/completions.",
        )
        MODEL: str = Field(default="gemini-3-pro-image-preview", description="Image model identifier")
        # Logging
        ENABLE_LOGGING: bool = Field(default=False, description="Enable info/debug logs for this plugin. When False, only errors are logged.")
        # Image shape defaults, overridable per request via body['aspect_ratio'] / body['resolution']
        ASPECT_RATIO: str = Field(default="16:9", description="Default aspect ratio")
        RESOLUTION: str = Field(default="1K", description="Default image size (1K, 2K or 4K)")
        USE_REFERENCE_IMAGE: bool = Field(
            default=True,
            description="Send the last image in the chat as a style reference.",
        )
        # Relay
        PROXY_MODE: Literal["direct", "remote", "same_origin"] = Field(
            default="direct",
            description="'direct' calls the provider, 'remote' relays via PROXY_HOST/proxy, "
            "'same_origin' relays via /proxy on PROXY_HOST used as the client origin.",
        )
        PROXY_HOST: str = Field(default="", description="Relay host for 'remote'/'same_origin' proxy modes")
        # HTTP client
        REQUEST_TIMEOUT: int = Field(default=600, description="Request timeout in seconds (0 disables the timeout)")

    def __init__(self):
        """Configure valves, logging, and the supported shape lookups."""
        self.valves = self.Valves()
        self._apply_logging_valve()
        self._aspect_ratio_lookup = {value: value for value in SUPPORTED_ASPECT_RATIOS}
        self._resolution_lookup = {value.lower(): value for value in SUPPORTED_RESOLUTIONS}

    def _apply_logging_valve(self) -> None:
        """Set logger level based on ENABLE_LOGGING valve.
        OFF  -> ERROR only
        ON   -> INFO and above
        """
        enabled = bool(getattr(self.valves, "ENABLE_LOGGING", False))
        package_logger.setLevel(logging.INFO if enabled else logging.ERROR)
        package_logger.propagate = True

    async def emit_status(
        self,
        message: str,
        done: bool = False,
        show_in_chat: bool = False,
        emitter: Optional[Callable[[dict], Awaitable[None]]] = None,
    ):
        """Emit status updates to the client."""
        if emitter:
            await emitter({"type": "status", "data": {"description": message, "done": done}})
        if show_in_chat:
            return f"**✅ {message}**\n\n" if done else f"**⏳ {message}**\n\n"
        return ""

    def _provider_config(self) -> ProviderConfig:
        return ProviderConfig(
            provider=self.valves.PROVIDER,
            base_url=self.valves.API_BASE_URL,
            model=self.valves.MODEL,
            api_key=self.valves.API_KEY,
        )

    def _proxy_adapter(self) -> ProxyAdapter:
        host = (self.valves.PROXY_HOST or "").strip() or None
        return ProxyAdapter(mode=self.valves.PROXY_MODE, host=host)

    def _request_timeout(self) -> Optional[float]:
        timeout = int(self.valves.REQUEST_TIMEOUT or 0)
        return float(timeout) if timeout > 0 else None

    def _resolve_aspect_ratio(self, value: Any) -> str:
        normalized = str(value or "").replace("/", ":").replace(" ", "")
        if normalized in self._aspect_ratio_lookup:
            return self._aspect_ratio_lookup[normalized]
        if value:
            logger.warning("Unsupported aspect ratio %r, using %s", value, self.valves.ASPECT_RATIO)
        return self.valves.ASPECT_RATIO

    def _resolve_resolution(self, value: Any) -> str:
        normalized = str(value or "").strip().lower()
        if normalized in self._resolution_lookup:
            return self._resolution_lookup[normalized]
        if value:
            logger.warning("Unsupported resolution %r, using %s", value, self.valves.RESOLUTION)
        return self.valves.RESOLUTION

    @staticmethod
    def _estimate_base64_size_bytes(image_data: str) -> Optional[int]:
        """Approximate decoded byte size of a base64 string without allocating memory."""
        if not image_data:
            return None
        length = len(image_data.strip())
        if not length:
            return None
        return (length * 3) // 4

    @staticmethod
    def _to_jpeg_base64(image_data: str) -> Optional[str]:
        """Re-encode a base64 image as JPEG; both dialects label the reference as image/jpeg."""
        try:
            image_bytes = base64.b64decode(image_data)
            with Image.open(io.BytesIO(image_bytes)) as img:
                if img.format == "JPEG":
                    return image_data
                output = io.BytesIO()
                img.convert("RGB").save(output, format="JPEG", quality=92)
        except Exception as e:
            logger.error(f"Failed to normalise reference image: {e}")
            return None
        return base64.b64encode(output.getvalue()).decode("utf-8")

    @staticmethod
    def _detect_image_mime(image_data: str) -> str:
        """Best-effort MIME type of generated base64 image data."""
        try:
            with Image.open(io.BytesIO(base64.b64decode(image_data))) as img:
                return _PIL_FORMAT_MIME.get(img.format or "", "image/png")
        except Exception as e:
            logger.error(f"Failed to detect generated image format: {e}")
            return "image/png"

    async def _collect_prompt_and_reference(
        self, messages: List[Dict[str, Any]]
    ) -> Tuple[str, Optional[Dict[str, str]]]:
        """Return the last user text and the last image attached to a user message.

        Only the last image candidate is kept while scanning; a remote one is
        fetched once at the end. Images are ignored when USE_REFERENCE_IMAGE is off.
        """
        data_uri_pattern = re.compile(r"!\[[^\]]*\]\(data:([^;]+);base64,([^)]+)\)")
        remote_pattern = re.compile(r"!\[[^\]]*\]\((https?://[^)]+)\)")
        image_pattern = re.compile(r"!\[[^\]]*\]\((data:([^;]+);base64,([^)]+)|https?://[^)]+)\)")
        collect_images = self.valves.USE_REFERENCE_IMAGE

        last_user_text = ""
        # Either an inline {"mimeType", "data"} dict or a remote URL string.
        candidate: Any = None

        def _inline_from_url(url: str) -> Any:
            url = (url or "").strip()
            if url.startswith("data:"):
                parts = url.split(";base64,", 1)
                if len(parts) == 2:
                    return {"mimeType": parts[0].replace("data:", "", 1).lower(), "data": parts[1]}
                return None
            return url or None

        for message in messages:
            if message.get("role", "user") != "user":
                continue
            content = message.get("content", "")
            text_segments: List[str] = []
            items = content if isinstance(content, list) else [{"type": "text", "text": content}]
            for item in items:
                if not isinstance(item, dict):
                    continue
                if item.get("type") == "image_url":
                    if collect_images:
                        found = _inline_from_url((item.get("image_url") or {}).get("url", ""))
                        if found:
                            candidate = found
                    continue
                if item.get("type") != "text":
                    continue
                text_value = str(item.get("text") or "")
                if collect_images:
                    for match in image_pattern.finditer(text_value):
                        if match.group(2):
                            candidate = {"mimeType": match.group(2).lower(), "data": match.group(3)}
                        else:
                            candidate = match.group(1)
                text_value = remote_pattern.sub("", data_uri_pattern.sub("", text_value))
                text_segments.append(text_value.strip())
            cleaned_text = " ".join(segment for segment in text_segments if segment).strip()
            if cleaned_text:
                last_user_text = cleaned_text

        if isinstance(candidate, str):
            return last_user_text, await self._fetch_remote_image(candidate)
        return last_user_text, candidate

    async def _fetch_remote_image(self, url: str) -> Optional[Dict[str, str]]:
        """Download remote image URLs when provided by the client."""
        url = (url or "").strip()
        if not url.lower().startswith(("http://", "https://")):
            return None
        timeout = self._request_timeout()
        try:
            async with httpx.AsyncClient(timeout=min(timeout, 60) if timeout else 60) as client:
                response = await client.get(url)
                response.raise_for_status()
        except Exception as e:
            logger.error(f"Failed to fetch remote image {url}: {e}")
            return None
        mime_type = response.headers.get("content-type", "").split(";")[0].lower()
        if not mime_type.startswith("image/"):
            logger.error(f"Unsupported remote content type '{mime_type}' from {url}. Skipping.")
            return None
        if len(response.content) > MAX_REFERENCE_IMAGE_BYTES:
            logger.error(f"Remote image {url} exceeds 10MB. Skipping.")
            return None
        return {"mimeType": mime_type, "data": base64.b64encode(response.content).decode("utf-8")}

    async def _prepare_reference_image(self, image: Optional[Dict[str, str]]) -> Optional[str]:
        if not image or not self.valves.USE_REFERENCE_IMAGE:
            return None
        data = image.get("data", "")
        approx_size = self._estimate_base64_size_bytes(data)
        if not approx_size:
            return None
        if approx_size > MAX_REFERENCE_IMAGE_BYTES:
            logger.warning("Skipping reference image >10MB after decode estimate")
            return None
        return await run_in_threadpool(self._to_jpeg_base64, data)

    async def _get_user_by_id(self, user_id: str):
        """Fetch a user record without blocking the async loop."""
        try:
            from open_webui.models.users import Users

            return await run_in_threadpool(Users.get_user_by_id, user_id)
        except Exception as exc:
            logger.error(f"Failed to load user {user_id}: {exc}")
            return None

    async def _upload_image(self, __request__: Request, user: Any, image_data: str, mime_type: str) -> str:
        """Upload generated image bytes to the WebUI file store and return its URL."""
        from open_webui.routers.files import upload_file

        extension = _MIME_EXTENSION.get(mime_type, "png")
        try:
            file_item: Any = await run_in_threadpool(
                upload_file,
                request=__request__,
                background_tasks=BackgroundTasks(),
                file=UploadFile(
                    file=io.BytesIO(base64.b64decode(image_data)),
                    filename=f"nano-info-{uuid.uuid4().hex}.{extension}",
                    headers=Headers({"content-type": mime_type}),
                ),
                process=False,
                user=user,
                metadata={"mime_type": mime_type},
            )
            file_item_id = getattr(file_item, "id", None)
            if file_item_id is None and isinstance(file_item, dict):
                file_item_id = file_item.get("id")
            if not file_item_id:
                raise RuntimeError("upload_file did not return a file id")
            return __request__.app.url_path_for("get_file_content_by_id", id=file_item_id)
        except Exception as e:
            logger.error(f"Image upload failed: {e}")
            raise

    async def pipes(self) -> List[dict]:
        """Return the manifest entry consumed by Open WebUI."""
        return [{"id": "nano-info", "name": "Nano Info: Illustration"}]

    async def pipe(
        self,
        body: dict,
        __user__: dict,
        __request__: Request,
        __event_emitter__: Optional[Callable[[dict], Awaitable[None]]] = None,
    ) -> StreamingResponse:
        """Main entrypoint invoked by Open WebUI for each illustration request."""
        # Re-apply in case valves changed at runtime
        self._apply_logging_valve()
        user = await self._get_user_by_id(__user__["id"])
        is_stream = bool(body.get("stream", False))

        async def stream_response():
            """Yield OpenAI-compatible response chunks (streaming or single payload)."""
            try:
                model = self.valves.MODEL
                if not user:
                    for chunk in self._final_chunks(is_stream, "Error: Unable to load user context."):
                        yield chunk
                    return
                prompt, reference = await self._collect_prompt_and_reference(body.get("messages", []))
                if not prompt:
                    for chunk in self._final_chunks(is_stream, "Error: No text to illustrate."):
                        yield chunk
                    return

                reference_b64 = None
                if reference:
                    await self.emit_status("Preparing reference image...", emitter=__event_emitter__)
                    reference_b64 = await self._prepare_reference_image(reference)

                request = GenerationRequest(
                    prompt=prompt,
                    aspect_ratio=self._resolve_aspect_ratio(body.get("aspect_ratio")),
                    resolution=self._resolve_resolution(body.get("resolution") or body.get("size")),
                    reference_image=reference_b64,
                )
                await self.emit_status(
                    f"Generating image (aspect ratio: {request.aspect_ratio}, size: {request.resolution}, "
                    f"reference image: {'yes' if reference_b64 else 'no'})...",
                    emitter=__event_emitter__,
                )
                result: GenerationResult = await generate_image(
                    self._provider_config(),
                    request,
                    proxy=self._proxy_adapter(),
                    timeout=self._request_timeout(),
                )
                if not result.success:
                    error_status = await self.emit_status(
                        "An error occurred while generating the image", True, True, emitter=__event_emitter__
                    )
                    for chunk in self._final_chunks(is_stream, f"{error_status}Error: {result.error}", model=model):
                        yield chunk
                    return

                await self.emit_status("Uploading image...", emitter=__event_emitter__)
                mime_type = self._detect_image_mime(result.image)
                try:
                    image_url = await self._upload_image(
                        __request__=__request__,
                        user=user,
                        image_data=result.image,
                        mime_type=mime_type,
                    )
                except Exception as e:
                    error_status = await self.emit_status(
                        "An error occurred while uploading image", True, True, emitter=__event_emitter__
                    )
                    for chunk in self._final_chunks(is_stream, f"{error_status}Error uploading image: {str(e)}"):
                        yield chunk
                    return

                await self.emit_status("Image generation complete!", True, emitter=__event_emitter__)
                for chunk in self._final_chunks(is_stream, f"![image_1]({image_url})", model=model):
                    yield chunk
            except Exception as e:
                logger.error(f"Error processing request: {str(e)}")
                error_status = await self.emit_status(
                    "An error occurred while processing request", True, True, emitter=__event_emitter__
                )
                for chunk in self._final_chunks(is_stream, f"{error_status}Error processing request: {str(e)}"):
                    yield chunk

        media_type = "text/event-stream" if is_stream else "application/json"
        return StreamingResponse(stream_response(), media_type=media_type)

    def _final_chunks(self, is_stream: bool, content: str, model: str = "") -> List[str]:
        """Content chunk, stop chunk and [DONE] for streams; one document otherwise."""
        if not is_stream:
            return [self._format_data(is_stream=False, model=model, content=content, finish_reason="stop")]
        return [
            self._format_data(is_stream=True, model=model, content=content, finish_reason=None),
            self._format_data(is_stream=True, model=model, content=None, finish_reason="stop"),
            "data: [DONE]\n\n",
        ]

    def _format_data(
        self,
        is_stream: bool,
        model: str = "",
        content: Optional[str] = "",
        finish_reason: Optional[str] = None,
    ) -> str:
        """Format the response data in the expected OpenAI-compatible format."""
        data = {
            "id": f"chat.{uuid.uuid4().hex}",
            "object": "chat.completion.chunk" if is_stream else "chat.completion",
            "created": int(time.time()),
            "model": model,
        }
        if is_stream:
            is_stop_chunk = finish_reason == "stop" and content is None
            delta: Dict[str, Any] = {}
            if not is_stop_chunk:
                delta["role"] = "assistant"
                if content is not None:
                    delta["content"] = content
            data["choices"] = [
                {
                    "finish_reason": finish_reason,
                    "index": 0,
                    "delta": delta,
                }
            ]
        else:
            data["choices"] = [
                {
                    "finish_reason": finish_reason or "stop",
                    "index": 0,
                    "message": {
                        "role": "assistant",
                        "content": content or "",
                    },
                }
            ]
        return f"data: {json.dumps(data)}\n\n" if is_stream else json.dumps(data)
