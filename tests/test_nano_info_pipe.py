import base64
import io
import json
from types import SimpleNamespace

import pytest
from PIL import Image

from nano_info import client as image_client
from nano_info import nano_info_pipe
from nano_info.models import GenerationResult
from nano_info.nano_info_pipe import Pipe


def _png_b64() -> str:
    buffer = io.BytesIO()
    Image.new("RGBA", (1, 1), (128, 128, 128, 200)).save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode("utf-8")


PNG_B64 = _png_b64()


@pytest.fixture
def pipe_instance(monkeypatch):
    instance = Pipe()

    async def fake_get_user(user_id):
        return SimpleNamespace(id=user_id, settings={})

    monkeypatch.setattr(instance, "_get_user_by_id", fake_get_user)
    return instance


async def _drain(response):
    chunks = []
    async for chunk in response.body_iterator:
        chunks.append(chunk.decode("utf-8") if isinstance(chunk, (bytes, bytearray)) else str(chunk))
    return chunks


def _request():
    return SimpleNamespace(app=SimpleNamespace(state=SimpleNamespace(settings={})))


@pytest.mark.asyncio
async def test_pipe_returns_markdown_link_for_generated_image(monkeypatch, pipe_instance):
    captured = {}

    async def fake_generate(config, request, **kwargs):
        captured["config"] = config
        captured["request"] = request
        captured["kwargs"] = kwargs
        return GenerationResult.ok(PNG_B64)

    async def fake_upload(*_, **kwargs):
        captured["mime_type"] = kwargs.get("mime_type")
        return "/files/fake"

    monkeypatch.setattr(nano_info_pipe, "generate_image", fake_generate)
    monkeypatch.setattr(pipe_instance, "_upload_image", fake_upload)
    pipe_instance.valves.API_KEY = "test"
    pipe_instance.valves.PROVIDER = "openai-compatible"

    body = {
        "model": "chat-model",
        "stream": False,
        "aspect_ratio": "4/3",
        "resolution": "8K",
        "messages": [
            {"role": "user", "content": "first block"},
            {"role": "assistant", "content": "ignored"},
            {"role": "user", "content": "A lighthouse at dusk"},
        ],
    }

    response = await pipe_instance.pipe(body=body, __user__={"id": "user-1"}, __request__=_request())
    chunks = await _drain(response)

    payload = json.loads("".join(chunks))
    assert payload["choices"][0]["message"]["content"] == "![image_1](/files/fake)"
    assert captured["mime_type"] == "image/png"
    assert captured["config"].provider == "openai-compatible"
    assert captured["config"].api_key == "test"
    assert captured["request"].prompt == "A lighthouse at dusk"
    assert captured["request"].aspect_ratio == "4:3"
    assert captured["request"].resolution == "1K"
    assert captured["request"].reference_image is None
    assert captured["kwargs"]["timeout"] == 600.0
    assert captured["kwargs"]["proxy"].mode == "direct"


@pytest.mark.asyncio
async def test_pipe_stream_reports_generation_error(monkeypatch, pipe_instance):
    async def fake_generate(*_, **__):
        return GenerationResult.fail("API request failed: 500 - rate limited")

    async def fake_upload(*_, **__):
        raise AssertionError("nothing to upload on failure")

    monkeypatch.setattr(nano_info_pipe, "generate_image", fake_generate)
    monkeypatch.setattr(pipe_instance, "_upload_image", fake_upload)
    pipe_instance.valves.API_KEY = "test"

    events = []

    async def emitter(event_data):
        events.append(event_data)

    body = {"stream": True, "messages": [{"role": "user", "content": "hello"}]}
    response = await pipe_instance.pipe(
        body=body, __user__={"id": "user-1"}, __request__=_request(), __event_emitter__=emitter
    )
    chunks = await _drain(response)

    assert "API request failed: 500 - rate limited" in chunks[0]
    assert chunks[-1] == "data: [DONE]\n\n"
    assert events[-1]["data"]["done"] is True


@pytest.mark.asyncio
async def test_pipe_without_api_key_makes_no_http_call(monkeypatch, pipe_instance):
    class _StubClient:
        async def __aenter__(self):
            raise AssertionError("http client should not be used without an API key")

        async def __aexit__(self, exc_type, exc, tb):
            return False

    monkeypatch.setattr(image_client.httpx, "AsyncClient", lambda *_, **__: _StubClient())

    body = {"stream": True, "messages": [{"role": "user", "content": "hello"}]}
    response = await pipe_instance.pipe(body=body, __user__={"id": "user-1"}, __request__=_request())
    chunks = await _drain(response)

    assert "please configure the image-generation API first." in chunks[0]


@pytest.mark.asyncio
async def test_pipe_sends_last_chat_image_as_jpeg_reference(monkeypatch, pipe_instance):
    captured = {}

    async def fake_generate(config, request, **kwargs):
        captured["request"] = request
        return GenerationResult.ok(PNG_B64)

    async def fake_upload(*_, **__):
        return "/files/fake"

    monkeypatch.setattr(nano_info_pipe, "generate_image", fake_generate)
    monkeypatch.setattr(pipe_instance, "_upload_image", fake_upload)
    pipe_instance.valves.API_KEY = "test"

    body = {
        "stream": False,
        "messages": [
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "Same style please"},
                    {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{PNG_B64}"}},
                ],
            }
        ],
    }
    response = await pipe_instance.pipe(body=body, __user__={"id": "user-1"}, __request__=_request())
    await _drain(response)

    reference = captured["request"].reference_image
    assert reference
    assert not reference.startswith("data:")
    assert base64.b64decode(reference)[:2] == b"\xff\xd8"


@pytest.mark.asyncio
async def test_collect_prompt_and_reference_handles_inline_data_uri(pipe_instance):
    messages = [
        {
            "role": "user",
            "content": [
                {"type": "text", "text": f"Use this ![alt](data:image/png;base64,{PNG_B64}) for the style"},
            ],
        }
    ]

    prompt, reference = await pipe_instance._collect_prompt_and_reference(messages)

    assert prompt == "Use this  for the style"
    assert reference == {"mimeType": "image/png", "data": PNG_B64}


@pytest.mark.asyncio
async def test_reference_image_disabled_by_valve(pipe_instance):
    pipe_instance.valves.USE_REFERENCE_IMAGE = False

    assert await pipe_instance._prepare_reference_image({"mimeType": "image/png", "data": PNG_B64}) is None


@pytest.mark.asyncio
async def test_disabled_reference_image_skips_remote_downloads(monkeypatch, pipe_instance):
    fetched = []

    async def fake_fetch(url):
        fetched.append(url)
        return {"mimeType": "image/png", "data": PNG_B64}

    monkeypatch.setattr(pipe_instance, "_fetch_remote_image", fake_fetch)
    pipe_instance.valves.USE_REFERENCE_IMAGE = False
    messages = [
        {"role": "user", "content": "first ![a](https://x.test/1.png)"},
        {"role": "user", "content": "second ![b](https://x.test/2.png)"},
    ]

    prompt, reference = await pipe_instance._collect_prompt_and_reference(messages)

    assert prompt == "second"
    assert reference is None
    assert fetched == []


@pytest.mark.asyncio
async def test_only_last_remote_image_is_downloaded(monkeypatch, pipe_instance):
    fetched = []

    async def fake_fetch(url):
        fetched.append(url)
        return {"mimeType": "image/png", "data": PNG_B64}

    monkeypatch.setattr(pipe_instance, "_fetch_remote_image", fake_fetch)
    messages = [
        {"role": "user", "content": "first ![a](https://x.test/1.png)"},
        {"role": "assistant", "content": "![c](https://x.test/assistant.png)"},
        {"role": "user", "content": "second ![b](https://x.test/2.png)"},
    ]

    _, reference = await pipe_instance._collect_prompt_and_reference(messages)

    assert fetched == ["https://x.test/2.png"]
    assert reference == {"mimeType": "image/png", "data": PNG_B64}


@pytest.mark.asyncio
async def test_inline_image_after_remote_one_wins_without_download(monkeypatch, pipe_instance):
    async def fake_fetch(url):
        raise AssertionError(f"unexpected download of {url}")

    monkeypatch.setattr(pipe_instance, "_fetch_remote_image", fake_fetch)
    messages = [
        {"role": "user", "content": "first ![a](https://x.test/1.png)"},
        {
            "role": "user",
            "content": [
                {"type": "text", "text": "again"},
                {"type": "image_url", "image_url": {"url": f"data:image/PNG;base64,{PNG_B64}"}},
            ],
        },
    ]

    _, reference = await pipe_instance._collect_prompt_and_reference(messages)

    assert reference == {"mimeType": "image/png", "data": PNG_B64}


def test_resolve_shape_values_fall_back_to_valves(pipe_instance):
    assert pipe_instance._resolve_aspect_ratio("16/9") == "16:9"
    assert pipe_instance._resolve_aspect_ratio("7:3") == pipe_instance.valves.ASPECT_RATIO
    assert pipe_instance._resolve_resolution("2k") == "2K"
    assert pipe_instance._resolve_resolution(None) == pipe_instance.valves.RESOLUTION


def test_proxy_adapter_and_timeout_follow_valves(pipe_instance):
    pipe_instance.valves.PROXY_MODE = "remote"
    pipe_instance.valves.PROXY_HOST = "https://relay.test"
    pipe_instance.valves.REQUEST_TIMEOUT = 0

    proxy = pipe_instance._proxy_adapter()

    assert proxy.wrap("https://h/x?y=1") == "https://relay.test/proxy?url=https%3A%2F%2Fh%2Fx%3Fy%3D1"
    assert pipe_instance._request_timeout() is None


@pytest.mark.asyncio
async def test_pipes_manifest(pipe_instance):
    assert await pipe_instance.pipes() == [{"id": "nano-info", "name": "Nano Info: Illustration"}]
