"""
Tests for the httpx chat-completions transport, using httpx.MockTransport.
"""

import json

import httpx
import pytest

from loadllm_lib import openai_transport, stream_chat_completion

from tests.helpers import collect, content_chunk, reasoning_chunk, usage_chunk


def sse_body(chunks) -> str:
    lines = [": keep-alive", "data: not-json"]
    lines += [f"data: {json.dumps(c)}" for c in chunks]
    lines += ["data: [DONE]", f"data: {json.dumps(content_chunk('after done'))}"]
    return "\n\n".join(lines) + "\n\n"


class TestOpenAITransport:
    """Streaming POST and SSE line handling."""

    @pytest.mark.asyncio
    async def test_request_and_chunks(self) -> None:
        seen = []
        chunks = [reasoning_chunk("hm"), content_chunk("Tokyo"), usage_chunk(7, 3)]

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, text=sse_body(chunks), headers={"content-type": "text/event-stream"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            transport = openai_transport(client, "http://server/v1/", "sk-test")
            got = await collect(transport("my-model", "hello"))

        assert got == chunks
        request = seen[0]
        assert str(request.url) == "http://server/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer sk-test"
        payload = json.loads(request.content)
        assert payload["model"] == "my-model"
        assert payload["stream"] is True
        assert payload["stream_options"] == {"include_usage": True}
        assert payload["messages"] == [{"role": "user", "content": "hello"}]

    @pytest.mark.asyncio
    async def test_no_api_key_sends_no_auth(self) -> None:
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, text="data: [DONE]\n\n")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            got = await collect(openai_transport(client, "http://server/v1", None)("m", "p"))

        assert got == []
        assert "Authorization" not in seen[0].headers

    @pytest.mark.asyncio
    async def test_http_error_raises_runtime_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="overloaded")

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            transport = openai_transport(client, "http://server/v1", None)
            with pytest.raises(RuntimeError, match="HTTPStatusError"):
                await collect(transport("m", "p"))

    @pytest.mark.asyncio
    async def test_interpreter_over_http(self) -> None:
        chunks = [content_chunk("日本"), usage_chunk(4, 2)]

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, text=sse_body(chunks))

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            transport = openai_transport(client, "http://server/v1", None)
            events = await collect(stream_chat_completion(transport, "m", "p"))

        assert [e.type for e in events] == ["ttft", "content", "usage", "done"]
        assert events[1].byte_length == 6
        assert events[2].value.prompt_tokens == 4
