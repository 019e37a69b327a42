"""
Tests for the chat-completion clients.
"""
import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from kidcare.core.exceptions import LLMProviderError
from kidcare.services.llm_client import (
    OllamaChatModel,
    OpenAIChatModel,
    _HTTPChatModel,
    build_messages,
)

MESSAGES = build_messages("You are helpful.", "Hi")


def make_model(handler, model_cls=OpenAIChatModel, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    options = dict(api_base="http://llm.test/v1", model="test-model", max_retries=2, client=client)
    options.update(kwargs)
    return model_cls(**options)


def sse(*payloads: str) -> bytes:
    return "".join(f"data: {p}\n\n" for p in payloads).encode()


class TestHTTPChatModel:
    def test_base_class_is_abstract(self):
        """Only the concrete providers can be instantiated."""
        with pytest.raises(TypeError):
            _HTTPChatModel(api_base="http://llm.test/v1", model="test-model")


class TestBuildMessages:
    def test_system_then_user(self):
        """The system prompt comes first, then the user's message."""
        assert MESSAGES == [
            {"role": "system", "content": "You are helpful."},
            {"role": "user", "content": "Hi"},
        ]


class TestOpenAIChatModel:
    """Tests for the OpenAI-compatible client."""

    @pytest.mark.asyncio
    async def test_generate(self):
        """A non-streaming call returns the first choice's content."""
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"choices": [{"message": {"content": "Hello!"}}]})

        model = make_model(handler)
        assert await model.generate(MESSAGES) == "Hello!"

        payload = json.loads(requests[0].content)
        assert requests[0].url.path == "/v1/chat/completions"
        assert payload["model"] == "test-model"
        assert payload["stream"] is False
        assert payload["messages"] == MESSAGES

    @pytest.mark.asyncio
    async def test_generate_retries_rate_limit(self):
        """429 is retried, then the answer is returned."""
        responses = [
            httpx.Response(429, text="rate limited"),
            httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]}),
        ]
        model = make_model(lambda request: responses.pop(0))

        with patch("kidcare.services.llm_client.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            assert await model.generate(MESSAGES) == "ok"
        assert mock_sleep.await_count == 1

    @pytest.mark.asyncio
    async def test_generate_unexpected_payload(self):
        """A payload without choices is a terminal provider error."""
        model = make_model(lambda request: httpx.Response(200, json={"unexpected": True}))
        with pytest.raises(LLMProviderError) as exc_info:
            await model.generate(MESSAGES)
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_stream_generate(self):
        """SSE deltas are yielded in order until [DONE]."""
        body = sse(
            json.dumps({"choices": [{"delta": {"role": "assistant"}}]}),
            json.dumps({"choices": [{"delta": {"content": "Hel"}}]}),
            json.dumps({"choices": [{"delta": {"content": "lo"}}]}),
            "[DONE]",
            json.dumps({"choices": [{"delta": {"content": "ignored"}}]}),
        )
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

        model = make_model(handler)
        tokens = [token async for token in model.stream_generate(MESSAGES)]

        assert tokens == ["Hel", "lo"]
        assert json.loads(requests[0].content)["stream"] is True

    @pytest.mark.asyncio
    async def test_stream_error_status(self):
        """An error status that persists through every retry raises with the upstream status."""
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(500, text="model crashed")

        model = make_model(handler)

        with patch("kidcare.services.llm_client.asyncio.sleep", new_callable=AsyncMock):
            with pytest.raises(LLMProviderError) as exc_info:
                async for _ in model.stream_generate(MESSAGES):
                    pass
        assert exc_info.value.upstream_status == 500
        assert "model crashed" in exc_info.value.message
        assert len(requests) == 3

    @pytest.mark.asyncio
    async def test_stream_retried_before_first_token(self):
        """A 503 before any token is retried and the stream then proceeds."""
        body = sse(json.dumps({"choices": [{"delta": {"content": "ok"}}]}), "[DONE]")
        responses = [
            httpx.Response(503, text="overloaded"),
            httpx.Response(200, content=body),
        ]
        model = make_model(lambda request: responses.pop(0))

        with patch("kidcare.services.llm_client.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
            tokens = [token async for token in model.stream_generate(MESSAGES)]
        assert tokens == ["ok"]
        assert mock_sleep.await_count == 1

    @pytest.mark.asyncio
    async def test_stream_client_error_not_retried(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(400, text="bad request")

        model = make_model(handler)
        with pytest.raises(LLMProviderError) as exc_info:
            async for _ in model.stream_generate(MESSAGES):
                pass
        assert exc_info.value.retryable is False
        assert len(requests) == 1

    @pytest.mark.asyncio
    async def test_stream_can_be_closed_early(self):
        """Closing the generator after the first token does not raise."""
        body = sse(
            json.dumps({"choices": [{"delta": {"content": "a"}}]}),
            json.dumps({"choices": [{"delta": {"content": "b"}}]}),
        )
        model = make_model(lambda request: httpx.Response(200, content=body))

        stream = model.stream_generate(MESSAGES)
        assert await stream.__anext__() == "a"
        await stream.aclose()


class TestOllamaChatModel:
    """Tests for the Ollama native client."""

    @pytest.mark.asyncio
    async def test_generate(self):
        """The Ollama payload carries options and the reply is message.content."""
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"message": {"content": "Hi there"}, "done": True})

        model = make_model(handler, model_cls=OllamaChatModel, temperature=0.2, max_tokens=64)
        assert await model.generate(MESSAGES) == "Hi there"

        payload = json.loads(requests[0].content)
        assert requests[0].url.path == "/v1/api/chat"
        assert payload["options"] == {"temperature": 0.2, "num_predict": 64}

    @pytest.mark.asyncio
    async def test_stream_generate(self):
        """NDJSON lines are yielded until done."""
        lines = [
            {"message": {"content": "Good "}, "done": False},
            {"message": {"content": "night"}, "done": False},
            {"message": {"content": ""}, "done": True},
            {"message": {"content": "late"}, "done": False},
        ]
        body = "\n".join(json.dumps(line) for line in lines).encode()

        model = make_model(lambda request: httpx.Response(200, content=body), model_cls=OllamaChatModel)
        tokens = [token async for token in model.stream_generate(MESSAGES)]
        assert tokens == ["Good ", "night"]
