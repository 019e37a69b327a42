"""
Tests for the embedding service and its HTTP providers.
"""
import asyncio
import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from kidcare.core.exceptions import (
    DimensionMismatchError,
    EmbeddingProviderError,
    EmptyInputError,
    provider_error_from_exception,
)
from kidcare.services.embedding import (
    EmbeddingService,
    OllamaEmbeddingProvider,
    OpenAIEmbeddingProvider,
)

VECTOR = [0.1, 0.2, 0.3, 0.4]


def make_service(handler, provider_cls=OpenAIEmbeddingProvider, **kwargs) -> EmbeddingService:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    provider = provider_cls(api_base="http://embeddings.test/v1", model="test-embed", client=client)
    options = dict(dimension=4, max_retries=2, base_delay=0, batch_size=2, strict_dimension=False)
    options.update(kwargs)
    return EmbeddingService(provider, **options)


def ok(vector=VECTOR) -> httpx.Response:
    return httpx.Response(200, json={"data": [{"embedding": vector}]})


@pytest.fixture
def no_sleep():
    with patch("kidcare.services.embedding.asyncio.sleep", new_callable=AsyncMock) as mock_sleep:
        yield mock_sleep


class TestEmbed:
    """Tests for single-text embedding."""

    @pytest.mark.asyncio
    async def test_embed_success(self):
        """The OpenAI-compatible provider posts model and input."""
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return ok()

        service = make_service(handler)
        assert await service.embed("hello") == VECTOR

        assert requests[0].url.path == "/v1/embeddings"
        assert json.loads(requests[0].content) == {"model": "test-embed", "input": "hello"}

    @pytest.mark.asyncio
    async def test_ollama_provider(self):
        """The Ollama provider posts model and prompt to /api/embeddings."""
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"embedding": VECTOR})

        service = make_service(handler, provider_cls=OllamaEmbeddingProvider)
        assert await service.embed("hello") == VECTOR
        assert requests[0].url.path == "/v1/api/embeddings"
        assert json.loads(requests[0].content) == {"model": "test-embed", "prompt": "hello"}

    @pytest.mark.asyncio
    async def test_empty_text_rejected_without_call(self):
        """Blank text fails validation before the provider is called."""
        calls = []

        def handler(request):
            calls.append(request)
            return ok()

        service = make_service(handler)
        with pytest.raises(EmptyInputError):
            await service.embed("   ")
        assert calls == []

    @pytest.mark.asyncio
    async def test_retryable_status_is_retried(self, no_sleep):
        """5xx responses are retried with backoff until a success."""
        responses = [httpx.Response(503, text="busy"), httpx.Response(503, text="busy"), ok()]

        service = make_service(lambda request: responses.pop(0))
        assert await service.embed("hello") == VECTOR
        assert no_sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, no_sleep):
        """After max_retries + 1 attempts the last retryable error is raised."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(429, text="slow down")

        service = make_service(handler)
        with pytest.raises(EmbeddingProviderError) as exc_info:
            await service.embed("hello")

        assert len(calls) == 3
        assert exc_info.value.retryable is True
        assert exc_info.value.upstream_status == 429

    @pytest.mark.asyncio
    async def test_client_error_is_terminal(self, no_sleep):
        """4xx responses fail immediately with the upstream error folded in."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(
                400,
                json={"error": {"message": "input too long", "type": "invalid_request_error", "code": "20015"}},
            )

        service = make_service(handler)
        with pytest.raises(EmbeddingProviderError) as exc_info:
            await service.embed("hello")

        assert len(calls) == 1
        no_sleep.assert_not_awaited()
        message = exc_info.value.message
        assert "input too long" in message
        assert "[type: invalid_request_error]" in message
        assert "[code: 20015]" in message
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_timeout_is_retried(self, no_sleep):
        """Transport timeouts count as retryable."""
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) == 1:
                raise httpx.ConnectTimeout("timed out", request=request)
            return ok()

        service = make_service(handler)
        assert await service.embed("hello") == VECTOR
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_malformed_payload_is_terminal(self, no_sleep):
        """A response without an embedding is not retried."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"data": []})

        service = make_service(handler)
        with pytest.raises(EmbeddingProviderError):
            await service.embed("hello")
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_dimension_mismatch_logged_by_default(self):
        """A wrong-sized vector is returned when strict mode is off."""
        service = make_service(lambda request: ok([0.1, 0.2, 0.3]))
        assert await service.embed("hello") == [0.1, 0.2, 0.3]

    @pytest.mark.asyncio
    async def test_dimension_mismatch_strict(self):
        """Strict mode rejects a wrong-sized vector."""
        service = make_service(lambda request: ok([0.1, 0.2, 0.3]), strict_dimension=True)
        with pytest.raises(DimensionMismatchError):
            await service.embed("hello")


class TestEmbedBatch:
    """Tests for batch embedding."""

    @pytest.mark.asyncio
    async def test_batch_preserves_order(self):
        """Outputs line up with inputs across groups."""
        texts = ["a", "b", "c", "d", "e"]

        def handler(request):
            text = json.loads(request.content)["input"]
            index = float(texts.index(text))
            return ok([index, 0.0, 0.0, 0.0])

        service = make_service(handler, batch_size=2)
        vectors = await service.embed_batch(texts)
        assert [v[0] for v in vectors] == [0.0, 1.0, 2.0, 3.0, 4.0]

    @pytest.mark.asyncio
    async def test_empty_list_rejected(self):
        """An empty batch is rejected."""
        service = make_service(lambda request: ok())
        with pytest.raises(EmptyInputError):
            await service.embed_batch([])

    @pytest.mark.asyncio
    async def test_blank_element_rejected_before_any_call(self):
        """A single blank element fails the batch before any provider call."""
        calls = []

        def handler(request):
            calls.append(request)
            return ok()

        service = make_service(handler)
        with pytest.raises(EmptyInputError):
            await service.embed_batch(["fine", " ", "also fine"])
        assert calls == []

    @pytest.mark.asyncio
    async def test_failure_cancels_rest_of_group(self):
        """A terminal failure stops the retries of the other texts in its group."""
        calls = {"bad": 0, "ok": 0}

        def handler(request):
            text = json.loads(request.content)["input"]
            calls[text] += 1
            if text == "bad":
                return httpx.Response(400, text="bad input")
            return httpx.Response(503, text="overloaded")

        service = make_service(handler, batch_size=2)

        with patch("kidcare.services.embedding.random.uniform", return_value=0):
            with pytest.raises(EmbeddingProviderError):
                await service.embed_batch(["bad", "ok"])
            calls_at_raise = calls["ok"]
            await asyncio.sleep(0.05)

        assert calls["bad"] == 1
        assert calls_at_raise < 3
        assert calls["ok"] == calls_at_raise


class TestProviderErrorClassification:
    """Tests for provider_error_from_exception."""

    def _status_error(self, status_code: int, **kwargs) -> httpx.HTTPStatusError:
        request = httpx.Request("POST", "http://provider.test")
        response = httpx.Response(status_code, request=request, **kwargs)
        return httpx.HTTPStatusError("error", request=request, response=response)

    @pytest.mark.parametrize("status_code", [429, 500, 502, 503])
    def test_retryable_statuses(self, status_code):
        """429 and 5xx are retryable."""
        error = provider_error_from_exception(self._status_error(status_code, text="x"))
        assert error.retryable is True

    @pytest.mark.parametrize("status_code", [400, 401, 403, 404, 422])
    def test_terminal_statuses(self, status_code):
        """Other HTTP statuses are terminal."""
        error = provider_error_from_exception(self._status_error(status_code, text="x"))
        assert error.retryable is False

    def test_transport_error_is_retryable(self):
        """Connection failures are retryable."""
        error = provider_error_from_exception(
            httpx.ConnectError("refused"), EmbeddingProviderError, "Embedding API"
        )
        assert isinstance(error, EmbeddingProviderError)
        assert error.retryable is True
