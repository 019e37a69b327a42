"""
LLM Client - chat-completion providers behind a ChatModel interface.

Supports OpenAI-compatible API (/chat/completions, SSE streaming) and Ollama
native API (/api/chat, NDJSON streaming). The provider is selected via
LLM_PROVIDER and injected into the chat orchestrator.
"""
import asyncio
import json
import logging
import random
from abc import ABC, abstractmethod
from contextlib import aclosing
from typing import AsyncIterator, Dict, List, Optional, Protocol

import httpx

from kidcare.core.config import settings
from kidcare.core.exceptions import LLMProviderError, provider_error_from_exception

logger = logging.getLogger(__name__)


class ChatModel(Protocol):
    async def generate(self, messages: List[Dict]) -> str:
        ...

    def stream_generate(self, messages: List[Dict]) -> AsyncIterator[str]:
        ...

    async def aclose(self) -> None:
        ...


def build_messages(system_prompt: str, user_message: str) -> List[Dict]:
    """System + user message pair in the role/content shape both APIs accept."""
    return [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": user_message},
    ]


class _HTTPChatModel(ABC):
    """Shared HTTP transport, retries and streaming for the chat providers."""

    provider_name = "LLM provider"

    def __init__(
        self,
        api_base: Optional[str] = None,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_base_delay: float = 1.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_base = (api_base or settings.LLM_API_BASE).rstrip("/")
        self.model = model or settings.LLM_MODEL
        self.temperature = settings.LLM_TEMPERATURE if temperature is None else temperature
        self.max_tokens = max_tokens or settings.LLM_MAX_TOKENS
        self.max_retries = settings.LLM_MAX_RETRIES if max_retries is None else max_retries
        self.retry_base_delay = retry_base_delay
        api_key = api_key if api_key is not None else settings.LLM_API_KEY
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.client = client or httpx.AsyncClient(
            timeout=timeout or settings.LLM_TIMEOUT,
            headers=headers,
        )

    async def generate(self, messages: List[Dict]) -> str:
        """
        Send a non-streaming completion request and return the content.

        Retryable failures (timeouts, 5xx, 429) are retried with exponential
        backoff plus jitter; anything else raises immediately.
        """
        last_error: Optional[LLMProviderError] = None

        for attempt in range(self.max_retries + 1):
            try:
                return await self._generate_once(messages)
            except LLMProviderError as e:
                last_error = e
                if not e.retryable:
                    raise
                if attempt < self.max_retries:
                    delay = self.retry_base_delay * (2 ** attempt) + random.uniform(0, 1)
                    logger.warning(
                        f"LLM attempt {attempt + 1} failed, retrying in {delay:.1f}s: {e}"
                    )
                    await asyncio.sleep(delay)
                else:
                    logger.error(f"LLM request failed after {self.max_retries + 1} attempts: {e}")

        raise last_error or LLMProviderError("LLM request failed")

    async def stream_generate(self, messages: List[Dict]) -> AsyncIterator[str]:
        """
        Yield content fragments in provider order.

        Retryable failures are retried only until the first fragment has been
        yielded; after that the stream cannot be replayed and the error is
        raised. Closing this generator closes the upstream HTTP response.
        """
        for attempt in range(self.max_retries + 1):
            yielded = False
            try:
                async with aclosing(self._stream_once(messages)) as fragments:
                    async for content in fragments:
                        yielded = True
                        yield content
                return
            except LLMProviderError as e:
                if yielded or not e.retryable or attempt >= self.max_retries:
                    raise
                delay = self.retry_base_delay * (2 ** attempt) + random.uniform(0, 1)
                logger.warning(
                    f"LLM stream attempt {attempt + 1} failed before the first token, "
                    f"retrying in {delay:.1f}s: {e}"
                )
                await asyncio.sleep(delay)

    async def _stream_once(self, messages: List[Dict]) -> AsyncIterator[str]:
        try:
            async with self.client.stream(
                "POST", self._url(), json=self._payload(messages, stream=True)
            ) as resp:
                if resp.is_error:
                    await resp.aread()
                resp.raise_for_status()
                async for line in resp.aiter_lines():
                    if not line:
                        continue
                    content, done = self._parse_stream_line(line)
                    if content:
                        yield content
                    if done:
                        break
        except httpx.HTTPError as e:
            raise provider_error_from_exception(e, LLMProviderError, self.provider_name)

    async def _generate_once(self, messages: List[Dict]) -> str:
        try:
            resp = await self.client.post(self._url(), json=self._payload(messages, stream=False))
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as e:
            raise provider_error_from_exception(e, LLMProviderError, self.provider_name)
        except ValueError as e:
            raise LLMProviderError(f"{self.provider_name} returned invalid JSON: {e}")

        try:
            return self._extract_content(data)
        except (KeyError, IndexError, TypeError):
            raise LLMProviderError(f"{self.provider_name} returned an unexpected payload")

    async def aclose(self) -> None:
        await self.client.aclose()

    @abstractmethod
    def _url(self) -> str:
        pass

    @abstractmethod
    def _payload(self, messages: List[Dict], stream: bool) -> Dict:
        pass

    @abstractmethod
    def _extract_content(self, data: Dict) -> str:
        pass

    @abstractmethod
    def _parse_stream_line(self, line: str):
        """Return ``(content, done)`` for one line of the streamed body."""
        pass


class OpenAIChatModel(_HTTPChatModel):
    """OpenAI-compatible API (vLLM, SiliconFlow, etc.)."""

    provider_name = "OpenAI-compatible chat API"

    def _url(self) -> str:
        return f"{self.api_base}/chat/completions"

    def _payload(self, messages: List[Dict], stream: bool) -> Dict:
        return {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "stream": stream,
        }

    def _extract_content(self, data: Dict) -> str:
        return data["choices"][0]["message"]["content"] or ""

    def _parse_stream_line(self, line: str):
        if not line.startswith("data:"):
            return None, False
        data_str = line[5:].strip()
        if data_str == "[DONE]":
            return None, True
        try:
            data = json.loads(data_str)
        except json.JSONDecodeError:
            return None, False
        choices = data.get("choices") or []
        if not choices:
            return None, False
        delta = choices[0].get("delta") or {}
        return delta.get("content"), False


class OllamaChatModel(_HTTPChatModel):
    """Ollama native API (/api/chat)."""

    provider_name = "Ollama chat API"

    def _url(self) -> str:
        return f"{self.api_base}/api/chat"

    def _payload(self, messages: List[Dict], stream: bool) -> Dict:
        return {
            "model": self.model,
            "messages": messages,
            "stream": stream,
            "options": {
                "temperature": self.temperature,
                "num_predict": self.max_tokens,
            },
        }

    def _extract_content(self, data: Dict) -> str:
        return data["message"]["content"] or ""

    def _parse_stream_line(self, line: str):
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            return None, False
        content = (data.get("message") or {}).get("content")
        return content, bool(data.get("done", False))


def create_chat_model(provider: Optional[str] = None) -> ChatModel:
    """Build the chat model named by LLM_PROVIDER."""
    provider = provider or settings.LLM_PROVIDER
    if provider == "ollama":
        return OllamaChatModel()
    if provider == "openai":
        return OpenAIChatModel()
    raise ValueError(f"Unknown LLM provider: {provider}")


# Default client instance
_default_model: Optional[ChatModel] = None


def get_chat_model() -> ChatModel:
    """Get the default chat model instance (singleton)."""
    global _default_model
    if _default_model is None:
        _default_model = create_chat_model()
    return _default_model
