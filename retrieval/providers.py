"""
External provider adapters: embeddings and text generation.

The core only depends on the two protocols below. The OpenAI adapters
translate SDK exceptions into the retrieval error taxonomy so the pipeline
can tell a rate limit from a timeout from a generic failure.
"""
import re
from typing import AsyncIterator, Protocol

from openai import APITimeoutError, AsyncOpenAI, OpenAIError, RateLimitError

from rag_api.logging_config import get_logger
from retrieval.errors import (
    EmbeddingProviderError,
    GenerationError,
    GenerationTimeout,
    RateLimited,
    RetrievalError,
)

logger = get_logger(__name__)

DEFAULT_RETRY_AFTER_SEC = 60.0

# "retry in 12s", "Please try again in 1.5s", "retryDelay": "30s"
_RETRY_HINT = re.compile(r"(?:retry|try again)\D{0,20}?(\d+(?:\.\d+)?)\s*s", re.IGNORECASE)


class EmbeddingProvider(Protocol):
    async def embed(self, text: str) -> list[float]:
        """Embed a single text into a fixed-length vector."""
        ...


class GenerationProvider(Protocol):
    async def generate(self, prompt: str) -> str:
        """Return the full completion for a prompt."""
        ...

    def stream(self, prompt: str) -> AsyncIterator[str]:
        """Yield completion text pieces as they arrive."""
        ...


def retry_after_from(error: Exception) -> float:
    """Best-effort retry-after hint (seconds) from a provider error."""
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if headers is not None:
        value = headers.get("retry-after")
        if value:
            try:
                return float(value)
            except ValueError:
                pass

    match = _RETRY_HINT.search(str(error))
    if match:
        return float(match.group(1))
    return DEFAULT_RETRY_AFTER_SEC


def to_generation_error(error: Exception) -> RetrievalError:
    """Translate an SDK exception into the generation error taxonomy."""
    if isinstance(error, RetrievalError):
        return error
    if isinstance(error, RateLimitError):
        return RateLimited(str(error), retry_after=retry_after_from(error))
    if isinstance(error, APITimeoutError):
        return GenerationTimeout("Generation provider timed out")
    message = str(error)
    if "429" in message or re.search(r"too many requests|quota", message, re.IGNORECASE):
        return RateLimited(message, retry_after=retry_after_from(error))
    return GenerationError(f"{type(error).__name__}: {error}")


class _OpenAIClientMixin:
    """Creates the AsyncOpenAI client on first use so a missing key only fails calls."""
    api_key: str | None
    _client: AsyncOpenAI | None

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key)
        return self._client


class OpenAIEmbeddingProvider(_OpenAIClientMixin):
    """Query embeddings through the OpenAI embeddings API."""

    def __init__(self, api_key: str | None, model: str, client: AsyncOpenAI | None = None):
        self.api_key = api_key
        self.model = model
        self._client = client

    async def embed(self, text: str) -> list[float]:
        try:
            resp = await self.client.embeddings.create(model=self.model, input=text)
        except OpenAIError as e:
            raise EmbeddingProviderError(f"{type(e).__name__}: {e}") from e
        return list(resp.data[0].embedding)


class OpenAIGenerationProvider(_OpenAIClientMixin):
    """
    Chat-completion generation with an optional fallback model.

    The fallback model is only tried when the primary model is rate limited.
    """

    def __init__(
        self,
        api_key: str | None,
        model: str,
        fallback_model: str | None = None,
        temperature: float = 0.2,
        client: AsyncOpenAI | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.fallback_model = fallback_model
        self.temperature = temperature
        self._client = client

    def _messages(self, prompt: str) -> list[dict]:
        return [{"role": "user", "content": prompt}]

    async def _complete(self, model: str, prompt: str) -> str:
        resp = await self.client.chat.completions.create(
            model=model,
            messages=self._messages(prompt),
            temperature=self.temperature,
        )
        return resp.choices[0].message.content or ""

    async def generate(self, prompt: str) -> str:
        try:
            return await self._complete(self.model, prompt)
        except RateLimitError as e:
            if not self.fallback_model:
                raise to_generation_error(e) from e
            logger.warning(
                f"generation rate limited | model={self.model} | fallback={self.fallback_model}"
            )
            try:
                return await self._complete(self.fallback_model, prompt)
            except OpenAIError as fallback_err:
                raise to_generation_error(fallback_err) from fallback_err
        except OpenAIError as e:
            raise to_generation_error(e) from e

    async def _open_stream(self, prompt: str):
        try:
            return await self.client.chat.completions.create(
                model=self.model,
                messages=self._messages(prompt),
                temperature=self.temperature,
                stream=True,
            )
        except RateLimitError as e:
            if not self.fallback_model:
                raise to_generation_error(e) from e
            logger.warning(
                f"generation stream rate limited | model={self.model} | fallback={self.fallback_model}"
            )
            try:
                return await self.client.chat.completions.create(
                    model=self.fallback_model,
                    messages=self._messages(prompt),
                    temperature=self.temperature,
                    stream=True,
                )
            except OpenAIError as fallback_err:
                raise to_generation_error(fallback_err) from fallback_err
        except OpenAIError as e:
            raise to_generation_error(e) from e

    async def stream(self, prompt: str) -> AsyncIterator[str]:
        response = await self._open_stream(prompt)
        try:
            async for chunk in response:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    yield delta
        except OpenAIError as e:
            raise to_generation_error(e) from e
        finally:
            await response.close()
