"""
Language-model oracle: opaque prompt in, short text out.

Used for connection validation (YES/NO with a reason), bubble-escape title
suggestions and recommendation explanations. Callers own the parsing and
must treat malformed answers as a rejection.
"""
from __future__ import annotations

import logging
from typing import Protocol

import openai
from openai import AsyncOpenAI

from .config import OPENAI_API_KEY, ORACLE_MODEL, ORACLE_TIMEOUT, ORACLE_MAX_TOKENS, MAX_ORACLE_RETRIES, ORACLE_RETRY_DELAY
from .utils import OracleError, QuotaExceededError, TransientOracleError, async_retry_with_backoff

logger = logging.getLogger(__name__)


class LanguageModelOracle(Protocol):
    async def classify(self, prompt: str) -> str: ...


def translate_openai_error(exc: Exception) -> OracleError:
    """Map an OpenAI SDK exception onto the oracle error taxonomy."""
    if isinstance(exc, openai.RateLimitError):
        if getattr(exc, "code", None) == "insufficient_quota":
            return QuotaExceededError(str(exc))
        return TransientOracleError(str(exc))
    if isinstance(exc, (openai.APITimeoutError, openai.APIConnectionError, openai.InternalServerError)):
        return TransientOracleError(str(exc))
    return OracleError(str(exc))


class OpenAIOracle:
    """Thin wrapper around the OpenAI chat completion API."""

    def __init__(
        self,
        model: str = ORACLE_MODEL,
        timeout: float | None = ORACLE_TIMEOUT,
        api_key: str | None = OPENAI_API_KEY,
        max_tokens: int = ORACLE_MAX_TOKENS,
        temperature: float = 0.2,
        client: AsyncOpenAI | None = None,
    ) -> None:
        if client is None:
            client_kwargs: dict = {"timeout": timeout, "max_retries": 0}
            if api_key is not None:
                client_kwargs["api_key"] = api_key
            client = AsyncOpenAI(**client_kwargs)
        self._client = client
        self._model = model
        self._max_tokens = max_tokens
        self._temperature = temperature

    @async_retry_with_backoff(max_retries=MAX_ORACLE_RETRIES, initial_delay=ORACLE_RETRY_DELAY)
    async def classify(self, prompt: str) -> str:
        try:
            resp = await self._client.chat.completions.create(
                model=self._model,
                messages=[{"role": "user", "content": prompt}],
                temperature=self._temperature,
                max_tokens=self._max_tokens,
            )
        except openai.OpenAIError as e:
            raise translate_openai_error(e) from e

        if not resp.choices:
            return ""
        return (resp.choices[0].message.content or "").strip()

    async def close(self) -> None:
        await self._client.close()
