"""Async chat-completion client for OpenAI-compatible endpoints."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Sequence, cast

import httpx
from openai import AsyncOpenAI, APIConnectionError, APIError, APIStatusError, RateLimitError
from openai.types.chat import ChatCompletionMessageParam
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

LOGGER = logging.getLogger(__name__)

_RETRYABLE_ERRORS = (
    APIError,
    APIStatusError,
    APIConnectionError,
    RateLimitError,
    httpx.TimeoutException,
)


@dataclass(slots=True)
class ClientSettings:
    """Connection and retry options for one :class:`AIClient`."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    metadata: Mapping[str, str] | None = None
    debug_logging: bool = False


class AIClient:
    """Sends whole (non-streamed) chat completions, retrying transient failures."""

    def __init__(self, settings: ClientSettings, *, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=dict(settings.default_headers) if settings.default_headers else None,
        )
        self._models: List[str] | None = None
        self._models_lock = asyncio.Lock()

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def complete(
        self,
        messages: Sequence[Mapping[str, Any]],
        *,
        model: str | None = None,
        temperature: float | None = 0.0,
        max_tokens: int | None = None,
        metadata: Mapping[str, str] | None = None,
    ) -> str:
        """Return the assistant text for ``messages``.

        Transport and API errors are retried with exponential backoff; once
        ``max_retries`` attempts are spent the last error propagates.
        """

        if not messages:
            raise ValueError("At least one message is required to start a chat")
        request = self._request(messages, model, temperature, max_tokens, metadata)
        LOGGER.debug("Chat completion: model=%s, messages=%d", request["model"], len(request["messages"]))
        if self._settings.debug_logging:
            self._log_prompt_payload(request)

        retrying = AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(multiplier=self._settings.retry_min_seconds, max=self._settings.retry_max_seconds),
            retry=retry_if_exception_type(_RETRYABLE_ERRORS),
            before_sleep=before_sleep_log(LOGGER, logging.WARNING),
        )
        async for attempt in retrying:
            with attempt:
                response = await self._client.chat.completions.create(**request)
        return _first_choice_text(response)

    async def list_models(self, *, force_refresh: bool = False) -> List[str]:
        """Model identifiers offered by the endpoint, fetched once and cached."""

        async with self._models_lock:
            if self._models is None or force_refresh:
                response = await self._client.models.list()
                self._models = [item.id for item in response.data if getattr(item, "id", None)]
            return list(self._models)

    async def aclose(self) -> None:
        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result

    def _request(
        self,
        messages: Sequence[Mapping[str, Any]],
        model: str | None,
        temperature: float | None,
        max_tokens: int | None,
        metadata: Mapping[str, str] | None,
    ) -> Dict[str, Any]:
        request: Dict[str, Any] = {
            "model": model or self._settings.model,
            "messages": [cast(ChatCompletionMessageParam, dict(message)) for message in messages],
        }
        tags = {**(self._settings.metadata or {}), **(metadata or {})}
        if tags:
            request["metadata"] = tags
        if temperature is not None:
            request["temperature"] = temperature
        if max_tokens is not None:
            request["max_tokens"] = max_tokens
        return request

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            LOGGER.debug("AI prompt payload:\n%s", json.dumps(payload, ensure_ascii=False, indent=2))
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)


def _first_choice_text(response: Any) -> str:
    choices = getattr(response, "choices", None) or []
    if not choices:
        return ""
    message = getattr(choices[0], "message", None)
    return str(getattr(message, "content", None) or "")
