"""LLM stream source — turns an OpenAI-compatible SSE stream into deltas."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, List

import httpx

from artiflow.config import LLMConfig, get_config
from artiflow.core.protocols import StreamDelta

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class LLMStreamSource:
    """Producer adapter for ``/chat/completions`` with ``stream: true``.

    Sequence numbers are assigned here, one per content chunk, starting at 1.
    A request is retried only until its first chunk has been yielded; after
    that a broken stream is surfaced to the caller instead.
    """

    def __init__(self, config: LLMConfig | None = None, client: httpx.AsyncClient | None = None):
        self._cfg = config or get_config().llm
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Lazily create a persistent async HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=120.0)
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this source created it."""
        if self._owns_client and self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def _retry_delay(self, attempt: int, response: httpx.Response | None = None) -> float:
        base_delay = self._cfg.retry_base_delay
        max_delay = self._cfg.retry_max_delay
        delay = base_delay * (2 ** (attempt - 1))
        if response is not None and response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            if retry_after:
                try:
                    delay = float(retry_after)
                except ValueError:
                    pass
        return min(delay, max_delay)

    async def stream(
        self,
        messages: List[Dict[str, Any]],
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> AsyncIterator[StreamDelta]:
        """Yield text deltas in order until the stream reports ``[DONE]``.

        Retry uses exponential backoff for transient errors (429/5xx)
        and honours the Retry-After header for 429 responses.
        """
        payload: Dict[str, Any] = {
            "model": self._cfg.model,
            "messages": messages,
            "max_tokens": max_tokens or self._cfg.max_tokens,
            "temperature": temperature if temperature is not None else self._cfg.temperature,
            "stream": True,
        }
        url = f"{self._cfg.base_url.rstrip('/')}/chat/completions"
        headers = {
            "Authorization": f"Bearer {self._cfg.api_key}",
            "Content-Type": "application/json",
        }

        max_retries = self._cfg.max_retries
        sequence = 0
        last_error: Exception | None = None

        for attempt in range(1, max_retries + 1):
            try:
                client = await self._get_client()
                async with client.stream("POST", url, json=payload, headers=headers) as resp:
                    resp.raise_for_status()
                    async for line in resp.aiter_lines():
                        if not line.startswith("data: "):
                            continue
                        data_str = line[6:]
                        if data_str.strip() == "[DONE]":
                            return
                        try:
                            data = json.loads(data_str)
                            delta = data.get("choices", [{}])[0].get("delta", {})
                            chunk_text = delta.get("content", "")
                        except (json.JSONDecodeError, IndexError, KeyError, AttributeError):
                            logger.debug("Skipping malformed SSE line: %s", data_str[:80])
                            continue
                        if not chunk_text:
                            continue
                        sequence += 1
                        yield StreamDelta.text(sequence, chunk_text)
                return

            except httpx.HTTPStatusError as e:
                last_error = e
                status_code = e.response.status_code
                if status_code not in _RETRYABLE_STATUS_CODES or sequence:
                    raise
                delay = self._retry_delay(attempt, e.response)
                logger.warning(
                    "LLM API error %d (attempt %d/%d), retrying in %.1fs: %s",
                    status_code, attempt, max_retries, delay, e,
                )
                if attempt < max_retries:
                    await asyncio.sleep(delay)
                    continue

            except (httpx.ConnectError, httpx.ReadTimeout, httpx.WriteTimeout) as e:
                last_error = e
                if sequence:
                    raise
                delay = self._retry_delay(attempt)
                logger.warning(
                    "LLM network error (attempt %d/%d), retrying in %.1fs: %s",
                    attempt, max_retries, delay, e,
                )
                if attempt < max_retries:
                    await asyncio.sleep(delay)
                    continue

        raise last_error or RuntimeError("LLM request failed after all retries")
