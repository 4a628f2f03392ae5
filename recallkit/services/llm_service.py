"""LLM service — calls an OpenAI-compatible chat completion API."""

from __future__ import annotations

import asyncio
import json
import logging
import re
import threading
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

import httpx

from recallkit.config import LLMConfig, ModelEndpoint
from recallkit.core.errors import ProviderError
from recallkit.core.retry import RetryPolicy

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```[a-zA-Z]*\s*\n?|\n?```\s*$")


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds from a Retry-After header; HTTP-date values are ignored."""
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def strip_fences(text: str) -> str:
    t = (text or "").strip()
    if t.startswith("```"):
        t = _FENCE_RE.sub("", t).strip()
    return t


class ProviderRotation:
    """Round-robin over configured endpoints.

    Each call to ``next_order`` hands back an immutable ordering starting at
    the current cursor and advances the cursor under a lock, so concurrent
    callers never share or skip a position.
    """

    def __init__(self, endpoints: Sequence[ModelEndpoint]):
        if not endpoints:
            raise ValueError("at least one endpoint is required")
        self._endpoints: Tuple[ModelEndpoint, ...] = tuple(endpoints)
        self._cursor = 0
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._endpoints)

    def next_order(self) -> Tuple[ModelEndpoint, ...]:
        with self._lock:
            start = self._cursor
            self._cursor = (self._cursor + 1) % len(self._endpoints)
        return self._endpoints[start:] + self._endpoints[:start]


class LLMService:
    def __init__(
        self,
        cfg: LLMConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._cfg = cfg
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._rotation = ProviderRotation(cfg.all_endpoints())
        self._retry = RetryPolicy(
            max_attempts=cfg.max_retries,
            base_delay=cfg.retry_base_delay,
            max_delay=cfg.retry_max_delay,
            sleep=sleep,
        )

    @property
    def enabled(self) -> bool:
        return self._cfg.enabled

    @property
    def timeout(self) -> float:
        return self._cfg.timeout

    async def _get_client(self) -> httpx.AsyncClient:
        """Lazily create a persistent async HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._cfg.timeout, transport=self._transport)
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _post(self, ep: ModelEndpoint, payload: Dict[str, Any]) -> str:
        """One HTTP round-trip; every failure surfaces as ProviderError."""
        url = f"{ep.base_url.rstrip('/')}/chat/completions"
        headers = {
            "Authorization": f"Bearer {ep.api_key}",
            "Content-Type": "application/json",
        }
        client = await self._get_client()
        try:
            resp = await client.post(url, json={**payload, "model": ep.model}, headers=headers)
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            raise ProviderError(
                f"LLM API error {status} from {ep.model}",
                retry_after=parse_retry_after(e.response.headers.get("Retry-After")),
                status_code=status,
            ) from e
        except httpx.TimeoutException as e:
            raise ProviderError(f"LLM request to {ep.model} timed out") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"LLM transport error: {e}") from e

        try:
            content = resp.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"Malformed completion response from {ep.model}") from e
        if not isinstance(content, str) or not content.strip():
            raise ProviderError(f"Empty completion from {ep.model}")
        return content

    async def _request(
        self,
        messages: List[Dict[str, Any]],
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
        response_format: Dict[str, Any] | None = None,
        retry: bool = True,
    ) -> str:
        """Send ``messages``; attempt n goes to the n-th endpoint of this call's rotation."""
        payload: Dict[str, Any] = {
            "messages": messages,
            "max_tokens": max_tokens or self._cfg.max_tokens,
            "temperature": temperature if temperature is not None else self._cfg.temperature,
        }
        if response_format:
            payload["response_format"] = response_format

        order = self._rotation.next_order()
        attempt = 0

        async def _once() -> str:
            nonlocal attempt
            ep = order[attempt % len(order)]
            attempt += 1
            return await self._post(ep, payload)

        if not retry:
            return await _once()
        return await self._retry.run(_once, label="LLM request")

    async def complete(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        *,
        max_tokens: int | None = None,
        temperature: float | None = None,
        retry: bool = True,
    ) -> str:
        """Plain-text completion."""
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        return await self._request(
            messages, max_tokens=max_tokens, temperature=temperature, retry=retry,
        )

    async def complete_json(
        self,
        prompt: str,
        schema: Optional[Dict[str, Any]] = None,
        *,
        system_prompt: Optional[str] = None,
        retry: bool = True,
    ) -> Any:
        """Structured completion; returns the decoded JSON body."""
        if schema:
            response_format = {
                "type": "json_schema",
                "json_schema": {"name": "response", "schema": schema},
            }
        else:
            response_format = {"type": "json_object"}

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        text = await self._request(messages, response_format=response_format, retry=retry)
        try:
            return json.loads(strip_fences(text))
        except json.JSONDecodeError as e:
            logger.warning("LLM returned invalid JSON: %s", e)
            raise ProviderError("LLM returned invalid JSON") from e
