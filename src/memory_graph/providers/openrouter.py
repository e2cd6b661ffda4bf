"""Async OpenRouter client shared by the embedding and categorization adapters.

OpenRouter speaks the OpenAI wire format for both ``/chat/completions`` and
``/embeddings``.  One :class:`OpenRouterClient` owns one ``aiohttp`` session,
so both adapters reuse the same connection pool::

    async with OpenRouterClient(api_key="sk-or-...") as client:
        [vector] = await client.embed("openai/text-embedding-3-small", ["note"])
        reply = await client.chat("openai/gpt-4o-mini", messages, json_mode=True)

Every failure, including transport errors and unparseable bodies, surfaces
as :class:`OpenRouterError`, a :class:`~memory_graph.errors.ProviderError`.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import aiohttp

from memory_graph.errors import ProviderError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"

# Backoff after an HTTP 429 doubles from _BACKOFF_SEC.
_MAX_ATTEMPTS = 3
_BACKOFF_SEC = 1.0
_APP_TITLE = "Memory Graph"


class OpenRouterError(ProviderError):
    """Failed OpenRouter request.

    ``status_code`` is ``0`` when no HTTP response was received.
    """

    def __init__(self, message: str, status_code: int, model: Optional[str] = None) -> None:
        self.message = message
        self.status_code = status_code
        self.model = model
        where = f" (model={model})" if model else ""
        super().__init__(f"HTTP {status_code}{where}: {message}", provider="openrouter")


@dataclass(frozen=True, slots=True)
class ChatResponse:
    content: str
    model: str
    input_tokens: int
    output_tokens: int
    finish_reason: str


class OpenRouterClient:
    """Thin async wrapper over the OpenRouter REST API.

    Args:
        api_key: OpenRouter key, sent as a bearer token.
        base_url: API root; tests and proxies may override it.
        timeout: Per-request ceiling in seconds.  The engine wraps each
            provider call in its own, usually shorter, deadline.
    """

    def __init__(self, api_key: str, base_url: str = DEFAULT_BASE_URL, timeout: float = 60.0) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "OpenRouterClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        # Built on first use so the constructor needs no running loop.
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={
                    "Authorization": f"Bearer {self._api_key}",
                    "Content-Type": "application/json",
                    "X-Title": _APP_TITLE,
                },
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            )
        return self._session

    async def _request_with_retries(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        session = await self._ensure_session()
        model = payload.get("model")
        rate_limited: Optional[OpenRouterError] = None

        for attempt in range(1, _MAX_ATTEMPTS + 1):
            try:
                async with session.post(self._base_url + endpoint, json=payload) as resp:
                    status = resp.status
                    if status == 429:
                        rate_limited = OpenRouterError("Rate limited", 429, model)
                        if attempt < _MAX_ATTEMPTS:
                            wait = _BACKOFF_SEC * 2 ** (attempt - 1)
                            logger.warning(
                                "OpenRouter returned 429 for %s; attempt %d/%d, retrying in %.1fs",
                                model, attempt, _MAX_ATTEMPTS, wait,
                            )
                            await asyncio.sleep(wait)
                        continue
                    body = await resp.json(content_type=None)
            except aiohttp.ClientError as exc:
                raise OpenRouterError(f"Transport failure: {exc}", 0, model) from exc
            except ValueError as exc:
                raise OpenRouterError(f"Response was not JSON: {exc}", 0, model) from exc

            # Errors can arrive inside a 200 body.
            if isinstance(body, dict) and "error" in body:
                detail = body["error"]
                text = detail.get("message", str(detail)) if isinstance(detail, dict) else str(detail)
                raise OpenRouterError(text, status, model)
            if status >= 400:
                raise OpenRouterError(f"HTTP {status}: {body}", status, model)
            if not isinstance(body, dict):
                raise OpenRouterError(f"Expected a JSON object, got {body!r}", status, model)
            return body

        raise rate_limited or OpenRouterError("Retries exhausted", 429, model)

    async def chat(
        self,
        model: str,
        messages: List[Dict[str, Any]],
        temperature: float = 0.2,
        max_tokens: int = 512,
        json_mode: bool = False,
    ) -> ChatResponse:
        request: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if json_mode:
            request["response_format"] = {"type": "json_object"}

        body = await self._request_with_retries("/chat/completions", request)
        if not body.get("choices"):
            raise OpenRouterError("Completion contained no choices", 200, model)

        choice = body["choices"][0]
        tokens = body.get("usage") or {}
        reply = ChatResponse(
            content=(choice.get("message") or {}).get("content") or "",
            model=body.get("model", model),
            input_tokens=int(tokens.get("prompt_tokens", 0)),
            output_tokens=int(tokens.get("completion_tokens", 0)),
            finish_reason=choice.get("finish_reason") or "unknown",
        )
        logger.debug(
            "Chat %s: %d prompt + %d completion tokens (%s)",
            reply.model, reply.input_tokens, reply.output_tokens, reply.finish_reason,
        )
        return reply

    async def embed(self, model: str, texts: List[str]) -> List[List[float]]:
        """Embed *texts*, returning vectors in input order."""
        if not texts:
            return []

        body = await self._request_with_retries("/embeddings", {"model": model, "input": texts})
        rows = body.get("data") or []
        if len(rows) != len(texts):
            raise OpenRouterError(
                f"Embedding response returned {len(rows)} vectors for {len(texts)} inputs.", 200, model,
            )
        ordered = sorted(rows, key=lambda row: row.get("index", 0))
        logger.debug("Embedded %d texts with %s", len(texts), model)
        return [row["embedding"] for row in ordered]

    async def close(self) -> None:
        """Release the HTTP session.  Calling it twice is harmless."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
