from __future__ import annotations

import json
from typing import Any, AsyncIterator

import httpx

from .logging_utils import get_logger

log = get_logger(__name__)

APP_TITLE = "Gen Chat"


class OpenRouterError(RuntimeError):
    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


async def open_chat_stream(
    client: httpx.AsyncClient,
    *,
    base_url: str,
    api_key: str,
    model: str,
    messages: list[dict[str, Any]],
    referer: str | None = None,
) -> httpx.Response:
    """Start a streaming chat completion and return the open response.

    The status is checked before returning so failures that happen before any
    text is produced can still be reported as a regular error response.
    """
    payload = {"model": model, "messages": messages, "stream": True}
    headers = {"Authorization": f"Bearer {api_key}", "X-Title": APP_TITLE}
    if referer:
        headers["HTTP-Referer"] = referer

    request = client.build_request("POST", f"{base_url}/chat/completions", json=payload, headers=headers)
    try:
        resp = await client.send(request, stream=True)
    except httpx.HTTPError as e:
        msg = str(e).strip() or repr(e)
        raise OpenRouterError(f"OpenRouter request failed ({type(e).__name__}): {msg}") from e

    if resp.status_code >= 400:
        try:
            detail = (await resp.aread()).decode("utf-8", errors="replace")
        finally:
            await resp.aclose()
        raise OpenRouterError(f"OpenRouter returned {resp.status_code}: {detail}".strip(), status=resp.status_code)
    return resp


async def iter_deltas(resp: httpx.Response) -> AsyncIterator[str]:
    """Yield content deltas from an OpenAI-style SSE stream, closing the response when done."""
    try:
        async for line in resp.aiter_lines():
            s = line.strip()
            # Blank separators and ": OPENROUTER PROCESSING" keep-alive comments.
            if not s.startswith("data:"):
                continue
            data_str = s[len("data:") :].strip()
            if not data_str:
                continue
            if data_str == "[DONE]":
                break
            try:
                data = json.loads(data_str)
            except ValueError:
                log.debug("Skipping malformed stream line: %r", data_str[:200])
                continue
            err = data.get("error")
            if err:
                message = err.get("message") if isinstance(err, dict) else str(err)
                raise OpenRouterError(f"OpenRouter stream error: {message}")
            choice0 = (data.get("choices") or [{}])[0] or {}
            content = (choice0.get("delta") or {}).get("content")
            if content:
                yield str(content)
    except httpx.HTTPError as e:
        msg = str(e).strip() or repr(e)
        raise OpenRouterError(f"OpenRouter stream failed ({type(e).__name__}): {msg}") from e
    finally:
        await resp.aclose()
