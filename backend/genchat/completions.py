from __future__ import annotations

import contextlib
from typing import Any, AsyncIterator, Sequence

from starlette.concurrency import run_in_threadpool

from . import app_db
from .context import AppContext
from .logging_utils import get_logger
from .openrouter import OpenRouterError, iter_deltas, open_chat_stream
from .schemas import ChatMessageIn

log = get_logger(__name__)

SYSTEM_PROMPT = "You are a helpful assistant."


def demo_reply(messages: Sequence[ChatMessageIn]) -> str:
    last_user = next((m.content for m in reversed(messages) if m.role == "user"), "")
    return f'Demo reply: I received "{last_user}". Configure OPENROUTER_API_KEY for real responses.'


def build_llm_messages(messages: Sequence[ChatMessageIn]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = [{"role": "system", "content": SYSTEM_PROMPT}]
    out.extend({"role": m.role, "content": m.content} for m in messages)
    return out


async def _once(text: str) -> AsyncIterator[str]:
    yield text


async def _open_upstream(ctx: AppContext, messages: Sequence[ChatMessageIn], model: str | None) -> AsyncIterator[str]:
    cfg = ctx.config
    model_id = (model or "").strip() or cfg.openrouter_model
    log.info("Calling OpenRouter with model %s (%d messages)", model_id, len(messages))
    resp = await open_chat_stream(
        ctx.http,
        base_url=cfg.openrouter_base_url,
        api_key=str(cfg.openrouter_api_key),
        model=model_id,
        messages=build_llm_messages(messages),
        referer=cfg.app_base_url,
    )
    return iter_deltas(resp)


async def _relay(deltas: AsyncIterator[str], parts: list[str]) -> AsyncIterator[str]:
    # aclosing: a client disconnect closes the upstream response too.
    async with contextlib.aclosing(deltas) as stream:
        try:
            async for delta in stream:
                parts.append(delta)
                yield delta
        except OpenRouterError:
            log.exception("OpenRouter stream error after %d chunks", len(parts))
            raise


async def _persist_when_done(ctx: AppContext, thread_id: int, deltas: AsyncIterator[str]) -> AsyncIterator[str]:
    parts: list[str] = []
    async with contextlib.aclosing(_relay(deltas, parts)) as relay:
        async for delta in relay:
            yield delta
    # Only reached when the upstream stream ended on its own.
    text = "".join(parts)
    await run_in_threadpool(
        app_db.insert_message, ctx.engine, thread_id=thread_id, role="assistant", content=text
    )
    log.info("Saved assistant message for thread %s (%d chars)", thread_id, len(text))


async def thread_completion(
    ctx: AppContext,
    *,
    thread_id: int,
    messages: Sequence[ChatMessageIn],
    model: str | None = None,
) -> AsyncIterator[str]:
    """Stream a reply for an owned thread, saving it once the stream completes."""
    if not ctx.config.llm_enabled:
        reply = demo_reply(messages)
        log.info("OPENROUTER_API_KEY not set; sending demo reply for thread %s", thread_id)
        await run_in_threadpool(
            app_db.insert_message, ctx.engine, thread_id=thread_id, role="assistant", content=reply
        )
        return _once(reply)

    deltas = await _open_upstream(ctx, messages, model)
    return _persist_when_done(ctx, thread_id, deltas)


async def guest_completion(
    ctx: AppContext,
    *,
    messages: Sequence[ChatMessageIn],
    model: str | None = None,
) -> AsyncIterator[str]:
    if not ctx.config.llm_enabled:
        return _once(demo_reply(messages))
    deltas = await _open_upstream(ctx, messages, model)
    return _relay(deltas, [])
