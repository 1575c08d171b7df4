from __future__ import annotations

from typing import AsyncIterator, Mapping

import httpx
from fastapi import HTTPException
from fastapi.responses import StreamingResponse

from .config import AppConfig
from .logging_utils import get_logger

log = get_logger(__name__)

# Query parameters of the shape protocol the client library is allowed to set.
PROTOCOL_PARAMS = (
    "live",
    "live_sse",
    "handle",
    "offset",
    "cursor",
    "expired_handle",
    "log",
    "columns",
    "replica",
)

# Response headers the client library needs to resume a subscription.
RESUME_HEADERS = (
    "electric-handle",
    "electric-offset",
    "electric-schema",
    "electric-cursor",
    "electric-up-to-date",
)

_DROP_RESPONSE_HEADERS = {
    "content-encoding",
    "content-length",
    "transfer-encoding",
    "connection",
    "keep-alive",
}


def build_shape_params(
    client_params: Mapping[str, str],
    *,
    config: AppConfig,
    table: str,
    where: str,
    params: list[str] | None = None,
) -> list[tuple[str, str]]:
    """Upstream query for a shape request.

    Only protocol parameters are taken from the client. Table, filter and
    filter parameters are always set here, so a client cannot widen the
    filter by sending its own.
    """
    out: list[tuple[str, str]] = [(k, str(client_params[k])) for k in PROTOCOL_PARAMS if k in client_params]
    out.append(("table", table))
    out.append(("where", where))
    for i, value in enumerate(params or [], start=1):
        out.append((f"params[{i}]", value))
    if config.electric_source_id:
        out.append(("source_id", config.electric_source_id))
    if config.electric_secret:
        out.append(("secret", config.electric_secret))
    return out


def _relay_headers(upstream: httpx.Response) -> dict[str, str]:
    headers = {
        k: v for k, v in upstream.headers.items() if k.lower() not in _DROP_RESPONSE_HEADERS and k.lower() != "vary"
    }
    # Responses differ per session, shared caches must not mix them up.
    vary = [v.strip() for v in upstream.headers.get_list("vary", split_commas=True) if v.strip()]
    if not any(v.lower() == "cookie" for v in vary):
        vary.append("cookie")
    headers["vary"] = ", ".join(vary)
    return headers


async def _body(upstream: httpx.Response) -> AsyncIterator[bytes]:
    try:
        async for chunk in upstream.aiter_bytes():
            yield chunk
    finally:
        await upstream.aclose()


async def proxy_shape_request(
    client: httpx.AsyncClient,
    *,
    config: AppConfig,
    client_params: Mapping[str, str],
    table: str,
    where: str,
    params: list[str] | None = None,
) -> StreamingResponse:
    query = build_shape_params(client_params, config=config, table=table, where=where, params=params)
    request = client.build_request("GET", f"{config.electric_url}/v1/shape", params=query)
    try:
        upstream = await client.send(request, stream=True)
    except httpx.HTTPError as e:
        log.error("Shape request for %s failed: %s", table, e)
        raise HTTPException(status_code=502, detail=f"Sync service unavailable: {type(e).__name__}") from e

    if upstream.status_code >= 400:
        log.warning("Sync service answered %s for table %s", upstream.status_code, table)

    return StreamingResponse(
        _body(upstream),
        status_code=upstream.status_code,
        headers=_relay_headers(upstream),
    )
