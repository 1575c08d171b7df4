from __future__ import annotations

import httpx
import pytest

from genchat import app_db
from genchat.sync_proxy import proxy_shape_request


def _shape_ok(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200,
        json=[{"headers": {"control": "up-to-date"}}],
        headers={
            "electric-handle": "h-1",
            "electric-offset": "0_0",
            "electric-schema": '{"id":{"type":"int4"}}',
            "content-encoding": "identity",
        },
    )


def _vary(resp: httpx.Response) -> list[str]:
    return [v.strip().lower() for v in resp.headers.get("vary", "").split(",")]


@pytest.mark.parametrize("path", ["/api/chat-threads", "/api/chat-messages"])
def test_unauthenticated_shape_request_never_reaches_upstream(client, upstream, path):
    upstream.handler = _shape_ok
    resp = client.get(path, params={"offset": "-1"})
    assert resp.status_code == 401
    assert upstream.requests == []


def test_messages_filter_only_covers_own_threads(client, upstream, login):
    upstream.handler = _shape_ok
    engine = client.app.state.ctx.engine
    alice_user, alice = login(client, "alice@example.com")
    bob_user, _ = login(client, "bob@example.com")
    a1 = app_db.create_thread(engine, user_id=alice_user["id"], title="a1")["id"]
    a2 = app_db.create_thread(engine, user_id=alice_user["id"], title="a2")["id"]
    b1 = app_db.create_thread(engine, user_id=bob_user["id"], title="b1")["id"]

    resp = alice.get("/api/chat-messages", params={"offset": "-1"})
    assert resp.status_code == 200

    sent = upstream.requests[-1].url
    assert sent.path == "/v1/shape"
    assert sent.params["table"] == "chat_messages"
    assert sent.params["where"] == f'"thread_id" IN ({a1},{a2})'
    assert str(b1) not in sent.params["where"].split("(")[1]


def test_messages_filter_without_threads_matches_nothing(client, upstream, login):
    upstream.handler = _shape_ok
    _, alice = login(client, "alice@example.com")
    alice.get("/api/chat-messages", params={"offset": "-1"})
    assert upstream.requests[-1].url.params["where"] == '"thread_id" = -1'


def test_threads_filter_uses_session_user(client, upstream, login):
    upstream.handler = _shape_ok
    user, alice = login(client, "alice@example.com")
    alice.get("/api/chat-threads", params={"offset": "-1"})
    params = upstream.requests[-1].url.params
    assert params["table"] == "chat_threads"
    assert params["where"] == '"user_id" = $1'
    assert params["params[1]"] == user["id"]


def test_client_supplied_table_and_filter_are_ignored(client, upstream, login):
    upstream.handler = _shape_ok
    user, alice = login(client, "alice@example.com")
    alice.get(
        "/api/chat-threads",
        params={"offset": "-1", "table": "users", "where": "true", "params[1]": "someone-else"},
    )
    params = upstream.requests[-1].url.params
    assert params.get_list("table") == ["chat_threads"]
    assert params.get_list("where") == ['"user_id" = $1']
    assert params.get_list("params[1]") == [user["id"]]


def test_protocol_params_are_forwarded(client, upstream, login):
    upstream.handler = _shape_ok
    _, alice = login(client, "alice@example.com")
    alice.get(
        "/api/chat-threads",
        params={"offset": "12_3", "handle": "h-1", "live": "true", "cursor": "99", "columns": "id,title", "junk": "x"},
    )
    params = upstream.requests[-1].url.params
    assert params["offset"] == "12_3"
    assert params["handle"] == "h-1"
    assert params["live"] == "true"
    assert params["cursor"] == "99"
    assert params["columns"] == "id,title"
    assert "junk" not in params


def test_source_credentials_are_attached(make_client, upstream, login):
    client = make_client(electric_source_id="src-1", electric_secret="shh")
    upstream.handler = _shape_ok
    _, alice = login(client, "alice@example.com")
    alice.get("/api/chat-threads", params={"offset": "-1"})
    params = upstream.requests[-1].url.params
    assert params["source_id"] == "src-1"
    assert params["secret"] == "shh"


def test_response_headers_are_relayed(client, upstream, login):
    upstream.handler = _shape_ok
    _, alice = login(client, "alice@example.com")
    resp = alice.get("/api/chat-threads", params={"offset": "-1"})
    assert resp.status_code == 200
    assert resp.headers["electric-handle"] == "h-1"
    assert resp.headers["electric-offset"] == "0_0"
    assert "cookie" in _vary(resp)
    assert resp.headers.get("content-encoding") is None
    assert resp.json() == [{"headers": {"control": "up-to-date"}}]


def test_upstream_error_status_is_relayed(client, upstream, login):
    upstream.handler = lambda request: httpx.Response(
        409, json=[{"headers": {"control": "must-refetch"}}], headers={"electric-handle": "h-2"}
    )
    _, alice = login(client, "alice@example.com")
    resp = alice.get("/api/chat-threads", params={"offset": "5_0", "handle": "h-1"})
    assert resp.status_code == 409
    assert resp.headers["electric-handle"] == "h-2"


def test_unreachable_sync_service_is_bad_gateway(client, upstream, login):
    def _refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    upstream.handler = _refuse
    _, alice = login(client, "alice@example.com")
    resp = alice.get("/api/chat-messages", params={"offset": "-1"})
    assert resp.status_code == 502
    assert "Sync service unavailable" in resp.json()["error"]


def test_upstream_vary_is_kept(client, upstream, login):
    upstream.handler = lambda request: httpx.Response(200, json=[], headers={"vary": "Accept-Encoding"})
    _, alice = login(client, "alice@example.com")
    resp = alice.get("/api/chat-threads", params={"offset": "-1"})
    vary = _vary(resp)
    assert "accept-encoding" in vary
    assert "cookie" in vary


def test_cross_origin_frontend_can_read_resume_headers(client, upstream, login):
    upstream.handler = _shape_ok
    _, alice = login(client, "alice@example.com")
    resp = alice.get("/api/chat-threads", params={"offset": "-1"}, headers={"Origin": "http://localhost:3000"})
    assert resp.headers["access-control-allow-origin"] == "http://localhost:3000"
    assert resp.headers["access-control-allow-credentials"] == "true"
    exposed = [h.strip().lower() for h in resp.headers["access-control-expose-headers"].split(",")]
    assert "*" not in exposed
    for name in ("electric-handle", "electric-offset", "electric-schema", "electric-cursor", "electric-up-to-date"):
        assert name in exposed


class _LiveShapeStream(httpx.AsyncByteStream):
    def __init__(self) -> None:
        self.closed = False

    async def __aiter__(self):
        while not self.closed:
            yield b'[{"headers":{"control":"up-to-date"}}]'

    async def aclose(self) -> None:
        self.closed = True


@pytest.mark.anyio
async def test_closing_downstream_closes_upstream(make_config):
    stream = _LiveShapeStream()
    transport = httpx.MockTransport(lambda request: httpx.Response(200, stream=stream))
    async with httpx.AsyncClient(transport=transport) as http:
        resp = await proxy_shape_request(
            http, config=make_config(), client_params={"live": "true"}, table="chat_threads", where="true"
        )
        body = resp.body_iterator
        assert await body.__anext__()
        await body.aclose()
    assert stream.closed is True
