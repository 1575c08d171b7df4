from __future__ import annotations

import json
from contextlib import ExitStack
from typing import Any, Callable

import httpx
import pytest
from fastapi.testclient import TestClient

from genchat import app_db, auth
from genchat.config import AppConfig
from genchat.main import create_app


class Upstream:
    """Stands in for the sync service and the LLM provider; records every request."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.handler: Callable[[httpx.Request], httpx.Response] | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.handler is None:
            raise AssertionError(f"unexpected upstream request: {request.method} {request.url}")
        return self.handler(request)


def sse_response(*deltas: str) -> httpx.Response:
    lines = [": OPENROUTER PROCESSING", ""]
    for d in deltas:
        lines.append("data: " + json.dumps({"choices": [{"delta": {"content": d}}]}))
        lines.append("")
    lines.append("data: [DONE]")
    lines.append("")
    return httpx.Response(200, text="\n".join(lines), headers={"content-type": "text/event-stream"})


def count_rows(engine, table) -> int:
    with engine.connect() as conn:
        return len(conn.execute(table.select()).all())


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def upstream() -> Upstream:
    return Upstream()


@pytest.fixture
def make_config(tmp_path) -> Callable[..., AppConfig]:
    def _make(**overrides: Any) -> AppConfig:
        values: dict[str, Any] = {
            "database_url": f"sqlite:///{tmp_path / 'chat.db'}",
            "auth_secret": "test-secret",
            "electric_url": "http://electric.test",
            "openrouter_base_url": "http://llm.test/api/v1",
        }
        values.update(overrides)
        return AppConfig(**values)

    return _make


@pytest.fixture
def make_client(make_config, upstream):
    with ExitStack() as stack:

        def _make(**overrides: Any) -> TestClient:
            app = create_app(make_config(**overrides), transport=httpx.MockTransport(upstream))
            return stack.enter_context(TestClient(app))

        yield _make


@pytest.fixture
def client(make_client) -> TestClient:
    return make_client()


@pytest.fixture
def llm_client(make_client) -> TestClient:
    return make_client(openrouter_api_key="sk-test")


@pytest.fixture
def login():
    """Create a user with a live session and return a client carrying its cookie."""

    def _login(base: TestClient, email: str) -> tuple[dict[str, Any], TestClient]:
        ctx = base.app.state.ctx
        user = app_db.create_user(ctx.engine, email=email, name=email.split("@")[0])
        token = auth.create_session(ctx, user["id"])
        return user, TestClient(base.app, cookies={auth.SESSION_COOKIE: token})

    return _login
