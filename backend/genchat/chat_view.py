"""Client-side chat view model.

Holds what the chat screen shows and drives the server API: thread and
message mutations, the two streaming completion endpoints and the shape
feeds behind the sync proxy. Preferences and the guest free-request counter
live in a small JSON file, the local-storage equivalent for a terminal.
"""

from __future__ import annotations

import itertools
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Literal

import httpx

from .logging_utils import get_logger

log = get_logger(__name__)

FREE_REQUEST_KEY = "gen_chat_free_requests"
FREE_REQUEST_LIMIT = 1
MODEL_STORAGE_KEY = "gen_chat_model"
DARK_MODE_KEY = "gen_chat_dark_mode"

AVAILABLE_MODELS: tuple[dict[str, str], ...] = (
    {"id": "google/gemini-2.0-flash-001", "name": "Gemini 2.0 Flash", "provider": "Google"},
    {"id": "anthropic/claude-sonnet-4", "name": "Claude Sonnet 4", "provider": "Anthropic"},
    {"id": "openai/gpt-4o", "name": "GPT-4o", "provider": "OpenAI"},
)

ViewState = Literal["idle", "sending", "streaming"]


class ChatViewError(RuntimeError):
    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class LocalStore:
    def __init__(self, path: Path) -> None:
        self.path = path

    def _load(self) -> dict[str, Any]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except ValueError:
            log.warning("Ignoring unreadable local store %s", self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def _set(self, key: str, value: Any) -> None:
        data = self._load()
        data[key] = value
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")

    def get_free_request_count(self) -> int:
        try:
            return int(self._load().get(FREE_REQUEST_KEY) or 0)
        except (TypeError, ValueError):
            return 0

    def increment_free_request_count(self) -> int:
        count = self.get_free_request_count() + 1
        self._set(FREE_REQUEST_KEY, count)
        return count

    def get_model(self) -> str:
        stored = self._load().get(MODEL_STORAGE_KEY)
        if any(m["id"] == stored for m in AVAILABLE_MODELS):
            return str(stored)
        return AVAILABLE_MODELS[0]["id"]

    def set_model(self, model: str) -> None:
        self._set(MODEL_STORAGE_KEY, model)

    def get_dark_mode(self) -> bool:
        return bool(self._load().get(DARK_MODE_KEY, False))

    def set_dark_mode(self, dark: bool) -> None:
        self._set(DARK_MODE_KEY, bool(dark))


_INT_COLUMNS = ("id", "thread_id")


def _coerce(row: dict[str, Any]) -> dict[str, Any]:
    # The shape log carries column values as strings.
    out = dict(row)
    for col in _INT_COLUMNS:
        if isinstance(out.get(col), str) and out[col].lstrip("-").isdigit():
            out[col] = int(out[col])
    return out


class ShapeFeed:
    """Reads a shape log through the sync proxy and keeps the current rows."""

    max_requests = 50

    def __init__(self, client: httpx.AsyncClient, path: str) -> None:
        self.client = client
        self.path = path
        self.rows: dict[str, dict[str, Any]] = {}
        self.handle: str | None = None
        self.offset = "-1"

    def reset(self) -> None:
        self.rows.clear()
        self.handle = None
        self.offset = "-1"

    async def poll(self) -> None:
        """Catch up with the log until the service reports up-to-date."""
        for _ in range(self.max_requests):
            params = {"offset": self.offset}
            if self.handle:
                params["handle"] = self.handle
            resp = await self.client.get(self.path, params=params)
            if resp.status_code == 409:
                self.reset()
                continue
            if resp.status_code >= 400:
                raise ChatViewError(f"Sync request {self.path} failed: {resp.status_code}", status=resp.status_code)

            self.handle = resp.headers.get("electric-handle", self.handle)
            self.offset = resp.headers.get("electric-offset", self.offset)
            items = resp.json() if resp.content else []
            if self._apply(items) or not items:
                return
        log.warning("Shape %s not up to date after %d requests", self.path, self.max_requests)

    def _apply(self, items: list[dict[str, Any]]) -> bool:
        up_to_date = False
        for item in items:
            headers = item.get("headers") or {}
            control = headers.get("control")
            if control == "up-to-date":
                up_to_date = True
                continue
            if control == "must-refetch":
                self.rows.clear()
                continue
            key = str(item.get("key"))
            op = headers.get("operation")
            if op == "delete":
                self.rows.pop(key, None)
            elif op == "update":
                self.rows[key] = _coerce({**self.rows.get(key, {}), **(item.get("value") or {})})
            elif op == "insert":
                self.rows[key] = _coerce(item.get("value") or {})
        return up_to_date

    def values(self) -> list[dict[str, Any]]:
        return list(self.rows.values())


@dataclass
class GuestMessage:
    id: int
    role: Literal["user", "assistant"]
    content: str


class ChatView:
    def __init__(
        self,
        client: httpx.AsyncClient,
        store: LocalStore,
        *,
        authenticated: bool = False,
        on_update: Callable[["ChatView"], None] | None = None,
    ) -> None:
        self.client = client
        self.store = store
        self.authenticated = authenticated
        self.on_update = on_update

        self.state: ViewState = "idle"
        self.active_thread_id: int | None = None
        self.streaming_content = ""
        self.guest_messages: list[GuestMessage] = []
        self.show_auth_prompt = False
        self.last_error: str | None = None
        self.selected_model = store.get_model()
        self.dark_mode = store.get_dark_mode()

        self._threads = ShapeFeed(client, "/api/chat-threads")
        self._messages = ShapeFeed(client, "/api/chat-messages")
        self._guest_ids = itertools.count(1)

    def _notify(self) -> None:
        if self.on_update is not None:
            self.on_update(self)

    @property
    def free_requests_used(self) -> int:
        return self.store.get_free_request_count()

    @property
    def threads(self) -> list[dict[str, Any]]:
        return sorted(self._threads.values(), key=lambda t: int(t.get("id") or 0), reverse=True)

    def thread_messages(self) -> list[dict[str, Any]]:
        if self.active_thread_id is None:
            return []
        rows = [m for m in self._messages.values() if m.get("thread_id") == self.active_thread_id]
        return sorted(rows, key=lambda m: (str(m.get("created_at") or ""), int(m.get("id") or 0)))

    def visible_messages(self) -> list[dict[str, Any]]:
        if self.authenticated:
            msgs = [{"id": m["id"], "role": m["role"], "content": m["content"]} for m in self.thread_messages()]
        else:
            msgs = [{"id": m.id, "role": m.role, "content": m.content} for m in self.guest_messages]
        if self.streaming_content:
            msgs.append({"id": -1, "role": "assistant", "content": self.streaming_content})
        return msgs

    async def refresh(self) -> None:
        if not self.authenticated:
            return
        await self._threads.poll()
        await self._messages.poll()
        threads = self.threads
        if self.active_thread_id is None and threads:
            self.active_thread_id = int(threads[0]["id"])
        self._notify()

    # Preferences

    def set_model(self, model: str) -> None:
        if not any(m["id"] == model for m in AVAILABLE_MODELS):
            raise ValueError(f"Unknown model: {model}")
        self.selected_model = model
        self.store.set_model(model)
        self._notify()

    def toggle_dark_mode(self) -> bool:
        self.dark_mode = not self.dark_mode
        self.store.set_dark_mode(self.dark_mode)
        self._notify()
        return self.dark_mode

    # Mutations

    async def _mutate(self, payload: dict[str, Any]) -> dict[str, Any]:
        resp = await self.client.post("/api/chat/mutations", json=payload)
        if resp.status_code >= 400:
            raise ChatViewError(f"{payload['action']} failed: {resp.status_code}", status=resp.status_code)
        return resp.json()

    async def new_thread(self, title: str = "New chat") -> int:
        data = await self._mutate({"action": "createThread", "title": title})
        self.select_thread(int(data["thread"]["id"]))
        return self.active_thread_id  # type: ignore[return-value]

    def select_thread(self, thread_id: int | None) -> None:
        self.active_thread_id = thread_id
        self.streaming_content = ""
        self._notify()

    async def delete_all_threads(self) -> None:
        await self._mutate({"action": "deleteAllThreads"})
        self.select_thread(None)
        await self.refresh()

    # Sending

    async def send(self, text: str) -> bool:
        """Submit a message. Returns False when the input was not sent."""
        message = str(text or "").strip()
        if not message or self.state != "idle":
            return False
        if self.authenticated:
            return await self._send_authenticated(message)
        return await self._send_guest(message)

    async def _stream(self, path: str, body: dict[str, Any]) -> str:
        accumulated = ""
        async with self.client.stream("POST", path, json=body) as resp:
            if resp.status_code >= 400:
                await resp.aread()
                raise ChatViewError(f"AI request failed: {resp.status_code}", status=resp.status_code)
            self.state = "streaming"
            async for chunk in resp.aiter_text():
                accumulated += chunk
                self.streaming_content = accumulated
                self._notify()
        return accumulated

    async def _send_authenticated(self, message: str) -> bool:
        self.state = "sending"
        self.last_error = None
        self.streaming_content = ""
        self._notify()
        try:
            thread_id = self.active_thread_id
            if thread_id is None:
                thread_id = await self.new_thread(message[:40] or "New chat")
            history = [{"role": m["role"], "content": m["content"]} for m in self.thread_messages()]
            await self._mutate({"action": "addMessage", "threadId": thread_id, "role": "user", "content": message})
            history.append({"role": "user", "content": message})
            await self._stream("/api/chat/ai", {"threadId": thread_id, "messages": history, "model": self.selected_model})
            # The saved reply arrives through the messages feed.
            self.streaming_content = ""
            await self.refresh()
        except (httpx.HTTPError, ChatViewError) as e:
            log.error("Chat error: %s", e)
            self.last_error = str(e)
        finally:
            self.streaming_content = ""
            self.state = "idle"
            self._notify()
        return self.last_error is None

    async def _send_guest(self, message: str) -> bool:
        if self.free_requests_used >= FREE_REQUEST_LIMIT:
            self.show_auth_prompt = True
            self._notify()
            return False

        self.state = "sending"
        self.last_error = None
        self.streaming_content = ""
        history = [{"role": m.role, "content": m.content} for m in self.guest_messages]
        history.append({"role": "user", "content": message})
        self.guest_messages.append(GuestMessage(id=next(self._guest_ids), role="user", content=message))
        self._notify()
        try:
            reply = await self._stream("/api/chat/guest", {"messages": history, "model": self.selected_model})
        except ChatViewError as e:
            self.last_error = str(e)
            if e.status == 429:
                self.show_auth_prompt = True
            return False
        except httpx.HTTPError as e:
            log.error("Guest chat error: %s", e)
            self.last_error = str(e)
            return False
        finally:
            self.streaming_content = ""
            self.state = "idle"
            self._notify()

        self.guest_messages.append(GuestMessage(id=next(self._guest_ids), role="assistant", content=reply))
        if self.store.increment_free_request_count() >= FREE_REQUEST_LIMIT:
            self.show_auth_prompt = True
        self._notify()
        return True
