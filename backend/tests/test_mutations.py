from __future__ import annotations

import pytest

from genchat import app_db

from conftest import count_rows


@pytest.mark.parametrize(
    "body",
    [
        {"action": "createThread", "title": "Hello"},
        {"action": "addMessage", "threadId": 1, "role": "user", "content": "hi"},
        {"action": "deleteAllThreads"},
        {"action": "bogus"},
    ],
)
def test_unauthenticated_mutation_is_rejected_without_writes(client, body):
    engine = client.app.state.ctx.engine
    resp = client.post("/api/chat/mutations", json=body)
    assert resp.status_code == 401
    assert resp.json() == {"error": "Unauthorized"}
    assert count_rows(engine, app_db.chat_threads) == 0
    assert count_rows(engine, app_db.chat_messages) == 0


def test_unauthenticated_malformed_body_is_still_401(client):
    resp = client.post("/api/chat/mutations", content=b"{not json", headers={"content-type": "application/json"})
    assert resp.status_code == 401


def test_create_thread_then_add_message(client, login):
    user, alice = login(client, "alice@example.com")

    resp = alice.post("/api/chat/mutations", json={"action": "createThread", "title": "  Trip plans "})
    assert resp.status_code == 200
    thread = resp.json()["thread"]
    assert thread["title"] == "Trip plans"
    assert thread["user_id"] == user["id"]

    resp = alice.post(
        "/api/chat/mutations",
        json={"action": "addMessage", "threadId": thread["id"], "role": "user", "content": "Where to?"},
    )
    assert resp.status_code == 200
    message = resp.json()["message"]
    assert message["thread_id"] == thread["id"]
    assert message["role"] == "user"
    assert message["content"] == "Where to?"

    stored = app_db.list_messages(client.app.state.ctx.engine, thread["id"])
    assert [m["content"] for m in stored] == ["Where to?"]


def test_create_thread_default_title(client, login):
    _, alice = login(client, "alice@example.com")
    resp = alice.post("/api/chat/mutations", json={"action": "createThread"})
    assert resp.json()["thread"]["title"] == "New chat"


def test_thread_id_accepts_numeric_string(client, login):
    _, alice = login(client, "alice@example.com")
    thread = alice.post("/api/chat/mutations", json={"action": "createThread"}).json()["thread"]
    resp = alice.post(
        "/api/chat/mutations",
        json={"action": "addMessage", "threadId": str(thread["id"]), "role": "user", "content": "hi"},
    )
    assert resp.status_code == 200


def test_add_message_to_foreign_thread_is_forbidden(client, login):
    _, alice = login(client, "alice@example.com")
    _, bob = login(client, "bob@example.com")
    thread = alice.post("/api/chat/mutations", json={"action": "createThread"}).json()["thread"]

    resp = bob.post(
        "/api/chat/mutations",
        json={"action": "addMessage", "threadId": thread["id"], "role": "user", "content": "sneaky"},
    )
    assert resp.status_code == 403
    assert count_rows(client.app.state.ctx.engine, app_db.chat_messages) == 0


def test_add_message_to_missing_thread_is_forbidden(client, login):
    _, alice = login(client, "alice@example.com")
    resp = alice.post(
        "/api/chat/mutations",
        json={"action": "addMessage", "threadId": 4242, "role": "user", "content": "hello?"},
    )
    assert resp.status_code == 403


@pytest.mark.parametrize(
    "body",
    [
        {"action": "addMessage", "threadId": 1, "role": "system", "content": "x"},
        {"action": "addMessage", "threadId": 1, "role": "user", "content": ""},
        {"action": "addMessage", "role": "user", "content": "x"},
        {"action": "renameThread"},
        {},
    ],
)
def test_invalid_mutation_is_bad_request(client, login, body):
    _, alice = login(client, "alice@example.com")
    resp = alice.post("/api/chat/mutations", json=body)
    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid mutation"}


def test_delete_all_threads_only_touches_own_threads(client, login):
    engine = client.app.state.ctx.engine
    _, alice = login(client, "alice@example.com")
    _, bob = login(client, "bob@example.com")

    a = alice.post("/api/chat/mutations", json={"action": "createThread"}).json()["thread"]
    b = bob.post("/api/chat/mutations", json={"action": "createThread"}).json()["thread"]
    for who, thread in ((alice, a), (bob, b)):
        who.post(
            "/api/chat/mutations",
            json={"action": "addMessage", "threadId": thread["id"], "role": "user", "content": "hi"},
        )

    resp = alice.post("/api/chat/mutations", json={"action": "deleteAllThreads"})
    assert resp.status_code == 200
    assert resp.json() == {"success": True}

    assert app_db.get_thread(engine, a["id"]) is None
    assert app_db.get_thread(engine, b["id"]) is not None
    assert app_db.list_messages(engine, a["id"]) == []
    assert len(app_db.list_messages(engine, b["id"])) == 1
