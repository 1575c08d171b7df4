from __future__ import annotations

import pytest
from fastapi import HTTPException

from genchat import app_db
from genchat.ownership import (
    MATCH_NOTHING,
    assert_thread_owner,
    list_owned_thread_ids,
    messages_where,
    threads_where,
)


def test_messages_where_empty_set_matches_nothing():
    assert messages_where(set()) == MATCH_NOTHING == '"thread_id" = -1'


def test_messages_where_lists_sorted_ids():
    assert messages_where({12, 3, 7}) == '"thread_id" IN (3,7,12)'


def test_threads_where_passes_user_id_as_parameter():
    where, params = threads_where("u-1'; drop table chat_threads; --")
    assert where == '"user_id" = $1'
    assert params == ["u-1'; drop table chat_threads; --"]


def test_owned_sets_are_disjoint(client):
    engine = client.app.state.ctx.engine
    a = app_db.create_user(engine, email="a@example.com")
    b = app_db.create_user(engine, email="b@example.com")
    a1 = app_db.create_thread(engine, user_id=a["id"], title="one")["id"]
    a2 = app_db.create_thread(engine, user_id=a["id"], title="two")["id"]
    b1 = app_db.create_thread(engine, user_id=b["id"], title="three")["id"]

    assert list_owned_thread_ids(engine, a["id"]) == {a1, a2}
    assert list_owned_thread_ids(engine, b["id"]) == {b1}
    assert list_owned_thread_ids(engine, "nobody") == set()

    assert_thread_owner(engine, a["id"], a1)
    with pytest.raises(HTTPException) as exc:
        assert_thread_owner(engine, b["id"], a1)
    assert exc.value.status_code == 403
