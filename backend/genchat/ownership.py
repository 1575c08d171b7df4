"""Ownership scoping for thread and message access.

Every read or write that touches a thread goes through the set of thread ids
owned by the caller. The same set drives the row filter sent to the sync
service, so a user can only ever see rows of their own threads.
"""

from __future__ import annotations

from typing import Iterable

from fastapi import HTTPException
from sqlalchemy.engine import Engine

from . import app_db

# Thread ids are identity values starting at 1, so this matches nothing.
MATCH_NOTHING = '"thread_id" = -1'


def list_owned_thread_ids(engine: Engine, user_id: str) -> set[int]:
    return set(app_db.list_thread_ids(engine, user_id))


def assert_thread_owner(engine: Engine, user_id: str, thread_id: int) -> None:
    if thread_id not in list_owned_thread_ids(engine, user_id):
        raise HTTPException(status_code=403, detail="Forbidden")


def messages_where(thread_ids: Iterable[int]) -> str:
    ids = sorted({int(t) for t in thread_ids})
    if not ids:
        return MATCH_NOTHING
    return '"thread_id" IN (' + ",".join(str(i) for i in ids) + ")"


def threads_where(user_id: str) -> tuple[str, list[str]]:
    # The user id travels as a positional shape parameter, never inside the clause.
    return '"user_id" = $1', [user_id]
