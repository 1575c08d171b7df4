from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    delete,
    insert,
    select,
    update,
)
from sqlalchemy.engine import Engine, RowMapping
from sqlalchemy.exc import IntegrityError

from .logging_utils import get_logger

log = get_logger(__name__)

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("email", String(320), nullable=False, unique=True),
    Column("name", Text, nullable=False, default=""),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

auth_sessions = Table(
    "auth_sessions",
    metadata,
    Column("token_hash", String(64), primary_key=True),
    Column("user_id", String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("last_seen_at", DateTime(timezone=True), nullable=False),
)

verifications = Table(
    "verifications",
    metadata,
    Column("email", String(320), primary_key=True),
    Column("code_hash", String(64), nullable=False),
    Column("attempts", Integer, nullable=False, default=0),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False),
)

chat_threads = Table(
    "chat_threads",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("title", Text, nullable=False),
    Column("user_id", Text, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Index("idx_chat_threads_user", "user_id"),
)

chat_messages = Table(
    "chat_messages",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("thread_id", Integer, ForeignKey("chat_threads.id", ondelete="CASCADE"), nullable=False),
    Column("role", String(32), nullable=False),
    Column("content", Text, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Index("idx_chat_messages_thread_created", "thread_id", "created_at"),
)

guest_usage = Table(
    "guest_usage",
    metadata,
    Column("client_key", String(128), primary_key=True),
    Column("window_started_at", DateTime(timezone=True), nullable=False),
    Column("count", Integer, nullable=False, default=0),
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is written in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _row(row: RowMapping | None) -> dict[str, Any] | None:
    if row is None:
        return None
    out: dict[str, Any] = {}
    for key, value in row.items():
        out[key] = as_utc(value).isoformat() if isinstance(value, datetime) else value
    return out


def init_db(engine: Engine) -> None:
    """Create missing tables. Best effort: a failure is logged and startup continues."""
    try:
        metadata.create_all(engine)
    except Exception as e:
        log.warning("Schema initialization failed, continuing: %s", e)


# Users and sessions


def get_user_by_email(engine: Engine, email: str) -> dict[str, Any] | None:
    with engine.connect() as conn:
        row = conn.execute(select(users).where(users.c.email == email)).mappings().first()
    return _row(row)


def create_user(engine: Engine, *, email: str, name: str = "") -> dict[str, Any]:
    user_id = uuid.uuid4().hex
    created_at = utc_now()
    with engine.begin() as conn:
        conn.execute(insert(users).values(id=user_id, email=email, name=name, created_at=created_at))
    return {"id": user_id, "email": email, "name": name, "created_at": created_at.isoformat()}


def create_auth_session(engine: Engine, *, token_hash: str, user_id: str, expires_at: datetime) -> None:
    now = utc_now()
    with engine.begin() as conn:
        conn.execute(
            insert(auth_sessions).values(
                token_hash=token_hash,
                user_id=user_id,
                created_at=now,
                expires_at=expires_at,
                last_seen_at=now,
            )
        )


def get_auth_session(engine: Engine, token_hash: str) -> dict[str, Any] | None:
    stmt = (
        select(
            auth_sessions.c.token_hash,
            auth_sessions.c.user_id,
            auth_sessions.c.expires_at,
            users.c.email,
            users.c.name,
        )
        .join(users, users.c.id == auth_sessions.c.user_id)
        .where(auth_sessions.c.token_hash == token_hash)
    )
    with engine.connect() as conn:
        row = conn.execute(stmt).mappings().first()
    if row is None:
        return None
    out = dict(row)
    out["expires_at"] = as_utc(out["expires_at"])
    return out


def touch_auth_session(engine: Engine, token_hash: str) -> None:
    with engine.begin() as conn:
        conn.execute(
            update(auth_sessions).where(auth_sessions.c.token_hash == token_hash).values(last_seen_at=utc_now())
        )


def delete_auth_session(engine: Engine, token_hash: str) -> None:
    with engine.begin() as conn:
        conn.execute(delete(auth_sessions).where(auth_sessions.c.token_hash == token_hash))


def delete_expired_auth_sessions(engine: Engine) -> int:
    with engine.begin() as conn:
        cur = conn.execute(delete(auth_sessions).where(auth_sessions.c.expires_at < utc_now()))
        return int(cur.rowcount or 0)


def put_verification(engine: Engine, *, email: str, code_hash: str, expires_at: datetime) -> None:
    with engine.begin() as conn:
        conn.execute(delete(verifications).where(verifications.c.email == email))
        conn.execute(
            insert(verifications).values(
                email=email, code_hash=code_hash, attempts=0, created_at=utc_now(), expires_at=expires_at
            )
        )


def get_verification(engine: Engine, email: str) -> dict[str, Any] | None:
    with engine.connect() as conn:
        row = conn.execute(select(verifications).where(verifications.c.email == email)).mappings().first()
    if row is None:
        return None
    out = dict(row)
    out["expires_at"] = as_utc(out["expires_at"])
    out["created_at"] = as_utc(out["created_at"])
    return out


def bump_verification_attempts(engine: Engine, email: str) -> None:
    with engine.begin() as conn:
        conn.execute(
            update(verifications)
            .where(verifications.c.email == email)
            .values(attempts=verifications.c.attempts + 1)
        )


def delete_verification(engine: Engine, email: str) -> None:
    with engine.begin() as conn:
        conn.execute(delete(verifications).where(verifications.c.email == email))


# Threads and messages


def create_thread(engine: Engine, *, user_id: str, title: str) -> dict[str, Any]:
    created_at = utc_now()
    with engine.begin() as conn:
        cur = conn.execute(
            insert(chat_threads).values(title=title, user_id=user_id, created_at=created_at)
        )
        thread_id = int(cur.inserted_primary_key[0])
    return {"id": thread_id, "title": title, "user_id": user_id, "created_at": created_at.isoformat()}


def get_thread(engine: Engine, thread_id: int) -> dict[str, Any] | None:
    with engine.connect() as conn:
        row = conn.execute(select(chat_threads).where(chat_threads.c.id == thread_id)).mappings().first()
    return _row(row)


def list_thread_ids(engine: Engine, user_id: str) -> list[int]:
    with engine.connect() as conn:
        rows = conn.execute(select(chat_threads.c.id).where(chat_threads.c.user_id == user_id)).all()
    return [int(r[0]) for r in rows]


def delete_threads(engine: Engine, user_id: str) -> int:
    owned = select(chat_threads.c.id).where(chat_threads.c.user_id == user_id)
    with engine.begin() as conn:
        conn.execute(delete(chat_messages).where(chat_messages.c.thread_id.in_(owned)))
        cur = conn.execute(delete(chat_threads).where(chat_threads.c.user_id == user_id))
        return int(cur.rowcount or 0)


def insert_message(engine: Engine, *, thread_id: int, role: str, content: str) -> dict[str, Any]:
    created_at = utc_now()
    with engine.begin() as conn:
        cur = conn.execute(
            insert(chat_messages).values(thread_id=thread_id, role=role, content=content, created_at=created_at)
        )
        message_id = int(cur.inserted_primary_key[0])
    return {
        "id": message_id,
        "thread_id": thread_id,
        "role": role,
        "content": content,
        "created_at": created_at.isoformat(),
    }


def list_messages(engine: Engine, thread_id: int, limit: int = 500) -> list[dict[str, Any]]:
    stmt = (
        select(chat_messages)
        .where(chat_messages.c.thread_id == thread_id)
        .order_by(chat_messages.c.created_at.asc(), chat_messages.c.id.asc())
        .limit(limit)
    )
    with engine.connect() as conn:
        rows = conn.execute(stmt).mappings().all()
    return [_row(r) for r in rows]  # type: ignore[misc]


# Guest quota


def consume_guest_request(engine: Engine, *, client_key: str, limit: int, window_s: int) -> bool:
    """Count one guest completion for client_key. Returns False once the window's quota is used up."""
    if limit <= 0:
        return False
    try:
        return _consume_guest_request(engine, client_key, limit, window_s)
    except IntegrityError:
        # A concurrent first request for the same key inserted the row; count against it.
        log.debug("Guest usage row for %s created concurrently, retrying", client_key)
        return _consume_guest_request(engine, client_key, limit, window_s)


def _consume_guest_request(engine: Engine, client_key: str, limit: int, window_s: int) -> bool:
    now = utc_now()
    with engine.begin() as conn:
        row = conn.execute(
            select(guest_usage).where(guest_usage.c.client_key == client_key).with_for_update()
        ).mappings().first()
        if row is None:
            conn.execute(insert(guest_usage).values(client_key=client_key, window_started_at=now, count=1))
            return True
        if as_utc(row["window_started_at"]) + timedelta(seconds=window_s) <= now:
            conn.execute(
                update(guest_usage)
                .where(guest_usage.c.client_key == client_key)
                .values(window_started_at=now, count=1)
            )
            return True
        if int(row["count"] or 0) >= limit:
            return False
        conn.execute(
            update(guest_usage)
            .where(guest_usage.c.client_key == client_key)
            .values(count=guest_usage.c["count"] + 1)
        )
        return True


def refund_guest_request(engine: Engine, client_key: str) -> None:
    """Give back one counted guest completion, e.g. when the provider failed before answering."""
    with engine.begin() as conn:
        conn.execute(
            update(guest_usage)
            .where(guest_usage.c.client_key == client_key, guest_usage.c["count"] > 0)
            .values(count=guest_usage.c["count"] - 1)
        )
