from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from fastapi import Depends, HTTPException, Request, Response

from . import app_db
from .context import AppContext, get_context
from .logging_utils import get_logger

log = get_logger(__name__)

SESSION_COOKIE = "gen_chat_session"

OTP_LENGTH = 6
OTP_TTL_S = 300
OTP_MAX_ATTEMPTS = 3
OTP_RESEND_COOLDOWN_S = 60


@dataclass(frozen=True)
class Principal:
    user_id: str
    email: str
    name: str = ""
    expires_at: datetime | None = None


def _hash(secret: str, value: str) -> str:
    return hmac.new(secret.encode("utf-8"), value.encode("utf-8"), hashlib.sha256).hexdigest()


def _generate_code() -> str:
    return f"{secrets.randbelow(10 ** OTP_LENGTH):0{OTP_LENGTH}d}"


def normalize_email(email: str) -> str:
    return str(email or "").strip().lower()


def resolve_principal(request: Request, ctx: AppContext) -> Principal | None:
    token = request.cookies.get(SESSION_COOKIE)
    if not token:
        return None

    engine = ctx.engine
    # Clean up expired sessions opportunistically.
    try:
        app_db.delete_expired_auth_sessions(engine)
    except Exception:
        log.debug("Expired session cleanup failed", exc_info=True)

    th = _hash(ctx.config.auth_secret, token)
    sess = app_db.get_auth_session(engine, th)
    if not sess:
        return None
    if sess["expires_at"] <= app_db.utc_now():
        app_db.delete_auth_session(engine, th)
        return None
    app_db.touch_auth_session(engine, th)
    return Principal(
        user_id=str(sess["user_id"]),
        email=str(sess["email"]),
        name=str(sess.get("name") or ""),
        expires_at=sess["expires_at"],
    )


def require_user(request: Request, ctx: AppContext = Depends(get_context)) -> Principal:
    principal = resolve_principal(request, ctx)
    if principal is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return principal


def optional_user(request: Request, ctx: AppContext = Depends(get_context)) -> Principal | None:
    return resolve_principal(request, ctx)


def send_verification_otp(ctx: AppContext, email: str) -> None:
    email = normalize_email(email)
    # A fresh code resets the attempt counter, so issuing one is rate limited.
    pending = app_db.get_verification(ctx.engine, email)
    if pending and pending["created_at"] + timedelta(seconds=OTP_RESEND_COOLDOWN_S) > app_db.utc_now():
        raise HTTPException(status_code=429, detail="Please wait before requesting a new code")
    code = _generate_code()
    expires_at = app_db.utc_now() + timedelta(seconds=OTP_TTL_S)
    app_db.put_verification(ctx.engine, email=email, code_hash=_hash(ctx.config.auth_secret, code), expires_at=expires_at)
    # Delivery is the operator's concern; the code is only ever written to the log.
    log.warning("OTP code for %s: %s (expires in %ss)", email, code, OTP_TTL_S)


def create_session(ctx: AppContext, user_id: str) -> str:
    token = secrets.token_urlsafe(32)
    expires_at = app_db.utc_now() + timedelta(seconds=ctx.config.session_ttl_s)
    try:
        app_db.create_auth_session(
            ctx.engine, token_hash=_hash(ctx.config.auth_secret, token), user_id=user_id, expires_at=expires_at
        )
    except Exception as e:
        log.exception("Failed to create auth session")
        raise HTTPException(status_code=500, detail=f"Failed to create auth session: {e}") from e
    return token


def sign_in_with_otp(ctx: AppContext, *, email: str, otp: str) -> tuple[Principal, str]:
    email = normalize_email(email)
    engine = ctx.engine
    rec = app_db.get_verification(engine, email)
    if not rec:
        raise HTTPException(status_code=401, detail="Invalid or expired code")
    # Spent codes stay stored until replaced, so the resend cooldown still applies.
    if rec["expires_at"] <= app_db.utc_now() or int(rec["attempts"] or 0) >= OTP_MAX_ATTEMPTS:
        raise HTTPException(status_code=401, detail="Invalid or expired code")
    if not hmac.compare_digest(_hash(ctx.config.auth_secret, str(otp or "").strip()), str(rec["code_hash"])):
        app_db.bump_verification_attempts(engine, email)
        raise HTTPException(status_code=401, detail="Invalid or expired code")
    app_db.delete_verification(engine, email)

    user = app_db.get_user_by_email(engine, email)
    if not user:
        user = app_db.create_user(engine, email=email, name=email.split("@", 1)[0])
        log.info("Created user %s for %s", user["id"], email)

    token = create_session(ctx, str(user["id"]))
    principal = Principal(user_id=str(user["id"]), email=str(user["email"]), name=str(user.get("name") or ""))
    return principal, token


def sign_out(request: Request, ctx: AppContext) -> None:
    token = request.cookies.get(SESSION_COOKIE)
    if not token:
        return
    app_db.delete_auth_session(ctx.engine, _hash(ctx.config.auth_secret, token))


def set_session_cookie(response: Response, ctx: AppContext, token: str) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        token,
        httponly=True,
        samesite="lax",
        secure=ctx.config.secure_cookies,
        max_age=ctx.config.session_ttl_s,
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(SESSION_COOKIE)
