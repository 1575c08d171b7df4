from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import TypeAdapter, ValidationError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import app_db
from .auth import (
    Principal,
    clear_session_cookie,
    optional_user,
    require_user,
    send_verification_otp,
    set_session_cookie,
    sign_in_with_otp,
    sign_out,
)
from .completions import guest_completion, thread_completion
from .config import AppConfig, load_config
from .context import AppContext, create_context, get_context
from .logging_utils import configure_logging, get_logger
from .openrouter import OpenRouterError
from .ownership import assert_thread_owner, list_owned_thread_ids, messages_where, threads_where
from .schemas import (
    AddMessageAction,
    CompletionRequest,
    CreateThreadAction,
    GuestCompletionRequest,
    MessageResponse,
    MutationRequest,
    SendOtpRequest,
    SessionInfo,
    SessionResponse,
    SignInRequest,
    SuccessResponse,
    ThreadResponse,
    UserInfo,
)
from .sync_proxy import RESUME_HEADERS, proxy_shape_request

log = get_logger(__name__)

_mutation_adapter: TypeAdapter[Any] = TypeAdapter(MutationRequest)

_STREAM_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


async def _read_body(request: Request, adapter: TypeAdapter[Any] | type, message: str) -> Any:
    try:
        payload = await request.json()
    except ValueError:
        payload = {}
    try:
        if isinstance(adapter, TypeAdapter):
            return adapter.validate_python(payload)
        return adapter.model_validate(payload)
    except ValidationError as e:
        log.debug("Rejected request body: %s", e)
        raise HTTPException(status_code=400, detail=message) from e


def _upstream_failure(e: OpenRouterError) -> HTTPException:
    return HTTPException(
        status_code=502,
        detail={"error": "Upstream failure", "detail": str(e), "upstream_status": e.status},
    )


def _text_stream(chunks: AsyncIterator[str]) -> StreamingResponse:
    return StreamingResponse(chunks, media_type="text/plain; charset=utf-8", headers=dict(_STREAM_HEADERS))


def create_app(config: AppConfig | None = None, *, transport: httpx.AsyncBaseTransport | None = None) -> FastAPI:
    """Build the application. Configuration is resolved here, so missing secrets stop startup."""
    cfg = config or load_config()
    configure_logging(cfg.log_level)

    @asynccontextmanager
    async def lifespan(application: FastAPI) -> AsyncIterator[None]:
        ctx = create_context(cfg, transport=transport)
        app_db.init_db(ctx.engine)
        application.state.ctx = ctx
        try:
            yield
        finally:
            await ctx.aclose()

    app = FastAPI(title="gen-chat-backend", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[cfg.app_base_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=list(RESUME_HEADERS),
    )

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(_request: Request, exc: StarletteHTTPException) -> JSONResponse:
        detail = exc.detail
        body = detail if isinstance(detail, dict) and "error" in detail else {"error": detail}
        return JSONResponse(body, status_code=exc.status_code, headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def _validation_error(_request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse({"error": "Bad request", "detail": exc.errors()}, status_code=400)

    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:
    @app.get("/health")
    def health(ctx: AppContext = Depends(get_context)) -> dict[str, Any]:
        return {"status": "ok", "llm": "configured" if ctx.config.llm_enabled else "demo"}

    # Auth

    @app.post("/api/auth/email-otp/send-verification-otp", response_model=SuccessResponse)
    def auth_send_otp(req: SendOtpRequest, ctx: AppContext = Depends(get_context)) -> SuccessResponse:
        send_verification_otp(ctx, req.email)
        return SuccessResponse()

    @app.post("/api/auth/sign-in/email-otp", response_model=SessionResponse)
    def auth_sign_in(req: SignInRequest, response: Response, ctx: AppContext = Depends(get_context)) -> SessionResponse:
        principal, token = sign_in_with_otp(ctx, email=req.email, otp=req.otp)
        set_session_cookie(response, ctx, token)
        log.info("User %s signed in", principal.user_id)
        return SessionResponse(user=UserInfo(id=principal.user_id, email=principal.email, name=principal.name))

    @app.get("/api/auth/get-session", response_model=SessionResponse | None)
    def auth_get_session(principal: Principal | None = Depends(optional_user)) -> SessionResponse | None:
        if principal is None:
            return None
        session = SessionInfo(expires_at=principal.expires_at.isoformat()) if principal.expires_at else None
        return SessionResponse(
            user=UserInfo(id=principal.user_id, email=principal.email, name=principal.name),
            session=session,
        )

    @app.post("/api/auth/sign-out", response_model=SuccessResponse)
    def auth_sign_out(request: Request, response: Response, ctx: AppContext = Depends(get_context)) -> SuccessResponse:
        sign_out(request, ctx)
        clear_session_cookie(response)
        return SuccessResponse()

    # Mutations

    @app.post("/api/chat/mutations")
    async def chat_mutations(
        request: Request,
        principal: Principal = Depends(require_user),
        ctx: AppContext = Depends(get_context),
    ) -> dict[str, Any]:
        req = await _read_body(request, _mutation_adapter, "Invalid mutation")
        engine = ctx.engine

        if isinstance(req, CreateThreadAction):
            thread = await run_in_threadpool(app_db.create_thread, engine, user_id=principal.user_id, title=req.title)
            return ThreadResponse(thread=thread).model_dump()

        if isinstance(req, AddMessageAction):
            await run_in_threadpool(assert_thread_owner, engine, principal.user_id, req.thread_id)
            message = await run_in_threadpool(
                app_db.insert_message, engine, thread_id=req.thread_id, role=req.role, content=req.content
            )
            return MessageResponse(message=message).model_dump()

        deleted = await run_in_threadpool(app_db.delete_threads, engine, principal.user_id)
        log.info("Deleted %d threads for user %s", deleted, principal.user_id)
        return SuccessResponse().model_dump()

    # Completions

    @app.post("/api/chat/ai")
    async def chat_ai(
        request: Request,
        principal: Principal = Depends(require_user),
        ctx: AppContext = Depends(get_context),
    ) -> StreamingResponse:
        req: CompletionRequest = await _read_body(request, CompletionRequest, "Missing threadId or messages")
        owned = await run_in_threadpool(list_owned_thread_ids, ctx.engine, principal.user_id)
        if req.thread_id not in owned:
            raise HTTPException(status_code=403, detail="Forbidden")
        try:
            chunks = await thread_completion(ctx, thread_id=req.thread_id, messages=req.messages, model=req.model)
        except OpenRouterError as e:
            log.error("Completion for thread %s failed before streaming: %s", req.thread_id, e)
            raise _upstream_failure(e) from e
        return _text_stream(chunks)

    @app.post("/api/chat/guest")
    async def chat_guest(request: Request, ctx: AppContext = Depends(get_context)) -> StreamingResponse:
        req: GuestCompletionRequest = await _read_body(request, GuestCompletionRequest, "Missing messages")
        cfg = ctx.config
        client_key = request.client.host if request.client else "unknown"
        allowed = await run_in_threadpool(
            app_db.consume_guest_request,
            ctx.engine,
            client_key=client_key,
            limit=cfg.guest_free_requests,
            window_s=cfg.guest_window_s,
        )
        if not allowed:
            raise HTTPException(status_code=429, detail="Sign in to continue chatting.")
        try:
            chunks = await guest_completion(ctx, messages=req.messages, model=req.model)
        except OpenRouterError as e:
            log.error("Guest completion failed before streaming: %s", e)
            await run_in_threadpool(app_db.refund_guest_request, ctx.engine, client_key)
            raise _upstream_failure(e) from e
        return _text_stream(chunks)

    # Sync proxy

    @app.get("/api/chat-threads")
    async def chat_threads_shape(
        request: Request,
        principal: Principal = Depends(require_user),
        ctx: AppContext = Depends(get_context),
    ) -> StreamingResponse:
        where, params = threads_where(principal.user_id)
        return await proxy_shape_request(
            ctx.http,
            config=ctx.config,
            client_params=request.query_params,
            table="chat_threads",
            where=where,
            params=params,
        )

    @app.get("/api/chat-messages")
    async def chat_messages_shape(
        request: Request,
        principal: Principal = Depends(require_user),
        ctx: AppContext = Depends(get_context),
    ) -> StreamingResponse:
        owned = await run_in_threadpool(list_owned_thread_ids, ctx.engine, principal.user_id)
        return await proxy_shape_request(
            ctx.http,
            config=ctx.config,
            client_params=request.query_params,
            table="chat_messages",
            where=messages_where(owned),
        )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("genchat.main:create_app", factory=True, host="0.0.0.0", port=8000)
