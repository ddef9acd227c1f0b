from __future__ import annotations

import logging
import os
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from app.change_feed import ChangeFeed, create_feed_from_env
from app.complaint_store import InMemoryComplaintStore, create_store_from_env
from app.errors import ApiError
from app.lifecycle import LifecycleEngine
from app.routes import complaints as complaints_routes
from app.routes import stream as stream_routes
from app.routes._deps import error_response, request_id_from_request, trace_id_from_request
from app.schemas import success_envelope
from app.security import (
    JwtSecurityConfig,
    parse_and_validate_bearer_token,
    redact_sensitive,
    subject_from_headers,
)

logger = logging.getLogger(__name__)

_PUBLIC_PATHS = {"/api/v1/health"}


def _env_float(name: str, *, default: float, minimum: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


def create_app(
    *,
    store: InMemoryComplaintStore | None = None,
    feed: ChangeFeed | None = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        app.state.feed.reset()

    app = FastAPI(title="Complaint Desk API", version="0.1.0", lifespan=lifespan)
    security_cfg = JwtSecurityConfig.from_env()
    app.state.security_cfg = security_cfg
    app.state.store = store if store is not None else create_store_from_env()
    app.state.feed = feed if feed is not None else create_feed_from_env()
    app.state.engine = LifecycleEngine(store=app.state.store, feed=app.state.feed)
    app.state.stream_keepalive_s = _env_float("CDESK_STREAM_KEEPALIVE_S", default=15.0, minimum=0.1)

    cors_origins = os.environ.get("CORS_ALLOW_ORIGINS", "http://127.0.0.1:5173,http://localhost:5173")
    allow_origins = [x.strip() for x in cors_origins.split(",") if x.strip()]
    if allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    def _log_security_rejection(request: Request, exc: ApiError) -> None:
        headers_obj = dict(request.headers.items())
        headers_payload = redact_sensitive(headers_obj) if security_cfg.log_redaction_enabled else headers_obj
        logger.warning(
            "security_blocked code=%s path=%s trace_id=%s detail=%s headers=%s",
            exc.code,
            request.url.path,
            trace_id_from_request(request),
            exc.message,
            headers_payload,
        )

    @app.middleware("http")
    async def attach_subject(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")
        request.state.subject = None
        try:
            path = request.url.path
            if path.startswith("/api/v1/") and path not in _PUBLIC_PATHS:
                authorization = request.headers.get("Authorization")
                if security_cfg.enabled or authorization or not security_cfg.allow_header_subject:
                    request.state.subject = parse_and_validate_bearer_token(
                        authorization=authorization,
                        cfg=security_cfg,
                    )
                else:
                    request.state.subject = subject_from_headers(
                        subject_id=request.headers.get("x-subject-id"),
                        role=request.headers.get("x-subject-role"),
                    )
            response = await call_next(request)
        except ApiError as exc:
            _log_security_rejection(request, exc)
            response = error_response(
                request,
                code=exc.code,
                message=exc.message,
                error_class=exc.error_class,
                retryable=exc.retryable,
                status_code=exc.http_status,
            )
        response.headers["x-trace-id"] = trace_id_from_request(request)
        response.headers["x-request-id"] = request_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.code in {"AUTH_UNAUTHORIZED", "AUTH_FORBIDDEN"}:
            _log_security_rejection(request, exc)
        return error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        return success_envelope(
            {
                "status": "ok",
                "store_backend": app.state.store.backend_name,
                "feed_subscribers": app.state.feed.subscriber_count(),
            },
            trace_id_from_request(request),
        )

    app.include_router(stream_routes.router)
    app.include_router(complaints_routes.router)

    return app
