import logging
import os
import time
from contextlib import asynccontextmanager
from uuid import uuid4

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from marketplace.api.admin import router as admin_router
from marketplace.api.auth import router as auth_router
from marketplace.api.categories import router as categories_router
from marketplace.api.deps import require_permission
from marketplace.api.items import router as items_router
from marketplace.api.profiles import router as profiles_router
from marketplace.core.api_response import (
    error_response_payload,
    get_request_id,
    marketplace_error_payload,
    success_response_payload,
)
from marketplace.core.errors import AuthFailed, MarketplaceError
from marketplace.core.metrics import increment_counter, prometheus_text, snapshot_metrics
from marketplace.core.owner_sync import get_runtime_owner_usernames, sync_owner_accounts
from marketplace.db import models  # noqa: F401
from marketplace.db.base import Base
from marketplace.db.session import SessionLocal, engine
from marketplace.services.state import ActorContext
from marketplace.store.sql import SqlKeyedStore

logger = logging.getLogger(__name__)
if not logging.getLogger().handlers:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "store", None) is None:
        Base.metadata.create_all(bind=engine)
        app.state.store = SqlKeyedStore(SessionLocal)
    owner_usernames = get_runtime_owner_usernames()
    if owner_usernames:
        await sync_owner_accounts(app.state.store, owner_usernames)
    yield


app = FastAPI(title="Marketplace API", lifespan=lifespan)
app.include_router(auth_router)
app.include_router(items_router)
app.include_router(categories_router)
app.include_router(profiles_router)
app.include_router(admin_router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid4().hex
    request.state.request_id = request_id
    started_at = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - started_at) * 1000
    response.headers["X-Request-ID"] = request_id
    if request.url.path not in {"/metrics", "/metrics/prometheus"}:
        increment_counter(
            "http_requests_total",
            method=request.method.upper(),
            status=str(response.status_code),
        )
    logger.info(
        "http_request request_id=%s method=%s path=%s status=%s duration_ms=%.2f",
        request_id,
        request.method,
        request.url.path,
        response.status_code,
        duration_ms,
    )
    return response


@app.exception_handler(MarketplaceError)
async def marketplace_exception_handler(request: Request, exc: MarketplaceError):
    increment_counter(
        "http_errors_total",
        code=str(exc.status_code),
        reason=exc.code,
        method=request.method.upper(),
    )
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthFailed) and exc.status_code == 401 else None
    return JSONResponse(
        status_code=exc.status_code,
        content=marketplace_error_payload(request, exc),
        headers=headers,
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    detail = exc.detail
    message = detail if isinstance(detail, str) else "Request failed"
    increment_counter(
        "http_errors_total",
        code=str(exc.status_code),
        reason="http",
        method=request.method.upper(),
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response_payload(
            request,
            code=f"http_{exc.status_code}",
            message=message,
            details=detail,
        ),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    increment_counter(
        "http_errors_total",
        code="422",
        reason="request_validation",
        method=request.method.upper(),
    )
    return JSONResponse(
        status_code=422,
        content=error_response_payload(
            request,
            code="validation_error",
            message="Validation error",
            details=exc.errors(),
        ),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    increment_counter(
        "http_errors_total",
        code="500",
        reason="internal",
        method=request.method.upper(),
    )
    logger.exception("Unhandled error request_id=%s", get_request_id(request), exc_info=exc)
    return JSONResponse(
        status_code=500,
        content=error_response_payload(
            request,
            code="internal_error",
            message="Internal server error",
        ),
    )


@app.get("/health")
def health(request: Request):
    return {"ok": True, "status": "ok", "request_id": get_request_id(request)}


@app.get("/metrics")
def metrics(
    request: Request,
    _viewer: ActorContext = Depends(require_permission("VIEW_ADMIN_DASHBOARD")),
):
    return success_response_payload(request, data={"counters": snapshot_metrics()})


@app.get("/metrics/prometheus")
def metrics_prometheus():
    return PlainTextResponse(content=prometheus_text(), media_type="text/plain; version=0.0.4; charset=utf-8")
