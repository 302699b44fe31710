from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from psycopg import errors as pg_errors
import time
import uuid
from datetime import datetime, timezone
from .routers.products import router as products_router
from .routers.categories import router as categories_router
from .routers.inventory import router as inventory_router
from .routers.sales import router as sales_router
from .routers.receptions import router as receptions_router
from .config import settings
from .db import get_conn, close_pools, open_pools
from .errors import (
    BusinessRuleError,
    DocumentNotMutable,
    InsufficientStock,
    InvariantViolation,
    NotFoundError,
    TransientError,
)
from .logs import json_log

app = FastAPI(title="Retail Back-office API", version=settings.api_version)
STARTED_AT_UTC = datetime.now(timezone.utc)


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


def business_status_code(exc: BusinessRuleError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, (DocumentNotMutable, InsufficientStock)):
        return 409
    return 400


@app.exception_handler(BusinessRuleError)
def _business_rule_error(_req: Request, exc: BusinessRuleError):
    return JSONResponse(status_code=business_status_code(exc), content=exc.to_dict())


@app.exception_handler(TransientError)
def _transient_error(req: Request, exc: TransientError):
    json_log("warning", "http.request.busy", request_id=_current_request_id(req), path=req.url.path, code=exc.code)
    content = exc.to_dict()
    content["retryable"] = True
    return JSONResponse(status_code=503, content=content, headers={"Retry-After": "1"})


@app.exception_handler(InvariantViolation)
def _invariant_violation(req: Request, exc: InvariantViolation):
    rid = _current_request_id(req)
    json_log(
        "error",
        "http.request.invariant_violation",
        request_id=rid,
        method=req.method,
        path=req.url.path,
        code=exc.code,
        error=exc.message,
        context=exc.context,
    )
    content = {"detail": "internal error", "request_id": rid}
    if settings.env in {"local", "dev"}:
        content.update(exc.to_dict())
    return JSONResponse(status_code=500, content=content)


# Map common DB constraint errors to 4xx. These are backstops: the workflows
# check the same rules first and raise typed errors.
@app.exception_handler(pg_errors.ForeignKeyViolation)
def _foreign_key_violation(_req: Request, exc: Exception):
    content = {"detail": "invalid reference"}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return JSONResponse(status_code=400, content=content)


@app.exception_handler(pg_errors.UniqueViolation)
def _unique_violation(_req: Request, exc: Exception):
    content = {"detail": "conflict"}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return JSONResponse(status_code=409, content=content)


@app.exception_handler(pg_errors.DeadlockDetected)
@app.exception_handler(pg_errors.SerializationFailure)
def _db_conflict(req: Request, exc: Exception):
    json_log("warning", "http.request.busy", request_id=_current_request_id(req), path=req.url.path, code="transaction_conflict")
    content = {"detail": "transaction_conflict", "retryable": True}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return JSONResponse(status_code=503, content=content, headers={"Retry-After": "1"})


@app.exception_handler(pg_errors.CheckViolation)
def _check_violation(_req: Request, exc: Exception):
    content = {"detail": "constraint violation"}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return JSONResponse(status_code=400, content=content)


@app.exception_handler(RequestValidationError)
def _request_validation_error(_req: Request, exc: Exception):
    content = {"detail": "validation failed"}
    if settings.env in {"local", "dev"} and hasattr(exc, "errors"):
        content["errors"] = exc.errors()
    return JSONResponse(status_code=422, content=content)


@app.exception_handler(Exception)
def _unhandled_exception(req: Request, exc: Exception):
    rid = _current_request_id(req)
    json_log(
        "error",
        "http.request.unhandled",
        request_id=rid,
        method=req.method,
        path=req.url.path,
        error=str(exc),
    )
    content = {"detail": "internal error", "request_id": rid}
    if settings.env in {"local", "dev"}:
        content["error"] = str(exc)
    return JSONResponse(status_code=500, content=content)


# Correlation id + basic structured request logging.
@app.middleware("http")
async def _request_logging(request: Request, call_next):
    rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
    request.state.request_id = rid
    started = time.time()
    path = request.url.path
    method = request.method
    client_ip = (request.client.host if request.client else None)

    try:
        response = await call_next(request)
    except Exception as exc:
        dur_ms = int((time.time() - started) * 1000)
        json_log(
            "error",
            "http.request.error",
            request_id=rid,
            method=method,
            path=path,
            client_ip=client_ip,
            duration_ms=dur_ms,
            error=str(exc),
        )
        raise

    response.headers["X-Request-Id"] = rid
    response.headers["X-Content-Type-Options"] = "nosniff"
    if path != "/health":
        dur_ms = int((time.time() - started) * 1000)
        json_log(
            "info",
            "http.request",
            request_id=rid,
            method=method,
            path=path,
            status_code=response.status_code,
            client_ip=client_ip,
            duration_ms=dur_ms,
        )
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.include_router(products_router)
app.include_router(categories_router)
app.include_router(inventory_router)
app.include_router(sales_router)
app.include_router(receptions_router)


def _db_health():
    try:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 AS ok")
                cur.fetchone()
        return True, None
    except Exception as exc:
        return False, str(exc)


@app.on_event("startup")
def _startup():
    open_pools()
    ok, err = _db_health()
    if ok:
        json_log("info", "startup.db_connected", env=settings.env, version=settings.api_version)
    else:
        json_log("warning", "startup.db_probe_failed", env=settings.env, error=err)


@app.on_event("shutdown")
def _shutdown():
    close_pools()


@app.get("/health")
def health(req: Request):
    request_id = _current_request_id(req)
    ok, err = _db_health()
    content = {
        "status": "ok" if ok else "degraded",
        "env": settings.env,
        "db": "ok" if ok else "down",
        "cache": "on" if settings.redis_url else "off",
        "service": "backoffice-backend",
        "version": settings.api_version,
        "started_at": STARTED_AT_UTC.isoformat(),
        "request_id": request_id,
    }
    if not ok:
        if settings.env in {"local", "dev"}:
            content["error"] = err
        return JSONResponse(status_code=503, content=content)
    return content
