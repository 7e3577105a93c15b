"""
FastAPI application main module.

One process hosts everything: the lifespan builds the job services (store +
background processor) and the market data cache, endpoints reach them through
``app.state``, and shutdown stops the poll loop.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
import time
import uuid
import os
from contextlib import asynccontextmanager
from advisor.api.v1 import api_router
from advisor.config import JOB_STORE_SETTINGS, LOG_SETTINGS
from advisor.jobs import JobNotFoundError, JobServices
from advisor.services.market_data import BudgetExhaustedError, MarketDataError, create_market_data_cache
from advisor.services.recommendation_engine import RecommendationEngine
from advisor.utils import setup_logging, get_logger, log_performance

setup_logging(
    log_level=str(LOG_SETTINGS["level"]),
    log_file=LOG_SETTINGS["file"],
    enable_console=True
)

logger = get_logger(__name__)

SERVICE_NAME = "investment-advisor"
VERSION = "1.0.0"

# Domain errors that escape an endpoint; most specific class first.
ERROR_STATUS: list[tuple[type[Exception], int]] = [
    (JobNotFoundError, 404),
    (BudgetExhaustedError, 429),
    (MarketDataError, 502),
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    market_data = create_market_data_cache()
    services = JobServices(RecommendationEngine(market_data))
    app.state.market_data = market_data  # type: ignore[attr-defined]
    app.state.job_services = services  # type: ignore[attr-defined]

    services.ensure_started()
    logger.info(
        "Application started",
        store_backend=services.store.backend,
        configured_backend=JOB_STORE_SETTINGS["backend"],
        market_data_budget=market_data.budget.limit
    )
    try:
        yield
    finally:
        await services.shutdown()
        logger.info("Application stopped", processed=services.processor.processed_count)

app = FastAPI(
    title="Investment Advisor API",
    description="""
    Investment recommendations generated by a background job processor.

    ## Flow
    * `POST /api/v1/recommendations` queues a run and returns a `requestId`
    * `GET /api/v1/recommendations/{requestId}` polls until `completed` or `failed`

    ## Market data
    Quotes, news and historical prices are cached and bounded by a daily
    upstream call budget. Expired data is served, flagged `expired`, when the
    budget is spent or the provider is down.
    """,
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/api/v1/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(GZipMiddleware, minimum_size=1000)


@app.middleware("http")
async def request_context(request: Request, call_next):
    """Stamp a request id, time the request and log its outcome."""
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    request.state.request_id = request_id
    started = time.perf_counter()

    response = await call_next(request)

    elapsed_ms = (time.perf_counter() - started) * 1000
    response.headers["X-Request-ID"] = request_id
    response.headers["X-Process-Time"] = f"{elapsed_ms:.2f}"
    logger.info(
        f"{request.method} {request.url.path} -> {response.status_code}",
        request_id=request_id,
        duration_ms=round(elapsed_ms, 2)
    )
    if elapsed_ms > 1000:
        log_performance("slow_request", elapsed_ms, {"path": request.url.path, "request_id": request_id})
    return response


def _error_response(request: Request, status_code: int, message, **extra) -> JSONResponse:
    body = {
        "success": False,
        "message": message,
        "request_id": getattr(request.state, "request_id", None),
    }
    body.update(extra)
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(RequestValidationError)
async def on_validation_error(request: Request, exc: RequestValidationError):
    logger.warning("Rejected invalid request", path=request.url.path, errors=len(exc.errors()))
    return _error_response(request, 422, "Request validation failed", details=exc.errors())


@app.exception_handler(StarletteHTTPException)
async def on_http_error(request: Request, exc: StarletteHTTPException):
    if exc.status_code >= 500:
        logger.error("HTTP error", path=request.url.path, status_code=exc.status_code, detail=exc.detail)
    return _error_response(request, exc.status_code, exc.detail)


async def on_domain_error(request: Request, exc: Exception):
    status_code = next(code for cls, code in ERROR_STATUS if isinstance(exc, cls))
    logger.warning(
        "Request failed",
        path=request.url.path,
        status_code=status_code,
        error_type=type(exc).__name__,
        error=str(exc)
    )
    return _error_response(request, status_code, str(exc))

for _cls, _ in ERROR_STATUS:
    app.add_exception_handler(_cls, on_domain_error)


@app.exception_handler(Exception)
async def on_unexpected_error(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        path=request.url.path,
        method=request.method,
        error_type=type(exc).__name__,
        error=str(exc),
        request_id=getattr(request.state, "request_id", None),
        exc_info=True
    )
    return _error_response(request, 500, "Internal server error")


@app.get("/health", tags=["health"], summary="Liveness probe")
async def health_check(request: Request):
    services = getattr(request.app.state, "job_services", None)
    running = services is not None and services.processor.is_active
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": VERSION,
        "timestamp": time.time(),
        "processor": "running" if running else "stopped",
    }


def _store_check(services: JobServices) -> tuple[dict, int, bool]:
    """(report, pending count, ok) for the job store."""
    store = services.store
    report = {"backend": store.backend, "configured_backend": JOB_STORE_SETTINGS["backend"]}
    try:
        reachable = store.ping()
        pending = store.count_by_status().get("pending", 0)
    except Exception as e:
        report["status"] = f"unhealthy: {e}"
        return report, 0, False
    report["status"] = "healthy" if reachable else "unavailable"
    # a memory fallback keeps serving but loses durability
    return report, pending, reachable and store.backend == JOB_STORE_SETTINGS["backend"]


@app.get("/health/detailed", tags=["health"], summary="Job store, processor and market data status")
async def detailed_health_check(request: Request):
    checks: dict = {}
    degraded = False

    services = getattr(request.app.state, "job_services", None)
    if services is None:
        checks["job_services"] = "not initialized"
        degraded = True
    else:
        checks["job_store"], pending, store_ok = _store_check(services)
        checks["processor"] = services.processor.health(pending_count=pending)
        degraded = degraded or not store_ok or not checks["processor"]["healthy"]

    market_data = getattr(request.app.state, "market_data", None)
    if market_data is not None:
        stats = market_data.stats()
        checks["market_data"] = {
            k: stats[k] for k in ("size", "daily_call_count", "remaining_calls", "status")
        }
        degraded = degraded or stats["status"] == "critical"

    return {
        "status": "degraded" if degraded else "healthy",
        "service": SERVICE_NAME,
        "version": VERSION,
        "timestamp": time.time(),
        "checks": checks,
    }


@app.get("/", tags=["root"])
async def root():
    return {
        "message": "Investment Advisor API",
        "version": VERSION,
        "documentation": "/docs",
        "health_check": "/health",
        "api_base": "/api/v1"
    }

app.include_router(api_router, prefix="/api/v1")

if __name__ == "__main__":
    import uvicorn

    logger.info("Starting development server")
    uvicorn.run(
        "advisor.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=True,
        reload_dirs=["advisor"],
        log_level="info",
        access_log=True
    )
