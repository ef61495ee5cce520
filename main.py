"""
TDX Knowledge Base Gateway - authenticated, cached access to TeamDynamix KB search and articles.
"""

import asyncio
import logging
import os
import platform
import resource
import sys
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, Path, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import Response

from config import Settings, load_settings
from cache import TTLCache
from cache_redis import RedisCache
from models import ArticleResponse, BatchArticlesResponse, HealthResponse, SearchResponse
import tdx_client as tdx
from tdx_client import TDXClient, initialize_tdx_client, cleanup_tdx_client
from knowledge_service import KnowledgeService, MAX_BATCH_SIZE
from auth import APIKeyAuth, auth_middleware
from rate_limiter import TokenBucketRateLimiter
from exceptions import (
    AuthError,
    TDXConnectionError,
    TDXServiceError,
    TDXTimeoutError,
)
import metrics

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

VERSION = "1.0.0"
START_TIME = time.time()

AVAILABLE_ENDPOINTS = [
    "GET /health",
    "GET /health/detailed",
    "GET /api/v1/search",
    "GET /api/v1/articles/:id",
    "GET /api/v1/articles?ids=1,2,3",
]

# Initialized during startup
settings: Optional[Settings] = None
cache = None
knowledge_service: Optional[KnowledgeService] = None
rate_limiter: Optional[TokenBucketRateLimiter] = None
auth: Optional[APIKeyAuth] = None

# Graceful shutdown: track in-flight requests
active_requests = 0
shutdown_event: Optional[asyncio.Event] = None
shutdown_timeout_sec = 10


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: load settings, connect cache and TDX client. Shutdown: drain and close."""
    global settings, cache, knowledge_service, rate_limiter, auth, shutdown_event

    shutdown_event = asyncio.Event()
    settings = load_settings()
    logging.getLogger().setLevel(settings.log_level)

    try:
        if settings.redis_url:
            cache = RedisCache(redis_url=settings.redis_url, ttl_seconds=settings.cache_ttl)
        else:
            cache = TTLCache(ttl_seconds=settings.cache_ttl, max_size=settings.cache_max_size)
        await cache.connect()

        client = await initialize_tdx_client(settings.tdx)
        knowledge_service = KnowledgeService(cache=cache, tdx_client=client)

        rate_limiter = TokenBucketRateLimiter(
            redis_client=getattr(cache, "client", None),
            max_requests=settings.rate_limit_max,
            window_seconds=settings.rate_limit_window_minutes * 60
        )
        auth = APIKeyAuth(settings, rate_limiter=rate_limiter)

        logger.info(f"TDX KB gateway started | environment={settings.environment} version={VERSION}")
    except (OSError, ConnectionError, ValueError) as e:
        logger.error(f"Startup failed: {e}")
        raise

    yield

    logger.info("Shutting down gracefully...")
    shutdown_event.set()

    start_shutdown = time.time()
    while active_requests > 0 and time.time() - start_shutdown < shutdown_timeout_sec:
        logger.info(f"Waiting for {active_requests} active request(s) to complete...")
        await asyncio.sleep(0.1)

    if active_requests > 0:
        logger.warning(f"Shutdown timeout: {active_requests} request(s) still active after {shutdown_timeout_sec}s")

    await cleanup_tdx_client()
    await cache.disconnect()
    logger.info("TDX KB gateway shut down")


app = FastAPI(
    title="TDX Knowledge Base Gateway",
    description="Authenticated, cached access to TeamDynamix knowledge base search and articles",
    version=VERSION,
    lifespan=lifespan,
    swagger_ui_parameters={"persistAuthorization": True}
)


def custom_openapi():
    if app.openapi_schema:
        return app.openapi_schema
    openapi_schema = get_openapi(
        title=app.title,
        version=app.version,
        description=app.description,
        routes=app.routes,
    )
    openapi_schema.setdefault("components", {})["securitySchemes"] = {
        "APIKeyHeader": {"type": "apiKey", "in": "header", "name": "X-API-Key"}
    }
    openapi_schema["security"] = [{"APIKeyHeader": []}]
    app.openapi_schema = openapi_schema
    return app.openapi_schema

app.openapi = custom_openapi


# Dependencies (overridable in tests)

def get_knowledge_service() -> KnowledgeService:
    return knowledge_service


def get_tdx_client() -> TDXClient:
    return tdx.tdx_client


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _error_body(request: Request, error: str, message: str, **extra) -> dict:
    body = {"error": error, "message": message, "timestamp": _now(), "path": request.url.path}
    body.update(extra)
    return body


def _is_development() -> bool:
    return settings.is_development if settings else True


# Middleware: the last one registered runs first

@app.middleware("http")
async def authentication_middleware(request: Request, call_next):
    """Rate limit and authenticate /api/* requests."""
    return await auth_middleware(request, call_next, auth)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log method, path and latency; record request metrics; refuse work during shutdown."""
    global active_requests

    if shutdown_event and shutdown_event.is_set():
        logger.warning(f"Rejecting request during shutdown: {request.method} {request.url.path}")
        return JSONResponse(status_code=503, content={"error": "Service Unavailable", "message": "Server is shutting down"})

    active_requests += 1
    start_time = time.time()

    logger.info(f"→ {request.method} {request.url.path}")

    try:
        response = await call_next(request)
    finally:
        active_requests -= 1

    latency_seconds = time.time() - start_time
    logger.info(f"← {response.status_code} | {latency_seconds * 1000:.1f}ms")

    route = request.scope.get("route")
    metrics.record_request(
        endpoint=getattr(route, "path", None) or "unmatched",
        status=response.status_code,
        duration_seconds=latency_seconds
    )

    return response


app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(load_settings().cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# EXCEPTION HANDLERS: map domain exceptions to HTTP responses

@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Invalid path/query parameters -> 400."""
    details = [
        {"loc": list(error.get("loc", [])), "msg": error.get("msg", ""), "type": error.get("type", "")}
        for error in exc.errors()
    ]
    logger.warning(f"Validation error on {request.url.path}: {details}")
    return JSONResponse(status_code=400, content={"error": "Validation Error", "details": details})


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        return JSONResponse(
            status_code=404,
            content={
                "error": "Not Found",
                "message": f"Cannot {request.method} {request.url.path}",
                "availableEndpoints": AVAILABLE_ENDPOINTS,
            }
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, "Error", str(exc.detail)),
        headers=getattr(exc, "headers", None)
    )


@app.exception_handler(TDXServiceError)
async def tdx_service_error_handler(request: Request, exc: TDXServiceError):
    """
    TDX call failed (HTTP error, network error or timeout).

    Status: 504 on timeout, otherwise 502. The caller never sees the
    upstream status directly; it is included in development only.
    """
    if isinstance(exc, TDXTimeoutError):
        status_code, error, message = 504, "Gateway Timeout", "Request to TeamDynamix timed out"
    else:
        status_code, error, message = 502, "TDX Service Error", "Failed to communicate with TeamDynamix"

    logger.error(f"TDX service error: {exc} | upstream_status={exc.upstream_status} cause={exc.cause!r}")

    extra = {}
    if _is_development():
        extra = {
            "details": exc.message,
            "upstream_status": exc.upstream_status,
            "upstream_status_text": exc.upstream_status_text,
            "original_error": str(exc.cause) if exc.cause else None,
        }
    return JSONResponse(status_code=status_code, content=_error_body(request, error, message, **extra))


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError):
    """Gateway cannot authenticate to TDX (misconfiguration or failed login) -> 500."""
    logger.error(f"TDX authentication error: {exc}")
    extra = {"details": exc.message} if _is_development() else {}
    return JSONResponse(
        status_code=500,
        content=_error_body(request, "TDX Configuration Error", "Unable to authenticate with TeamDynamix", **extra)
    )


@app.exception_handler(TDXConnectionError)
async def tdx_connection_error_handler(request: Request, exc: TDXConnectionError):
    logger.error(f"TDX connection error: {exc}")
    return JSONResponse(
        status_code=503,
        content=_error_body(request, "Service Unavailable", "Unable to connect to TeamDynamix")
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Unhandled exception - a bug if it shows up in logs."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    extra = {"details": str(exc)} if _is_development() else {}
    return JSONResponse(
        status_code=500,
        content=_error_body(request, "Internal Server Error", "An unexpected error occurred", **extra)
    )


# ROUTES

@app.get("/", tags=["health"])
async def root() -> dict:
    """Service description."""
    return {
        "name": "TDX Knowledge Base Gateway",
        "version": VERSION,
        "status": "running",
        "endpoints": {
            "health": "/health",
            "search": "/api/v1/search",
            "articles": "/api/v1/articles/{id}",
            "metrics": "/metrics",
        },
    }


def _base_health() -> dict:
    return {
        "status": "OK",
        "timestamp": _now(),
        "uptime": round(time.time() - START_TIME, 3),
        "environment": settings.environment if settings else "development",
        "version": VERSION,
        "services": {"api": "OK", "tdx": "CHECKING", "cache": "OK"},
    }


@app.get("/health", response_model=HealthResponse, tags=["health"])
async def health_check(client: TDXClient = Depends(get_tdx_client)):
    """Health check including a TDX connectivity probe (503 when TDX is unreachable)."""
    health = _base_health()

    try:
        await client.test_connection()
        health["services"]["tdx"] = "OK"
        logger.info("Health check passed")
        return health
    except TDXConnectionError as e:
        health["status"] = "ERROR"
        health["services"]["tdx"] = "ERROR"
        health["error"] = str(e)
        logger.error(f"Health check failed: {e}")
        return JSONResponse(status_code=503, content=health)


@app.get("/health/detailed", tags=["health"])
async def detailed_health_check(client: TDXClient = Depends(get_tdx_client)):
    """Health check with process and configuration details."""
    health = _base_health()
    max_rss_kb = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    health["system"] = {
        "platform": platform.platform(),
        "python_version": sys.version.split()[0],
        "pid": os.getpid(),
        "memory": {"max_rss": f"{round(max_rss_kb / 1024)} MB"},
    }
    if settings:
        health["configuration"] = {
            "port": settings.port,
            "rate_limit": {"window": settings.rate_limit_window_minutes, "max": settings.rate_limit_max},
            "cache": {
                "ttl": settings.cache_ttl,
                "max_size": settings.cache_max_size,
                "backend": "redis" if settings.redis_url else "memory",
            },
            "tdx": {"auth_method": client.auth_method, "timeout_ms": settings.tdx.timeout_ms},
        }

    try:
        health["tdx_details"] = await client.test_connection()
        health["services"]["tdx"] = "OK"
        logger.info("Detailed health check passed")
        return health
    except TDXConnectionError as e:
        health["status"] = "ERROR"
        health["services"]["tdx"] = "ERROR"
        health["error"] = {"message": str(e), "code": type(e.__cause__).__name__ if e.__cause__ else "UNKNOWN"}
        logger.error(f"Detailed health check failed: {e}")
        return JSONResponse(status_code=503, content=health)


@app.get("/api/v1/search", response_model=SearchResponse, tags=["knowledge base"])
async def search(
    query: str = Query(..., min_length=1, max_length=500, description="Search text"),
    category: Optional[str] = Query(None, max_length=100, description="TDX category id"),
    limit: int = Query(10, ge=1, le=50),
    offset: int = Query(0, ge=0),
    service: KnowledgeService = Depends(get_knowledge_service),
):
    """Search knowledge base articles (results cached briefly)."""
    query = query.strip()
    if not query:
        return JSONResponse(
            status_code=400,
            content={
                "error": "Validation Error",
                "details": [{"loc": ["query", "query"], "msg": "Query must be between 1 and 500 characters", "type": "string_too_short"}],
            }
        )
    category = category.strip() if category else None

    result, cached = await service.search(query, category=category or None, limit=limit, offset=offset)
    return {**result, "cached": cached, "timestamp": _now()}


@app.get("/api/v1/articles", response_model=BatchArticlesResponse, tags=["knowledge base"])
async def get_articles(
    request: Request,
    ids: Optional[str] = Query(None, description="Comma-separated article ids"),
    service: KnowledgeService = Depends(get_knowledge_service),
):
    """Fetch up to 20 articles at once; ids that cannot be resolved are omitted."""
    if not ids:
        return JSONResponse(status_code=400, content=_error_body(request, "Bad Request", "ids parameter is required"))

    article_ids = []
    for raw_id in ids.split(","):
        raw_id = raw_id.strip()
        article_id = int(raw_id) if raw_id.isascii() and raw_id.isdigit() else 0
        if article_id < 1:
            return JSONResponse(
                status_code=400,
                content=_error_body(request, "Bad Request", f"Invalid article ID: {raw_id}")
            )
        article_ids.append(article_id)

    if len(article_ids) > MAX_BATCH_SIZE:
        return JSONResponse(
            status_code=400,
            content=_error_body(request, "Bad Request", f"Maximum {MAX_BATCH_SIZE} articles can be requested at once")
        )

    articles = await service.get_articles(article_ids)
    return {
        "articles": articles,
        "requested_count": len(article_ids),
        "found_count": len(articles),
        "timestamp": _now(),
    }


@app.get("/api/v1/articles/{article_id}", response_model=ArticleResponse, tags=["knowledge base"])
async def get_article(
    article_id: int = Path(..., ge=1, description="TDX article id"),
    service: KnowledgeService = Depends(get_knowledge_service),
):
    """Fetch one knowledge base article."""
    article, cached = await service.get_article(article_id)

    if article is None:
        return JSONResponse(
            status_code=404,
            content={"error": "Not Found", "message": f"Article with ID {article_id} not found"}
        )

    return {**article, "cached": cached, "timestamp": _now()}


@app.get("/api/v1/cache/stats", tags=["admin"])
async def cache_stats(request: Request, service: KnowledgeService = Depends(get_knowledge_service)) -> dict:
    """Cache statistics. ADMIN ONLY."""
    auth.require_admin(request)
    return await service.cache_stats()


@app.delete("/api/v1/cache", tags=["admin"])
async def clear_cache(
    request: Request,
    kind: Optional[str] = Query(None, pattern="^(article|search)$"),
    service: KnowledgeService = Depends(get_knowledge_service),
) -> dict:
    """Invalidate cached articles, searches, or everything. ADMIN ONLY."""
    auth.require_admin(request)
    deleted = await service.invalidate(kind)
    logger.info(f"Cache invalidated | kind={kind or 'all'} deleted={deleted}")
    return {"status": "success", "deleted_keys": deleted}


@app.delete("/api/v1/cache/articles/{article_id}", tags=["admin"])
async def invalidate_article(
    request: Request,
    article_id: int = Path(..., ge=1, description="TDX article id"),
    service: KnowledgeService = Depends(get_knowledge_service),
) -> dict:
    """Drop one cached article so the next read goes to TDX. ADMIN ONLY."""
    auth.require_admin(request)
    deleted = await service.invalidate_article(article_id)
    return {"status": "success", "deleted_keys": 1 if deleted else 0}


@app.get("/metrics", tags=["monitoring"])
async def prometheus_metrics() -> Response:
    """Prometheus metrics endpoint (text format)."""
    return Response(content=generate_latest(metrics.REGISTRY), media_type=CONTENT_TYPE_LATEST)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=load_settings().port, log_level="info")
