"""
HTTP API for the ENS gateway.

Thin FastAPI surface over the LookupOrchestrator. Responsibilities:
- Route parsing and JSON rendering
- Request IDs and access logging
- Per-client rate limiting
- Mapping typed gateway errors onto HTTP status codes
"""

import math
import secrets
import time
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .audit_logger import AuditLogger
from .config import ServerConfig
from .enums import ErrorCode, LogLevel
from .exceptions import (
    EnsGatewayError,
    NotFoundError,
    ProviderError,
    RateLimitError,
    ValidationError,
)
from .models import utc_timestamp
from .notifier import BlockNotifier
from .orchestrator import LookupOrchestrator
from .rate_limiter import RateLimiter


def status_for_error(error: EnsGatewayError) -> int:
    """HTTP status code for a gateway error."""
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, RateLimitError):
        return 429
    if isinstance(error, ProviderError):
        return 503
    return 500


def _request_id(request: Request) -> Optional[str]:
    return getattr(request.state, "request_id", None)


def error_response(request: Request, error: EnsGatewayError) -> JSONResponse:
    status_code = status_for_error(error)
    body = {
        "error": error.message if status_code != 500 else "Internal server error",
        "code": error.code,
        "request_id": _request_id(request),
        "timestamp": utc_timestamp(),
    }
    headers = {}
    if isinstance(error, RateLimitError):
        retry_after = int(error.details.get("retry_after", 0))
        body["retry_after"] = retry_after
        headers["Retry-After"] = str(retry_after)
    return JSONResponse(status_code=status_code, content=body, headers=headers)


def create_app(
    orchestrator: LookupOrchestrator,
    notifier: Optional[BlockNotifier] = None,
    rate_limiter: Optional[RateLimiter] = None,
    logger: Optional[AuditLogger] = None,
    server_config: Optional[ServerConfig] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        orchestrator: Lookup orchestrator serving every route
        notifier: Optional live block notifier (stats only)
        rate_limiter: Optional per-client rate limiter
        logger: Optional audit logger for access and error logs
        server_config: Binding used to advertise the WebSocket URL
    """
    server_config = server_config or ServerConfig()
    app = FastAPI(title="ENS Gateway", version=__version__)
    app.state.orchestrator = orchestrator
    app.state.notifier = notifier

    def log(level: LogLevel, message: str, data: Optional[dict] = None) -> None:
        if logger:
            logger.log(level, "HttpApi", message, data)

    async def call_route(request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            if logger:
                logger.log_error(
                    "HttpApi",
                    f"Error [{_request_id(request)}]: {e}",
                    error=e,
                    additional_data={"path": request.url.path},
                )
            return JSONResponse(status_code=500, content={
                "error": "Internal server error",
                "request_id": _request_id(request),
                "timestamp": utc_timestamp(),
            })

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request.state.request_id = secrets.token_hex(6)
        start_time = time.perf_counter()

        if rate_limiter is not None and rate_limiter.enabled:
            client_id = request.client.host if request.client else "unknown"
            status = rate_limiter.hit(client_id)
            if not status.allowed:
                response = error_response(request, RateLimitError(
                    code=ErrorCode.RATE_LIMITED.value,
                    message="Rate limit exceeded. Please try again later.",
                    details={"retry_after": math.ceil(status.wait_seconds)},
                ))
            else:
                response = await call_route(request, call_next)
            if status.limit is not None:
                response.headers["RateLimit-Limit"] = str(status.limit)
                response.headers["RateLimit-Remaining"] = str(status.remaining)
        else:
            response = await call_route(request, call_next)

        response.headers["X-Request-ID"] = request.state.request_id
        duration_ms = (time.perf_counter() - start_time) * 1000
        log(
            LogLevel.INFO,
            f"{request.method} {request.url.path} {response.status_code} {duration_ms:.2f}ms",
            {"request_id": request.state.request_id, "status": response.status_code},
        )
        return response

    @app.exception_handler(EnsGatewayError)
    async def gateway_error_handler(request: Request, error: EnsGatewayError):
        if status_for_error(error) >= 500 and logger:
            logger.log_error(
                "HttpApi",
                f"Error [{_request_id(request)}]: {error.message}",
                error=error,
                additional_data={"path": request.url.path},
            )
        return error_response(request, error)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, error: StarletteHTTPException):
        if error.status_code == 404:
            content = {
                "error": "Not found",
                "message": f"Route {request.method} {request.url.path} not found",
                "request_id": _request_id(request),
            }
        else:
            content = {"error": str(error.detail), "request_id": _request_id(request)}
        return JSONResponse(status_code=error.status_code, content=content)

    @app.get("/")
    async def index() -> dict:
        return {
            "name": "ENS Gateway",
            "version": __version__,
            "status": "online",
            "endpoints": {
                "resolve": "/resolve/{name}",
                "reverse": "/reverse/{address}",
                "avatar": "/avatar/{name}",
                "records": "/records/{name}",
                "batch": "/batch",
                "search": "/search/{query}",
                "stats": "/stats",
                "health": "/health",
            },
            "websocket": {
                "url": f"ws://localhost:{server_config.ws_port}",
                "features": ["live-blocks", "ens-updates"],
            },
        }

    @app.get("/health")
    async def health():
        try:
            return await orchestrator.health()
        except Exception as e:
            log(LogLevel.WARN, f"Health check failed: {e}")
            return JSONResponse(
                status_code=503,
                content={"status": "unhealthy", "error": getattr(e, "message", None) or str(e)},
            )

    @app.get("/resolve/{name}")
    async def resolve(name: str) -> dict:
        return (await orchestrator.resolve(name)).to_dict()

    @app.get("/reverse/{address}")
    async def reverse(address: str) -> dict:
        return (await orchestrator.reverse(address)).to_dict()

    @app.get("/avatar/{name}")
    async def avatar(name: str) -> dict:
        return (await orchestrator.avatar(name)).to_dict()

    @app.get("/records/{name}")
    async def records(name: str) -> dict:
        return (await orchestrator.records(name)).to_dict()

    @app.post("/batch")
    async def batch(request: Request) -> dict:
        try:
            payload = await request.json()
        except ValueError:
            raise ValidationError(
                code=ErrorCode.INVALID_BATCH.value,
                message="Invalid batch request format",
            ) from None
        operations = payload.get("operations") if isinstance(payload, dict) else None
        entries = await orchestrator.batch(operations)
        return {"results": [entry.to_dict() for entry in entries]}

    @app.get("/search/{query}")
    async def search(query: str) -> dict:
        return (await orchestrator.search(query)).to_dict()

    @app.get("/stats")
    async def stats() -> dict:
        data = orchestrator.stats()
        if notifier is not None:
            data["websocket"] = notifier.get_stats()
        return data

    return app
