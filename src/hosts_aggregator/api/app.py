"""
FastAPI application factory.
"""

import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .. import __version__
from ..audit_logger import AuditLogger
from ..config import AppConfig
from ..exceptions import HostsAggregatorError
from ..service import AggregatorService
from .models import error
from .routes import aggregate, hosts, sources

COMPONENT = "api"


def create_app(
    config: Optional[AppConfig] = None,
    service: Optional[AggregatorService] = None,
    logger: Optional[AuditLogger] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        config: Application configuration, used when no service is given
        service: Pre-built service (tests inject one with a mock transport)
        logger: Audit logger, defaults to the service's logger

    Returns:
        Configured FastAPI application
    """
    if service is None:
        config = config or AppConfig()
        logger = logger or AuditLogger.from_config(config.logging)
        service = AggregatorService(config, logger=logger)
    logger = logger or service.logger

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        loaded = service.load()
        if logger:
            logger.info(COMPONENT, "Hosts aggregator API starting up", {
                "state_loaded": loaded,
                "sources": len(service.list_sources()),
            })
        service.start_scheduler()
        yield
        await service.close()
        if logger:
            logger.info(COMPONENT, "Hosts aggregator API shut down", {})

    app = FastAPI(
        title="Hosts Aggregator API",
        description="Aggregates remote block and allow lists into one unified hosts file.",
        version=__version__,
        lifespan=lifespan,
        openapi_tags=[
            {"name": "sources", "description": "Source registration, health and fetch logs"},
            {"name": "aggregate", "description": "Aggregation passes and unified file downloads"},
            {"name": "hosts", "description": "Aggregated host entries"},
        ],
    )
    app.state.service = service

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.perf_counter()
        response = await call_next(request)
        if logger:
            logger.debug(COMPONENT, "HTTP request", {
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": round((time.perf_counter() - start_time) * 1000, 2),
            })
        return response

    @app.exception_handler(HostsAggregatorError)
    async def aggregator_error_handler(request: Request, exc: HostsAggregatorError):
        if exc.http_status >= 500 and logger:
            logger.log_error(COMPONENT, f"{request.method} {request.url.path} failed", error=exc)
        return JSONResponse(status_code=exc.http_status, content=error(exc.message))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        messages = []
        for err in exc.errors():
            location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
            messages.append(f"{location}: {err.get('msg')}" if location else str(err.get("msg")))
        return JSONResponse(status_code=400, content=error(", ".join(messages) or "Validation failed"))

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(status_code=exc.status_code, content=error(str(exc.detail)))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        if logger:
            logger.log_error(COMPONENT, f"Unhandled exception on {request.url.path}", error=exc)
        return JSONResponse(status_code=500, content=error("Internal server error"))

    app.include_router(sources.router, tags=["sources"])
    app.include_router(aggregate.router, tags=["aggregate"])
    app.include_router(hosts.router, tags=["hosts"])

    return app
