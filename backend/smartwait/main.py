from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from starlette.middleware.base import BaseHTTPMiddleware
import structlog
import time

from smartwait import __version__
from smartwait.api.routes import health, queue, staff
from smartwait.core.config import AppConstants, Settings, get_settings
from smartwait.core.exceptions import QueueError
from smartwait.services.container import ServiceContainer
from smartwait.utils.logger import bind_correlation_id, clear_log_context, setup_logging

logger = structlog.get_logger(__name__)

# Prometheus metrics
REQUEST_COUNT = Counter(
    'smartwait_http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status_code']
)
REQUEST_DURATION = Histogram(
    'smartwait_http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint']
)
QUEUE_ERRORS = Counter(
    'smartwait_queue_errors_total',
    'Queue operation errors returned to clients',
    ['code']
)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Middleware to collect Prometheus metrics"""

    async def dispatch(self, request: Request, call_next) -> Response:
        start_time = time.time()

        response = await call_next(request)

        # Route template keeps patient ids out of label values
        route = request.scope.get("route")
        endpoint = getattr(route, "path", request.url.path)
        duration = time.time() - start_time

        REQUEST_COUNT.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code)
        ).inc()

        REQUEST_DURATION.labels(
            method=request.method,
            endpoint=endpoint
        ).observe(duration)

        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for structured request/response logging"""

    async def dispatch(self, request: Request, call_next) -> Response:
        start_time = time.time()

        # Generate correlation ID for request tracing
        correlation_id = request.headers.get("X-Correlation-ID", f"req-{int(time.time()*1000)}")
        clear_log_context()
        bind_correlation_id(correlation_id)

        logger.info(
            "Request started",
            method=request.method,
            path=request.url.path,
            client_host=request.client.host if request.client else "unknown"
        )

        try:
            response = await call_next(request)

            duration = time.time() - start_time
            logger.info(
                "Request completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration=f"{duration:.4f}s"
            )

            response.headers["X-Correlation-ID"] = correlation_id
            return response

        except Exception as exc:
            duration = time.time() - start_time
            logger.error(
                "Request failed",
                method=request.method,
                path=request.url.path,
                duration=f"{duration:.4f}s",
                error=str(exc),
                exc_info=True
            )
            raise


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    settings: Settings = app.state.settings
    services: ServiceContainer = app.state.services

    logger.info("Starting SmartWait API", version=__version__)

    try:
        await services.start()
        logger.info(
            "API startup completed",
            environment=settings.ENVIRONMENT,
            debug=settings.DEBUG,
            dialect=services.db.dialect_name
        )
    except Exception as e:
        logger.error("Failed to start application", error=str(e), exc_info=True)
        raise

    yield  # Application runs here

    logger.info("Shutting down SmartWait API")

    try:
        await services.stop()
        logger.info("Application shutdown completed")
    except Exception as e:
        logger.error("Error during shutdown", error=str(e), exc_info=True)


async def queue_error_handler(request: Request, exc: QueueError) -> JSONResponse:
    """Translate queue errors into the JSON error body"""
    QUEUE_ERRORS.labels(code=exc.code).inc()
    logger.info(
        "Queue operation rejected",
        path=request.url.path,
        code=exc.code,
        message=exc.message
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies use the same error shape as queue validation"""
    fields = [
        {
            "field": ".".join(str(part) for part in error.get("loc", ()) if part != "body"),
            "message": error.get("msg", ""),
        }
        for error in exc.errors()
    ]
    message = "; ".join(f"{f['field']}: {f['message']}" for f in fields) or "Invalid request"
    QUEUE_ERRORS.labels(code="VALIDATION_ERROR").inc()

    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": {
                "code": "VALIDATION_ERROR",
                "message": message,
                "details": {"fields": fields},
            },
        },
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled exceptions"""
    correlation_id = request.headers.get("X-Correlation-ID", "unknown")

    logger.error(
        "Unhandled exception",
        path=request.url.path,
        method=request.method,
        error=str(exc),
        exc_info=True
    )

    settings: Settings = request.app.state.settings
    message = (
        "An unexpected error occurred. Please try again later."
        if settings.ENVIRONMENT == "production"
        else str(exc)
    )
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": {"code": "INTERNAL_ERROR", "message": message},
            "correlation_id": correlation_id,
        }
    )


def create_application(
    settings: Optional[Settings] = None,
    services: Optional[ServiceContainer] = None,
) -> FastAPI:
    """Factory function to create FastAPI application"""
    settings = settings or get_settings()
    setup_logging(settings)

    app = FastAPI(
        title="SmartWait API",
        description="Virtual waiting line with live positions and SMS updates",
        version=__version__,
        openapi_url=f"/api/{settings.API_VERSION}/openapi.json" if settings.DEBUG else None,
        docs_url="/docs" if settings.DEBUG else None,
        redoc_url="/redoc" if settings.DEBUG else None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.services = services or ServiceContainer(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Correlation-ID"]
    )

    app.add_middleware(LoggingMiddleware)
    if settings.PROMETHEUS_ENABLED:
        app.add_middleware(PrometheusMiddleware)

    app.add_exception_handler(QueueError, queue_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)

    prefix = f"/api/{settings.API_VERSION}"
    app.include_router(health.router, prefix=prefix, tags=["Health"])
    app.include_router(queue.router, prefix=prefix, tags=["Queue"])
    app.include_router(staff.router, prefix=prefix, tags=["Staff"])

    @app.get("/")
    async def root() -> Dict[str, Any]:
        """Root endpoint with API information"""
        return {
            "message": "SmartWait API",
            "service": AppConstants.SERVICE_NAME,
            "version": __version__,
            "environment": settings.ENVIRONMENT,
            "health_check": f"{prefix}/health",
            "checkin_endpoint": f"{prefix}/checkin",
        }

    @app.get("/metrics")
    async def metrics() -> Response:
        """Prometheus metrics endpoint"""
        if not settings.PROMETHEUS_ENABLED:
            return JSONResponse(
                status_code=404,
                content={"error": "Metrics endpoint is disabled"}
            )
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


def main():
    """Run the API with uvicorn"""
    settings = get_settings()

    uvicorn.run(
        "smartwait.main:create_application",
        factory=True,
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
        access_log=settings.DEBUG,
    )


if __name__ == "__main__":
    main()
