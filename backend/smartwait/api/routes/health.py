from typing import Any, Dict
import asyncio
import time

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
import structlog

from smartwait import __version__
from smartwait.api.dependencies import get_correlation_id, get_services
from smartwait.core.config import AppConstants
from smartwait.core.database import check_db_health
from smartwait.services.container import ServiceContainer
from smartwait.services.event_publisher import RedisEventPublisher
from smartwait.utils.clock import utcnow

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.get(
    "/health",
    summary="Basic Health Check",
    description="Basic health check endpoint for load balancers and monitoring"
)
async def health_check(
    services: ServiceContainer = Depends(get_services)
):
    result = await services.queue.health_check()
    body = {
        "status": "healthy" if result["healthy"] else "unhealthy",
        "message": result["message"],
        "timestamp": utcnow().isoformat(),
        "version": __version__,
        "service": AppConstants.SERVICE_NAME,
    }
    if not result["healthy"]:
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body)
    return body


async def _check_redis_health(services: ServiceContainer) -> Dict[str, Any]:
    publisher = services.publisher
    if not isinstance(publisher, RedisEventPublisher):
        return {"status": "healthy", "message": "Event broadcasting disabled"}
    if await publisher.ping():
        return {"status": "healthy", "message": "Redis reachable"}
    return {"status": "unhealthy", "message": "Redis ping failed"}


async def _check_delivery_health(services: ServiceContainer) -> Dict[str, Any]:
    stats = await services.notifications.get_delivery_stats(hours=1)
    worker_ok = services.worker_running or not services.settings.notifications.WORKER_ENABLED
    return {
        "status": "healthy" if worker_ok else "unhealthy",
        "transport": services.transport.name,
        "worker_running": services.worker_running,
        "pending": stats.pending,
        "failed_last_hour": stats.failed,
    }


@router.get(
    "/health/detailed",
    summary="Detailed Health Check",
    description="Health of the database, event channel and SMS delivery"
)
async def detailed_health_check(
    correlation_id: str = Depends(get_correlation_id),
    services: ServiceContainer = Depends(get_services)
):
    start_time = time.time()

    health_results: Dict[str, Any] = {
        "overall_status": "healthy",
        "timestamp": utcnow().isoformat(),
        "correlation_id": correlation_id,
        "components": {},
        "warnings": [],
        "errors": [],
    }

    checks = {
        "database": check_db_health(services.db),
        "redis": _check_redis_health(services),
        "notifications": _check_delivery_health(services),
    }

    for component, check in checks.items():
        try:
            health_results["components"][component] = await asyncio.wait_for(
                check,
                timeout=AppConstants.HEALTH_CHECK_TIMEOUT
            )
        except asyncio.TimeoutError:
            health_results["components"][component] = {
                "status": "unhealthy",
                "message": "Health check timed out",
            }
        except Exception as e:
            health_results["components"][component] = {
                "status": "unhealthy",
                "message": f"Health check failed: {str(e)}",
            }

    unhealthy_components = [
        name for name, result in health_results["components"].items()
        if result.get("status") != "healthy"
    ]
    critical_unhealthy = [
        name for name in unhealthy_components
        if name in AppConstants.CRITICAL_SERVICES
    ]

    if critical_unhealthy:
        health_results["overall_status"] = "unhealthy"
        health_results["errors"].append(f"Critical services unhealthy: {critical_unhealthy}")
    elif unhealthy_components:
        health_results["overall_status"] = "degraded"
        health_results["warnings"].append(f"Non-critical services unhealthy: {unhealthy_components}")

    duration = time.time() - start_time
    health_results["duration"] = f"{duration:.4f}s"

    logger.info(
        "Detailed health check completed",
        correlation_id=correlation_id,
        overall_status=health_results["overall_status"],
        unhealthy_components=unhealthy_components
    )

    if health_results["overall_status"] == "unhealthy":
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=health_results
        )

    return health_results
