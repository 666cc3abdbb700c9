from typing import Any, Dict
from uuid import UUID

from fastapi import APIRouter, Depends, status
import structlog

from smartwait.api.dependencies import get_correlation_id, get_queue_service
from smartwait.schemas.queue import CheckInRequest
from smartwait.services.queue_service import QueueService

logger = structlog.get_logger(__name__)
router = APIRouter()


@router.post(
    "/checkin",
    status_code=status.HTTP_201_CREATED,
    summary="Patient Check-in",
    description="Join the waiting line and receive a position and estimated wait"
)
async def check_in(
    request: CheckInRequest,
    correlation_id: str = Depends(get_correlation_id),
    queue_service: QueueService = Depends(get_queue_service)
) -> Dict[str, Any]:
    result = await queue_service.check_in(request.name, request.phone, request.appointment_time)

    logger.info(
        "Check-in request completed",
        correlation_id=correlation_id,
        patient_id=str(result.patient_id),
        position=result.position
    )

    return {
        "success": True,
        "data": {
            "patientId": str(result.patient_id),
            "position": result.position,
            "estimatedWait": result.estimated_wait_minutes,
        },
        "message": "Successfully checked in"
    }


@router.get(
    "/position/{patient_id}",
    summary="Queue Position",
    description="Current position, status and estimated wait for a patient"
)
async def get_position(
    patient_id: UUID,
    queue_service: QueueService = Depends(get_queue_service)
) -> Dict[str, Any]:
    view = await queue_service.get_position(patient_id)
    return {"success": True, "data": view.model_dump(mode="json")}


@router.get(
    "/status/{patient_id}",
    summary="Queue Status",
    description="Alias of the position lookup used by the status page"
)
async def get_status(
    patient_id: UUID,
    queue_service: QueueService = Depends(get_queue_service)
) -> Dict[str, Any]:
    return await get_position(patient_id, queue_service)


@router.get(
    "/queue",
    summary="Active Queue",
    description="Everyone currently waiting or called, ordered by position"
)
async def get_queue(
    queue_service: QueueService = Depends(get_queue_service)
) -> Dict[str, Any]:
    entries = await queue_service.get_queue()
    return {
        "success": True,
        "data": [entry.model_dump(mode="json") for entry in entries],
        "total": len(entries),
    }


@router.get(
    "/queue/stats",
    summary="Queue Statistics",
    description="Active counts and wait figures for recent visits"
)
async def get_queue_stats(
    queue_service: QueueService = Depends(get_queue_service)
) -> Dict[str, Any]:
    stats = await queue_service.stats()
    return {"success": True, "data": stats.model_dump()}
