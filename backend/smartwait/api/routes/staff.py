from typing import Any, Dict

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
import structlog

from smartwait.api.dependencies import (
    get_correlation_id,
    get_notification_service,
    get_queue_service,
)
from smartwait.schemas.notification import ResendRequest
from smartwait.schemas.queue import PatientActionRequest
from smartwait.services.notification_service import NotificationService
from smartwait.services.queue_service import QueueService

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/staff")


@router.post(
    "/call-next",
    summary="Call Next Patient",
    description="Call the waiting patient with the lowest position"
)
async def call_next_patient(
    correlation_id: str = Depends(get_correlation_id),
    queue_service: QueueService = Depends(get_queue_service)
):
    result = await queue_service.call_next()

    if not result.success:
        return JSONResponse(
            status_code=404,
            content={
                "success": False,
                "error": {"code": "NO_PATIENTS_WAITING", "message": result.message},
            },
        )

    logger.info(
        "Staff called next patient",
        correlation_id=correlation_id,
        patient_id=str(result.patient.patient_id),
    )
    return {
        "success": True,
        "data": result.patient.model_dump(mode="json"),
        "message": result.message,
    }


@router.post(
    "/complete",
    summary="Complete Patient",
    description="Finish a patient's visit and move everyone behind them up"
)
async def complete_patient(
    request: PatientActionRequest,
    correlation_id: str = Depends(get_correlation_id),
    queue_service: QueueService = Depends(get_queue_service)
) -> Dict[str, Any]:
    entry = await queue_service.complete(request.patient_id)
    logger.info("Staff completed patient", correlation_id=correlation_id, patient_id=str(request.patient_id))
    return {
        "success": True,
        "data": entry.model_dump(mode="json"),
        "message": "Patient marked as completed",
    }


@router.post(
    "/no-show",
    summary="Mark No-show",
    description="Remove a patient who did not come to the desk"
)
async def mark_no_show(
    request: PatientActionRequest,
    correlation_id: str = Depends(get_correlation_id),
    queue_service: QueueService = Depends(get_queue_service)
) -> Dict[str, Any]:
    entry = await queue_service.mark_no_show(request.patient_id)
    logger.info("Staff marked no-show", correlation_id=correlation_id, patient_id=str(request.patient_id))
    return {
        "success": True,
        "data": entry.model_dump(mode="json"),
        "message": "Patient marked as no-show",
    }


@router.post(
    "/notify",
    summary="Re-send Notification",
    description="Send a message to an active patient immediately"
)
async def resend_notification(
    request: ResendRequest,
    correlation_id: str = Depends(get_correlation_id),
    queue_service: QueueService = Depends(get_queue_service)
) -> Dict[str, Any]:
    outcome = await queue_service.resend_notification(request.patient_id, request.kind)
    logger.info(
        "Staff re-sent notification",
        correlation_id=correlation_id,
        patient_id=str(request.patient_id),
        success=outcome.success,
    )
    return {"success": outcome.success, "data": outcome.model_dump(mode="json")}


@router.get(
    "/stats",
    summary="Staff Dashboard Statistics"
)
async def get_staff_stats(
    queue_service: QueueService = Depends(get_queue_service)
) -> Dict[str, Any]:
    stats = await queue_service.stats()
    return {"success": True, "data": stats.model_dump()}


@router.get(
    "/notifications/stats",
    summary="SMS Delivery Statistics"
)
async def get_notification_stats(
    hours: int = Query(24, ge=1, le=24 * 31, description="Look-back window in hours"),
    notification_service: NotificationService = Depends(get_notification_service)
) -> Dict[str, Any]:
    stats = await notification_service.get_delivery_stats(hours)
    return {"success": True, "data": stats.model_dump()}
