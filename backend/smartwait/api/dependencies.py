from typing import Optional
import secrets

from fastapi import Header, Request

from smartwait.services.container import ServiceContainer
from smartwait.services.notification_service import NotificationService
from smartwait.services.queue_service import QueueService


def get_correlation_id(
    x_correlation_id: Optional[str] = Header(None),
    x_request_id: Optional[str] = Header(None),
) -> str:
    """Correlation id from the request headers, generated when absent"""
    correlation_id = x_correlation_id or x_request_id

    if not correlation_id:
        correlation_id = f"sw-{secrets.token_hex(8)}"

    return correlation_id


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def get_queue_service(request: Request) -> QueueService:
    return get_services(request).queue


def get_notification_service(request: Request) -> NotificationService:
    return get_services(request).notifications
