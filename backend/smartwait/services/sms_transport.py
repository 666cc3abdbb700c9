from dataclasses import dataclass
from typing import Dict, Optional
import time

import httpx
import structlog

from smartwait.core.config import NotificationSettings, get_settings
from smartwait.core.exceptions import TransportError

logger = structlog.get_logger(__name__)

# Twilio error codes that will never succeed on retry
TWILIO_INVALID_NUMBER_CODES = {21211, 21214, 21217, 21610, 21614}
TWILIO_BODY_TOO_LONG_CODES = {21617}

# Twilio message states mapped onto notification statuses
TWILIO_STATUS_MAP: Dict[str, str] = {
    "accepted": "pending",
    "queued": "pending",
    "sending": "sent",
    "sent": "sent",
    "delivered": "delivered",
    "read": "delivered",
    "undelivered": "failed",
    "failed": "failed",
    "canceled": "cancelled",
}


@dataclass
class TransportReceipt:
    external_id: str
    status: str = "sent"


class SMSTransport:
    """Interface every SMS backend implements"""

    name = "base"

    async def deliver(self, phone: str, message: str) -> TransportReceipt:
        raise NotImplementedError

    async def fetch_status(self, external_id: str) -> str:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class LoggingSMSTransport(SMSTransport):
    """Development transport used while Twilio credentials are placeholders"""

    name = "logging"

    async def deliver(self, phone: str, message: str) -> TransportReceipt:
        external_id = f"mock-message-id-{int(time.time() * 1000)}"
        logger.info(
            "SMS not sent, mock transport in use",
            to=phone,
            length=len(message),
            external_id=external_id,
        )
        return TransportReceipt(external_id=external_id, status="sent")

    async def fetch_status(self, external_id: str) -> str:
        return "delivered"


class TwilioSMSTransport(SMSTransport):
    """Twilio Programmable Messaging over its REST API"""

    name = "twilio"

    def __init__(
        self,
        settings: Optional[NotificationSettings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings().notifications
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.settings.TWILIO_API_BASE_URL,
                auth=(self.settings.TWILIO_ACCOUNT_SID, self.settings.TWILIO_AUTH_TOKEN),
                timeout=self.settings.TRANSPORT_TIMEOUT_SECONDS,
            )
        return self._client

    @property
    def _account_path(self) -> str:
        return f"/Accounts/{self.settings.TWILIO_ACCOUNT_SID}"

    async def deliver(self, phone: str, message: str) -> TransportReceipt:
        try:
            response = await self.client.post(
                f"{self._account_path}/Messages.json",
                data={
                    "To": phone,
                    "From": self.settings.TWILIO_PHONE_NUMBER,
                    "Body": message,
                },
            )
        except httpx.TimeoutException as e:
            raise TransportError(f"SMS request timeout: {e}", retryable=True, code="timeout") from e
        except httpx.TransportError as e:
            raise TransportError(
                f"SMS service unavailable: {e}", retryable=True, code="connection_error"
            ) from e

        if response.status_code in (200, 201):
            payload = response.json()
            receipt = TransportReceipt(
                external_id=payload.get("sid", ""),
                status=TWILIO_STATUS_MAP.get(payload.get("status", "queued"), "sent"),
            )
            logger.info("SMS accepted by Twilio", to=phone, external_id=receipt.external_id)
            return receipt

        raise self._error_from_response(response)

    async def fetch_status(self, external_id: str) -> str:
        try:
            response = await self.client.get(f"{self._account_path}/Messages/{external_id}.json")
        except httpx.HTTPError as e:
            raise TransportError(f"Status lookup failed: {e}", retryable=True, code="connection_error") from e

        if response.status_code != 200:
            raise self._error_from_response(response)

        twilio_status = response.json().get("status", "sent")
        return TWILIO_STATUS_MAP.get(twilio_status, "sent")

    def _error_from_response(self, response: httpx.Response) -> TransportError:
        try:
            body = response.json()
        except ValueError:
            body = {}

        twilio_code = body.get("code")
        detail = body.get("message") or response.text
        status_code = response.status_code

        if status_code in (401, 403):
            return TransportError(
                f"Invalid credentials: {detail}", code="invalid_credentials", status_code=status_code
            )
        if twilio_code in TWILIO_INVALID_NUMBER_CODES:
            return TransportError(
                f"Invalid phone number: {detail}", code="invalid_phone_number", status_code=status_code
            )
        if twilio_code in TWILIO_BODY_TOO_LONG_CODES:
            return TransportError(
                f"Message too long: {detail}", code="message_too_long", status_code=status_code
            )
        if status_code == 429:
            return TransportError(
                f"Rate limit exceeded: {detail}", retryable=True, code="rate_limited", status_code=status_code
            )
        if status_code >= 500:
            return TransportError(
                f"SMS service unavailable: {detail}", retryable=True, code="unavailable", status_code=status_code
            )
        return TransportError(f"SMS rejected: {detail}", code="rejected", status_code=status_code)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


def create_transport(settings: Optional[NotificationSettings] = None) -> SMSTransport:
    """Twilio when real credentials are configured, otherwise the logging transport"""
    settings = settings or get_settings().notifications
    if settings.uses_placeholder_credentials:
        logger.warning("Twilio credentials not configured, SMS will be logged only")
        return LoggingSMSTransport()
    return TwilioSMSTransport(settings)


__all__ = [
    "TransportReceipt",
    "SMSTransport",
    "LoggingSMSTransport",
    "TwilioSMSTransport",
    "create_transport",
    "TWILIO_STATUS_MAP",
]
