"""
Carrier gateway clients.

TwilioGateway speaks the Twilio Messages REST API (single sends and status
lookups). TextBeeGateway speaks the TextBee device API (one call fans a
message out to many recipients).

Every call returns a tagged result: the success dataclass for a 2xx reply,
GatewayFailure for any other HTTP status or a reply missing its status.
HTTP error statuses never raise; transport failures (httpx.HTTPError)
propagate to the caller. No retries.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import httpx

from smsrelay.errors import ConfigurationError
from smsrelay.metrics import time_gateway_call

logger = logging.getLogger(__name__)

NO_STATUS_MESSAGE = "Gateway returned no status"


# Statuses after which Twilio will not update a message again.
# accepted, scheduled, queued, sending and sent are still moving.
TERMINAL_STATUSES = frozenset({"delivered", "undelivered", "failed", "canceled", "read"})


def is_terminal(status: Optional[str]) -> bool:
    return status in TERMINAL_STATUSES


@dataclass(frozen=True)
class GatewayFailure:
    """Carrier replied with a non-2xx status, or a 2xx reply without a status."""
    message: str
    code: Optional[str] = None
    status_code: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SendReceipt:
    gateway_id: str
    status: str
    from_number: Optional[str]
    to_number: Optional[str]
    body: Optional[str]
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StatusReport:
    gateway_id: str
    status: str
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    date_sent: Optional[str] = None
    date_updated: Optional[str] = None
    price: Optional[str] = None
    price_unit: Optional[str] = None
    to_number: Optional[str] = None
    from_number: Optional[str] = None


@dataclass(frozen=True)
class BatchReceipt:
    raw: Any


SendResult = Union[SendReceipt, GatewayFailure]
StatusResult = Union[StatusReport, GatewayFailure]
BatchResult = Union[BatchReceipt, GatewayFailure]


def _json_or_text(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {"raw_text": response.text}
    return data if isinstance(data, dict) else {"data": data}


def _optional_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _failure(response: httpx.Response, default_message: str) -> GatewayFailure:
    data = _json_or_text(response)
    return GatewayFailure(
        message=data.get("message") or default_message,
        code=_optional_str(data.get("code")),
        status_code=response.status_code,
        raw=data,
    )


def _missing_status(response: httpx.Response, data: Dict[str, Any]) -> GatewayFailure:
    # A 2xx reply without a status cannot be stored
    return GatewayFailure(message=NO_STATUS_MESSAGE, status_code=response.status_code, raw=data)


def ensure_configured(gateway) -> None:
    """
    Raises:
        ConfigurationError: the gateway is missing credentials.
    """
    if not gateway.is_configured():
        raise ConfigurationError(gateway.NOT_CONFIGURED_MESSAGE)


class TwilioGateway:
    """Twilio Messages API client."""

    NOT_CONFIGURED_MESSAGE = "Twilio credentials not configured"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        messaging_service_sid: str,
        base_url: str = "https://api.twilio.com",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.messaging_service_sid = messaging_service_sid
        self.base_url = f"{base_url.rstrip('/')}/2010-04-01/Accounts/{account_sid}"
        self.timeout = timeout
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.messaging_service_sid)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            auth=(self.account_sid, self.auth_token),
            timeout=self.timeout,
            transport=self._transport,
        )

    async def send(self, destination: str, body: str) -> SendResult:
        """
        Send one SMS through the messaging service.

        Args:
            destination: E.164 number, already validated by the caller
            body: Message text
        """
        data = {
            "To": destination,
            "MessagingServiceSid": self.messaging_service_sid,
            "Body": body,
        }
        logger.info(f"Sending SMS via Twilio to {destination}")

        with time_gateway_call("twilio", "send"):
            async with self._client() as client:
                response = await client.post(f"{self.base_url}/Messages.json", data=data)

        if not response.is_success:
            failure = _failure(response, "Failed to send SMS")
            logger.error(
                f"Twilio send rejected: status={response.status_code}, "
                f"code={failure.code}, message={failure.message}"
            )
            return failure

        result = _json_or_text(response)
        if not result.get("status"):
            logger.error(f"Twilio send reply carried no status: sid={result.get('sid')}")
            return _missing_status(response, result)

        logger.info(f"Twilio accepted message: sid={result.get('sid')}, status={result.get('status')}")
        return SendReceipt(
            gateway_id=result.get("sid"),
            status=result["status"],
            from_number=result.get("from"),
            to_number=result.get("to"),
            body=result.get("body"),
            raw=result,
        )

    async def fetch_status(self, gateway_id: str) -> StatusResult:
        """Look up the current delivery status of a message by its SID."""
        with time_gateway_call("twilio", "fetch_status"):
            async with self._client() as client:
                response = await client.get(f"{self.base_url}/Messages/{gateway_id}.json")

        if not response.is_success:
            failure = _failure(response, "Twilio API error")
            logger.warning(f"Twilio status lookup failed for {gateway_id}: {failure.message}")
            return failure

        data = _json_or_text(response)
        if not data.get("status"):
            logger.warning(f"Twilio status lookup for {gateway_id} carried no status")
            return _missing_status(response, data)

        return StatusReport(
            gateway_id=data.get("sid") or gateway_id,
            status=data["status"],
            error_code=_optional_str(data.get("error_code")),
            error_message=data.get("error_message"),
            date_sent=data.get("date_sent"),
            date_updated=data.get("date_updated"),
            price=_optional_str(data.get("price")),
            price_unit=data.get("price_unit"),
            to_number=data.get("to"),
            from_number=data.get("from"),
        )


class TextBeeGateway:
    """TextBee device gateway client used for campaign sends."""

    NOT_CONFIGURED_MESSAGE = "TextBee API key not configured"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.textbee.dev/api/v1/gateway",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def send_batch(self, device_id: str, recipients: List[str], message: str) -> BatchResult:
        """Send one message body to every recipient through a device."""
        url = f"{self.base_url}/devices/{device_id}/send-sms"
        logger.info(f"Sending batch via TextBee device {device_id} to {len(recipients)} recipients")

        with time_gateway_call("textbee", "send_batch"):
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(
                    url,
                    json={"recipients": recipients, "message": message},
                    headers={"x-api-key": self.api_key},
                )

        if not response.is_success:
            failure = _failure(response, f"Failed to send SMS: {response.reason_phrase}")
            logger.error(f"TextBee batch rejected: status={response.status_code}, message={failure.message}")
            return failure

        return BatchReceipt(raw=_json_or_text(response))
