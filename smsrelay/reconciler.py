"""
Delivery status reconciliation against the gateway.

reconcile() is meant to be invoked on a schedule by an external caller.
It polls pending outbound messages one at a time with a fixed pause
between gateway calls. Every check increments the message's check count,
so a message whose status never moves stops being polled once it reaches
the per-message ceiling.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy.orm import Session

from smsrelay import storage
from smsrelay.errors import InvalidRequestError, NotFoundError, PersistenceError
from smsrelay.gateway import GatewayFailure, StatusResult, TwilioGateway, ensure_configured
from smsrelay.metrics import record_status_check

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 100
MAX_LIMIT = storage.MAX_STATUS_CHECK_BATCH
DEFAULT_MAX_CHECKS = 20
DEFAULT_PAUSE_SECONDS = 0.05
BATCH_CHECK_LIMIT = 100

NO_SID_MESSAGE = "No Twilio SID available"


@dataclass
class StatusUpdateResult:
    messageId: str
    gatewaySid: Optional[str]
    oldStatus: str
    newStatus: str
    updated: bool = False
    error: Optional[str] = None


@dataclass
class ReconcileResult:
    checked: int = 0
    updated: int = 0
    results: List[StatusUpdateResult] = field(default_factory=list)

    @property
    def summary(self) -> str:
        if not self.checked:
            return "No messages need status checking at this time"
        return (
            f"Status check completed. {self.updated} messages updated "
            f"out of {self.checked} checked."
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "checked": self.checked,
            "updated": self.updated,
            "results": [asdict(r) for r in self.results],
        }


def validate_limit(limit: Optional[int]) -> int:
    if limit is None:
        return DEFAULT_LIMIT
    if limit > MAX_LIMIT:
        raise InvalidRequestError(f"Maximum limit is {MAX_LIMIT} messages per request")
    if limit < 1:
        raise InvalidRequestError("limit must be at least 1")
    return limit


async def _lookup(gateway: TwilioGateway, gateway_id: str) -> StatusResult:
    try:
        return await gateway.fetch_status(gateway_id)
    except httpx.HTTPError as e:
        logger.error(f"Gateway unreachable checking {gateway_id}: {e}")
        return GatewayFailure(message=str(e) or "Unknown error")


async def reconcile(
    db: Session,
    gateway: TwilioGateway,
    limit: Optional[int] = None,
    max_checks: int = DEFAULT_MAX_CHECKS,
    pause: float = DEFAULT_PAUSE_SECONDS,
) -> ReconcileResult:
    """
    Poll the gateway for messages still awaiting a terminal status.

    Args:
        limit: Messages to check this pass (default 100, at most 500)
        max_checks: Messages checked this many times are no longer polled
        pause: Seconds to wait between gateway calls

    Raises:
        InvalidRequestError: limit above 500 or below 1.
    """
    limit = validate_limit(limit)
    ensure_configured(gateway)
    messages = storage.get_messages_needing_status_check(db, limit=limit, max_checks=max_checks)
    outcome = ReconcileResult(checked=len(messages))

    logger.info(f"Reconciling {len(messages)} messages (limit={limit}, max_checks={max_checks})")

    for index, message in enumerate(messages):
        if index and pause:
            await asyncio.sleep(pause)

        message_id = message.id
        gateway_id = message.gateway_message_id
        result = StatusUpdateResult(
            messageId=message_id,
            gatewaySid=gateway_id,
            oldStatus=message.status,
            newStatus=message.status,
        )
        outcome.results.append(result)

        report = await _lookup(gateway, gateway_id)
        if isinstance(report, GatewayFailure):
            result.error = report.message
            record_status_check("error")
            continue

        result.newStatus = report.status
        changed = report.status != result.oldStatus
        try:
            if changed:
                storage.update_message_status(
                    db, message_id, report.status, report.error_code, report.error_message
                )
            else:
                storage.update_message_status(db, message_id, report.status)
        except PersistenceError as e:
            result.error = e.message
            record_status_check("error")
            continue

        if changed:
            result.updated = True
            outcome.updated += 1
            record_status_check("updated")
            logger.info(f"Message {message_id} status {result.oldStatus} -> {report.status}")
        else:
            record_status_check("unchanged")

    logger.info(outcome.summary)
    return outcome


def _select_messages(
    db: Session,
    sid: Optional[str],
    message_id: Optional[str],
    batch_id: Optional[str],
) -> list:
    if sid:
        message = storage.get_message_by_gateway_id(db, sid)
        if message is None:
            raise NotFoundError("Message not found")
        return [message]
    if message_id:
        message = storage.get_message_by_id(db, message_id)
        if message is None:
            raise NotFoundError("Message not found")
        return [message]
    if batch_id:
        return storage.get_messages_by_batch(db, batch_id, limit=BATCH_CHECK_LIMIT)
    raise InvalidRequestError("One of the following parameters is required: sid, messageId, or batchId")


async def check_messages(
    db: Session,
    gateway: TwilioGateway,
    sid: Optional[str] = None,
    message_id: Optional[str] = None,
    batch_id: Optional[str] = None,
    pause: float = DEFAULT_PAUSE_SECONDS,
) -> List[Dict[str, Any]]:
    """
    Fetch live gateway status for specific messages.

    Exactly one selector is used, in the order sid, message_id, batch_id.
    A changed status is persisted. Messages without a gateway id and
    per-message gateway failures are reported inline, never raised.

    Raises:
        InvalidRequestError: no selector given.
        NotFoundError: sid or message_id matches nothing.
    """
    messages = _select_messages(db, sid, message_id, batch_id)
    ensure_configured(gateway)
    statuses: List[Dict[str, Any]] = []
    called = False

    for message in messages:
        if not message.gateway_message_id:
            statuses.append({"messageId": message.id, "error": NO_SID_MESSAGE})
            continue

        if called and pause:
            await asyncio.sleep(pause)
        called = True

        message_row_id = message.id
        gateway_id = message.gateway_message_id
        stored_status = message.status

        report = await _lookup(gateway, gateway_id)
        if isinstance(report, GatewayFailure):
            record_status_check("error")
            statuses.append({"messageId": message_row_id, "gatewaySid": gateway_id, "error": report.message})
            continue

        if report.status != stored_status:
            try:
                storage.update_message_status(
                    db, message_row_id, report.status, report.error_code, report.error_message
                )
                record_status_check("updated")
            except PersistenceError as e:
                logger.error(f"Could not persist status for {message_row_id}: {e.message}")
                record_status_check("error")
        else:
            record_status_check("unchanged")

        statuses.append({
            "messageId": message_row_id,
            "gatewaySid": report.gateway_id,
            "status": report.status,
            "to": report.to_number,
            "from": report.from_number,
            "errorCode": report.error_code,
            "errorMessage": report.error_message,
            "dateSent": report.date_sent,
            "dateUpdated": report.date_updated,
            "price": report.price,
            "priceUnit": report.price_unit,
        })

    return statuses
