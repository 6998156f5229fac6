"""
Campaign dispatch.

A campaign is one stored message body plus a fixed recipient list. A
dispatch drops opted-out numbers, hands the rest to the device gateway in
a single call and then moves the campaign to exactly one terminal status.
"""

import logging
from typing import Any, List, Optional

from sqlalchemy.orm import Session

from smsrelay import compliance, storage
from smsrelay.errors import GatewayError, InvalidRequestError, NotFoundError, PersistenceError
from smsrelay.gateway import GatewayFailure, TextBeeGateway, ensure_configured
from smsrelay.metrics import record_campaign_dispatch
from smsrelay.models import Campaign

logger = logging.getLogger(__name__)

NO_RECIPIENTS_MESSAGE = "No recipients selected for this campaign"
ALL_OPTED_OUT_MESSAGE = "All campaign recipients have opted out of SMS communications"

# Failed dispatches always record one failure, whatever the recipient count.
# Kept as-is until failure reporting says what the count should mean.
FAILED_COUNT_ON_ERROR = 1


def create_campaign(db: Session, message: str, recipients: List[str], name: Optional[str] = None) -> Campaign:
    if not message or not message.strip():
        raise InvalidRequestError("message is required and cannot be empty")
    campaign = storage.create_campaign(db, message=message, recipients=recipients, name=name)
    logger.info(f"Campaign created: id={campaign.id}, recipients={len(recipients)}")
    return campaign


def list_campaigns(db: Session) -> List[Campaign]:
    return storage.list_campaigns(db)


def get_campaign(db: Session, campaign_id: str) -> Campaign:
    campaign = storage.get_campaign(db, campaign_id)
    if campaign is None:
        raise NotFoundError("Campaign not found")
    return campaign


def sendable_recipients(db: Session, recipients: List[str]) -> List[str]:
    """Recipients left after dropping every number in the opt-out registry."""
    kept = [phone for phone in recipients if not compliance.is_blocked(db, phone)]
    dropped = len(recipients) - len(kept)
    if dropped:
        logger.info(f"Dropped {dropped} opted-out recipient(s) from campaign dispatch")
    return kept


async def dispatch_campaign(
    db: Session,
    gateway: TextBeeGateway,
    campaign_id: str,
    device_id: str,
) -> Any:
    """
    Send a stored campaign through a gateway device.

    Opted-out numbers are removed from the recipient list before the
    gateway is called; sent_count is the number actually handed over.

    Returns:
        The raw gateway response.

    Raises:
        NotFoundError: no such campaign.
        InvalidRequestError: no recipients, or all of them opted out (marked failed).
        ConfigurationError: gateway credentials missing (marked failed).
        GatewayError: the gateway refused the batch (marked failed).
    """
    campaign = get_campaign(db, campaign_id)
    recipients = list(campaign.recipients or [])
    message = campaign.message

    try:
        if not recipients:
            raise InvalidRequestError(NO_RECIPIENTS_MESSAGE)

        recipients = sendable_recipients(db, recipients)
        if not recipients:
            raise InvalidRequestError(ALL_OPTED_OUT_MESSAGE)

        ensure_configured(gateway)
        result = await gateway.send_batch(device_id, recipients, message)
        if isinstance(result, GatewayFailure):
            raise GatewayError(result.message, code=result.code, gateway_status=result.status_code)
    except Exception as e:
        error_message = getattr(e, "message", None) or str(e) or type(e).__name__
        logger.error(f"Campaign {campaign_id} dispatch failed: {error_message}")
        record_campaign_dispatch("failed")
        try:
            storage.mark_campaign_failed(db, campaign_id, error_message, failed_count=FAILED_COUNT_ON_ERROR)
        except PersistenceError as persist_error:
            # The dispatch error is what the caller needs to see
            logger.error(f"Could not mark campaign {campaign_id} failed: {persist_error.message}")
        raise e

    storage.mark_campaign_sent(db, campaign_id, sent_count=len(recipients), gateway_response=result.raw)
    record_campaign_dispatch("sent")
    logger.info(f"Campaign {campaign_id} sent to {len(recipients)} recipients")
    return result.raw
