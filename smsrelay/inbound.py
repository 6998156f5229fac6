"""
Inbound SMS handling for the carrier webhook.

Inbound messages are threaded onto the sender's conversation. STOP-type
keywords put the sender on the opt-out list before the message is stored.
"""

import logging
import re
from typing import Optional

from sqlalchemy.orm import Session

from smsrelay import storage
from smsrelay.compliance import record_opt_out
from smsrelay.conversations import resolve_conversation

logger = logging.getLogger(__name__)

STOP_KEYWORDS = re.compile(r"^(STOP|STOPALL|UNSUBSCRIBE|CANCEL|END|QUIT)$", re.IGNORECASE)

EMPTY_TWIML = '<?xml version="1.0" encoding="UTF-8"?><Response></Response>'


def is_stop_keyword(body: str) -> bool:
    return STOP_KEYWORDS.match(body.strip()) is not None


def handle_inbound_sms(
    db: Session,
    from_number: str,
    to_number: str,
    body: str,
    message_sid: str,
    sms_status: Optional[str] = None,
) -> dict:
    """
    Record an inbound message, processing an opt-out first if it is one.

    Redelivery of an already stored MessageSid is a no-op.

    Returns:
        {"opted_out": bool, "duplicate": bool, "message_id": str | None}
    """
    opted_out = False
    if is_stop_keyword(body):
        record_opt_out(db, from_number, method="STOP keyword", notes=f"Received: {body.strip()}")
        opted_out = True

    existing = storage.get_message_by_gateway_id(db, message_sid)
    if existing is not None:
        logger.info(f"Duplicate inbound delivery ignored: sid={message_sid}")
        return {"opted_out": opted_out, "duplicate": True, "message_id": existing.id}

    conversation_id = resolve_conversation(db, from_number)
    message = storage.create_message(
        db,
        conversation_id=conversation_id,
        direction="inbound",
        from_number=from_number,
        to_number=to_number,
        body=body,
        status=sms_status or "received",
        gateway_message_id=message_sid,
    )
    return {"opted_out": opted_out, "duplicate": False, "message_id": message.id}
