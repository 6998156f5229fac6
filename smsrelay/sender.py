"""
Outbound send orchestration.

send_sms runs a single send through its gates in order: caller role,
payload validation, opt-out compliance, conversation resolution, gateway
call, persistence. The first failing gate short-circuits. At most one
message row is written per call, failed sends included.

send_batch_sms fans a personalized template out to a list of profiles,
one gateway call per recipient, each recipient isolated from the others.
"""

import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy.orm import Session

from smsrelay import storage
from smsrelay.auth import ensure_admin
from smsrelay.compliance import ensure_not_blocked, is_blocked
from smsrelay.conversations import resolve_conversation
from smsrelay.errors import (
    ComplianceError,
    GatewayError,
    InvalidRequestError,
    NotFoundError,
    PersistenceError,
)
from smsrelay.gateway import GatewayFailure, SendResult, TwilioGateway, ensure_configured
from smsrelay.metrics import record_send_outcome
from smsrelay.models import Message, Profile
from smsrelay.utils import E164_MESSAGE, is_e164, personalize

logger = logging.getLogger(__name__)

MISSING_FIELDS_MESSAGE = "Missing required fields: to, body"
SAVE_FAILED_MESSAGE = "Message sent but failed to save to database"


def validate_send_request(to: Any, body: Any) -> None:
    """
    Raises:
        InvalidRequestError: to/body missing or to is not E.164.
    """
    if not to or not body or not isinstance(to, str) or not isinstance(body, str):
        raise InvalidRequestError(MISSING_FIELDS_MESSAGE)
    if not is_e164(to):
        raise InvalidRequestError(E164_MESSAGE)


async def _attempt_send(gateway: TwilioGateway, to: str, body: str) -> SendResult:
    """Gateway send with transport failures folded into a GatewayFailure."""
    try:
        return await gateway.send(to, body)
    except httpx.HTTPError as e:
        logger.error(f"Gateway unreachable sending to {to}: {e}")
        return GatewayFailure(message=str(e) or "Failed to send SMS")


async def send_sms(
    db: Session,
    gateway: TwilioGateway,
    caller: Optional[Profile],
    to: Any,
    body: Any,
    from_hint: Optional[str] = None,
) -> Message:
    """
    Send one SMS and persist the outcome.

    Returns:
        The saved Message row for a successful send.

    Raises:
        UnauthenticatedError, ForbiddenError: caller gate.
        InvalidRequestError: bad payload; nothing touched.
        ComplianceError: destination opted out; nothing touched.
        ConfigurationError: gateway credentials missing; nothing touched.
        GatewayError: carrier refused; a failed Message row was written.
        PersistenceError: carrier accepted but the row could not be saved.
    """
    ensure_admin(caller)
    validate_send_request(to, body)
    try:
        ensure_not_blocked(db, to)
    except ComplianceError:
        record_send_outcome("single", "blocked")
        raise

    ensure_configured(gateway)
    conversation_id = resolve_conversation(db, to)

    result = await _attempt_send(gateway, to, body)

    if isinstance(result, GatewayFailure):
        record_send_outcome("single", "failed")
        try:
            storage.create_message(
                db,
                conversation_id=conversation_id,
                direction="outbound",
                from_number=result.raw.get("from") or from_hint or "unknown",
                to_number=to,
                body=body,
                status="failed",
                error_code=result.code,
                error_message=result.message,
                sent_by=caller.id,
            )
        except PersistenceError as e:
            logger.error(f"Failed to save error message: {e}")
        raise GatewayError(result.message, code=result.code, gateway_status=result.status_code)

    record_send_outcome("single", "sent")
    try:
        return storage.create_message(
            db,
            conversation_id=conversation_id,
            direction="outbound",
            from_number=result.from_number or from_hint or "unknown",
            to_number=result.to_number or to,
            body=result.body or body,
            status=result.status,
            gateway_message_id=result.gateway_id,
            sent_by=caller.id,
        )
    except PersistenceError:
        raise PersistenceError(SAVE_FAILED_MESSAGE)


def validate_batch_request(user_ids: Any, message_template: Any, max_recipients: int) -> None:
    if not user_ids or not isinstance(user_ids, list):
        raise InvalidRequestError("userIds array is required and cannot be empty")
    if not isinstance(message_template, str) or not message_template.strip():
        raise InvalidRequestError("messageTemplate is required and cannot be empty")
    if len(user_ids) > max_recipients:
        raise InvalidRequestError(f"Maximum {max_recipients} users per batch")


def _skip_reason(db: Session, profile: Profile) -> Optional[str]:
    if not profile.phone:
        return "No phone number on file"
    if not profile.sms_consent:
        return "User has not consented to SMS"
    if is_blocked(db, profile.phone):
        return "User has opted out of SMS communications"
    if not is_e164(profile.phone):
        return "Phone number is not in E.164 format"
    return None


async def send_batch_sms(
    db: Session,
    gateway: TwilioGateway,
    caller: Optional[Profile],
    user_ids: Any,
    message_template: Any,
    pause: float = 0.1,
    max_recipients: int = 1000,
) -> Dict[str, Any]:
    """
    Send a personalized template to each listed profile.

    Recipients without a phone, without consent or on the opt-out list are
    skipped and produce no message row. Every attempted send writes one
    row tagged with the shared batch id. A failure for one recipient never
    stops the rest.

    Returns:
        {"batchId", "summary": {total, successful, failed, skipped}, "results"}
    """
    ensure_admin(caller)
    validate_batch_request(user_ids, message_template, max_recipients)
    ensure_configured(gateway)

    profiles = storage.get_profiles_by_ids(db, user_ids)
    if not profiles:
        raise NotFoundError("No valid users found with provided IDs")

    batch_id = str(uuid.uuid4())
    results: List[Dict[str, Any]] = []
    attempted = 0
    logger.info(f"Batch {batch_id} started for {len(profiles)} profiles")

    for profile in profiles:
        result: Dict[str, Any] = {
            "userId": profile.id,
            "phone": profile.phone or "N/A",
            "status": "skipped",
        }

        reason = _skip_reason(db, profile)
        if reason:
            result["reason"] = reason
            record_send_outcome("batch", "skipped")
            results.append(result)
            continue

        if attempted and pause:
            await asyncio.sleep(pause)
        attempted += 1

        body = personalize(message_template, profile.first_name)
        try:
            conversation_id = resolve_conversation(db, profile.phone)
        except PersistenceError as e:
            result.update(status="failed", error=e.message)
            record_send_outcome("batch", "failed")
            results.append(result)
            continue

        outcome = await _attempt_send(gateway, profile.phone, body)

        if isinstance(outcome, GatewayFailure):
            result.update(status="failed", error=outcome.message)
            record_send_outcome("batch", "failed")
            row = dict(
                from_number=outcome.raw.get("from") or "unknown",
                to_number=profile.phone,
                status="failed",
                error_code=outcome.code,
                error_message=outcome.message,
            )
        else:
            result.update(status="success", gatewaySid=outcome.gateway_id, gatewayStatus=outcome.status)
            record_send_outcome("batch", "sent")
            row = dict(
                from_number=outcome.from_number or "unknown",
                to_number=outcome.to_number or profile.phone,
                status=outcome.status,
                gateway_message_id=outcome.gateway_id,
            )

        try:
            storage.create_message(
                db,
                conversation_id=conversation_id,
                direction="outbound",
                body=body,
                batch_id=batch_id,
                sent_by=caller.id,
                **row,
            )
        except PersistenceError as e:
            logger.error(f"Batch {batch_id}: failed to save message for {profile.id}: {e}")
            result["error"] = SAVE_FAILED_MESSAGE

        results.append(result)

    summary = {
        "total": len(results),
        "successful": sum(1 for r in results if r["status"] == "success"),
        "failed": sum(1 for r in results if r["status"] == "failed"),
        "skipped": sum(1 for r in results if r["status"] == "skipped"),
    }
    logger.info(f"Batch {batch_id} finished: {summary}")

    return {"batchId": batch_id, "summary": summary, "results": results}
