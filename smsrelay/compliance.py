"""
Opt-out compliance checks.

A number in the opt-out registry never receives an outbound message,
whatever else is true about it. Numbers enter the registry through
inbound STOP keywords or an administrator.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from smsrelay import storage
from smsrelay.errors import ComplianceError, InvalidRequestError
from smsrelay.utils import E164_MESSAGE, is_e164

logger = logging.getLogger(__name__)

OPTED_OUT_MESSAGE = "Customer has opted out of SMS communications"
ADMIN_METHOD = "admin"


def is_blocked(db: Session, phone: str) -> bool:
    return storage.is_opted_out(db, phone)


def ensure_not_blocked(db: Session, phone: str) -> None:
    """Raise ComplianceError if the number has opted out."""
    if is_blocked(db, phone):
        logger.warning(f"Send blocked, number opted out: {phone}")
        raise ComplianceError(OPTED_OUT_MESSAGE)


def record_opt_out(db: Session, phone: str, method: str, notes: Optional[str] = None):
    """
    Add a number to the opt-out registry and withdraw SMS consent on
    any profile carrying that number.

    Returns:
        The stored OptOut row.
    """
    opt_out = storage.upsert_opt_out(db, phone, method=method, notes=notes)
    cleared = storage.clear_sms_consent(db, phone)
    logger.info(f"Opt-out processed for {phone} via {method} (profiles updated: {cleared})")
    return opt_out


def add_opt_out(db: Session, phone: Optional[str], notes: Optional[str] = None):
    """
    Administrative opt-out.

    Raises:
        InvalidRequestError: phone is missing or not E.164.
    """
    if not is_e164(phone):
        raise InvalidRequestError(E164_MESSAGE)
    return record_opt_out(db, phone, method=ADMIN_METHOD, notes=notes)


def list_opt_outs(db: Session) -> list:
    """Registry entries, newest first."""
    return storage.list_opt_outs(db)


def get_eligible_profiles(db: Session) -> list:
    """Profiles that consented to SMS, have a phone number and have not opted out."""
    return storage.get_consenting_profiles(db, storage.get_opted_out_phones(db))
