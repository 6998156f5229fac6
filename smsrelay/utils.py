"""
Utility functions for the SMS API.
"""

import base64
import hashlib
import hmac
import logging
import re
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

E164_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")
E164_MESSAGE = "Phone number must be in E.164 format (e.g., +15551234567)"

FIRST_NAME_PLACEHOLDER = "[First Name]"


def is_e164(phone: Optional[str]) -> bool:
    """True for numbers like +15551234567 (leading +, no leading zero, max 15 digits)."""
    return bool(phone) and E164_PATTERN.match(phone) is not None


def personalize(template: str, first_name: Optional[str]) -> str:
    """Fill every [First Name] placeholder, falling back to "Customer"."""
    return template.replace(FIRST_NAME_PLACEHOLDER, first_name or "Customer")


def compute_twilio_signature(url: str, params: Mapping[str, str], auth_token: str) -> str:
    """
    Compute the X-Twilio-Signature value for a webhook request.

    Twilio signs the full request URL followed by every POST parameter
    (name then value) sorted by name, using HMAC-SHA1 keyed with the
    account auth token, base64 encoded.
    """
    payload = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(
        auth_token.encode("utf-8"),
        payload.encode("utf-8"),
        hashlib.sha1
    ).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_twilio_signature(url: str, params: Mapping[str, str], signature: str, auth_token: str) -> bool:
    """
    Verify a Twilio webhook signature.

    Args:
        url: Full URL Twilio posted to
        params: Form parameters of the request
        signature: Value of the X-Twilio-Signature header
        auth_token: TWILIO_AUTH_TOKEN

    Returns:
        True if signature is valid, False otherwise
    """
    expected_signature = compute_twilio_signature(url, params, auth_token)

    # Use constant-time comparison to prevent timing attacks
    is_valid = hmac.compare_digest(expected_signature, signature)
    logger.info(f"Twilio signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid
