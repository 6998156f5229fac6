"""
Bearer-token authentication and the admin role gate.

Tokens are looked up against profiles.access_token; the matching profile
is the caller. Every SMS route requires role "admin".
"""

import logging
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from smsrelay import storage
from smsrelay.errors import ForbiddenError, UnauthenticatedError
from smsrelay.models import Profile

logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"

bearer_scheme = HTTPBearer(auto_error=False)


def authenticate(db: Session, token: Optional[str]) -> Profile:
    """
    Resolve a bearer token to the calling profile.

    Raises:
        UnauthenticatedError: no token, or the token matches no profile.
    """
    if not token:
        raise UnauthenticatedError("Authorization required")

    profile = storage.get_profile_by_token(db, token)
    if profile is None:
        logger.warning("Rejected request with unknown bearer token")
        raise UnauthenticatedError("Invalid authentication")
    return profile


def ensure_admin(caller: Optional[Profile]) -> Profile:
    """
    Raises:
        UnauthenticatedError: there is no caller.
        ForbiddenError: the caller is not an admin.
    """
    if caller is None:
        raise UnauthenticatedError("Authorization required")
    if caller.role != ADMIN_ROLE:
        logger.warning(f"Non-admin caller rejected: profile={caller.id}")
        raise ForbiddenError("Admin access required")
    return caller


def get_current_profile(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(storage.get_db),
) -> Profile:
    return authenticate(db, credentials.credentials if credentials else None)


def require_admin(caller: Profile = Depends(get_current_profile)) -> Profile:
    return ensure_admin(caller)
