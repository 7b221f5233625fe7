"""
Caller identity.

Sign-up and login live in the auth service; it hands the client a user id,
which every storefront request carries in the X-User-Id header.
"""
from typing import Optional

from fastapi import Header

from errors import Unauthorized


def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise Unauthorized()
    return x_user_id.strip()
