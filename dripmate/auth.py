"""
Device-bound token authentication.

A token starts life as a pending registration. The first successful
validation promotes it into an account and binds it to the calling
device; every later validation must come from that same device.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Mapping, Optional

from dripmate.db import AccountRecord, DbClient, DuplicateTokenError, DuplicateUsernameError
from dripmate.errors import (
    ConflictError,
    DeviceMismatchError,
    InvalidInputError,
    InvalidTokenError,
)
from dripmate.tokens import derive_username, mask

logger = logging.getLogger(__name__)

MAX_USER_AGENT_LENGTH = 100


def extract_credentials(
    headers: Mapping[str, str],
    body: Optional[Mapping[str, Any]] = None,
    query: Optional[Mapping[str, str]] = None,
) -> tuple[Optional[str], Optional[str]]:
    """
    Return ``(token, device_id)``.

    Headers win (``Authorization: Bearer`` and ``X-Device-ID``), then the
    JSON body, then the query string.
    """
    body = body or {}
    query = query or {}

    token = None
    authorization = headers.get("authorization") or ""
    if authorization.startswith("Bearer "):
        token = authorization[len("Bearer "):].strip() or None
    if not token:
        token = body.get("token") or query.get("token")

    device_id = (
        headers.get("x-device-id") or body.get("deviceId") or query.get("deviceId")
    )

    if token is not None and not isinstance(token, str):
        token = None
    if device_id is not None and not isinstance(device_id, str):
        device_id = None
    return token, device_id


def describe_device(user_agent: Optional[str]) -> str:
    """Summarize a User-Agent as the JSON stored next to the device id."""
    user_agent = user_agent or "unknown"
    platform = "mobile" if "Mobile" in user_agent else "desktop"
    if "iPhone" in user_agent or "iPad" in user_agent:
        os_name = "iOS"
    elif "Android" in user_agent:
        os_name = "Android"
    elif "Mac" in user_agent:
        os_name = "macOS"
    elif "Windows" in user_agent:
        os_name = "Windows"
    elif "Linux" in user_agent:
        os_name = "Linux"
    else:
        os_name = "unknown"
    return json.dumps(
        {
            "platform": platform,
            "os": os_name,
            "userAgent": user_agent[:MAX_USER_AGENT_LENGTH],
        }
    )


class DeviceAuthenticator:
    def __init__(self, db: DbClient):
        self.db = db

    def validate(
        self,
        token: Optional[str],
        device_id: Optional[str],
        device_info: Optional[str] = None,
    ) -> AccountRecord:
        if not token:
            raise InvalidInputError("Token required")
        if not device_id:
            raise InvalidInputError("Device ID required")

        account = self.db.get_account_by_token(token)
        if account is None:
            account = self._activate(token, device_id, device_info)

        if account.device_id is None:
            if self.db.bind_device(account.id, device_id, device_info):
                logger.info(
                    "Device bound: user %s -> device %s",
                    account.username,
                    mask(device_id),
                )
            # Re-read so a bind that raced with ours is compared below.
            account = self.db.get_account_by_token(token)
            if account is None:
                raise InvalidTokenError()

        if account.device_id != device_id:
            logger.info(
                "Device mismatch for user %s (device %s)",
                account.username,
                mask(device_id),
            )
            raise DeviceMismatchError()

        account.last_login_at = self.db.touch_last_login(account.id)
        return account

    def _activate(
        self, token: str, device_id: str, device_info: Optional[str]
    ) -> AccountRecord:
        registration = self.db.get_registration_by_token(token)
        if registration is None:
            raise InvalidTokenError()

        username = derive_username(registration.email)
        try:
            account = self.db.create_account(username, token, device_id, device_info)
        except DuplicateTokenError:
            # Another request activated this token first; use its account.
            account = self.db.get_account_by_token(token)
            if account is None:
                raise
        except DuplicateUsernameError as exc:
            logger.warning("Username %s already taken", username)
            raise ConflictError("username taken") from exc
        else:
            logger.info("New user created: %s (%s)", account.username, registration.email)

        self.db.mark_registration_used(token)
        return account
