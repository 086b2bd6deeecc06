"""
Whitelist-gated registration: token issuance and (re)delivery by mail.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from dripmate.db import (
    DbClient,
    DuplicateEmailError,
    DuplicateTokenError,
    RegistrationRecord,
)
from dripmate.errors import InternalError, NotWhitelistedError, UpstreamUnavailableError
from dripmate.mailer import MailDeliveryError, Mailer
from dripmate.tokens import DEFAULT_TOKEN_PREFIX, generate_token, mask, normalize_email

logger = logging.getLogger(__name__)

MAX_TOKEN_ATTEMPTS = 10


@dataclass
class RegistrationResult:
    registration: RegistrationRecord
    resent: bool


class RegistrationService:
    def __init__(
        self, db: DbClient, mailer: Mailer, token_prefix: str = DEFAULT_TOKEN_PREFIX
    ):
        self.db = db
        self.mailer = mailer
        self.token_prefix = token_prefix

    def register(self, email: Optional[str]) -> RegistrationResult:
        """
        Issue a token to a whitelisted email, or resend the one it already has.

        The registration row is written before the mail goes out and is kept
        when delivery fails; calling again resends the same token.
        """
        normalized = normalize_email(email)

        if self.db.get_whitelist_entry_by_email(normalized) is None:
            logger.info("Registration rejected, not whitelisted: %s", normalized)
            raise NotWhitelistedError()

        existing = self.db.get_registration_by_email(normalized)
        if existing:
            self._send(normalized, existing.token)
            logger.info("Token resent: %s", normalized)
            return RegistrationResult(registration=existing, resent=True)

        try:
            registration = self._create_registration(normalized)
        except DuplicateEmailError:
            # A concurrent request for the same address won the insert.
            existing = self.db.get_registration_by_email(normalized)
            if existing is None:
                raise
            self._send(normalized, existing.token)
            return RegistrationResult(registration=existing, resent=True)

        self._send(normalized, registration.token)
        logger.info(
            "Token issued and sent: %s -> %s", normalized, mask(registration.token, 6)
        )
        return RegistrationResult(registration=registration, resent=False)

    def _candidate_token(self) -> str:
        for attempt in range(1, MAX_TOKEN_ATTEMPTS + 1):
            token = generate_token(self.token_prefix)
            if self.db.get_registration_by_token(token) is None:
                return token
            logger.warning("Token collision on attempt %d, regenerating", attempt)
        # The unique constraint on insert is the real guard.
        return token

    def _create_registration(self, email: str) -> RegistrationRecord:
        last_error: Optional[DuplicateTokenError] = None
        for _ in range(MAX_TOKEN_ATTEMPTS):
            try:
                return self.db.create_registration(email, self._candidate_token())
            except DuplicateTokenError as exc:
                logger.warning("Token taken at insert time for %s, retrying", email)
                last_error = exc
        raise InternalError(
            "could not allocate a unique registration token"
        ) from last_error

    def _send(self, email: str, token: str) -> None:
        try:
            self.mailer.send_token(email, token)
        except MailDeliveryError as exc:
            logger.exception("Token mail to %s failed", email)
            raise UpstreamUnavailableError("mail delivery failed") from exc
