"""
Mail abstraction for delivering registration tokens.

Provides an in-memory implementation for tests/local runs and a
Resend-backed implementation for production.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol
import logging

import requests

from dripmate.tokens import mask

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


class MailDeliveryError(Exception):
    pass


class Mailer(Protocol):
    """Defines the single operation the registration workflow needs."""

    def send_token(self, to_email: str, token: str) -> None:
        ...


def render_token_mail(to_email: str, token: str, app_url: str) -> str:
    return (
        "Willkommen bei dripmate.\n\n"
        f"Dein persönlicher Zugangs-Token: {token}\n\n"
        "Öffne dripmate und gib diesen Token ein, um dich anzumelden. "
        "Der Token ist einmalig und wird an dein Gerät gebunden.\n\n"
        f"{app_url}\n\n"
        f"Diese Mail wurde an {to_email} gesendet, "
        "weil du zur dripmate Beta eingeladen wurdest.\n"
    )


@dataclass
class InMemoryMailer:
    """Test double that records outgoing token mails."""

    sent: list[tuple[str, str]] = field(default_factory=list)
    fail: bool = False

    def send_token(self, to_email: str, token: str) -> None:
        if self.fail:
            raise MailDeliveryError("In-memory mailer configured to fail")
        self.sent.append((to_email, token))
        logger.info("Token mail recorded for %s (%s)", to_email, mask(token, 6))


@dataclass
class ResendMailer:
    """Sends token mails through the Resend HTTP API."""

    api_key: str
    sender: str
    subject: str
    app_url: str
    timeout: float = 10.0

    def __post_init__(self):
        self._session = requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            }
        )

    def send_token(self, to_email: str, token: str) -> None:
        payload = {
            "from": self.sender,
            "to": to_email,
            "subject": self.subject,
            "text": render_token_mail(to_email, token, self.app_url),
        }
        try:
            response = self._session.post(
                RESEND_API_URL, json=payload, timeout=self.timeout
            )
        except requests.RequestException as exc:
            raise MailDeliveryError(f"Resend request failed: {exc}") from exc
        if not response.ok:
            raise MailDeliveryError(
                f"Resend error {response.status_code}: {response.text[:200]}"
            )
