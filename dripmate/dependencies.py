"""
Dependency wiring for the FastAPI app.

Clients are built once by the app factory and kept on ``app.state``;
request handlers receive them through the dependencies below.
"""

from __future__ import annotations

import logging
import secrets
from typing import Optional

from fastapi import Depends, Header, Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from dripmate.auth import DeviceAuthenticator, describe_device, extract_credentials
from dripmate.config import Settings
from dripmate.db import AccountRecord, DbClient, InMemoryDbClient, SqlDbClient
from dripmate.errors import RateLimitedError, UnauthorizedError
from dripmate.mailer import InMemoryMailer, Mailer, ResendMailer
from dripmate.rate_limit import hit_ai_limit
from dripmate.registration import RegistrationService
from dripmate.vision import GeminiVisionClient, VisionClient

logger = logging.getLogger(__name__)


def build_db_client(settings: Settings) -> DbClient:
    if settings.use_in_memory_backends or not settings.database_url:
        logger.warning("Using in-memory database; data is lost on restart")
        return InMemoryDbClient()
    return SqlDbClient(settings.database_url)


def build_mailer(settings: Settings) -> Mailer:
    if settings.use_in_memory_backends or not settings.resend_api_key:
        logger.warning("RESEND_API_KEY not set; token mails are only recorded in memory")
        return InMemoryMailer()
    return ResendMailer(
        api_key=settings.resend_api_key,
        sender=settings.mail_from,
        subject=settings.mail_subject,
        app_url=settings.app_url,
        timeout=settings.mail_timeout_seconds,
    )


def build_vision_client(settings: Settings) -> Optional[VisionClient]:
    if not settings.gemini_api_key:
        logger.warning("GEMINI_API_KEY not set; coffee analysis is disabled")
        return None
    return GeminiVisionClient(api_key=settings.gemini_api_key, model=settings.gemini_model)


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_db_client(request: Request) -> DbClient:
    return request.app.state.db


def get_mailer(request: Request) -> Mailer:
    return request.app.state.mailer


def get_vision_client(request: Request) -> Optional[VisionClient]:
    return request.app.state.vision


def get_limiter(request: Request) -> Limiter:
    return request.app.state.limiter


def get_registration_service(
    db: DbClient = Depends(get_db_client),
    mailer: Mailer = Depends(get_mailer),
    settings: Settings = Depends(get_app_settings),
) -> RegistrationService:
    return RegistrationService(db, mailer, token_prefix=settings.token_prefix)


def get_authenticator(db: DbClient = Depends(get_db_client)) -> DeviceAuthenticator:
    return DeviceAuthenticator(db)


class AuthCredentials:
    def __init__(self, token: Optional[str], device_id: Optional[str], device_info: str):
        self.token = token
        self.device_id = device_id
        self.device_info = device_info


async def auth_credentials(request: Request) -> AuthCredentials:
    body = {}
    if request.method in ("POST", "PUT", "PATCH") and "json" in request.headers.get(
        "content-type", ""
    ):
        try:
            parsed = await request.json()
        except (ValueError, UnicodeDecodeError):
            parsed = None
        if isinstance(parsed, dict):
            body = parsed
    token, device_id = extract_credentials(request.headers, body, request.query_params)
    return AuthCredentials(
        token=token,
        device_id=device_id,
        device_info=describe_device(request.headers.get("user-agent")),
    )


def require_account(
    credentials: AuthCredentials = Depends(auth_credentials),
    authenticator: DeviceAuthenticator = Depends(get_authenticator),
) -> AccountRecord:
    return authenticator.validate(
        credentials.token, credentials.device_id, credentials.device_info
    )


def require_admin(
    x_admin_password: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_app_settings),
) -> None:
    expected = settings.admin_password
    if not expected or not x_admin_password:
        raise UnauthorizedError()
    if not secrets.compare_digest(x_admin_password.encode(), expected.encode()):
        raise UnauthorizedError()


def ai_rate_limit(request: Request) -> None:
    settings = get_app_settings(request)
    if not hit_ai_limit(get_limiter(request), request, settings.ai_rate_limit):
        logger.warning("Analysis rate limit exceeded by %s", get_remote_address(request))
        raise RateLimitedError()
