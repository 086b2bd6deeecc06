"""
HTTP routes for the user-facing API.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends

from dripmate import __version__
from dripmate.auth import DeviceAuthenticator
from dripmate.config import Settings
from dripmate.db import AccountRecord, DbClient
from dripmate.dependencies import (
    AuthCredentials,
    ai_rate_limit,
    auth_credentials,
    get_app_settings,
    get_authenticator,
    get_db_client,
    get_registration_service,
    get_vision_client,
    require_account,
)
from dripmate.errors import (
    ApiError,
    InvalidInputError,
    RateLimitedError,
    UpstreamUnavailableError,
    error_response,
)
from dripmate.registration import RegistrationService
from dripmate.schemas import (
    AnalyzeRequest,
    AnalyzeResponse,
    CoffeeListResponse,
    GrinderRequest,
    GrinderResponse,
    HealthResponse,
    MethodRequest,
    MethodResponse,
    RegisterRequest,
    RegisterResponse,
    SaveCoffeesRequest,
    SaveCoffeesResponse,
    UserProfile,
    ValidateResponse,
    WaterHardnessRequest,
    WaterHardnessResponse,
)
from dripmate.vision import (
    ALLOWED_MEDIA_TYPES,
    DEFAULT_MEDIA_TYPE,
    VisionClient,
    VisionInvalidResponseException,
    VisionProviderError,
    analyze_coffee_image,
    decode_image,
)

logger = logging.getLogger(__name__)

router = APIRouter()

STARTED_AT = time.monotonic()


@router.post("/auth/register", response_model=RegisterResponse)
def register(
    payload: RegisterRequest,
    service: RegistrationService = Depends(get_registration_service),
):
    """
    Whitelist check, then issue a token by mail. A repeat call for the
    same address resends the existing token.
    """
    result = service.register(payload.email)
    return RegisterResponse(resent=result.resent)


@router.get("/auth/validate", response_model=ValidateResponse)
def validate(
    credentials: AuthCredentials = Depends(auth_credentials),
    authenticator: DeviceAuthenticator = Depends(get_authenticator),
):
    try:
        account = authenticator.validate(
            credentials.token, credentials.device_id, credentials.device_info
        )
    except ApiError as exc:
        return error_response(exc.code, exc.status_code, valid=False)
    return ValidateResponse(user=UserProfile(**account.public_profile()))


@router.get("/coffees", response_model=CoffeeListResponse)
def list_coffees(
    account: AccountRecord = Depends(require_account),
    db: DbClient = Depends(get_db_client),
):
    coffees = [record.as_dict() for record in db.list_coffees(account.id)]
    return CoffeeListResponse(coffees=coffees)


@router.post("/coffees", response_model=SaveCoffeesResponse)
def save_coffees(
    payload: SaveCoffeesRequest,
    account: AccountRecord = Depends(require_account),
    db: DbClient = Depends(get_db_client),
):
    saved = db.replace_coffees(account.id, payload.coffees)
    logger.info("Saved %d coffees for %s", saved, account.username)
    return SaveCoffeesResponse(saved=saved)


@router.get("/user/grinder", response_model=GrinderResponse)
def get_grinder(account: AccountRecord = Depends(require_account)):
    return GrinderResponse(grinder=account.public_profile()["grinderPreference"])


@router.post("/user/grinder", response_model=GrinderResponse)
def update_grinder(
    payload: GrinderRequest,
    account: AccountRecord = Depends(require_account),
    db: DbClient = Depends(get_db_client),
):
    db.update_preferences(account.id, grinder_preference=payload.grinder)
    logger.info("Grinder updated: %s -> %s", account.username, payload.grinder)
    return GrinderResponse(grinder=payload.grinder)


@router.get("/user/method", response_model=MethodResponse)
def get_method(account: AccountRecord = Depends(require_account)):
    return MethodResponse(method=account.public_profile()["methodPreference"])


@router.post("/user/method", response_model=MethodResponse)
def update_method(
    payload: MethodRequest,
    account: AccountRecord = Depends(require_account),
    db: DbClient = Depends(get_db_client),
):
    db.update_preferences(account.id, method_preference=payload.method)
    logger.info("Brew method updated: %s -> %s", account.username, payload.method)
    return MethodResponse(method=payload.method)


@router.get("/user/water-hardness", response_model=WaterHardnessResponse)
def get_water_hardness(account: AccountRecord = Depends(require_account)):
    return WaterHardnessResponse(waterHardness=account.water_hardness)


@router.post("/user/water-hardness", response_model=WaterHardnessResponse)
def update_water_hardness(
    payload: WaterHardnessRequest,
    account: AccountRecord = Depends(require_account),
    db: DbClient = Depends(get_db_client),
):
    db.update_preferences(account.id, water_hardness=payload.waterHardness)
    logger.info(
        "Water hardness updated: %s -> %s °dH", account.username, payload.waterHardness
    )
    return WaterHardnessResponse(waterHardness=payload.waterHardness)


@router.post(
    "/analyze-coffee",
    response_model=AnalyzeResponse,
    dependencies=[Depends(ai_rate_limit)],
)
def analyze_coffee(
    payload: AnalyzeRequest,
    account: AccountRecord = Depends(require_account),
    vision: Optional[VisionClient] = Depends(get_vision_client),
):
    logger.info("Analysis started for user: %s", account.username)
    media_type = payload.mediaType or DEFAULT_MEDIA_TYPE
    if media_type not in ALLOWED_MEDIA_TYPES:
        raise InvalidInputError(f"Unsupported media type {media_type}")
    try:
        image_bytes = decode_image(payload.imageData)
    except ValueError as exc:
        raise InvalidInputError(str(exc)) from exc

    if vision is None:
        raise UpstreamUnavailableError("analysis not configured", status_code=503)

    try:
        data = analyze_coffee_image(vision, image_bytes, media_type)
    except VisionProviderError as exc:
        logger.error("Analyze provider error: %s %s", exc.status_code, exc)
        if exc.status_code == 429:
            raise RateLimitedError("provider rate limit") from exc
        raise UpstreamUnavailableError("provider failure") from exc
    except VisionInvalidResponseException as exc:
        logger.error("Analyze parse error for %s: %s", account.username, exc)
        raise UpstreamUnavailableError("unparseable provider response") from exc
    return AnalyzeResponse(data=data)


@router.get("/health", response_model=HealthResponse)
def health(settings: Settings = Depends(get_app_settings)):
    return HealthResponse(
        app="dripmate",
        version=__version__,
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime=round(time.monotonic() - STARTED_AT, 3),
        environment=settings.environment,
    )
