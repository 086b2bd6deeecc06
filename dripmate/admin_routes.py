"""
Whitelist administration routes, gated by the ``X-Admin-Password`` secret.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from dripmate.db import DbClient, DuplicateEmailError
from dripmate.dependencies import get_db_client, require_admin
from dripmate.errors import ConflictError, InvalidInputError, NotFoundError
from dripmate.schemas import (
    SuccessResponse,
    WhitelistCreateRequest,
    WhitelistCreateResponse,
    WhitelistEntry,
    WhitelistListResponse,
    WhitelistPatchRequest,
)
from dripmate.tokens import normalize_email

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_admin)])


@router.get("/whitelist", response_model=WhitelistListResponse)
def list_whitelist(db: DbClient = Depends(get_db_client)):
    """All whitelist entries, newest first, with their invitation status."""
    entries = [WhitelistEntry(**entry.as_dict()) for entry in db.list_whitelist()]
    return WhitelistListResponse(entries=entries)


@router.post("/whitelist", response_model=WhitelistCreateResponse)
def add_whitelist_entry(
    payload: WhitelistCreateRequest, db: DbClient = Depends(get_db_client)
):
    email = normalize_email(payload.email)
    try:
        entry = db.add_whitelist_entry(
            email, name=payload.name, website=payload.website, note=payload.note
        )
    except DuplicateEmailError as exc:
        raise ConflictError("email already whitelisted") from exc
    logger.info("Whitelist: %s added", email)
    return WhitelistCreateResponse(id=entry.id)


@router.patch("/whitelist/{entry_id}", response_model=SuccessResponse)
def update_whitelist_entry(
    entry_id: int,
    payload: WhitelistPatchRequest,
    db: DbClient = Depends(get_db_client),
):
    updates = {
        key: value
        for key, value in payload.model_dump(exclude_unset=True).items()
        if value is not None
    }
    if not updates:
        raise InvalidInputError("no recognized fields")
    if not db.update_whitelist_entry(entry_id, updates):
        raise NotFoundError()
    return SuccessResponse()


@router.delete("/whitelist/{entry_id}", response_model=SuccessResponse)
def delete_whitelist_entry(entry_id: int, db: DbClient = Depends(get_db_client)):
    if not db.delete_whitelist_entry(entry_id):
        raise NotFoundError()
    logger.info("Whitelist: entry %s removed", entry_id)
    return SuccessResponse()
