"""Waitlist router for joining, answering offers and admin offers."""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.dependencies import get_db, get_notifier, require_admin
from ..schemas.common import PROBLEM_RESPONSES
from ..schemas.waitlist import (
    JoinWaitlistRequest,
    JoinWaitlistResponse,
    OfferWaitlistEntryRequest,
    RespondToOfferRequest,
    WaitlistEntry,
)
from ..services.notifications import NotificationSender
from ..services.waitlist_service import WaitlistService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/waitlist", tags=["waitlist"], responses=PROBLEM_RESPONSES)

DB_DEPENDENCY = Depends(get_db)
NOTIFIER_DEPENDENCY = Depends(get_notifier)
ADMIN_DEPENDENCY = Depends(require_admin)


@router.post("/join", response_model=JoinWaitlistResponse)
async def join_waitlist(
    request: JoinWaitlistRequest,
    db: AsyncSession = DB_DEPENDENCY,
    notifier: NotificationSender = NOTIFIER_DEPENDENCY,
) -> JSONResponse:
    """
    Join a retreat's waitlist.

    Idempotent by retreat and email: returns 201 for a new entry and 200
    with the existing entry otherwise.
    """
    service = WaitlistService(db, notifier)
    entry, created = await service.join(request)

    response_data = JoinWaitlistResponse(entry=WaitlistEntry.model_validate(entry), created=created)
    return JSONResponse(
        status_code=201 if created else 200,
        content=response_data.model_dump(mode="json"),
    )


@router.post("/respond", response_model=WaitlistEntry)
async def respond_to_offer(
    request: RespondToOfferRequest,
    db: AsyncSession = DB_DEPENDENCY,
    notifier: NotificationSender = NOTIFIER_DEPENDENCY,
) -> JSONResponse:
    """
    Accept or decline a waitlist offer.

    Returns 410 once the offer window has passed and 409 with code
    ``CAPACITY_CONFLICT`` if the room filled up before acceptance.
    """
    service = WaitlistService(db, notifier)
    entry = await service.respond(request.token, request.action)

    logger.info(
        "Waitlist offer answered",
        extra={"waitlist_entry_id": str(entry.id), "action": request.action.value}
    )
    return JSONResponse(
        status_code=200, content=WaitlistEntry.model_validate(entry).model_dump(mode="json")
    )


@router.post("/offer", response_model=WaitlistEntry)
async def offer_to_entry(
    request: OfferWaitlistEntryRequest,
    db: AsyncSession = DB_DEPENDENCY,
    notifier: NotificationSender = NOTIFIER_DEPENDENCY,
    user: dict = ADMIN_DEPENDENCY,
) -> JSONResponse:
    """Offer a room to a specific waitlist entry."""
    service = WaitlistService(db, notifier)
    entry = await service.offer_entry(request.entry_id, request.room_id)
    return JSONResponse(
        status_code=200, content=WaitlistEntry.model_validate(entry).model_dump(mode="json")
    )
