"""Booking router for checkout and admin booking operations."""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.dependencies import actor_name, get_db, get_gateway, get_notifier, require_admin
from ..schemas.booking import (
    Booking,
    BookingDetail,
    CancelBookingRequest,
    CancellationResponse,
    ChangeStatusRequest,
    CheckoutRequest,
    CheckoutResponse,
    GetBookingRequest,
    Installment,
    MoveRoomRequest,
    MoveRoomResponse,
    RestoreBookingRequest,
    RestoreResponse,
)
from ..schemas.common import PROBLEM_RESPONSES
from ..services.booking_service import BookingService
from ..services.checkout_service import CheckoutService
from ..services.gateway import PaymentGateway
from ..services.notifications import NotificationSender

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/booking", tags=["booking"], responses=PROBLEM_RESPONSES)

# Define dependencies to avoid B008 linting errors
DB_DEPENDENCY = Depends(get_db)
GATEWAY_DEPENDENCY = Depends(get_gateway)
NOTIFIER_DEPENDENCY = Depends(get_notifier)
ADMIN_DEPENDENCY = Depends(require_admin)


@router.post("/checkout", response_model=CheckoutResponse, status_code=201)
async def checkout(
    request: CheckoutRequest,
    db: AsyncSession = DB_DEPENDENCY,
    gateway: PaymentGateway = GATEWAY_DEPENDENCY,
    notifier: NotificationSender = NOTIFIER_DEPENDENCY,
) -> JSONResponse:
    """
    Book a retreat and take the first installment.

    Returns 201 with a payment link when the bank requires the guest to
    authenticate, 402 when the first charge is declined, and 409 with code
    ``CAPACITY_CONFLICT`` when the room is full.
    """
    service = CheckoutService(db, gateway, notifier)
    result = await service.checkout(request)

    response_data = CheckoutResponse(
        booking=Booking.model_validate(result.booking),
        installments=[Installment.model_validate(s) for s in result.schedules],
        payment_outcome=result.charge.outcome.value,
        message=result.charge.message,
        is_early_bird=result.is_early_bird,
        payment_link_url=result.payment_link_url,
    )

    logger.info(
        "Checkout completed",
        extra={
            "booking_id": str(result.booking.id),
            "retreat_id": str(request.retreat_id),
            "payment_outcome": response_data.payment_outcome,
        }
    )

    return JSONResponse(status_code=201, content=response_data.model_dump(mode="json"))


@router.post("/get", response_model=BookingDetail)
async def get_booking(
    request: GetBookingRequest,
    db: AsyncSession = DB_DEPENDENCY,
    notifier: NotificationSender = NOTIFIER_DEPENDENCY,
    user: dict = ADMIN_DEPENDENCY,
) -> JSONResponse:
    """Get a booking with its payment schedule."""
    service = BookingService(db, notifier)
    booking = await service.get_booking_or_raise(request.booking_id)
    schedules = await service.get_schedules(booking.id)

    response_data = BookingDetail(
        booking=Booking.model_validate(booking),
        installments=[Installment.model_validate(s) for s in schedules],
    )
    return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))


@router.post("/status", response_model=Booking)
async def change_status(
    request: ChangeStatusRequest,
    db: AsyncSession = DB_DEPENDENCY,
    gateway: PaymentGateway = GATEWAY_DEPENDENCY,
    notifier: NotificationSender = NOTIFIER_DEPENDENCY,
    user: dict = ADMIN_DEPENDENCY,
) -> JSONResponse:
    """Move a booking along its status transitions."""
    service = BookingService(db, notifier, gateway)
    booking = await service.change_status(
        request.booking_id, request.status, actor=actor_name(user), reason=request.reason
    )
    return JSONResponse(
        status_code=200, content=Booking.model_validate(booking).model_dump(mode="json")
    )


@router.post("/cancel", response_model=CancellationResponse)
async def cancel_booking(
    request: CancelBookingRequest,
    db: AsyncSession = DB_DEPENDENCY,
    gateway: PaymentGateway = GATEWAY_DEPENDENCY,
    notifier: NotificationSender = NOTIFIER_DEPENDENCY,
    user: dict = ADMIN_DEPENDENCY,
) -> JSONResponse:
    """
    Cancel a booking.

    The cancellation always stands once it is recorded; side effects that
    failed are listed in ``failed_steps``.
    """
    service = BookingService(db, notifier, gateway)
    result = await service.cancel_booking(
        request.booking_id,
        actor=actor_name(user),
        reason=request.reason,
        notify_customer=request.notify_customer,
    )

    response_data = CancellationResponse(
        booking=Booking.model_validate(result.booking),
        schedules_cancelled=result.schedules_cancelled,
        room_released=result.room_released,
        promo_released=result.promo_released,
        failed_steps=result.failed_steps,
    )
    return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))


@router.post("/restore", response_model=RestoreResponse)
async def restore_booking(
    request: RestoreBookingRequest,
    db: AsyncSession = DB_DEPENDENCY,
    gateway: PaymentGateway = GATEWAY_DEPENDENCY,
    notifier: NotificationSender = NOTIFIER_DEPENDENCY,
    user: dict = ADMIN_DEPENDENCY,
) -> JSONResponse:
    """Restore a cancelled booking and reopen its unpaid installments."""
    service = BookingService(db, notifier, gateway)
    result = await service.restore_booking(
        request.booking_id,
        actor=actor_name(user),
        new_due_date=request.new_due_date,
        send_payment_link=request.send_payment_link,
        notes=request.notes,
    )

    response_data = RestoreResponse(
        booking=Booking.model_validate(result.booking),
        schedules_reset=result.schedules_reset,
        new_due_date=result.new_due_date,
        payment_link_url=result.payment_link_url,
    )
    return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))


@router.post("/move-room", response_model=MoveRoomResponse)
async def move_room(
    request: MoveRoomRequest,
    db: AsyncSession = DB_DEPENDENCY,
    notifier: NotificationSender = NOTIFIER_DEPENDENCY,
    user: dict = ADMIN_DEPENDENCY,
) -> JSONResponse:
    """Move a booking to another room of the same retreat."""
    service = BookingService(db, notifier)
    result = await service.move_room(request.booking_id, request.room_id, actor=actor_name(user))

    response_data = MoveRoomResponse(
        booking=Booking.model_validate(result.booking),
        from_room_id=result.from_room_id,
        to_room_id=result.to_room_id,
        moved=result.moved,
        warning=result.warning,
    )
    return JSONResponse(status_code=200, content=response_data.model_dump(mode="json"))
