"""Unit tests for payment orchestration."""

from datetime import timedelta

import pytest
from sqlalchemy import func, select

from conftest import NOW, TODAY, create_booking, create_room
from retreat_engine.core.exceptions import BusinessRuleError, ConflictError, UpstreamServiceError
from retreat_engine.models import (
    BookingStatus,
    BookingStatusChange,
    Payment,
    PaymentSchedule,
    PaymentStatus,
    Room,
    ScheduleStatus,
)
from retreat_engine.services.gateway import ChargeStatus, GatewayError, GatewayEvent
from retreat_engine.services.notifications import NotificationKind
from retreat_engine.services.payment_service import (
    NO_PAYMENT_METHOD_REASON,
    AttemptOutcome,
    LinkPaymentOutcome,
    PaymentService,
)

FIRST_PAID = (ScheduleStatus.PAID, ScheduleStatus.PENDING, ScheduleStatus.PENDING)
SECOND_DUE = (TODAY, TODAY, TODAY + timedelta(days=30))


async def _schedules(session, booking_id) -> list[PaymentSchedule]:
    stmt = (
        select(PaymentSchedule)
        .where(PaymentSchedule.booking_id == booking_id)
        .order_by(PaymentSchedule.payment_number)
        .execution_options(populate_existing=True)
    )
    return list((await session.execute(stmt)).scalars())


async def _due_booking(session, retreat, **kwargs):
    return await create_booking(
        session, retreat, schedule_statuses=FIRST_PAID, due_dates=SECOND_DUE, **kwargs
    )


@pytest.mark.asyncio
async def test_due_installment_is_charged(test_session, gateway, notifier, retreat):
    booking = await _due_booking(test_session, retreat)
    service = PaymentService(test_session, gateway, notifier)

    summary = await service.process_due_payments(now=NOW)

    assert summary.processed == 1
    assert summary.succeeded == 1
    second = (await _schedules(test_session, booking.id))[1]
    assert second.status == ScheduleStatus.PAID
    assert second.paid_at is not None
    assert gateway.idempotency_keys == [f"schedule-{second.id}-attempt-0"]
    assert gateway.charges[0]["amount"] == 50000

    await test_session.refresh(booking)
    assert booking.payment_status == PaymentStatus.PARTIAL
    assert booking.balance_due == 40000
    assert booking.status == BookingStatus.CONFIRMED

    payments = (await test_session.execute(select(func.count(Payment.id)))).scalar_one()
    assert payments == 1

    (_, recipient, data), = notifier.of(NotificationKind.PAYMENT_SUCCEEDED)
    assert recipient == "guest@example.com"
    assert data["next_payment"]["amount"] == 40000


@pytest.mark.asyncio
async def test_paid_amounts_plus_balance_equal_total(test_session, gateway, notifier, retreat):
    booking = await create_booking(
        test_session,
        retreat,
        schedule_statuses=FIRST_PAID,
        due_dates=(TODAY, TODAY, TODAY),
    )
    service = PaymentService(test_session, gateway, notifier)

    await service.process_due_payments(now=NOW)

    schedules = await _schedules(test_session, booking.id)
    await test_session.refresh(booking)
    assert [s.status for s in schedules] == [ScheduleStatus.PAID] * 3
    assert booking.payment_status == PaymentStatus.PAID
    assert booking.balance_due == 0
    assert sum(s.amount for s in schedules) == booking.total_amount


@pytest.mark.asyncio
async def test_first_installment_is_left_to_checkout(test_session, gateway, notifier, retreat):
    await create_booking(test_session, retreat, due_dates=(TODAY, TODAY + timedelta(days=30), TODAY + timedelta(days=60)))
    service = PaymentService(test_session, gateway, notifier)

    summary = await service.process_due_payments(now=NOW)

    assert summary.processed == 0
    assert gateway.charges == []


@pytest.mark.asyncio
async def test_decline_schedules_a_retry(test_session, gateway, notifier, retreat):
    booking = await _due_booking(test_session, retreat)
    gateway.script(ChargeStatus.FAILED)
    service = PaymentService(test_session, gateway, notifier)

    summary = await service.process_due_payments(now=NOW)

    assert summary.failed == 1
    second = (await _schedules(test_session, booking.id))[1]
    assert second.status == ScheduleStatus.FAILED
    assert second.attempts == 1
    assert second.failure_reason == "Your card was declined."
    assert second.next_retry_at == NOW + timedelta(hours=24)
    assert second.failed_at == NOW
    assert second.payment_deadline == NOW + timedelta(days=14)

    (_, _, data), = notifier.of(NotificationKind.PAYMENT_FAILED)
    assert data["attempts_remaining"] == 2
    assert "retry automatically" in data["message"]
    assert len(notifier.of(NotificationKind.ADMIN_PAYMENT_FAILED)) == 1

    await test_session.refresh(booking)
    assert booking.status == BookingStatus.PENDING


@pytest.mark.asyncio
async def test_failed_row_waits_for_its_retry_time(test_session, gateway, notifier, retreat):
    booking = await _due_booking(test_session, retreat)
    gateway.script(ChargeStatus.FAILED)
    service = PaymentService(test_session, gateway, notifier)
    await service.process_due_payments(now=NOW)

    early = await service.process_due_payments(now=NOW + timedelta(hours=1))
    assert early.processed == 0

    later = await service.process_due_payments(now=NOW + timedelta(hours=25))
    assert later.succeeded == 1

    second = (await _schedules(test_session, booking.id))[1]
    assert second.status == ScheduleStatus.PAID
    assert gateway.idempotency_keys == [
        f"schedule-{second.id}-attempt-0",
        f"schedule-{second.id}-attempt-1",
    ]


@pytest.mark.asyncio
async def test_attempts_are_exhausted_after_three_declines(test_session, gateway, notifier, retreat):
    booking = await _due_booking(test_session, retreat)
    gateway.script(ChargeStatus.FAILED, ChargeStatus.FAILED, ChargeStatus.FAILED)
    service = PaymentService(test_session, gateway, notifier)

    for hours in (0, 25, 50):
        await service.process_due_payments(now=NOW + timedelta(hours=hours))
    summary = await service.process_due_payments(now=NOW + timedelta(hours=75))

    assert summary.processed == 0
    assert len(gateway.charges) == 3
    second = (await _schedules(test_session, booking.id))[1]
    assert second.status == ScheduleStatus.FAILED
    assert second.attempts == 3
    assert second.next_retry_at is None
    assert second.failed_at == NOW

    last_notice = notifier.of(NotificationKind.PAYMENT_FAILED)[-1][2]
    assert last_notice["attempts_remaining"] == 0
    assert "update your payment method" in last_notice["message"]
    assert last_notice["payment_link_url"] is not None


@pytest.mark.asyncio
async def test_requires_action_does_not_consume_an_attempt(test_session, gateway, notifier, retreat):
    booking = await _due_booking(test_session, retreat)
    gateway.script(ChargeStatus.REQUIRES_ACTION)
    service = PaymentService(test_session, gateway, notifier)

    summary = await service.process_due_payments(now=NOW)

    assert summary.requires_action == 1
    second = (await _schedules(test_session, booking.id))[1]
    assert second.status == ScheduleStatus.PENDING
    assert second.attempts == 0
    (_, _, data), = notifier.of(NotificationKind.PAYMENT_ACTION_REQUIRED)
    assert data["payment_link_url"] == "https://pay.example.com/link/1"
    assert notifier.of(NotificationKind.PAYMENT_FAILED) == []


@pytest.mark.asyncio
async def test_missing_payment_method_is_not_retried(test_session, gateway, notifier, retreat):
    booking = await _due_booking(test_session, retreat, with_payment_method=False)
    service = PaymentService(test_session, gateway, notifier)

    summary = await service.process_due_payments(now=NOW)

    assert summary.failed == 1
    assert summary.results[0].outcome == AttemptOutcome.NO_PAYMENT_METHOD
    assert gateway.charges == []
    second = (await _schedules(test_session, booking.id))[1]
    assert second.status == ScheduleStatus.FAILED
    assert second.failure_reason == NO_PAYMENT_METHOD_REASON
    assert second.next_retry_at is None
    assert second.attempts == 0

    again = await service.process_due_payments(now=NOW + timedelta(days=2))
    assert again.processed == 0


@pytest.mark.asyncio
async def test_gateway_error_counts_as_a_failed_attempt(test_session, gateway, notifier, retreat):
    booking = await _due_booking(test_session, retreat)
    gateway.script(GatewayError("connection reset"))
    service = PaymentService(test_session, gateway, notifier)

    summary = await service.process_due_payments(now=NOW)

    assert summary.failed == 1
    assert summary.errors == 0
    second = (await _schedules(test_session, booking.id))[1]
    assert second.status == ScheduleStatus.FAILED
    assert second.attempts == 1
    assert "connection reset" in second.failure_reason


@pytest.mark.asyncio
async def test_one_decline_does_not_block_other_bookings(test_session, gateway, notifier, retreat):
    first = await _due_booking(test_session, retreat, email="first@example.com")
    second = await _due_booking(test_session, retreat, email="second@example.com")
    gateway.script(ChargeStatus.FAILED)
    service = PaymentService(test_session, gateway, notifier)

    summary = await service.process_due_payments(now=NOW)

    assert summary.processed == 2
    assert summary.failed == 1
    assert summary.succeeded == 1
    statuses = {
        (await _schedules(test_session, first.id))[1].status,
        (await _schedules(test_session, second.id))[1].status,
    }
    assert statuses == {ScheduleStatus.FAILED, ScheduleStatus.PAID}


@pytest.mark.asyncio
async def test_later_installment_waits_for_unsettled_earlier_one(test_session, gateway, notifier, retreat):
    booking = await create_booking(
        test_session,
        retreat,
        schedule_statuses=(ScheduleStatus.PAID, ScheduleStatus.FAILED, ScheduleStatus.PENDING),
        due_dates=(TODAY, TODAY, TODAY),
    )
    service = PaymentService(test_session, gateway, notifier)

    summary = await service.process_due_payments(now=NOW)

    assert summary.skipped == 1
    assert summary.processed == 0
    assert gateway.charges == []
    third = (await _schedules(test_session, booking.id))[2]
    assert third.status == ScheduleStatus.PENDING


@pytest.mark.asyncio
async def test_stale_processing_rows_are_reclaimed(test_session, gateway, notifier, retreat):
    booking = await _due_booking(test_session, retreat)
    second = (await _schedules(test_session, booking.id))[1]
    second.status = ScheduleStatus.PROCESSING
    second.last_attempt_at = NOW - timedelta(hours=1)
    await test_session.commit()
    service = PaymentService(test_session, gateway, notifier)

    summary = await service.process_due_payments(now=NOW)

    assert summary.reclaimed == 1
    assert summary.succeeded == 1
    # The reclaimed attempt reuses the key of the interrupted one
    assert gateway.idempotency_keys == [f"schedule-{second.id}-attempt-0"]


@pytest.mark.asyncio
async def test_recent_processing_rows_are_left_alone(test_session, gateway, notifier, retreat):
    booking = await _due_booking(test_session, retreat)
    second = (await _schedules(test_session, booking.id))[1]
    second.status = ScheduleStatus.PROCESSING
    second.last_attempt_at = NOW - timedelta(minutes=5)
    await test_session.commit()
    service = PaymentService(test_session, gateway, notifier)

    summary = await service.process_due_payments(now=NOW)

    assert summary.reclaimed == 0
    assert gateway.charges == []
    assert (await _schedules(test_session, booking.id))[1].status == ScheduleStatus.PROCESSING


@pytest.mark.asyncio
async def test_booking_past_payment_deadline_is_cancelled(test_session, gateway, notifier, retreat):
    room = await create_room(test_session, retreat, capacity=1)
    booking = await _due_booking(test_session, retreat, room=room)
    second = (await _schedules(test_session, booking.id))[1]
    second.status = ScheduleStatus.FAILED
    second.attempts = 3
    second.failed_at = NOW - timedelta(days=15)
    second.payment_deadline = NOW - timedelta(days=1)
    await test_session.commit()
    service = PaymentService(test_session, gateway, notifier)

    summary = await service.process_due_payments(now=NOW)

    assert summary.deadline_cancellations == 1
    await test_session.refresh(booking)
    assert booking.status == BookingStatus.CANCELLED
    assert booking.cancellation_reason == "Payment deadline exceeded"
    available = (await test_session.execute(select(Room.available).where(Room.id == room.id))).scalar_one()
    assert available == 1
    assert len(notifier.of(NotificationKind.BOOKING_CANCELLED_NON_PAYMENT)) == 1
    assert gateway.charges == []


@pytest.mark.asyncio
async def test_admin_retry_charges_and_audits(test_session, gateway, notifier, retreat):
    booking = await _due_booking(test_session, retreat)
    second = (await _schedules(test_session, booking.id))[1]
    service = PaymentService(test_session, gateway, notifier)

    result = await service.retry_payment(booking.id, second.id, actor="admin@example.com", now=NOW)

    assert result.outcome == AttemptOutcome.SUCCEEDED
    assert gateway.idempotency_keys[0].startswith(f"admin-retry-{second.id}-0-")
    actions = (
        await test_session.execute(
            select(BookingStatusChange.action).where(BookingStatusChange.booking_id == booking.id)
        )
    ).scalars().all()
    assert "payment_retry" in actions


@pytest.mark.asyncio
async def test_admin_retry_needs_force_after_exhaustion(test_session, gateway, notifier, retreat):
    booking = await _due_booking(test_session, retreat)
    second = (await _schedules(test_session, booking.id))[1]
    second.status = ScheduleStatus.FAILED
    second.attempts = 3
    await test_session.commit()
    service = PaymentService(test_session, gateway, notifier)

    with pytest.raises(BusinessRuleError) as exc_info:
        await service.retry_payment(booking.id, second.id, actor="admin@example.com", now=NOW)
    assert exc_info.value.problem_details["code"] == "MAX_ATTEMPTS_REACHED"

    result = await service.retry_payment(
        booking.id, second.id, actor="admin@example.com", force=True, now=NOW
    )
    assert result.outcome == AttemptOutcome.SUCCEEDED


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "schedule_status,booking_status,code",
    [
        (ScheduleStatus.PAID, BookingStatus.PENDING, "ALREADY_PAID"),
        (ScheduleStatus.CANCELLED, BookingStatus.CANCELLED, "BOOKING_CANCELLED"),
    ],
)
async def test_admin_retry_rejects_closed_rows(
    test_session, gateway, notifier, retreat, schedule_status, booking_status, code
):
    booking = await _due_booking(test_session, retreat, status=booking_status)
    second = (await _schedules(test_session, booking.id))[1]
    second.status = schedule_status
    await test_session.commit()
    service = PaymentService(test_session, gateway, notifier)

    with pytest.raises(BusinessRuleError) as exc_info:
        await service.retry_payment(booking.id, second.id, actor="admin@example.com", now=NOW)

    assert exc_info.value.problem_details["code"] == code
    assert gateway.charges == []


@pytest.mark.asyncio
async def test_admin_retry_of_processing_row_conflicts(test_session, gateway, notifier, retreat):
    booking = await _due_booking(test_session, retreat)
    second = (await _schedules(test_session, booking.id))[1]
    second.status = ScheduleStatus.PROCESSING
    second.last_attempt_at = NOW
    await test_session.commit()
    service = PaymentService(test_session, gateway, notifier)

    with pytest.raises(ConflictError):
        await service.retry_payment(booking.id, second.id, actor="admin@example.com", now=NOW)


@pytest.mark.asyncio
async def test_admin_retry_without_payment_method(test_session, gateway, notifier, retreat):
    booking = await _due_booking(test_session, retreat, with_payment_method=False)
    second = (await _schedules(test_session, booking.id))[1]
    service = PaymentService(test_session, gateway, notifier)

    with pytest.raises(BusinessRuleError) as exc_info:
        await service.retry_payment(booking.id, second.id, actor="admin@example.com", now=NOW)

    assert exc_info.value.problem_details["code"] == "NO_PAYMENT_METHOD"


@pytest.mark.asyncio
async def test_payment_link_for_open_installment(test_session, gateway, notifier, retreat):
    booking = await _due_booking(test_session, retreat)
    first, second, _ = await _schedules(test_session, booking.id)
    service = PaymentService(test_session, gateway, notifier)

    url = await service.create_payment_link(booking.id, second.id)
    assert url == "https://pay.example.com/link/1"
    assert gateway.links[0]["amount"] == 50000

    with pytest.raises(BusinessRuleError) as exc_info:
        await service.create_payment_link(booking.id, first.id)
    assert exc_info.value.problem_details["code"] == "SCHEDULE_NOT_OPEN"

    gateway.fail_links = True
    with pytest.raises(UpstreamServiceError):
        await service.create_payment_link(booking.id, second.id)


@pytest.mark.asyncio
async def test_failure_notice_counts_days_from_the_run_time(test_session, gateway, notifier, retreat):
    await _due_booking(test_session, retreat)
    gateway.script(ChargeStatus.FAILED)
    service = PaymentService(test_session, gateway, notifier)

    await service.process_due_payments(now=NOW + timedelta(days=5))

    (_, _, data), = notifier.of(NotificationKind.PAYMENT_FAILED)
    assert data["days_until_retreat"] == 195


def _paid_session_event(booking, schedule, **overrides) -> GatewayEvent:
    data = {
        "id": "cs_test_1",
        "payment_status": "paid",
        "payment_intent": "pi_link_1",
        "amount_total": schedule.amount,
        "metadata": {"booking_id": str(booking.id), "schedule_id": str(schedule.id)},
    }
    data.update(overrides)
    return GatewayEvent(id="evt_1", type="checkout.session.completed", data=data)


@pytest.mark.asyncio
async def test_link_payment_settles_exhausted_installment(test_session, gateway, notifier, retreat):
    booking = await _due_booking(test_session, retreat)
    gateway.script(ChargeStatus.FAILED, ChargeStatus.FAILED, ChargeStatus.FAILED)
    service = PaymentService(test_session, gateway, notifier)
    for hours in (0, 25, 50):
        await service.process_due_payments(now=NOW + timedelta(hours=hours))
    second = (await _schedules(test_session, booking.id))[1]

    outcome = await service.record_link_payment(
        second.id, "pi_link_1", amount=50000, booking_id=booking.id, now=NOW + timedelta(days=3)
    )

    assert outcome == LinkPaymentOutcome.RECORDED
    second = (await _schedules(test_session, booking.id))[1]
    assert second.status == ScheduleStatus.PAID
    assert second.gateway_payment_id == "pi_link_1"
    assert second.failure_reason is None
    assert second.failed_at is None
    assert second.payment_deadline is None
    assert second.next_retry_at is None

    await test_session.refresh(booking)
    assert booking.balance_due == 40000
    assert booking.status == BookingStatus.CONFIRMED
    assert len(notifier.of(NotificationKind.PAYMENT_SUCCEEDED)) == 1

    # Past the old deadline the booking survives and the row is not charged again
    summary = await service.process_due_payments(now=NOW + timedelta(days=20))
    assert summary.deadline_cancellations == 0
    assert len(gateway.charges) == 3
    await test_session.refresh(booking)
    assert booking.status == BookingStatus.CONFIRMED


@pytest.mark.asyncio
async def test_repeated_webhook_delivery_records_one_payment(test_session, gateway, notifier, retreat):
    booking = await _due_booking(test_session, retreat)
    second = (await _schedules(test_session, booking.id))[1]
    service = PaymentService(test_session, gateway, notifier)
    event = _paid_session_event(booking, second)

    first_delivery = await service.apply_gateway_event(event, now=NOW)
    second_delivery = await service.apply_gateway_event(event, now=NOW)

    assert first_delivery == LinkPaymentOutcome.RECORDED
    assert second_delivery == LinkPaymentOutcome.ALREADY_PAID
    payments = (await test_session.execute(select(func.count(Payment.id)))).scalar_one()
    assert payments == 1
    assert len(notifier.of(NotificationKind.PAYMENT_SUCCEEDED)) == 1
    assert gateway.charges == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "event_type, overrides",
    [
        ("checkout.session.expired", {}),
        ("checkout.session.completed", {"payment_status": "unpaid"}),
        ("checkout.session.completed", {"metadata": {}}),
        ("checkout.session.completed", {"metadata": {"schedule_id": "not-a-uuid"}}),
    ],
)
async def test_unsettling_events_are_ignored(test_session, gateway, notifier, retreat, event_type, overrides):
    booking = await _due_booking(test_session, retreat)
    second = (await _schedules(test_session, booking.id))[1]
    service = PaymentService(test_session, gateway, notifier)
    event = _paid_session_event(booking, second, **overrides)
    event = GatewayEvent(id=event.id, type=event_type, data=event.data)

    assert await service.apply_gateway_event(event, now=NOW) == LinkPaymentOutcome.IGNORED

    second = (await _schedules(test_session, booking.id))[1]
    assert second.status == ScheduleStatus.PENDING
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_link_payment_for_cancelled_booking_alerts_admin(test_session, gateway, notifier, retreat):
    booking = await create_booking(
        test_session,
        retreat,
        status=BookingStatus.CANCELLED,
        schedule_statuses=(ScheduleStatus.PAID, ScheduleStatus.CANCELLED, ScheduleStatus.CANCELLED),
    )
    second = (await _schedules(test_session, booking.id))[1]
    service = PaymentService(test_session, gateway, notifier)

    outcome = await service.record_link_payment(second.id, "pi_late", amount=50000, now=NOW)

    assert outcome == LinkPaymentOutcome.UNAPPLIED
    second = (await _schedules(test_session, booking.id))[1]
    assert second.status == ScheduleStatus.CANCELLED
    payments = (await test_session.execute(select(func.count(Payment.id)))).scalar_one()
    assert payments == 0
    (_, _, data), = notifier.of(NotificationKind.ADMIN_PAYMENT_UNAPPLIED)
    assert data["gateway_payment_id"] == "pi_late"
    assert notifier.of(NotificationKind.PAYMENT_SUCCEEDED) == []
