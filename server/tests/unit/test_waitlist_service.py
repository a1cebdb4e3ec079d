"""Unit tests for the waitlist: joining, offers, responses and the sweep."""

from datetime import timedelta
from unittest.mock import patch

import pytest
from sqlalchemy import Update, select
from sqlalchemy.exc import IntegrityError

from conftest import NOW, TODAY, create_retreat, create_room
from retreat_engine.core.config import settings
from retreat_engine.core.exceptions import (
    BusinessRuleError,
    CapacityConflictError,
    ConflictError,
    OfferExpiredError,
    ValidationError,
)
from retreat_engine.models import Room, WaitlistEntry, WaitlistStatus
from retreat_engine.schemas.waitlist import JoinWaitlistRequest, WaitlistAction
from retreat_engine.services.notifications import NotificationKind
from retreat_engine.services.waitlist_service import WaitlistService

HOLD = timedelta(hours=settings.waitlist_hold_hours)


async def _add_entry(
    session, retreat, position, email=None, guests=1, room=None,
    status=WaitlistStatus.WAITING, **values,
) -> WaitlistEntry:
    entry = WaitlistEntry(
        retreat_id=retreat.id,
        room_id=room.id if room else None,
        email=email or f"guest{position}@example.com",
        first_name="Guest",
        last_name=str(position),
        guests_count=guests,
        status=status,
        position=position,
        **values,
    )
    session.add(entry)
    await session.commit()
    return entry


async def _available(session, room_id) -> int:
    return (await session.execute(select(Room.available).where(Room.id == room_id))).scalar_one()


@pytest.mark.asyncio
async def test_join_is_idempotent_per_email(test_session, notifier, retreat):
    service = WaitlistService(test_session, notifier)
    request = JoinWaitlistRequest(
        retreat_id=retreat.id, email="Grace@Example.com", first_name="Grace", last_name="Hopper"
    )

    first, created = await service.join(request, now=NOW)
    again, created_again = await service.join(
        request.model_copy(update={"email": "grace@example.com"}), now=NOW
    )
    other, _ = await service.join(
        request.model_copy(update={"email": "alan@example.com"}), now=NOW
    )

    assert created and not created_again
    assert again.id == first.id
    assert first.email == "grace@example.com"
    assert first.position == 1
    assert other.position == 2
    assert len(notifier.of(NotificationKind.WAITLIST_JOINED)) == 2


@pytest.mark.asyncio
async def test_cannot_join_started_retreat(test_session, notifier):
    retreat = await create_retreat(test_session, start_date=TODAY)
    service = WaitlistService(test_session, notifier)

    with pytest.raises(BusinessRuleError) as exc_info:
        await service.join(
            JoinWaitlistRequest(
                retreat_id=retreat.id, email="late@example.com", first_name="Late", last_name="Comer"
            ),
            now=NOW,
        )

    assert exc_info.value.problem_details["code"] == "RETREAT_STARTED"


@pytest.mark.asyncio
async def test_offer_skips_parties_that_do_not_fit(test_session, notifier, retreat):
    room = await create_room(test_session, retreat, capacity=2, available=1)
    couple = await _add_entry(test_session, retreat, 1, guests=2)
    single = await _add_entry(test_session, retreat, 2)
    service = WaitlistService(test_session, notifier)

    offered = await service.offer_next(retreat.id, room.id, now=NOW)

    assert offered.id == single.id
    assert offered.status == WaitlistStatus.NOTIFIED
    assert offered.offered_room_id == room.id
    assert offered.response_token
    await test_session.refresh(couple)
    assert couple.status == WaitlistStatus.WAITING


@pytest.mark.asyncio
async def test_offer_follows_position_and_room_preference(test_session, notifier, retreat, room):
    other_room = await create_room(test_session, retreat, name="Lake single")
    await _add_entry(test_session, retreat, 1, room=other_room)
    any_room = await _add_entry(test_session, retreat, 2)
    service = WaitlistService(test_session, notifier)

    offered = await service.offer_next(retreat.id, room.id, now=NOW)

    assert offered.id == any_room.id


@pytest.mark.asyncio
async def test_full_room_is_not_offered(test_session, notifier, retreat):
    room = await create_room(test_session, retreat, capacity=1, available=0)
    await _add_entry(test_session, retreat, 1)
    service = WaitlistService(test_session, notifier)

    assert await service.offer_next(retreat.id, room.id, now=NOW) is None


@pytest.mark.asyncio
async def test_room_has_one_outstanding_offer(test_session, notifier, retreat, room):
    first = await _add_entry(test_session, retreat, 1)
    second = await _add_entry(test_session, retreat, 2)
    service = WaitlistService(test_session, notifier)

    offered = await service.offer_next(retreat.id, room.id, now=NOW)
    assert offered.id == first.id

    assert await service.offer_next(retreat.id, room.id, now=NOW) is None
    with pytest.raises(ConflictError):
        await service.offer_entry(second.id, room.id, now=NOW)

    await test_session.refresh(second)
    assert second.status == WaitlistStatus.WAITING
    assert len(notifier.of(NotificationKind.WAITLIST_OFFER)) == 1


@pytest.mark.asyncio
async def test_database_rejects_second_outstanding_offer_for_a_room(test_session, retreat, room):
    await _add_entry(
        test_session, retreat, 1, status=WaitlistStatus.DECLINED, offered_room_id=room.id
    )
    await _add_entry(
        test_session, retreat, 2, status=WaitlistStatus.NOTIFIED, offered_room_id=room.id
    )

    with pytest.raises(IntegrityError):
        await _add_entry(
            test_session, retreat, 3, status=WaitlistStatus.NOTIFIED, offered_room_id=room.id
        )
    await test_session.rollback()


@pytest.mark.asyncio
async def test_offer_beaten_by_concurrent_commit_is_not_made(test_session, notifier, retreat, room):
    entry = await _add_entry(test_session, retreat, 1)
    entry_id = entry.id
    service = WaitlistService(test_session, notifier)
    original_execute = test_session.execute

    async def concurrent_offer_wins(statement, *args, **kwargs):
        if isinstance(statement, Update):
            raise IntegrityError(
                "UPDATE waitlist_entries", {}, Exception("uq_waitlist_room_outstanding_offer")
            )
        return await original_execute(statement, *args, **kwargs)

    with patch.object(test_session, "execute", side_effect=concurrent_offer_wins):
        with pytest.raises(ConflictError):
            await service.offer_entry(entry_id, room.id, now=NOW)

    entry = await test_session.get(WaitlistEntry, entry_id)
    await test_session.refresh(entry)
    assert entry.status == WaitlistStatus.WAITING
    assert notifier.of(NotificationKind.WAITLIST_OFFER) == []


@pytest.mark.asyncio
async def test_offer_entry_needs_a_room(test_session, notifier, retreat, room):
    entry = await _add_entry(test_session, retreat, 1)
    service = WaitlistService(test_session, notifier)

    with pytest.raises(ValidationError):
        await service.offer_entry(entry.id, now=NOW)


@pytest.mark.asyncio
async def test_offer_entry_out_of_order(test_session, notifier, retreat, room):
    await _add_entry(test_session, retreat, 1)
    second = await _add_entry(test_session, retreat, 2, room=room)
    service = WaitlistService(test_session, notifier)

    offered = await service.offer_entry(second.id, now=NOW)

    assert offered.id == second.id
    assert offered.offered_room_id == room.id
    assert offered.notification_expires_at == NOW + HOLD


@pytest.mark.asyncio
async def test_undeliverable_offer_goes_back_in_line(test_session, notifier, retreat, room):
    entry = await _add_entry(test_session, retreat, 1)
    notifier.failing.add(NotificationKind.WAITLIST_OFFER)
    service = WaitlistService(test_session, notifier)

    assert await service.offer_next(retreat.id, room.id, now=NOW) is None

    await test_session.refresh(entry)
    assert entry.status == WaitlistStatus.WAITING
    assert entry.response_token is None
    assert entry.offered_room_id is None


@pytest.mark.asyncio
async def test_accept_reserves_places(test_session, notifier, retreat):
    room = await create_room(test_session, retreat, capacity=1)
    await _add_entry(test_session, retreat, 1)
    service = WaitlistService(test_session, notifier)
    offered = await service.offer_next(retreat.id, room.id, now=NOW)
    token = offered.response_token

    entry = await service.respond(token, WaitlistAction.ACCEPT, now=NOW)

    assert entry.status == WaitlistStatus.ACCEPTED
    assert entry.reservation_expires_at == NOW + HOLD
    assert entry.notification_expires_at is None
    assert await _available(test_session, room.id) == 0
    [(_, recipient, data)] = notifier.of(NotificationKind.WAITLIST_ACCEPTED)
    assert recipient == "guest1@example.com"
    assert data["checkout_url"].endswith(f"waitlist_token={token}")


@pytest.mark.asyncio
async def test_accept_when_room_was_taken(test_session, notifier, retreat):
    room = await create_room(test_session, retreat, capacity=1)
    await _add_entry(test_session, retreat, 1)
    service = WaitlistService(test_session, notifier)
    offered = await service.offer_next(retreat.id, room.id, now=NOW)
    room.available = 0
    await test_session.commit()

    with pytest.raises(CapacityConflictError):
        await service.respond(offered.response_token, WaitlistAction.ACCEPT, now=NOW)

    await test_session.refresh(offered)
    assert offered.status == WaitlistStatus.NOTIFIED


@pytest.mark.asyncio
async def test_decline_offers_room_onward(test_session, notifier, retreat):
    room = await create_room(test_session, retreat, capacity=1)
    await _add_entry(test_session, retreat, 1)
    second = await _add_entry(test_session, retreat, 2)
    service = WaitlistService(test_session, notifier)
    offered = await service.offer_next(retreat.id, room.id, now=NOW)

    declined = await service.respond(offered.response_token, WaitlistAction.DECLINE, now=NOW)

    assert declined.status == WaitlistStatus.DECLINED
    assert declined.notification_expires_at is None
    await test_session.refresh(second)
    assert second.status == WaitlistStatus.NOTIFIED
    assert second.offered_room_id == room.id
    assert await _available(test_session, room.id) == 1


@pytest.mark.asyncio
async def test_late_answer_expires_offer(test_session, notifier, retreat, room):
    await _add_entry(test_session, retreat, 1)
    service = WaitlistService(test_session, notifier)
    offered = await service.offer_next(retreat.id, room.id, now=NOW)

    with pytest.raises(OfferExpiredError) as exc_info:
        await service.respond(
            offered.response_token, WaitlistAction.ACCEPT, now=NOW + HOLD + timedelta(minutes=1)
        )

    assert exc_info.value.status_code == 410
    await test_session.refresh(offered)
    assert offered.status == WaitlistStatus.EXPIRED
    assert offered.notification_expires_at is None
    assert await _available(test_session, room.id) == 2


@pytest.mark.asyncio
async def test_offer_answers_once(test_session, notifier, retreat, room):
    await _add_entry(test_session, retreat, 1)
    service = WaitlistService(test_session, notifier)
    offered = await service.offer_next(retreat.id, room.id, now=NOW)
    await service.respond(offered.response_token, WaitlistAction.ACCEPT, now=NOW)

    with pytest.raises(BusinessRuleError) as exc_info:
        await service.respond(offered.response_token, WaitlistAction.DECLINE, now=NOW)

    assert exc_info.value.problem_details["code"] == "OFFER_ALREADY_ANSWERED"


@pytest.mark.asyncio
async def test_sweep_expires_stale_offers_and_offers_onward(test_session, notifier, retreat, room):
    first = await _add_entry(test_session, retreat, 1)
    second = await _add_entry(test_session, retreat, 2)
    service = WaitlistService(test_session, notifier)
    await service.offer_next(retreat.id, room.id, now=NOW - HOLD - timedelta(hours=1))

    summary = await service.expire_offers(now=NOW)

    assert summary.expired_offers == 1
    assert summary.offers_made == 1
    assert summary.errors == 0
    await test_session.refresh(first)
    await test_session.refresh(second)
    assert first.status == WaitlistStatus.EXPIRED
    assert first.notification_expires_at is None
    assert second.status == WaitlistStatus.NOTIFIED


@pytest.mark.asyncio
async def test_sweep_returns_lapsed_reservations(test_session, notifier, retreat):
    room = await create_room(test_session, retreat, capacity=1, available=0)
    lapsed = await _add_entry(
        test_session,
        retreat,
        1,
        status=WaitlistStatus.ACCEPTED,
        offered_room_id=room.id,
        response_token="lapsed-token",
        reservation_expires_at=NOW - timedelta(hours=1),
    )
    waiting = await _add_entry(test_session, retreat, 2)
    service = WaitlistService(test_session, notifier)

    summary = await service.expire_offers(now=NOW)

    assert summary.lapsed_reservations == 1
    assert summary.offers_made == 1
    await test_session.refresh(lapsed)
    await test_session.refresh(waiting)
    assert lapsed.status == WaitlistStatus.EXPIRED
    assert waiting.status == WaitlistStatus.NOTIFIED
    assert await _available(test_session, room.id) == 1


@pytest.mark.asyncio
async def test_sweep_leaves_live_offers_alone(test_session, notifier, retreat, room):
    await _add_entry(test_session, retreat, 1)
    service = WaitlistService(test_session, notifier)
    offered = await service.offer_next(retreat.id, room.id, now=NOW)

    summary = await service.expire_offers(now=NOW + timedelta(hours=1))

    assert summary.expired_offers == 0
    await test_session.refresh(offered)
    assert offered.status == WaitlistStatus.NOTIFIED


@pytest.mark.asyncio
async def test_accepted_entry_lookup_checks_email_and_status(test_session, notifier, retreat, room):
    await _add_entry(test_session, retreat, 1)
    service = WaitlistService(test_session, notifier)
    offered = await service.offer_next(retreat.id, room.id, now=NOW)
    token = offered.response_token

    with pytest.raises(BusinessRuleError) as exc_info:
        await service.get_accepted_entry(token, "guest1@example.com", now=NOW)
    assert exc_info.value.problem_details["code"] == "OFFER_NOT_ACCEPTED"

    await service.respond(token, WaitlistAction.ACCEPT, now=NOW)

    with pytest.raises(ValidationError):
        await service.get_accepted_entry(token, "someone@example.com", now=NOW)
    entry = await service.get_accepted_entry(token, "Guest1@Example.com", now=NOW)
    assert entry.status == WaitlistStatus.ACCEPTED
