"""Promo code validation, usage counting and redemption cleanup."""

import logging
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.exceptions import BusinessRuleError, ConflictError
from ..models.promo import DiscountType, PromoCode, PromoCodeRedemption
from .schedule_calculator import percent_of

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PromoQuote:
    promo_code_id: UUID
    code: str
    discount_amount: int


class PromoService:
    """Service for promo code operations."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def quote(
        self,
        code: str,
        retreat_id: UUID,
        subtotal: int,
        now: datetime | None = None,
    ) -> PromoQuote:
        """
        Work out what a promo code is worth for a booking, without using it.

        Raises:
            BusinessRuleError: If the code is unknown, inactive, out of its
                validity window, for another retreat, or used up
        """
        now = now or datetime.utcnow()
        promo = (
            await self.db.execute(select(PromoCode).where(PromoCode.code == code.strip().upper()))
        ).scalar_one_or_none()

        if not promo or not promo.is_active:
            raise BusinessRuleError("Promo code is not valid", code="PROMO_INVALID")
        if promo.valid_from and now < promo.valid_from:
            raise BusinessRuleError("Promo code is not active yet", code="PROMO_INVALID")
        if promo.valid_until and now > promo.valid_until:
            raise BusinessRuleError("Promo code has expired", code="PROMO_EXPIRED")
        if promo.retreat_id and promo.retreat_id != retreat_id:
            raise BusinessRuleError("Promo code does not apply to this retreat", code="PROMO_INVALID")
        if promo.max_uses is not None and promo.current_uses >= promo.max_uses:
            raise BusinessRuleError("Promo code has reached its usage limit", code="PROMO_EXHAUSTED")

        if promo.discount_type == DiscountType.PERCENTAGE.value:
            discount = percent_of(subtotal, promo.discount_value)
        else:
            discount = promo.discount_value

        return PromoQuote(promo.id, promo.code, min(discount, subtotal))

    async def try_increment_usage(self, promo_code_id: UUID) -> bool:
        """Count one use of a promo code if it still has uses left."""
        stmt = (
            update(PromoCode)
            .where(
                PromoCode.id == promo_code_id,
                or_(PromoCode.max_uses.is_(None), PromoCode.current_uses < PromoCode.max_uses),
            )
            .values(current_uses=PromoCode.current_uses + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()
        return result.rowcount == 1

    async def claim(self, quote: PromoQuote) -> None:
        """
        Raises:
            ConflictError: If the last use was taken by a concurrent booking
        """
        if not await self.try_increment_usage(quote.promo_code_id):
            raise ConflictError(detail=f"Promo code {quote.code} has just reached its usage limit")

    async def decrement_usage(self, promo_code_id: UUID) -> None:
        stmt = (
            update(PromoCode)
            .where(PromoCode.id == promo_code_id, PromoCode.current_uses > 0)
            .values(current_uses=PromoCode.current_uses - 1)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(stmt)

    async def record_redemption(self, quote: PromoQuote, booking_id: UUID) -> PromoCodeRedemption:
        redemption = PromoCodeRedemption(
            promo_code_id=quote.promo_code_id,
            booking_id=booking_id,
            discount_amount=quote.discount_amount,
        )
        self.db.add(redemption)
        return redemption

    async def release_for_booking(self, booking_id: UUID) -> bool:
        """
        Delete a booking's redemption and give the use back to the code.

        Both statements go out in one transaction so the counter and the
        redemption rows cannot drift apart.

        Returns:
            True if the booking had a redemption
        """
        redemption = (
            await self.db.execute(
                select(PromoCodeRedemption).where(PromoCodeRedemption.booking_id == booking_id)
            )
        ).scalar_one_or_none()
        if not redemption:
            return False

        promo_code_id = redemption.promo_code_id
        await self.db.execute(
            delete(PromoCodeRedemption)
            .where(PromoCodeRedemption.id == redemption.id)
            .execution_options(synchronize_session=False)
        )
        await self.decrement_usage(promo_code_id)
        await self.db.commit()

        logger.info(
            "Promo redemption released",
            extra={"booking_id": str(booking_id), "promo_code_id": str(promo_code_id)}
        )
        return True
