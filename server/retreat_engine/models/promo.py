"""Promo code and redemption model definitions."""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from ..core.database import Base


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class PromoCode(Base):
    """A discount code with an optional usage ceiling."""

    __tablename__ = "promo_codes"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True, index=True)

    discount_type: Mapped[str] = mapped_column(String(20), nullable=False)
    # Whole percent for percentage codes, minor units for fixed codes
    discount_value: Mapped[int] = mapped_column(Integer, nullable=False)

    max_uses: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_uses: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)
    valid_from: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Restricts the code to one retreat when set
    retreat_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("retreats.id", ondelete="CASCADE"),
        nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(
        nullable=False,
        default=datetime.utcnow,
        server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        nullable=False,
        default=datetime.utcnow,
        onupdate=datetime.utcnow
    )

    __table_args__ = (
        CheckConstraint("current_uses >= 0", name="ck_promo_current_uses_non_negative"),
        CheckConstraint("discount_value >= 0", name="ck_promo_discount_non_negative"),
        CheckConstraint(
            "discount_type IN ('percentage', 'fixed')", name="ck_promo_discount_type"
        ),
    )

    def __repr__(self) -> str:
        return f"<PromoCode(code='{self.code}', uses={self.current_uses}/{self.max_uses})>"


class PromoCodeRedemption(Base):
    """Links a booking to the promo code it used."""

    __tablename__ = "promo_code_redemptions"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    promo_code_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("promo_codes.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    booking_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
        unique=True
    )
    discount_amount: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        nullable=False,
        default=datetime.utcnow,
        server_default=func.now()
    )

    def __repr__(self) -> str:
        return (
            f"<PromoCodeRedemption(promo_code_id={self.promo_code_id}, "
            f"booking_id={self.booking_id})>"
        )
