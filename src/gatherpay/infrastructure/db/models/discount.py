# src/gatherpay/infrastructure/db/models/discount.py
from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, JSON, Enum, ForeignKey, CheckConstraint, func, true
)
from sqlalchemy.orm import relationship
from .base import Base

from gatherpay.domain.entities import DiscountType


class DiscountCode(Base):
    __tablename__ = 'discount_codes'
    __table_args__ = (
        CheckConstraint('value >= 0', name='ck_discount_value_nonneg'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(64), unique=True, nullable=False, index=True)
    description = Column(String(500), nullable=True)

    discount_type = Column(Enum(DiscountType, name="discount_type"), nullable=False)
    # Percent for PERCENTAGE, minor units for FIXED.
    value = Column(Integer, nullable=False)

    max_uses = Column(Integer, nullable=True)
    max_uses_per_user = Column(Integer, nullable=True)
    min_amount_minor = Column(Integer, nullable=True)

    valid_from = Column(DateTime(timezone=True), nullable=False)
    valid_until = Column(DateTime(timezone=True), nullable=False)

    # Empty list = no restriction.
    product_types = Column(JSON, nullable=False, default=list)
    allowed_countries = Column(JSON, nullable=False, default=list)
    allowed_cities = Column(JSON, nullable=False, default=list)
    user_segments = Column(JSON, nullable=False, default=list)

    is_active = Column(Boolean, nullable=False, default=True, server_default=true())
    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    redemptions = relationship("DiscountRedemption", back_populates="discount_code")

    def __repr__(self):
        return f"<DiscountCode(code='{self.code}', type={self.discount_type.value}, value={self.value})>"


class DiscountRedemption(Base):
    """Written only once the payment that used the code has succeeded."""
    __tablename__ = 'discount_redemptions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    discount_code_id = Column(Integer, ForeignKey('discount_codes.id', ondelete='CASCADE'), nullable=False,
                              index=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    payment_intent_id = Column(Integer, ForeignKey('payment_intents.id', ondelete='CASCADE'), unique=True,
                               nullable=False)
    amount_minor = Column(Integer, nullable=False)
    redeemed_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    discount_code = relationship("DiscountCode", back_populates="redemptions")


class RewardDiscount(Base):
    """A single-use, per-user credit derived from the user's reward tier."""
    __tablename__ = 'reward_discounts'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    tier = Column(String(30), nullable=False)
    discount_type = Column(Enum(DiscountType, name="discount_type"), nullable=False)
    value = Column(Integer, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    redeemed_at = Column(DateTime(timezone=True), nullable=True)
    # No FK; payment_intents.reward_discount_id is the owning reference.
    payment_intent_id = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<RewardDiscount(id={self.id}, user={self.user_id}, tier='{self.tier}', redeemed={bool(self.redeemed_at)})>"
