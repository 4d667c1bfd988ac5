# src/gatherpay/infrastructure/db/models/payment.py
"""
Local mirror of payment intents opened at the external ledger, plus the
idempotency log for the ledger's webhook deliveries.
"""

from sqlalchemy import (
    Column, Integer, String, DateTime, Enum, ForeignKey, CheckConstraint, Index, func
)
from sqlalchemy.orm import relationship
from .base import Base

from gatherpay.domain.entities import PaymentStatus, ProductType


class PaymentIntent(Base):
    __tablename__ = 'payment_intents'
    __table_args__ = (
        CheckConstraint('discount_amount_minor >= 0', name='ck_payment_discount_nonneg'),
        CheckConstraint('discount_amount_minor <= original_amount_minor', name='ck_payment_discount_capped'),
        CheckConstraint('final_amount_minor = original_amount_minor - discount_amount_minor',
                        name='ck_payment_final_amount'),
        CheckConstraint('discount_code_id IS NULL OR reward_discount_id IS NULL',
                        name='ck_payment_single_discount'),
        Index('ix_payment_intents_user_event', 'user_id', 'event_id'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='RESTRICT'), nullable=False, index=True)
    event_id = Column(Integer, ForeignKey('events.id', ondelete='RESTRICT'), nullable=True)
    participation_id = Column(Integer, ForeignKey('participations.id', ondelete='SET NULL'), nullable=True)
    product_type = Column(Enum(ProductType, name="product_type"), nullable=False, default=ProductType.EVENT)

    original_amount_minor = Column(Integer, nullable=False)
    discount_amount_minor = Column(Integer, nullable=False, default=0)
    final_amount_minor = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)

    status = Column(Enum(PaymentStatus, name="payment_status"), nullable=False, default=PaymentStatus.PENDING,
                    index=True)
    external_ref = Column(String(128), unique=True, nullable=True)

    discount_code_id = Column(Integer, ForeignKey('discount_codes.id', ondelete='SET NULL'), nullable=True)
    reward_discount_id = Column(Integer, ForeignKey('reward_discounts.id', ondelete='SET NULL'), nullable=True)

    # Reservation window the intent was opened for; a verdict on an older window leaves the current one alone.
    payment_window_start = Column(DateTime(timezone=True), nullable=True)

    failure_reason = Column(String(500), nullable=True)
    succeeded_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    event = relationship("Event")
    escrow = relationship("Escrow", back_populates="payment_intent", uselist=False)
    refund_requests = relationship("RefundRequest", back_populates="payment_intent")

    def __repr__(self):
        return (f"<PaymentIntent(id={self.id}, ref={self.external_ref}, "
                f"amount={self.final_amount_minor} {self.currency}, status={self.status.value})>")


class WebhookEvent(Base):
    """One row per ledger delivery id; the unique key is what makes replays no-ops."""
    __tablename__ = 'webhook_events'

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(128), unique=True, nullable=False)
    event_type = Column(String(64), nullable=False, index=True)
    outcome = Column(String(64), nullable=True)
    received_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
