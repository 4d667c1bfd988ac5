# src/gatherpay/infrastructure/db/models/escrow.py
from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, Enum, ForeignKey, CheckConstraint, Index, func, false
)
from sqlalchemy.orm import relationship
from .base import Base

from gatherpay.domain.entities import EscrowStatus


class Escrow(Base):
    __tablename__ = 'escrows'
    __table_args__ = (
        # Money can only leave for the host once attendance is on record.
        CheckConstraint("status NOT IN ('SCHEDULED', 'RELEASED') OR attendance_verified",
                        name='ck_escrow_release_requires_attendance'),
        CheckConstraint('amount_minor >= 0', name='ck_escrow_amount_nonneg'),
        CheckConstraint('retry_count >= 0', name='ck_escrow_retry_nonneg'),
        CheckConstraint('release_attempt >= 0', name='ck_escrow_release_attempt_nonneg'),
        Index('ix_escrows_release_gate', 'status', 'attendance_verified', 'release_at'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_intent_id = Column(Integer, ForeignKey('payment_intents.id', ondelete='RESTRICT'),
                               unique=True, nullable=False)
    event_id = Column(Integer, ForeignKey('events.id', ondelete='RESTRICT'), nullable=False, index=True)
    host_id = Column(Integer, ForeignKey('users.id', ondelete='RESTRICT'), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='RESTRICT'), nullable=False, index=True)

    amount_minor = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(Enum(EscrowStatus, name="escrow_status"), nullable=False, default=EscrowStatus.HELD)

    attendance_verified = Column(Boolean, nullable=False, default=False, server_default=false())
    attendance_verified_at = Column(DateTime(timezone=True), nullable=True)

    event_end_at = Column(DateTime(timezone=True), nullable=False)
    release_at = Column(DateTime(timezone=True), nullable=False)

    retry_count = Column(Integer, nullable=False, default=0, server_default='0')
    # Suffix of the transfer idempotency key; bumped only when the ledger definitively refused a transfer.
    release_attempt = Column(Integer, nullable=False, default=0, server_default='0')
    transfer_ref = Column(String(128), nullable=True, index=True)
    platform_fee_minor = Column(Integer, nullable=True)
    host_amount_minor = Column(Integer, nullable=True)
    failure_reason = Column(String(500), nullable=True)

    released_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    payment_intent = relationship("PaymentIntent", back_populates="escrow")

    def __repr__(self):
        return (f"<Escrow(id={self.id}, payment={self.payment_intent_id}, status={self.status.value}, "
                f"verified={self.attendance_verified})>")
