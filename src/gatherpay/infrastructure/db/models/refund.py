# src/gatherpay/infrastructure/db/models/refund.py
from sqlalchemy import Column, Integer, String, DateTime, Text, Enum, ForeignKey, func
from sqlalchemy.orm import relationship
from .base import Base

from gatherpay.domain.entities import RefundStatus, RefundReason


class RefundRequest(Base):
    __tablename__ = 'refund_requests'

    id = Column(Integer, primary_key=True, autoincrement=True)
    payment_intent_id = Column(Integer, ForeignKey('payment_intents.id', ondelete='RESTRICT'), nullable=False,
                               index=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='RESTRICT'), nullable=False, index=True)

    reason = Column(Enum(RefundReason, name="refund_reason"), nullable=False)
    details = Column(Text, nullable=True)
    amount_minor = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False)

    status = Column(Enum(RefundStatus, name="refund_status"), nullable=False, default=RefundStatus.PENDING,
                    index=True)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    processed_by = Column(Integer, nullable=True)
    admin_notes = Column(Text, nullable=True)
    ledger_refund_ref = Column(String(128), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    payment_intent = relationship("PaymentIntent", back_populates="refund_requests")

    def __repr__(self):
        return f"<RefundRequest(id={self.id}, payment={self.payment_intent_id}, status={self.status.value})>"
