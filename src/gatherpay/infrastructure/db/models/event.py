# src/gatherpay/infrastructure/db/models/event.py
"""
Events with their capacity counters.

`reserved_count` and `confirmed_count` are only ever changed by the bounded
UPDATE statements in CapacityLedger; the CHECK constraints below make an
overbooked row impossible to commit.
"""

from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, Float, JSON, ForeignKey, CheckConstraint, func, false
)
from sqlalchemy.orm import relationship
from .base import Base


class Event(Base):
    __tablename__ = 'events'
    __table_args__ = (
        CheckConstraint('capacity >= 0', name='ck_events_capacity_nonneg'),
        CheckConstraint('reserved_count >= 0', name='ck_events_reserved_nonneg'),
        CheckConstraint('confirmed_count >= 0', name='ck_events_confirmed_nonneg'),
        CheckConstraint('reserved_count + confirmed_count <= capacity', name='ck_events_within_capacity'),
        CheckConstraint('price_minor >= 0', name='ck_events_price_nonneg'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    host_id = Column(Integer, ForeignKey('users.id', ondelete='RESTRICT'), nullable=False, index=True)
    title = Column(String(200), nullable=False)

    capacity = Column(Integer, nullable=False)
    reserved_count = Column(Integer, nullable=False, default=0, server_default='0')
    confirmed_count = Column(Integer, nullable=False, default=0, server_default='0')

    starts_at = Column(DateTime(timezone=True), nullable=False, index=True)
    ends_at = Column(DateTime(timezone=True), nullable=False)

    price_minor = Column(Integer, nullable=False, default=0, server_default='0')
    currency = Column(String(3), nullable=False, default='EUR', server_default='EUR')

    hobby_ids = Column(JSON, nullable=False, default=list)
    category_ids = Column(JSON, nullable=False, default=list)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    country = Column(String(2), nullable=True)
    city = Column(String(120), nullable=True)

    is_cancelled = Column(Boolean, nullable=False, default=False, server_default=false())
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancel_reason = Column(String(500), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    host = relationship("User", back_populates="hosted_events")
    participations = relationship("Participation", back_populates="event", cascade="all, delete-orphan")

    @property
    def is_paid(self) -> bool:
        return (self.price_minor or 0) > 0

    @property
    def taken(self) -> int:
        return (self.reserved_count or 0) + (self.confirmed_count or 0)

    def __repr__(self):
        return f"<Event(id={self.id}, capacity={self.taken}/{self.capacity}, cancelled={self.is_cancelled})>"
