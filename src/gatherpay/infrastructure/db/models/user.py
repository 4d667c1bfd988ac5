# src/gatherpay/infrastructure/db/models/user.py
"""
The slice of the user profile the pipeline reads. Profile CRUD lives in
another service; this table is written there and only read here.
"""

from sqlalchemy import Column, Integer, String, DateTime, Boolean, Float, JSON, func, true
from sqlalchemy.orm import relationship
from .base import Base


class User(Base):
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    display_name = Column(String(120), nullable=True)

    hobby_ids = Column(JSON, nullable=False, default=list)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    search_radius_km = Column(Float, nullable=True)

    country = Column(String(2), nullable=True)
    city = Column(String(120), nullable=True)
    segment = Column(String(50), nullable=True)
    reward_tier = Column(String(30), nullable=True)

    # External ledger identities
    ledger_customer_ref = Column(String(128), nullable=True)
    payout_destination = Column(String(128), nullable=True)

    is_active = Column(Boolean, default=True, server_default=true(), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    hosted_events = relationship("Event", back_populates="host")
    participations = relationship("Participation", back_populates="user")

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}', payout={'yes' if self.payout_destination else 'no'})>"
