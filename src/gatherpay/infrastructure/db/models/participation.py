# src/gatherpay/infrastructure/db/models/participation.py
from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, Float, JSON, Enum, ForeignKey, UniqueConstraint, Index, func, false
)
from sqlalchemy.orm import relationship
from .base import Base

from gatherpay.domain.entities import ParticipationStatus, MatchSource


class Participation(Base):
    __tablename__ = 'participations'
    __table_args__ = (
        UniqueConstraint('user_id', 'event_id', name='uq_participation_user_event'),
        Index('ix_participations_status_expires', 'status', 'payment_expires_at'),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    event_id = Column(Integer, ForeignKey('events.id', ondelete='CASCADE'), nullable=False, index=True)

    status = Column(Enum(ParticipationStatus, name="participation_status"), nullable=False,
                    default=ParticipationStatus.REQUESTED)

    match_score = Column(Float, nullable=True)
    match_source = Column(Enum(MatchSource, name="match_source"), nullable=True)
    match_reasons = Column(JSON, nullable=False, default=list)
    fallback_used = Column(Boolean, nullable=False, default=False, server_default=false())

    payment_window_start = Column(DateTime(timezone=True), nullable=True)
    payment_expires_at = Column(DateTime(timezone=True), nullable=True)

    finalized_at = Column(DateTime(timezone=True), nullable=True)
    finalized_by = Column(Integer, nullable=True)

    attended_at = Column(DateTime(timezone=True), nullable=True)

    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by = Column(String(64), nullable=True)
    cancel_reason = Column(String(500), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    user = relationship("User", back_populates="participations")
    event = relationship("Event", back_populates="participations")

    def __repr__(self):
        return f"<Participation(id={self.id}, user={self.user_id}, event={self.event_id}, status={self.status.value})>"
