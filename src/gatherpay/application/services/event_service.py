# src/gatherpay/application/services/event_service.py
"""
EventService - host cancellation and the attendance entry point.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from gatherpay.domain.clock import utcnow
from gatherpay.domain.entities import ParticipationStatus
from gatherpay.domain.errors import ForbiddenError, NotFoundError, ValidationError
from gatherpay.infrastructure.db.repository import EventRepository, ParticipationRepository
from gatherpay.infrastructure.db.uow import SessionScope
from .escrow_service import EscrowEngine
from .participation_service import ParticipationStateMachine
from .refund_service import RefundEngine

log = logging.getLogger(__name__)

_OPEN_STATUSES = (
    ParticipationStatus.MATCHED,
    ParticipationStatus.RESERVED,
    ParticipationStatus.CONFIRMED,
)


class EventService:
    def __init__(
        self,
        session_scope: SessionScope,
        participations: ParticipationStateMachine,
        escrow: EscrowEngine,
        refunds: RefundEngine,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_scope = session_scope
        self.participations = participations
        self.escrow = escrow
        self.refunds = refunds
        self.clock = clock

    async def cancel_event(self, event_id: int, host_id: int, reason: Optional[str] = None) -> Dict[str, Any]:
        """
        Cancel an event on behalf of its host. Open participations are exited
        first (their slots go back to the ledger counters), then every captured
        payment is refunded in full, each payment on its own.
        """
        now = self.clock()
        with self.session_scope() as s:
            event = EventRepository(s).get_for_update(event_id)
            if event is None:
                raise NotFoundError("Event not found")
            if event.host_id != host_id:
                raise ForbiddenError("Only the event host can cancel this event")
            if event.is_cancelled:
                raise ValidationError("Event is already cancelled")
            event.is_cancelled = True
            event.cancelled_at = now
            event.cancel_reason = reason

            cancelled = 0
            for participation in ParticipationRepository(s).list_for_event(event_id, _OPEN_STATUSES, lock=True):
                # Paid participants are cancelled by their refund, which also releases the seat.
                if participation.status == ParticipationStatus.CONFIRMED and event.is_paid:
                    continue
                if self.participations.cancel(
                    participation, actor=str(host_id), reason="Event cancelled", db_session=s,
                ):
                    cancelled += 1

        log.info(f"Event {event_id} cancelled by host {host_id}; {cancelled} participation(s) closed")
        refunds = await self.refunds.auto_refund_cancelled_event(event_id)
        return {"event_id": event_id, "participations_cancelled": cancelled, "refunds": refunds}

    def record_attendance(self, event_id: int, user_id: int) -> Dict[str, Any]:
        with self.session_scope() as s:
            if EventRepository(s).get(event_id) is None:
                raise NotFoundError("Event not found")
            newly_attended = self.participations.mark_attended(event_id, user_id, db_session=s)
            verified = self.escrow.verify_attendance(event_id, user_id, db_session=s)
        log.info(f"Attendance recorded for user {user_id} at event {event_id} "
                 f"(new={newly_attended}, escrows_verified={verified})")
        return {"event_id": event_id, "user_id": user_id, "attended": True, "escrows_verified": verified}
