# src/gatherpay/application/services/capacity_ledger.py
"""
CapacityLedger - the only writer of an event's slot counters.

Every operation is one UPDATE whose WHERE clause carries the bound, and
success is read from `rowcount`. Two concurrent joins for the last seat both
issue the UPDATE; the database serializes them and exactly one matches.
"""

import logging

from sqlalchemy import and_, update
from sqlalchemy.orm import Session

from gatherpay.infrastructure.db.models import Event

log = logging.getLogger(__name__)


class CapacityLedger:

    def _apply(self, session: Session, event_id: int, where, values, op: str) -> bool:
        result = session.execute(
            update(Event)
            .where(and_(Event.id == event_id, *where))
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        ok = result.rowcount == 1
        if ok:
            log.debug(f"Capacity {op} applied to event {event_id}")
        else:
            log.info(f"Capacity {op} refused for event {event_id}")
        return ok

    def reserve(self, session: Session, event_id: int) -> bool:
        """Hold one slot for a pending payment. False when the event is full."""
        return self._apply(
            session, event_id,
            [Event.reserved_count + Event.confirmed_count < Event.capacity],
            {"reserved_count": Event.reserved_count + 1},
            "reserve",
        )

    def claim_confirmed(self, session: Session, event_id: int) -> bool:
        """Take one slot straight into the confirmed bucket (free events, late captures)."""
        return self._apply(
            session, event_id,
            [Event.reserved_count + Event.confirmed_count < Event.capacity],
            {"confirmed_count": Event.confirmed_count + 1},
            "claim_confirmed",
        )

    def confirm_reserved(self, session: Session, event_id: int) -> bool:
        """Move one slot from reserved to confirmed; the total is unchanged."""
        return self._apply(
            session, event_id,
            [Event.reserved_count > 0],
            {
                "reserved_count": Event.reserved_count - 1,
                "confirmed_count": Event.confirmed_count + 1,
            },
            "confirm_reserved",
        )

    def release_reserved(self, session: Session, event_id: int) -> bool:
        return self._apply(
            session, event_id,
            [Event.reserved_count > 0],
            {"reserved_count": Event.reserved_count - 1},
            "release_reserved",
        )

    def release_confirmed(self, session: Session, event_id: int) -> bool:
        return self._apply(
            session, event_id,
            [Event.confirmed_count > 0],
            {"confirmed_count": Event.confirmed_count - 1},
            "release_confirmed",
        )
