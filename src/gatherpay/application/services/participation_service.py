# src/gatherpay/application/services/participation_service.py
"""
ParticipationStateMachine - owns the lifecycle of one user's participation in
one event: join, payment-window expiry, finalize, attendance, cancellation.

Join runs in two short transactions around the matcher call. The first reads
a snapshot and rejects obviously invalid requests; the scorer is then called
with no transaction open; the second transaction locks the rows, re-validates
and applies the decision through CapacityLedger.

Methods that take `db_session` run inside a caller's unit of work (payments,
refunds, event cancellation); the others open their own.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gatherpay.config import PipelineConfig
from gatherpay.domain.clock import utcnow, as_utc
from gatherpay.domain.entities import (
    ParticipationStatus, ACTIVE_PARTICIPATION, FINALIZABLE_PARTICIPATION, ensure_transition,
)
from gatherpay.domain.errors import (
    ValidationError, NotFoundError, ForbiddenError, ConflictError, InvalidTransitionError,
)
from gatherpay.domain.value_objects import (
    UserMatchProfile, EventMatchProfile, GeoPoint, MatchDecision, JoinResult,
)
from gatherpay.infrastructure.db.models import Event, Participation, User
from gatherpay.infrastructure.db.repository import (
    UserRepository, EventRepository, ParticipationRepository,
)
from gatherpay.infrastructure.db.uow import SessionScope
from gatherpay.infrastructure.monitoring.metrics import RESERVATIONS_EXPIRED
from .capacity_ledger import CapacityLedger
from .domain_events import DomainEventBus, PARTICIPATION_CONFIRMED, MATCH_FINALIZED
from .matching_service import MatchingDecisionEngine

log = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"

# Outcomes of confirm_paid()
CONFIRMED = "confirmed"
ALREADY_CONFIRMED = "already_confirmed"
NO_CAPACITY = "no_capacity"
NOT_CONFIRMABLE = "not_confirmable"


def _geo(lat, lon) -> Optional[GeoPoint]:
    if lat is None or lon is None:
        return None
    return GeoPoint(float(lat), float(lon))


class ParticipationStateMachine:
    def __init__(
        self,
        session_scope: SessionScope,
        matching: MatchingDecisionEngine,
        capacity: CapacityLedger,
        config: PipelineConfig,
        bus: DomainEventBus,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_scope = session_scope
        self.matching = matching
        self.capacity = capacity
        self.config = config
        self.bus = bus
        self.clock = clock

    # --- helpers ---

    def _user_profile(self, user: User) -> UserMatchProfile:
        return UserMatchProfile(
            user_id=user.id,
            hobby_ids=frozenset(int(h) for h in (user.hobby_ids or [])),
            location=_geo(user.latitude, user.longitude),
            search_radius_km=float(user.search_radius_km or self.config.default_search_radius_km),
        )

    @staticmethod
    def _event_profile(event: Event) -> EventMatchProfile:
        return EventMatchProfile(
            event_id=event.id,
            starts_at=as_utc(event.starts_at),
            capacity=event.capacity,
            taken=event.taken,
            hobby_ids=frozenset(int(h) for h in (event.hobby_ids or [])),
            category_ids=frozenset(int(c) for c in (event.category_ids or [])),
            location=_geo(event.latitude, event.longitude),
        )

    @staticmethod
    def _validate_joinable(event: Optional[Event], now: datetime) -> None:
        if event is None:
            raise NotFoundError("Event not found")
        if event.is_cancelled:
            raise ValidationError("Event has been cancelled")
        if as_utc(event.starts_at) <= now:
            raise ValidationError("Event has already started")
        if event.taken >= event.capacity:
            raise ValidationError("Event is full")

    @staticmethod
    def _reject_if_active(participation: Optional[Participation]) -> None:
        if participation is not None and participation.status in ACTIVE_PARTICIPATION:
            raise ConflictError(f"Already joined this event (status {participation.status.value})")

    @staticmethod
    def _move(participation: Participation, target: ParticipationStatus) -> None:
        ensure_transition(participation.status, target)
        participation.status = target

    def _open_window(self, participation: Participation, now: datetime) -> None:
        participation.payment_window_start = now
        participation.payment_expires_at = now + self.config.payment_window

    @staticmethod
    def _clear_exit(participation: Participation) -> None:
        participation.cancelled_at = None
        participation.cancelled_by = None
        participation.cancel_reason = None

    @staticmethod
    def _result(participation: Participation, payment_required: bool) -> JoinResult:
        return JoinResult(
            participation_id=participation.id,
            status=participation.status.value,
            match_score=participation.match_score or 0.0,
            match_reasons=tuple(participation.match_reasons or ()),
            payment_required=payment_required,
            payment_expires_at=as_utc(participation.payment_expires_at) if payment_required else None,
        )

    async def _announce_confirmed(self, participation_id: int, user_id: int, event_id: int) -> None:
        await self.bus.publish(PARTICIPATION_CONFIRMED, {
            "participation_id": participation_id, "user_id": user_id, "event_id": event_id,
        })

    # --- join ---

    async def join(self, user_id: int, event_id: int) -> JoinResult:
        now = self.clock()
        with self.session_scope() as s:
            user = UserRepository(s).find_by_id(user_id)
            if user is None:
                raise NotFoundError("User not found")
            event = EventRepository(s).get(event_id)
            self._validate_joinable(event, now)
            self._reject_if_active(ParticipationRepository(s).find(user_id, event_id))
            user_profile = self._user_profile(user)
            event_profile = self._event_profile(event)

        decision = await self.matching.decide(user_profile, event_profile)

        now = self.clock()
        with self.session_scope() as s:
            result, confirmed = self._apply_decision(s, user_id, event_id, decision, now)

        if confirmed:
            await self._announce_confirmed(result.participation_id, user_id, event_id)
        log.info(f"User {user_id} joined event {event_id}: {result.status} "
                 f"(score={result.match_score:.3f}, fallback_used={decision.fallback_used})")
        return result

    def _apply_decision(self, s: Session, user_id: int, event_id: int, decision: MatchDecision,
                        now: datetime):
        events = EventRepository(s)
        parts = ParticipationRepository(s)

        event = events.get_for_update(event_id)
        self._validate_joinable(event, now)

        participation = parts.find(user_id, event_id, lock=True)
        self._reject_if_active(participation)
        if participation is None:
            try:
                participation = parts.add(
                    user_id=user_id, event_id=event_id, status=ParticipationStatus.REQUESTED
                )
            except IntegrityError:
                raise ConflictError("A join for this event is already in progress")

        participation.match_score = decision.score
        participation.match_source = decision.source
        participation.match_reasons = list(decision.reasons)
        participation.fallback_used = decision.fallback_used
        participation.finalized_at = None
        participation.finalized_by = None

        if not decision.accepted:
            self._move(participation, ParticipationStatus.REQUESTED)
            participation.payment_window_start = None
            participation.payment_expires_at = None
            return self._result(participation, payment_required=False), False

        if event.is_paid:
            if not self.capacity.reserve(s, event.id):
                raise ValidationError("Event is full")
            self._move(participation, ParticipationStatus.RESERVED)
            self._open_window(participation, now)
            self._clear_exit(participation)
            return self._result(participation, payment_required=True), False

        if not self.capacity.claim_confirmed(s, event.id):
            raise ValidationError("Event is full")
        self._move(participation, ParticipationStatus.CONFIRMED)
        participation.payment_window_start = None
        participation.payment_expires_at = None
        self._clear_exit(participation)
        return self._result(participation, payment_required=False), True

    async def resume_reservation(self, user_id: int, event_id: int) -> JoinResult:
        """Re-open a payment window for a matched user whose previous payment failed."""
        now = self.clock()
        confirmed = False
        with self.session_scope() as s:
            event = EventRepository(s).get_for_update(event_id)
            if event is None:
                raise NotFoundError("Event not found")
            if event.is_cancelled:
                raise ValidationError("Event has been cancelled")
            if as_utc(event.starts_at) <= now:
                raise ValidationError("Event has already started")
            participation = ParticipationRepository(s).find(user_id, event_id, lock=True)
            if participation is None:
                raise NotFoundError("Participation not found")
            if participation.status != ParticipationStatus.MATCHED:
                raise InvalidTransitionError(
                    f"Only matched participations can reserve again (status {participation.status.value})"
                )
            if event.is_paid:
                if not self.capacity.reserve(s, event.id):
                    raise ValidationError("Event is full")
                self._move(participation, ParticipationStatus.RESERVED)
                self._open_window(participation, now)
            else:
                if not self.capacity.claim_confirmed(s, event.id):
                    raise ValidationError("Event is full")
                self._move(participation, ParticipationStatus.CONFIRMED)
                confirmed = True
            result = self._result(participation, payment_required=event.is_paid)

        if confirmed:
            await self._announce_confirmed(result.participation_id, user_id, event_id)
        return result

    # --- payment window ---

    def expire_if_lapsed(self, participation: Participation, now: datetime, *, db_session: Session) -> bool:
        """
        RESERVED -> EXPIRED for a participation whose window has passed, releasing
        its slot. The caller must hold the row lock. Returns False when there
        is nothing to do, so the slot is released exactly once.
        """
        if participation.status != ParticipationStatus.RESERVED:
            return False
        expires_at = as_utc(participation.payment_expires_at)
        if expires_at is None or expires_at >= now:
            return False
        self._move(participation, ParticipationStatus.EXPIRED)
        participation.cancelled_at = now
        participation.cancelled_by = SYSTEM_ACTOR
        participation.cancel_reason = "Payment window expired"
        if not self.capacity.release_reserved(db_session, participation.event_id):
            log.error(f"Reserved counter already zero while expiring participation {participation.id}")
        RESERVATIONS_EXPIRED.inc()
        return True

    def expire_payment_windows(self) -> int:
        """Sweep: expire every lapsed reservation. Each item commits on its own."""
        now = self.clock()
        with self.session_scope() as s:
            candidate_ids = ParticipationRepository(s).lapsed_reservation_ids(now)

        processed = 0
        for participation_id in candidate_ids:
            try:
                with self.session_scope() as s:
                    participation = ParticipationRepository(s).get_for_update(participation_id)
                    if participation is not None and self.expire_if_lapsed(participation, now, db_session=s):
                        processed += 1
            except Exception as e:
                log.error(f"Failed to expire participation {participation_id}: {e}", exc_info=True)

        if processed:
            log.info(f"Expired {processed} reservation(s) past their payment window")
        return processed

    # --- payment outcomes (called by PaymentOrchestrator inside its transaction) ---

    def confirm_paid(self, participation: Participation, event: Event, *, db_session: Session) -> str:
        status = participation.status
        if status in (ParticipationStatus.CONFIRMED, ParticipationStatus.ATTENDED):
            return ALREADY_CONFIRMED
        if status == ParticipationStatus.RESERVED:
            if not self.capacity.confirm_reserved(db_session, event.id):
                log.error(f"Reserved counter already zero while confirming participation {participation.id}")
                return NO_CAPACITY
            self._move(participation, ParticipationStatus.CONFIRMED)
            participation.payment_expires_at = None
            return CONFIRMED
        if status in (ParticipationStatus.MATCHED, ParticipationStatus.EXPIRED, ParticipationStatus.CANCELLED):
            # Late capture: the slot was already given back, take a fresh one if any is left.
            if event.is_cancelled or as_utc(event.starts_at) <= self.clock():
                return NOT_CONFIRMABLE
            if not self.capacity.claim_confirmed(db_session, event.id):
                return NO_CAPACITY
            self._move(participation, ParticipationStatus.CONFIRMED)
            participation.payment_expires_at = None
            self._clear_exit(participation)
            return CONFIRMED
        return NOT_CONFIRMABLE

    def revert_to_matched(self, participation: Participation, *, db_session: Session) -> bool:
        if participation.status != ParticipationStatus.RESERVED:
            return False
        self._move(participation, ParticipationStatus.MATCHED)
        participation.payment_expires_at = None
        if not self.capacity.release_reserved(db_session, participation.event_id):
            log.error(f"Reserved counter already zero while reverting participation {participation.id}")
        return True

    # --- host / attendance / cancellation ---

    async def finalize_match(self, participation_id: int, actor_id: int) -> Participation:
        now = self.clock()
        with self.session_scope() as s:
            participation = ParticipationRepository(s).get_for_update(participation_id)
            if participation is None:
                raise NotFoundError("Participation not found")
            event = EventRepository(s).get(participation.event_id)
            if event.host_id != actor_id:
                raise ForbiddenError("Only the event host can finalize matches")
            if participation.status not in FINALIZABLE_PARTICIPATION:
                raise InvalidTransitionError(
                    f"Cannot finalize a participation in status {participation.status.value}"
                )
            newly_finalized = participation.finalized_at is None
            if newly_finalized:
                participation.finalized_at = now
                participation.finalized_by = actor_id

        if newly_finalized:
            await self.bus.publish(MATCH_FINALIZED, {
                "participation_id": participation.id,
                "event_id": participation.event_id,
                "user_id": participation.user_id,
                "finalized_by": actor_id,
            })
        return participation

    async def finalize_all(self, event_id: int, host_id: int) -> int:
        now = self.clock()
        finalized = []
        with self.session_scope() as s:
            event = EventRepository(s).get(event_id)
            if event is None:
                raise NotFoundError("Event not found")
            if event.host_id != host_id:
                raise ForbiddenError("Only the event host can finalize matches")
            for participation in ParticipationRepository(s).list_for_event(
                event_id, FINALIZABLE_PARTICIPATION, lock=True
            ):
                if participation.finalized_at is None:
                    participation.finalized_at = now
                    participation.finalized_by = host_id
                    finalized.append((participation.id, participation.user_id))

        for participation_id, user_id in finalized:
            await self.bus.publish(MATCH_FINALIZED, {
                "participation_id": participation_id, "event_id": event_id,
                "user_id": user_id, "finalized_by": host_id,
            })
        log.info(f"Host {host_id} finalized {len(finalized)} match(es) for event {event_id}")
        return len(finalized)

    def mark_attended(self, event_id: int, user_id: int, *, db_session: Session) -> bool:
        participation = ParticipationRepository(db_session).find(user_id, event_id, lock=True)
        if participation is None:
            raise NotFoundError("Participation not found")
        if participation.status == ParticipationStatus.ATTENDED:
            return False
        if participation.status != ParticipationStatus.CONFIRMED:
            raise InvalidTransitionError(
                f"Only confirmed participants can be checked in (status {participation.status.value})"
            )
        self._move(participation, ParticipationStatus.ATTENDED)
        participation.attended_at = self.clock()
        return True

    def cancel(self, participation: Participation, *, actor: str, reason: str, db_session: Session) -> bool:
        """Exit to CANCELLED, giving back whichever slot the participation held."""
        status = participation.status
        if status in (ParticipationStatus.CANCELLED, ParticipationStatus.EXPIRED, ParticipationStatus.ATTENDED):
            return False
        self._move(participation, ParticipationStatus.CANCELLED)
        participation.cancelled_at = self.clock()
        participation.cancelled_by = actor
        participation.cancel_reason = reason
        participation.payment_expires_at = None
        if status == ParticipationStatus.RESERVED:
            self.capacity.release_reserved(db_session, participation.event_id)
        elif status == ParticipationStatus.CONFIRMED:
            self.capacity.release_confirmed(db_session, participation.event_id)
        return True
