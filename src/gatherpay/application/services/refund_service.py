# src/gatherpay/application/services/refund_service.py
"""
RefundEngine - eligibility windows, refund requests and their processing.

Processing is claimed first (PENDING -> APPROVED in its own transaction) so two
admins cannot both pay out the same request; the money movement then goes
through EscrowEngine.refund when the payment is held in escrow, or straight
to the ledger otherwise.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from gatherpay.config import PipelineConfig
from gatherpay.domain.clock import utcnow
from gatherpay.domain.entities import PaymentStatus, RefundReason, RefundStatus, ensure_transition
from gatherpay.domain.errors import (
    ConflictError, ForbiddenError, NotFoundError, RefundFailedError, ValidationError,
)
from gatherpay.domain.policies import RefundPolicy
from gatherpay.domain.value_objects import RefundEligibility
from gatherpay.infrastructure.db.models import PaymentIntent, RefundRequest
from gatherpay.infrastructure.db.repository import (
    EscrowRepository, EventRepository, ParticipationRepository, PaymentRepository, RefundRepository,
)
from gatherpay.infrastructure.db.uow import SessionScope
from gatherpay.infrastructure.monitoring.metrics import REFUNDS
from .domain_events import DomainEventBus, REFUND_PROCESSED
from .escrow_service import EscrowEngine
from .participation_service import ParticipationStateMachine, SYSTEM_ACTOR

log = logging.getLogger(__name__)


class RefundEngine:
    def __init__(
        self,
        session_scope: SessionScope,
        ledger,
        escrow: EscrowEngine,
        participations: ParticipationStateMachine,
        config: PipelineConfig,
        bus: DomainEventBus,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_scope = session_scope
        self.ledger = ledger
        self.escrow = escrow
        self.participations = participations
        self.bus = bus
        self.clock = clock
        self.policy = RefundPolicy(
            full_hours_before=config.refund_full_hours_before,
            partial_hours_before=config.refund_partial_hours_before,
            partial_percent=config.refund_partial_percent,
        )

    @staticmethod
    def _move(request: RefundRequest, target: RefundStatus) -> None:
        ensure_transition(request.status, target)
        request.status = target

    def _evaluate(self, payment: PaymentIntent, s: Session, now: datetime) -> RefundEligibility:
        escrow = EscrowRepository(s).get_by_payment(payment.id)
        event = EventRepository(s).get(payment.event_id) if payment.event_id is not None else None
        return self.policy.evaluate(
            payment_status=payment.status,
            amount_minor=payment.final_amount_minor,
            currency=payment.currency,
            attendance_verified=bool(escrow is not None and escrow.attendance_verified),
            event_cancelled=bool(event is not None and event.is_cancelled),
            starts_at=event.starts_at if event is not None else None,
            now=now,
        )

    @staticmethod
    def _owned_payment(s: Session, payment_id: int, user_id: int, lock: bool = False) -> PaymentIntent:
        repo = PaymentRepository(s)
        payment = repo.get_for_update(payment_id) if lock else repo.get(payment_id)
        if payment is None:
            raise NotFoundError("Payment not found")
        if payment.user_id != user_id:
            raise ForbiddenError("Not authorized to access this payment")
        return payment

    # --- eligibility / requests ---

    def check_eligibility(self, user_id: int, payment_id: int) -> RefundEligibility:
        with self.session_scope() as s:
            payment = self._owned_payment(s, payment_id, user_id)
            return self._evaluate(payment, s, self.clock())

    async def request_refund(self, user_id: int, payment_id: int, reason: RefundReason,
                             details: Optional[str] = None) -> RefundRequest:
        now = self.clock()
        with self.session_scope() as s:
            payment = self._owned_payment(s, payment_id, user_id, lock=True)
            eligibility = self._evaluate(payment, s, now)
            if not eligibility.eligible:
                raise ValidationError(eligibility.reason)
            repo = RefundRepository(s)
            if repo.find_open(payment.id) is not None:
                raise ConflictError("A refund request is already pending for this payment")
            request = repo.add(
                payment_intent_id=payment.id,
                user_id=user_id,
                reason=reason,
                details=details,
                amount_minor=eligibility.refundable_amount,
                currency=payment.currency,
                status=RefundStatus.PENDING,
            )
            event = EventRepository(s).get(payment.event_id) if payment.event_id is not None else None
            auto_approve = bool(event is not None and event.is_cancelled)

        log.info(f"Refund request {request.id} created for payment {payment_id}: "
                 f"{request.amount_minor} {request.currency} ({reason.value})")
        if auto_approve:
            return await self.process_refund(request.id, approved=True, notes="Auto-approved: event cancelled")
        return request

    def open_compensation(self, payment: PaymentIntent, details: str, *, db_session: Session) -> RefundRequest:
        """Full refund request for money captured against a participation that cannot be confirmed."""
        repo = RefundRepository(db_session)
        existing = repo.find_open(payment.id)
        if existing is not None:
            return existing
        request = repo.add(
            payment_intent_id=payment.id,
            user_id=payment.user_id,
            reason=RefundReason.SYSTEM_ERROR,
            details=details,
            amount_minor=payment.final_amount_minor,
            currency=payment.currency,
            status=RefundStatus.PENDING,
        )
        log.warning(f"Compensating refund {request.id} opened for payment {payment.id}: {details}")
        return request

    # --- processing ---

    async def process_refund(self, request_id: int, approved: bool, admin_id: Optional[int] = None,
                             notes: Optional[str] = None) -> RefundRequest:
        now = self.clock()
        with self.session_scope() as s:
            request = RefundRepository(s).get_for_update(request_id)
            if request is None:
                raise NotFoundError("Refund request not found")
            if request.status != RefundStatus.PENDING:
                raise ConflictError("Refund request already processed")
            if not approved:
                self._move(request, RefundStatus.REJECTED)
                request.processed_at = now
                request.processed_by = admin_id
                request.admin_notes = notes
                REFUNDS.labels(outcome="rejected").inc()
                log.info(f"Refund request {request_id} rejected by {admin_id}")
                return request

            self._move(request, RefundStatus.APPROVED)
            request.processed_by = admin_id
            payment = PaymentRepository(s).get(request.payment_intent_id)
            escrow = EscrowRepository(s).get_by_payment(payment.id)
            escrow_id = escrow.id if escrow is not None else None
            payment_id, external_ref, amount = payment.id, payment.external_ref, request.amount_minor

        idempotency_key = f"refund-{request_id}"
        try:
            if escrow_id is not None:
                ledger_ref = await self.escrow.refund(escrow_id, amount, idempotency_key=idempotency_key)
            else:
                ledger_ref = await self._refund_direct(payment_id, external_ref, amount, idempotency_key)
        except Exception as e:
            with self.session_scope() as s:
                request = RefundRepository(s).get_for_update(request_id)
                self._move(request, RefundStatus.FAILED)
                request.processed_at = self.clock()
                request.admin_notes = f"Failed: {e}"
            REFUNDS.labels(outcome="failed").inc()
            log.error(f"Refund {request_id} failed: {e}")
            if isinstance(e, ConflictError):
                raise
            raise RefundFailedError(f"Refund failed: {e}") from e

        with self.session_scope() as s:
            request = RefundRepository(s).get_for_update(request_id)
            self._move(request, RefundStatus.PROCESSED)
            request.processed_at = self.clock()
            request.admin_notes = notes
            request.ledger_refund_ref = ledger_ref
            self._release_participation(s, request)
            payload = {
                "refund_request_id": request.id,
                "payment_intent_id": request.payment_intent_id,
                "user_id": request.user_id,
                "amount_minor": request.amount_minor,
                "currency": request.currency,
                "reason": request.reason.value,
            }

        REFUNDS.labels(outcome="processed").inc()
        log.info(f"Refund {request_id} processed ({amount} {payload['currency']}, ref={ledger_ref})")
        await self.bus.publish(REFUND_PROCESSED, payload)
        return request

    async def _refund_direct(self, payment_id: int, external_ref: Optional[str], amount: int,
                             idempotency_key: str) -> Optional[str]:
        ledger_ref = None
        if external_ref and amount > 0:
            ledger_ref = await self.ledger.refund(external_ref, amount, idempotency_key=idempotency_key)
        with self.session_scope() as s:
            payment = PaymentRepository(s).get_for_update(payment_id)
            if payment.status != PaymentStatus.REFUNDED:
                ensure_transition(payment.status, PaymentStatus.REFUNDED)
                payment.status = PaymentStatus.REFUNDED
                payment.refunded_at = self.clock()
        return ledger_ref

    def _release_participation(self, s: Session, request: RefundRequest) -> None:
        payment = PaymentRepository(s).get(request.payment_intent_id)
        if payment.participation_id is None:
            return
        # A compensated duplicate capture must not cancel the seat another payment confirmed.
        if PaymentRepository(s).find_other_success(payment.participation_id, payment.id) is not None:
            return
        participation = ParticipationRepository(s).get_for_update(payment.participation_id)
        if participation is None:
            return
        actor = str(request.processed_by) if request.processed_by is not None else SYSTEM_ACTOR
        self.participations.cancel(
            participation, actor=actor, reason=f"Refunded ({request.reason.value})", db_session=s,
        )

    async def auto_refund_cancelled_event(self, event_id: int) -> Dict[str, int]:
        with self.session_scope() as s:
            payment_ids = [p.id for p in PaymentRepository(s).list_succeeded_for_event(event_id)]

        summary = {"refunded": 0, "skipped": 0, "failed": 0}
        for payment_id in payment_ids:
            try:
                request_id = self._open_cancellation_request(payment_id)
                if request_id is None:
                    summary["skipped"] += 1
                    continue
                await self.process_refund(request_id, approved=True, notes="Auto-approved: event cancelled")
                summary["refunded"] += 1
            except Exception as e:
                log.error(f"Auto-refund of payment {payment_id} for cancelled event {event_id} failed: {e}")
                summary["failed"] += 1

        log.info(f"Cancelled event {event_id} refunds: {summary}")
        return summary

    def _open_cancellation_request(self, payment_id: int) -> Optional[int]:
        with self.session_scope() as s:
            payment = PaymentRepository(s).get_for_update(payment_id)
            eligibility = self._evaluate(payment, s, self.clock())
            if not eligibility.eligible:
                return None
            repo = RefundRepository(s)
            existing = repo.find_open(payment.id)
            if existing is not None:
                return existing.id if existing.status == RefundStatus.PENDING else None
            request = repo.add(
                payment_intent_id=payment.id,
                user_id=payment.user_id,
                reason=RefundReason.EVENT_CANCELLED,
                details="Event cancelled by host",
                amount_minor=eligibility.refundable_amount,
                currency=payment.currency,
                status=RefundStatus.PENDING,
            )
            return request.id

    # --- listings ---

    def list_user_requests(self, user_id: int) -> List[RefundRequest]:
        with self.session_scope() as s:
            return RefundRepository(s).list_for_user(user_id)

    def list_pending(self, page: int = 1, size: int = 20) -> Tuple[List[RefundRequest], int]:
        page = max(1, page)
        size = max(1, min(size, 100))
        with self.session_scope() as s:
            repo = RefundRepository(s)
            return repo.list_pending(offset=(page - 1) * size, limit=size), repo.count_pending()
