# src/gatherpay/application/services/payment_service.py
"""
PaymentOrchestrator - opens payment intents at the external ledger and reacts
to the ledger's verdicts.

Intent creation is split around the ledger call: the first transaction checks
the reservation and prices the discount, the ledger is called with no
transaction open, and the second transaction persists the PENDING row.
Success/failure handlers run inside the webhook dispatcher's transaction and
return a `PaymentOutcome`; whatever must happen after commit (domain events,
compensating refunds) is carried on it and run by `after_commit()`.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from gatherpay.domain.clock import utcnow, as_utc
from gatherpay.domain.entities import ParticipationStatus, PaymentStatus, ProductType, ensure_transition
from gatherpay.domain.errors import (
    DiscountInvalidError, ForbiddenError, InvalidTransitionError, NotFoundError, WindowExpiredError,
)
from gatherpay.domain.value_objects import DiscountSelector
from gatherpay.infrastructure.db.models import PaymentIntent
from gatherpay.infrastructure.db.repository import (
    EventRepository, ParticipationRepository, PaymentRepository, UserRepository,
)
from gatherpay.infrastructure.db.uow import SessionScope
from gatherpay.infrastructure.monitoring.metrics import PAYMENT_OUTCOMES
from .currency_service import CurrencyConverter
from .discount_service import DiscountResolver
from .domain_events import DomainEventBus, PARTICIPATION_CONFIRMED
from .escrow_service import EscrowEngine
from .participation_service import (
    ParticipationStateMachine, CONFIRMED, ALREADY_CONFIRMED,
)
from .refund_service import RefundEngine

log = logging.getLogger(__name__)

# PaymentOutcome.outcome values
SUCCEEDED = "succeeded"
FAILED = "failed"
COMPENSATED = "compensated"
DUPLICATE = "duplicate"
IGNORED = "ignored"
UNKNOWN = "unknown"


@dataclass
class PaymentOutcome:
    payment_id: Optional[int]
    outcome: str
    refund_request_id: Optional[int] = None
    events: List[Tuple[str, Dict[str, Any]]] = field(default_factory=list)


@dataclass(frozen=True)
class CreatedIntent:
    payment_id: int
    external_ref: Optional[str]
    status: str
    original_amount: int
    discount_amount: int
    final_amount: int
    currency: str
    payment_expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class PaymentView:
    id: int
    event_id: Optional[int]
    participation_id: Optional[int]
    product_type: str
    status: str
    original_amount_minor: int
    discount_amount_minor: int
    final_amount_minor: int
    currency: str
    external_ref: Optional[str]
    failure_reason: Optional[str]
    created_at: Optional[datetime]
    succeeded_at: Optional[datetime]
    display_amount_minor: Optional[int] = None
    display_currency: Optional[str] = None


class PaymentOrchestrator:
    def __init__(
        self,
        session_scope: SessionScope,
        ledger,
        participations: ParticipationStateMachine,
        discounts: DiscountResolver,
        escrow: EscrowEngine,
        refunds: RefundEngine,
        bus: DomainEventBus,
        currency: Optional[CurrencyConverter] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_scope = session_scope
        self.ledger = ledger
        self.participations = participations
        self.discounts = discounts
        self.escrow = escrow
        self.refunds = refunds
        self.bus = bus
        self.currency = currency
        self.clock = clock

    # --- intent creation ---

    async def create_intent(self, user_id: int, event_id: int,
                            selector: Optional[DiscountSelector] = None) -> CreatedIntent:
        now = self.clock()
        expired = False
        settled: Optional[PaymentOutcome] = None
        with self.session_scope() as s:
            user = UserRepository(s).find_by_id(user_id)
            if user is None:
                raise NotFoundError("User not found")
            event = EventRepository(s).get(event_id)
            if event is None:
                raise NotFoundError("Event not found")
            participation = ParticipationRepository(s).find(user_id, event_id, lock=True)
            if participation is None:
                raise NotFoundError("Participation not found")
            if participation.status != ParticipationStatus.RESERVED:
                raise InvalidTransitionError(
                    f"Payment requires a reserved participation (status {participation.status.value})"
                )

            if self.participations.expire_if_lapsed(participation, now, db_session=s):
                expired = True
            else:
                quote = self.discounts.resolve(selector, user, ProductType.EVENT, event.price_minor, db_session=s)
                if not quote.valid:
                    raise DiscountInvalidError(quote.message or "Invalid discount")
                window_start = as_utc(participation.payment_window_start) or now
                fields = dict(
                    user_id=user_id,
                    event_id=event_id,
                    participation_id=participation.id,
                    product_type=ProductType.EVENT,
                    original_amount_minor=quote.base_amount,
                    discount_amount_minor=quote.discount_amount,
                    final_amount_minor=quote.final_amount,
                    currency=event.currency,
                    status=PaymentStatus.PENDING,
                    discount_code_id=quote.instrument_id if quote.instrument_kind == "code" else None,
                    reward_discount_id=quote.instrument_id if quote.instrument_kind == "reward" else None,
                    payment_window_start=window_start,
                )
                expires_at = as_utc(participation.payment_expires_at)
                customer_ref = user.ledger_customer_ref

                if quote.final_amount == 0:
                    payment = PaymentRepository(s).add(**fields)
                    settled = self._settle(payment, s)

        if expired:
            raise WindowExpiredError("Payment window has expired")

        if settled is not None:
            log.info(f"Payment {payment.id} fully covered by discount; settled locally")
            await self.after_commit(settled)
            return self._created(payment, None)

        idempotency_key = f"participation-{fields['participation_id']}-{int(window_start.timestamp())}-" \
                          f"{fields['final_amount_minor']}"
        external_ref = await self.ledger.create_intent(
            fields["final_amount_minor"],
            fields["currency"],
            customer_ref,
            metadata={
                "user_id": str(user_id),
                "event_id": str(event_id),
                "participation_id": str(fields["participation_id"]),
                "discount": str(fields["discount_amount_minor"]),
            },
            idempotency_key=idempotency_key,
        )

        with self.session_scope() as s:
            repo = PaymentRepository(s)
            payment = repo.get_by_ref_for_update(external_ref)
            if payment is None:
                payment = repo.add(external_ref=external_ref, **fields)

        log.info(f"Payment intent {external_ref} created for user {user_id} / event {event_id}: "
                 f"{payment.final_amount_minor} {payment.currency} (discount {payment.discount_amount_minor})")
        return self._created(payment, expires_at)

    @staticmethod
    def _created(payment: PaymentIntent, expires_at: Optional[datetime]) -> CreatedIntent:
        return CreatedIntent(
            payment_id=payment.id,
            external_ref=payment.external_ref,
            status=payment.status.value,
            original_amount=payment.original_amount_minor,
            discount_amount=payment.discount_amount_minor,
            final_amount=payment.final_amount_minor,
            currency=payment.currency,
            payment_expires_at=expires_at,
        )

    # --- ledger verdicts (run inside the webhook transaction) ---

    def on_payment_succeeded(self, external_ref: str, *, db_session: Session) -> PaymentOutcome:
        payment = PaymentRepository(db_session).get_by_ref_for_update(external_ref)
        if payment is None:
            log.warning(f"Success reported for unknown payment intent {external_ref}")
            return PaymentOutcome(None, UNKNOWN)
        if payment.status in (PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED):
            return PaymentOutcome(payment.id, DUPLICATE)
        return self._settle(payment, db_session)

    def _settle(self, payment: PaymentIntent, s: Session) -> PaymentOutcome:
        previous = payment.status
        ensure_transition(payment.status, PaymentStatus.SUCCEEDED)
        payment.status = PaymentStatus.SUCCEEDED
        payment.succeeded_at = self.clock()
        payment.failure_reason = None
        outcome = PaymentOutcome(payment.id, SUCCEEDED)

        if payment.product_type != ProductType.EVENT or payment.event_id is None:
            PAYMENT_OUTCOMES.labels(outcome=SUCCEEDED).inc()
            return outcome

        event = EventRepository(s).get_for_update(payment.event_id)
        parts = ParticipationRepository(s)
        if payment.participation_id is not None:
            participation = parts.get_for_update(payment.participation_id)
        else:
            participation = parts.find(payment.user_id, payment.event_id, lock=True)

        other = None
        if participation is not None:
            other = PaymentRepository(s).find_other_success(participation.id, payment.id)
        if participation is None:
            result = "missing_participation"
        elif other is not None:
            result = f"already paid by payment {other.id}"
        else:
            result = self.discounts.redemption_conflict(payment, db_session=s) or \
                self.participations.confirm_paid(participation, event, db_session=s)

        if result in (CONFIRMED, ALREADY_CONFIRMED):
            if payment.final_amount_minor > 0:
                self.escrow.hold(payment, event, db_session=s)
            self.discounts.record_redemption(payment, db_session=s)
            if result == CONFIRMED:
                outcome.events.append((PARTICIPATION_CONFIRMED, {
                    "participation_id": participation.id,
                    "user_id": payment.user_id,
                    "event_id": payment.event_id,
                    "payment_id": payment.id,
                }))
            PAYMENT_OUTCOMES.labels(outcome=SUCCEEDED).inc()
            log.info(f"Payment {payment.id} SUCCEEDED (was {previous.value}); participation "
                     f"{participation.id} {result}")
            return outcome

        request = self.refunds.open_compensation(
            payment, f"Captured but participation could not be confirmed: {result}", db_session=s,
        )
        outcome.outcome = COMPENSATED
        outcome.refund_request_id = request.id
        PAYMENT_OUTCOMES.labels(outcome=COMPENSATED).inc()
        return outcome

    def on_payment_failed(self, external_ref: str, reason: Optional[str], *, db_session: Session) -> PaymentOutcome:
        payment = PaymentRepository(db_session).get_by_ref_for_update(external_ref)
        if payment is None:
            log.warning(f"Failure reported for unknown payment intent {external_ref}")
            return PaymentOutcome(None, UNKNOWN)
        if payment.status == PaymentStatus.FAILED:
            return PaymentOutcome(payment.id, DUPLICATE)
        if payment.status != PaymentStatus.PENDING:
            log.info(f"Ignoring failure for payment {payment.id} already {payment.status.value}")
            return PaymentOutcome(payment.id, IGNORED)

        ensure_transition(payment.status, PaymentStatus.FAILED)
        payment.status = PaymentStatus.FAILED
        payment.failure_reason = (reason or "Payment failed")[:500]

        if payment.participation_id is not None:
            participation = ParticipationRepository(db_session).get_for_update(payment.participation_id)
            if participation is not None and self._same_window(payment, participation):
                self.participations.revert_to_matched(participation, db_session=db_session)
            elif participation is not None:
                log.info(f"Payment {payment.id} belongs to an earlier payment window of participation "
                         f"{participation.id}; reservation left as is")

        PAYMENT_OUTCOMES.labels(outcome=FAILED).inc()
        log.info(f"Payment {payment.id} FAILED: {payment.failure_reason}")
        return PaymentOutcome(payment.id, FAILED)

    @staticmethod
    def _same_window(payment: PaymentIntent, participation) -> bool:
        if payment.payment_window_start is None:
            return True
        return as_utc(payment.payment_window_start) == as_utc(participation.payment_window_start)

    async def after_commit(self, outcome: PaymentOutcome) -> None:
        for name, payload in outcome.events:
            await self.bus.publish(name, payload)
        if outcome.refund_request_id is not None:
            try:
                await self.refunds.process_refund(
                    outcome.refund_request_id, approved=True, notes="Automatic compensation",
                )
            except Exception as e:
                # Request is left FAILED with the reason for an admin to pick up.
                log.error(f"Compensating refund {outcome.refund_request_id} for payment "
                          f"{outcome.payment_id} failed: {e}")

    # --- reads ---

    def _view(self, payment: PaymentIntent, display_currency: Optional[str]) -> PaymentView:
        display_amount = None
        if display_currency and self.currency is not None:
            display_currency = display_currency.upper()
            display_amount = self.currency.convert(payment.final_amount_minor, payment.currency, display_currency)
        else:
            display_currency = None
        return PaymentView(
            id=payment.id,
            event_id=payment.event_id,
            participation_id=payment.participation_id,
            product_type=payment.product_type.value,
            status=payment.status.value,
            original_amount_minor=payment.original_amount_minor,
            discount_amount_minor=payment.discount_amount_minor,
            final_amount_minor=payment.final_amount_minor,
            currency=payment.currency,
            external_ref=payment.external_ref,
            failure_reason=payment.failure_reason,
            created_at=as_utc(payment.created_at),
            succeeded_at=as_utc(payment.succeeded_at),
            display_amount_minor=display_amount,
            display_currency=display_currency,
        )

    def list_user_payments(self, user_id: int, display_currency: Optional[str] = None) -> List[PaymentView]:
        with self.session_scope() as s:
            return [self._view(p, display_currency) for p in PaymentRepository(s).list_for_user(user_id)]

    def get_payment(self, payment_id: int, user_id: int, display_currency: Optional[str] = None) -> PaymentView:
        with self.session_scope() as s:
            payment = PaymentRepository(s).get(payment_id)
            if payment is None:
                raise NotFoundError("Payment not found")
            if payment.user_id != user_id:
                raise ForbiddenError("Not authorized to view this payment")
            return self._view(payment, display_currency)
