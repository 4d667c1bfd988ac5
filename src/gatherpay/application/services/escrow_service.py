# src/gatherpay/application/services/escrow_service.py
"""
EscrowEngine - holds captured funds and settles them to the host.

Release is gated on verified attendance in three places that must all agree:
the candidate query, the conditional claim UPDATE (HELD -> SCHEDULED) and the
`ck_escrow_release_requires_attendance` table constraint. The transfer call
itself runs with no transaction open; its final outcome arrives through the
ledger's transfer webhooks.
"""

import logging
from datetime import datetime
from typing import Callable, Optional, Dict, Any

from sqlalchemy.orm import Session

from gatherpay.config import PipelineConfig
from gatherpay.domain.clock import utcnow, as_utc
from gatherpay.domain.entities import EscrowStatus, PaymentStatus, ensure_transition
from gatherpay.domain.errors import NotFoundError, ConflictError, LedgerError, LedgerUnavailableError
from gatherpay.domain.policies import split_platform_fee
from gatherpay.domain.value_objects import ReleaseReport
from gatherpay.infrastructure.db.models import Escrow, Event, PaymentIntent
from gatherpay.infrastructure.db.repository import EscrowRepository, PaymentRepository, UserRepository
from gatherpay.infrastructure.db.uow import SessionScope
from gatherpay.infrastructure.monitoring.metrics import ESCROW_RELEASES
from .domain_events import DomainEventBus, ESCROW_RELEASED

log = logging.getLogger(__name__)

SCHEDULED = "scheduled"
RELEASED = "released"
SKIPPED = "skipped"
RETRY = "retry"
FAILED = "failed"

RELEASE_BATCH_SIZE = 200


class EscrowEngine:
    def __init__(
        self,
        session_scope: SessionScope,
        ledger,
        config: PipelineConfig,
        bus: DomainEventBus,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_scope = session_scope
        self.ledger = ledger
        self.config = config
        self.bus = bus
        self.clock = clock

    @staticmethod
    def _move(escrow: Escrow, target: EscrowStatus) -> None:
        ensure_transition(escrow.status, target)
        escrow.status = target

    @staticmethod
    def _released_payload(escrow: Escrow) -> Dict[str, Any]:
        return {
            "escrow_id": escrow.id,
            "event_id": escrow.event_id,
            "host_id": escrow.host_id,
            "payment_intent_id": escrow.payment_intent_id,
            "host_amount_minor": escrow.host_amount_minor,
            "platform_fee_minor": escrow.platform_fee_minor,
            "currency": escrow.currency,
            "transfer_ref": escrow.transfer_ref,
        }

    # --- hold / attendance ---

    def hold(self, payment: PaymentIntent, event: Event, *, db_session: Session) -> Escrow:
        """Create the HELD record for a captured payment; a second call returns the same row."""
        repo = EscrowRepository(db_session)
        existing = repo.get_by_payment(payment.id)
        if existing is not None:
            return existing
        event_end = as_utc(event.ends_at)
        escrow = repo.add(
            payment_intent_id=payment.id,
            event_id=event.id,
            host_id=event.host_id,
            user_id=payment.user_id,
            amount_minor=payment.final_amount_minor,
            currency=payment.currency,
            status=EscrowStatus.HELD,
            attendance_verified=False,
            event_end_at=event_end,
            release_at=event_end + self.config.escrow_cooling_period,
            retry_count=0,
        )
        log.info(f"Escrow {escrow.id} HELD for payment {payment.id}: {escrow.amount_minor} {escrow.currency}, "
                 f"release_at={escrow.release_at.isoformat()}")
        return escrow

    def verify_attendance(self, event_id: int, user_id: int, *, db_session: Session) -> int:
        now = self.clock()
        updated = 0
        for escrow in EscrowRepository(db_session).list_for_attendance(event_id, user_id):
            if not escrow.attendance_verified:
                escrow.attendance_verified = True
                escrow.attendance_verified_at = now
                updated += 1
        if updated:
            log.info(f"Attendance verified for user {user_id} at event {event_id} ({updated} escrow(s))")
        return updated

    # --- scheduled release ---

    async def release_due(self) -> ReleaseReport:
        """Release every due, verified escrow, one page of candidates at a time."""
        now = self.clock()
        report = ReleaseReport()
        last_id = 0
        while True:
            with self.session_scope() as s:
                candidate_ids = EscrowRepository(s).release_candidate_ids(
                    now, after_id=last_id, limit=RELEASE_BATCH_SIZE,
                )
            if not candidate_ids:
                break
            last_id = candidate_ids[-1]
            for escrow_id in candidate_ids:
                await self._release_counted(escrow_id, now, report)

        log.info(f"Escrow release run: processed={report.processed} scheduled={report.scheduled} "
                 f"skipped={report.skipped} failed={report.failed}")
        return report

    async def _release_counted(self, escrow_id: int, now: datetime, report: ReleaseReport) -> None:
        report.processed += 1
        try:
            outcome = await self._release_one(escrow_id, now)
        except Exception as e:
            log.error(f"Escrow {escrow_id} release crashed: {e}", exc_info=True)
            report.failed += 1
            report.errors.append({"escrow_id": escrow_id, "error": str(e)})
            return
        ESCROW_RELEASES.labels(outcome=outcome).inc()
        if outcome in (SCHEDULED, RELEASED):
            report.scheduled += 1
        elif outcome == SKIPPED:
            report.skipped += 1
        else:
            report.failed += 1

    async def _release_one(self, escrow_id: int, now: datetime) -> str:
        with self.session_scope() as s:
            repo = EscrowRepository(s)
            if not repo.claim_for_release(escrow_id, now):
                return SKIPPED
            escrow = repo.get(escrow_id)
            host = UserRepository(s).find_by_id(escrow.host_id)
            destination = host.payout_destination if host is not None else None
            if not destination:
                log.warning(f"Host {escrow.host_id} has no payout destination; escrow {escrow.id} stays HELD")
                self._move(escrow, EscrowStatus.HELD)
                return SKIPPED

            fee, host_amount = split_platform_fee(escrow.amount_minor, self.config.platform_fee_percent)
            escrow.platform_fee_minor = fee
            escrow.host_amount_minor = host_amount

            if host_amount <= 0:
                self._move(escrow, EscrowStatus.RELEASED)
                escrow.released_at = now
                payload = self._released_payload(escrow)
            else:
                payload = None
                currency = escrow.currency
                metadata = {
                    "escrow_id": str(escrow.id),
                    "event_id": str(escrow.event_id),
                    "host_id": str(escrow.host_id),
                    "payment_intent_id": str(escrow.payment_intent_id),
                    "platform_fee": str(fee),
                    "release_attempt": str(escrow.release_attempt),
                }
                # Reused until the ledger definitively refuses, so a retry after a timeout replays
                # the original transfer instead of paying the host a second time.
                idempotency_key = f"escrow-{escrow.id}-release-{escrow.release_attempt}"

        if payload is not None:
            await self.bus.publish(ESCROW_RELEASED, payload)
            return RELEASED

        try:
            transfer_ref = await self.ledger.transfer(
                destination, host_amount, currency, metadata=metadata, idempotency_key=idempotency_key,
            )
        except Exception as e:
            refused = isinstance(e, LedgerError) and not isinstance(e, LedgerUnavailableError)
            log.error(f"Transfer for escrow {escrow_id} failed ({'refused' if refused else 'outcome unknown'}): {e}")
            with self.session_scope() as s:
                escrow = EscrowRepository(s).get_for_update(escrow_id)
                return self._register_failure(escrow, str(e), refused=refused)

        with self.session_scope() as s:
            escrow = EscrowRepository(s).get_for_update(escrow_id)
            if escrow.transfer_ref is None:
                escrow.transfer_ref = transfer_ref
        log.info(f"Escrow {escrow_id} SCHEDULED: transfer {transfer_ref} of {host_amount} {currency} "
                 f"to host (fee {fee})")
        return SCHEDULED

    def _register_failure(self, escrow: Escrow, reason: str, refused: bool) -> str:
        if escrow.status != EscrowStatus.SCHEDULED:
            return SKIPPED
        escrow.retry_count = (escrow.retry_count or 0) + 1
        escrow.failure_reason = reason[:500]
        escrow.transfer_ref = None
        if refused:
            escrow.release_attempt = (escrow.release_attempt or 0) + 1
        if escrow.retry_count >= self.config.escrow_max_retries:
            self._move(escrow, EscrowStatus.FAILED)
            log.error(f"Escrow {escrow.id} FAILED after {escrow.retry_count} attempts; manual intervention needed")
            return FAILED
        self._move(escrow, EscrowStatus.HELD)
        log.warning(f"Escrow {escrow.id} back to HELD (attempt {escrow.retry_count}/{self.config.escrow_max_retries})")
        return RETRY

    # --- transfer webhooks ---

    def _find_for_transfer(self, repo: EscrowRepository, transfer_ref: str, escrow_id_hint) -> Optional[Escrow]:
        escrow = repo.get_by_transfer_ref_for_update(transfer_ref) if transfer_ref else None
        if escrow is None and escrow_id_hint:
            # The webhook can beat the write of transfer_ref; metadata carries the id.
            escrow = repo.get_for_update(int(escrow_id_hint))
        return escrow

    def on_transfer_paid(self, transfer_ref: str, escrow_id_hint=None, *,
                         db_session: Session) -> Optional[Dict[str, Any]]:
        """Returns the `escrow_released` payload when this delivery released the escrow."""
        escrow = self._find_for_transfer(EscrowRepository(db_session), transfer_ref, escrow_id_hint)
        if escrow is None:
            log.warning(f"transfer.paid for unknown transfer {transfer_ref}")
            return None
        if escrow.status == EscrowStatus.RELEASED:
            return None
        if escrow.status in (EscrowStatus.HELD, EscrowStatus.FAILED) and escrow.attendance_verified:
            # A transfer we counted as failed (timeout, lost response) went through after all.
            log.warning(f"Late transfer.paid {transfer_ref} for escrow {escrow.id} in status "
                        f"{escrow.status.value}; settling it")
            self._move(escrow, EscrowStatus.SCHEDULED)
            escrow.transfer_ref = transfer_ref
            if escrow.host_amount_minor is None:
                escrow.platform_fee_minor, escrow.host_amount_minor = split_platform_fee(
                    escrow.amount_minor, self.config.platform_fee_percent,
                )
        if escrow.status != EscrowStatus.SCHEDULED:
            log.error(f"transfer.paid {transfer_ref} for escrow {escrow.id} in status {escrow.status.value}; "
                      f"needs manual reconciliation")
            return None
        if escrow.transfer_ref is None:
            escrow.transfer_ref = transfer_ref
        elif transfer_ref and escrow.transfer_ref != transfer_ref:
            log.warning(f"transfer.paid {transfer_ref} does not match escrow {escrow.id} transfer "
                        f"{escrow.transfer_ref}; ignored")
            return None
        self._move(escrow, EscrowStatus.RELEASED)
        escrow.released_at = self.clock()
        escrow.failure_reason = None
        log.info(f"Escrow {escrow.id} RELEASED via transfer {escrow.transfer_ref}")
        return self._released_payload(escrow)

    def on_transfer_failed(self, transfer_ref: str, escrow_id_hint=None, reason: str = "Transfer failed",
                           attempt_hint=None, *, db_session: Session) -> str:
        escrow = self._find_for_transfer(EscrowRepository(db_session), transfer_ref, escrow_id_hint)
        if escrow is None:
            log.warning(f"transfer.failed for unknown transfer {transfer_ref}")
            return SKIPPED
        if escrow.transfer_ref and transfer_ref and escrow.transfer_ref != transfer_ref:
            return SKIPPED
        if escrow.status == EscrowStatus.SCHEDULED:
            return self._register_failure(escrow, reason, refused=True)
        if (escrow.status in (EscrowStatus.HELD, EscrowStatus.FAILED) and attempt_hint is not None
                and str(attempt_hint) == str(escrow.release_attempt)):
            # Verdict for a transfer whose outcome was unknown: the next attempt may use a fresh key.
            escrow.release_attempt += 1
            escrow.failure_reason = reason[:500]
            return RETRY if escrow.status == EscrowStatus.HELD else FAILED
        return SKIPPED

    # --- refunds / administration ---

    async def refund(self, escrow_id: int, amount_minor: Optional[int] = None,
                     idempotency_key: Optional[str] = None) -> Optional[str]:
        """
        Refund the payment behind an escrow and close the hold. The escrow is
        claimed as REFUNDING first, so a release run cannot pick it up, and the
        ledger call runs with no transaction open. Returns the ledger refund
        reference (None when nothing was captured externally or the escrow was
        already refunded).
        """
        with self.session_scope() as s:
            escrow = EscrowRepository(s).get_for_update(escrow_id)
            if escrow is None:
                raise NotFoundError("Escrow not found")
            if escrow.status == EscrowStatus.REFUNDED:
                return None
            if escrow.status == EscrowStatus.RELEASED:
                raise ConflictError("Cannot refund released escrow")
            if escrow.status == EscrowStatus.SCHEDULED:
                raise ConflictError("Escrow payout is in progress")
            if escrow.status == EscrowStatus.REFUNDING:
                raise ConflictError("Escrow refund is already in progress")
            previous = escrow.status
            self._move(escrow, EscrowStatus.REFUNDING)
            payment = PaymentRepository(s).get(escrow.payment_intent_id)
            external_ref = payment.external_ref
            amount = escrow.amount_minor if amount_minor is None else amount_minor
            currency = escrow.currency

        refund_ref = None
        try:
            if external_ref and amount > 0:
                refund_ref = await self.ledger.refund(
                    external_ref, amount, idempotency_key=idempotency_key or f"escrow-{escrow_id}-refund",
                )
        except LedgerUnavailableError:
            # The refund may have gone through; never hand this money to the host without a human look.
            log.error(f"Escrow {escrow_id} refund outcome unknown; left REFUNDING for reconciliation")
            raise
        except Exception:
            with self.session_scope() as s:
                escrow = EscrowRepository(s).get_for_update(escrow_id)
                self._move(escrow, previous)
            raise

        with self.session_scope() as s:
            escrow = EscrowRepository(s).get_for_update(escrow_id)
            now = self.clock()
            self._move(escrow, EscrowStatus.REFUNDED)
            escrow.refunded_at = now
            payment = PaymentRepository(s).get_for_update(escrow.payment_intent_id)
            if payment.status != PaymentStatus.REFUNDED:
                ensure_transition(payment.status, PaymentStatus.REFUNDED)
                payment.status = PaymentStatus.REFUNDED
                payment.refunded_at = now
        log.info(f"Escrow {escrow_id} REFUNDED ({amount} {currency}, ref={refund_ref})")
        return refund_ref

    def retry_failed(self, escrow_id: int) -> Escrow:
        with self.session_scope() as s:
            escrow = EscrowRepository(s).get_for_update(escrow_id)
            if escrow is None:
                raise NotFoundError("Escrow not found")
            self._move(escrow, EscrowStatus.HELD)
            escrow.retry_count = 0
            escrow.failure_reason = None
        log.info(f"Escrow {escrow_id} reset to HELD for another release attempt")
        return escrow

    def get_for_payment(self, payment_id: int) -> Optional[Escrow]:
        with self.session_scope() as s:
            return EscrowRepository(s).get_by_payment(payment_id)

    def stats(self) -> Dict[str, Dict[str, Any]]:
        with self.session_scope() as s:
            return EscrowRepository(s).stats()
