# src/gatherpay/application/services/webhook_service.py
"""
LedgerWebhookDispatcher - applies one verified ledger delivery exactly once.

The delivery id is registered in the same transaction as the state change it
causes, so a replay finds the row and is a no-op, and a failed delivery rolls
the row back with everything else and can be redelivered.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError

from gatherpay.domain.errors import ValidationError
from gatherpay.infrastructure.db.repository import WebhookEventRepository
from gatherpay.infrastructure.db.uow import SessionScope
from gatherpay.infrastructure.monitoring.metrics import LEDGER_WEBHOOKS
from .domain_events import DomainEventBus, ESCROW_RELEASED
from .escrow_service import EscrowEngine
from .payment_service import PaymentOrchestrator, PaymentOutcome

log = logging.getLogger(__name__)

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"
TRANSFER_PAID = "transfer.paid"
TRANSFER_FAILED = "transfer.failed"

DUPLICATE = "duplicate"
UNHANDLED = "unhandled"


@dataclass(frozen=True)
class DispatchResult:
    event_id: str
    event_type: str
    outcome: str


class LedgerWebhookDispatcher:
    def __init__(
        self,
        session_scope: SessionScope,
        payments: PaymentOrchestrator,
        escrow: EscrowEngine,
        bus: DomainEventBus,
    ):
        self.session_scope = session_scope
        self.payments = payments
        self.escrow = escrow
        self.bus = bus

    async def dispatch(self, payload: Dict[str, Any]) -> DispatchResult:
        event_id = payload.get("id")
        event_type = payload.get("type")
        if not event_id or not event_type:
            raise ValidationError("Malformed webhook payload")
        obj = (payload.get("data") or {}).get("object") or {}
        ref = obj.get("id")

        payment_outcome: Optional[PaymentOutcome] = None
        released: Optional[Dict[str, Any]] = None
        registered = False
        try:
            with self.session_scope() as s:
                repo = WebhookEventRepository(s)
                if repo.seen(event_id):
                    return self._done(event_id, event_type, DUPLICATE)
                row = repo.register(event_id, event_type)
                registered = True

                if event_type == PAYMENT_SUCCEEDED:
                    payment_outcome = self.payments.on_payment_succeeded(ref, db_session=s)
                    outcome = payment_outcome.outcome
                elif event_type == PAYMENT_FAILED:
                    reason = (obj.get("last_payment_error") or {}).get("message")
                    payment_outcome = self.payments.on_payment_failed(ref, reason, db_session=s)
                    outcome = payment_outcome.outcome
                elif event_type == TRANSFER_PAID:
                    escrow_hint = (obj.get("metadata") or {}).get("escrow_id")
                    released = self.escrow.on_transfer_paid(ref, escrow_hint, db_session=s)
                    outcome = "released" if released else "ignored"
                elif event_type == TRANSFER_FAILED:
                    metadata = obj.get("metadata") or {}
                    reason = obj.get("failure_message") or "Transfer failed"
                    outcome = self.escrow.on_transfer_failed(
                        ref, metadata.get("escrow_id"), reason, metadata.get("release_attempt"), db_session=s,
                    )
                else:
                    log.info(f"Unhandled ledger event type {event_type} ({event_id})")
                    outcome = UNHANDLED
                row.outcome = outcome
        except IntegrityError:
            if registered:
                raise
            # Lost the race against a concurrent delivery of the same id.
            return self._done(event_id, event_type, DUPLICATE)

        if payment_outcome is not None:
            await self.payments.after_commit(payment_outcome)
        if released is not None:
            await self.bus.publish(ESCROW_RELEASED, released)
        return self._done(event_id, event_type, outcome)

    @staticmethod
    def _done(event_id: str, event_type: str, outcome: str) -> DispatchResult:
        LEDGER_WEBHOOKS.labels(event_type=event_type, outcome=outcome).inc()
        log.info(f"Ledger webhook {event_id} ({event_type}): {outcome}")
        return DispatchResult(event_id=event_id, event_type=event_type, outcome=outcome)
