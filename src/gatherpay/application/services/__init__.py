# File: src/gatherpay/application/services/__init__.py

from .fallback_scorer import FallbackScorer
from .matching_service import MatchingDecisionEngine, RemoteScorer, TimeoutBoundedScorer
from .capacity_ledger import CapacityLedger
from .domain_events import DomainEventBus
from .participation_service import ParticipationStateMachine
from .discount_service import DiscountResolver
from .escrow_service import EscrowEngine
from .refund_service import RefundEngine
from .payment_service import PaymentOrchestrator
from .event_service import EventService
from .webhook_service import LedgerWebhookDispatcher
from .currency_service import CurrencyConverter

__all__ = [
    "FallbackScorer",
    "MatchingDecisionEngine",
    "RemoteScorer",
    "TimeoutBoundedScorer",
    "CapacityLedger",
    "DomainEventBus",
    "ParticipationStateMachine",
    "DiscountResolver",
    "EscrowEngine",
    "RefundEngine",
    "PaymentOrchestrator",
    "EventService",
    "LedgerWebhookDispatcher",
    "CurrencyConverter",
]
