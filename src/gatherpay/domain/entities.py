# src/gatherpay/domain/entities.py
"""
Closed status types for every pipeline entity, together with the transitions
each one allows. Persistence columns use these enums directly, so an unknown
status string can never be written, and `ensure_transition` turns an illegal
move into an `InvalidTransitionError` at the point of mutation.
"""

from enum import Enum
from typing import Dict, FrozenSet

from .errors import InvalidTransitionError

# --- ENUMERATIONS ---

class ParticipationStatus(Enum):
    """Lifecycle of one user's participation in one event."""
    REQUESTED = "REQUESTED"   # Matcher said no; kept for review or a later retry.
    MATCHED = "MATCHED"       # Accepted but holding no slot (e.g. after a failed payment).
    RESERVED = "RESERVED"     # Slot held, payment window open.
    CONFIRMED = "CONFIRMED"   # Paid (or free) and counted as confirmed.
    ATTENDED = "ATTENDED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"

class PaymentStatus(Enum):
    """State of a payment intent as seen by the local ledger mirror."""
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"

class EscrowStatus(Enum):
    """State of a held sum of money tied to one successful payment."""
    HELD = "HELD"
    SCHEDULED = "SCHEDULED"   # Claimed for payout; the transfer is in flight.
    RELEASED = "RELEASED"
    FAILED = "FAILED"
    REFUNDING = "REFUNDING"   # Claimed for refund; the ledger refund is in flight.
    REFUNDED = "REFUNDED"

class RefundStatus(Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"     # Claimed for processing; the ledger call is in flight.
    PROCESSED = "PROCESSED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"

class RefundReason(Enum):
    EVENT_CANCELLED = "EVENT_CANCELLED"
    USER_REQUEST = "USER_REQUEST"
    NO_SHOW_HOST = "NO_SHOW_HOST"
    QUALITY_ISSUE = "QUALITY_ISSUE"
    SYSTEM_ERROR = "SYSTEM_ERROR"

class DiscountType(Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED = "FIXED"

class ProductType(Enum):
    """What a payment intent is buying."""
    EVENT = "EVENT"
    SUBSCRIPTION = "SUBSCRIPTION"
    PROMOTION = "PROMOTION"

class MatchSource(Enum):
    ML = "ml"
    FALLBACK = "fallback"

class MatchVerdict(Enum):
    ACCEPT = "accept"
    REJECT = "reject"

# --- TRANSITIONS ---

_REOPEN = frozenset({
    ParticipationStatus.REQUESTED,
    ParticipationStatus.RESERVED,
    ParticipationStatus.CONFIRMED,
})

PARTICIPATION_TRANSITIONS: Dict[ParticipationStatus, FrozenSet[ParticipationStatus]] = {
    ParticipationStatus.REQUESTED: frozenset({
        ParticipationStatus.REQUESTED,
        ParticipationStatus.MATCHED,
        ParticipationStatus.RESERVED,
        ParticipationStatus.CONFIRMED,
        ParticipationStatus.CANCELLED,
    }),
    ParticipationStatus.MATCHED: frozenset({
        ParticipationStatus.RESERVED,
        ParticipationStatus.CONFIRMED,
        ParticipationStatus.CANCELLED,
    }),
    ParticipationStatus.RESERVED: frozenset({
        ParticipationStatus.CONFIRMED,
        ParticipationStatus.MATCHED,
        ParticipationStatus.EXPIRED,
        ParticipationStatus.CANCELLED,
    }),
    ParticipationStatus.CONFIRMED: frozenset({
        ParticipationStatus.ATTENDED,
        ParticipationStatus.CANCELLED,
    }),
    ParticipationStatus.ATTENDED: frozenset(),
    # A late capture may still confirm an expired reservation.
    ParticipationStatus.EXPIRED: _REOPEN,
    ParticipationStatus.CANCELLED: _REOPEN,
}

PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.SUCCEEDED, PaymentStatus.FAILED}),
    # The ledger may retry a failed attempt and capture it later.
    PaymentStatus.FAILED: frozenset({PaymentStatus.SUCCEEDED}),
    PaymentStatus.SUCCEEDED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.REFUNDED: frozenset(),
}

ESCROW_TRANSITIONS: Dict[EscrowStatus, FrozenSet[EscrowStatus]] = {
    EscrowStatus.HELD: frozenset({EscrowStatus.SCHEDULED, EscrowStatus.REFUNDING}),
    EscrowStatus.SCHEDULED: frozenset({EscrowStatus.RELEASED, EscrowStatus.HELD, EscrowStatus.FAILED}),
    # FAILED -> SCHEDULED: the ledger confirmed a transfer we had counted as failed.
    EscrowStatus.FAILED: frozenset({EscrowStatus.HELD, EscrowStatus.SCHEDULED, EscrowStatus.REFUNDING}),
    EscrowStatus.REFUNDING: frozenset({EscrowStatus.REFUNDED, EscrowStatus.HELD, EscrowStatus.FAILED}),
    EscrowStatus.RELEASED: frozenset(),
    EscrowStatus.REFUNDED: frozenset(),
}

REFUND_TRANSITIONS: Dict[RefundStatus, FrozenSet[RefundStatus]] = {
    RefundStatus.PENDING: frozenset({RefundStatus.APPROVED, RefundStatus.REJECTED}),
    RefundStatus.APPROVED: frozenset({RefundStatus.PROCESSED, RefundStatus.FAILED}),
    RefundStatus.PROCESSED: frozenset(),
    RefundStatus.REJECTED: frozenset(),
    RefundStatus.FAILED: frozenset(),
}

_TABLES = {
    ParticipationStatus: PARTICIPATION_TRANSITIONS,
    PaymentStatus: PAYMENT_TRANSITIONS,
    EscrowStatus: ESCROW_TRANSITIONS,
    RefundStatus: REFUND_TRANSITIONS,
}

# Participations in these states block a new join for the same user and event.
ACTIVE_PARTICIPATION = frozenset({
    ParticipationStatus.MATCHED,
    ParticipationStatus.RESERVED,
    ParticipationStatus.CONFIRMED,
    ParticipationStatus.ATTENDED,
})

FINALIZABLE_PARTICIPATION = frozenset({
    ParticipationStatus.MATCHED,
    ParticipationStatus.RESERVED,
    ParticipationStatus.CONFIRMED,
})


def can_transition(current: Enum, target: Enum) -> bool:
    table = _TABLES[type(current)]
    return target in table[current]


def ensure_transition(current: Enum, target: Enum) -> None:
    """Raise InvalidTransitionError unless `current -> target` is allowed."""
    if type(current) is not type(target):
        raise TypeError(f"Cannot compare {type(current).__name__} with {type(target).__name__}")
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"{type(current).__name__} cannot move from {current.value} to {target.value}"
        )
