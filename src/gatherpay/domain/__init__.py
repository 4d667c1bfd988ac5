# src/gatherpay/domain/__init__.py
"""
Domain layer: closed status types, value objects, money policies and the
error taxonomy. Nothing in here performs I/O.
"""

from .entities import (
    ParticipationStatus,
    PaymentStatus,
    EscrowStatus,
    RefundStatus,
    RefundReason,
    DiscountType,
    ProductType,
    MatchSource,
    MatchVerdict,
    ensure_transition,
)
from .value_objects import (
    Money,
    GeoPoint,
    UserMatchProfile,
    EventMatchProfile,
    MatchDecision,
    DiscountSelector,
    DiscountQuote,
    RefundEligibility,
    JoinResult,
)

__all__ = [
    "ParticipationStatus",
    "PaymentStatus",
    "EscrowStatus",
    "RefundStatus",
    "RefundReason",
    "DiscountType",
    "ProductType",
    "MatchSource",
    "MatchVerdict",
    "ensure_transition",
    "Money",
    "GeoPoint",
    "UserMatchProfile",
    "EventMatchProfile",
    "MatchDecision",
    "DiscountSelector",
    "DiscountQuote",
    "RefundEligibility",
    "JoinResult",
]
