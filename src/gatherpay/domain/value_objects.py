# src/gatherpay/domain/value_objects.py
"""
Immutable values passed between pipeline components.

Amounts are always integer minor units paired with an ISO-4217 code; no
floating point ever touches money.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import FrozenSet, Optional, Tuple

from .entities import MatchSource, MatchVerdict
from .errors import ValidationError


def percent_of(amount_minor: int, percent) -> int:
    """`round(amount * percent / 100)` with half-up rounding, in minor units."""
    value = Decimal(amount_minor) * Decimal(str(percent)) / Decimal(100)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class Money:
    amount_minor: int
    currency: str

    def __post_init__(self) -> None:
        if not isinstance(self.amount_minor, int):
            raise TypeError("Money amount must be an integer number of minor units.")
        if self.amount_minor < 0:
            raise ValueError("Money amount must be non-negative.")
        if not isinstance(self.currency, str) or len(self.currency) != 3:
            raise ValueError(f"Invalid currency code: {self.currency!r}")
        object.__setattr__(self, "currency", self.currency.upper())


@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        if not (-90.0 <= self.latitude <= 90.0) or not (-180.0 <= self.longitude <= 180.0):
            raise ValueError(f"Coordinates out of range: ({self.latitude}, {self.longitude})")


@dataclass(frozen=True)
class UserMatchProfile:
    """What the matcher is allowed to know about the user."""
    user_id: int
    hobby_ids: FrozenSet[int] = frozenset()
    location: Optional[GeoPoint] = None
    search_radius_km: float = 10.0

    def to_features(self) -> dict:
        return {
            "user_id": self.user_id,
            "hobby_ids": sorted(self.hobby_ids),
            "latitude": self.location.latitude if self.location else None,
            "longitude": self.location.longitude if self.location else None,
            "search_radius_km": self.search_radius_km,
        }


@dataclass(frozen=True)
class EventMatchProfile:
    event_id: int
    starts_at: datetime
    capacity: int
    taken: int
    hobby_ids: FrozenSet[int] = frozenset()
    category_ids: FrozenSet[int] = frozenset()
    location: Optional[GeoPoint] = None

    @property
    def fill_ratio(self) -> float:
        if self.capacity <= 0:
            return 1.0
        return self.taken / self.capacity

    def to_features(self) -> dict:
        return {
            "event_id": self.event_id,
            "hobby_ids": sorted(self.hobby_ids),
            "category_ids": sorted(self.category_ids),
            "latitude": self.location.latitude if self.location else None,
            "longitude": self.location.longitude if self.location else None,
            "starts_at": self.starts_at.isoformat(),
            "fill_ratio": round(self.fill_ratio, 4),
        }


@dataclass(frozen=True)
class MatchDecision:
    score: float
    verdict: MatchVerdict
    reasons: Tuple[str, ...] = ()
    source: MatchSource = MatchSource.FALLBACK
    fallback_used: bool = True

    @property
    def accepted(self) -> bool:
        return self.verdict is MatchVerdict.ACCEPT


@dataclass(frozen=True)
class DiscountSelector:
    """A purchase may carry a discount code or a reward credit, never both."""
    code: Optional[str] = None
    reward_id: Optional[int] = None

    def __post_init__(self) -> None:
        if self.code is not None and self.reward_id is not None:
            raise ValidationError("Use either a discount code or a reward, not both.")
        if self.code is not None:
            normalized = self.code.strip().upper()
            object.__setattr__(self, "code", normalized or None)

    @property
    def is_empty(self) -> bool:
        return self.code is None and self.reward_id is None


@dataclass(frozen=True)
class DiscountQuote:
    valid: bool
    base_amount: int
    discount_amount: int = 0
    instrument_id: Optional[int] = None
    instrument_kind: Optional[str] = None  # "code" | "reward"
    message: Optional[str] = None

    def __post_init__(self) -> None:
        if not (0 <= self.discount_amount <= self.base_amount):
            raise ValueError("Discount must be between zero and the base amount.")

    @property
    def final_amount(self) -> int:
        return self.base_amount - self.discount_amount

    @classmethod
    def rejected(cls, base_amount: int, message: str) -> "DiscountQuote":
        return cls(valid=False, base_amount=base_amount, message=message)


@dataclass(frozen=True)
class RefundEligibility:
    eligible: bool
    reason: str
    refundable_amount: int = 0
    currency: Optional[str] = None
    attendance_verified: bool = False
    hours_until_start: Optional[float] = None


@dataclass(frozen=True)
class JoinResult:
    participation_id: int
    status: str
    match_score: float
    match_reasons: Tuple[str, ...]
    payment_required: bool
    payment_expires_at: Optional[datetime] = None


@dataclass
class ReleaseReport:
    """Outcome of one escrow release run."""
    processed: int = 0
    scheduled: int = 0
    skipped: int = 0
    failed: int = 0
    errors: list = field(default_factory=list)
