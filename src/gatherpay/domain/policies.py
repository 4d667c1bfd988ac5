# src/gatherpay/domain/policies.py
"""
Pure money rules: refund windows and the platform fee.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple

from .clock import as_utc
from .entities import PaymentStatus
from .value_objects import RefundEligibility, percent_of


@dataclass(frozen=True)
class RefundPolicy:
    full_hours_before: int = 24
    partial_hours_before: int = 6
    partial_percent: int = 50

    def evaluate(
        self,
        *,
        payment_status: PaymentStatus,
        amount_minor: int,
        currency: str,
        attendance_verified: bool,
        event_cancelled: bool,
        starts_at: Optional[datetime],
        now: datetime,
    ) -> RefundEligibility:
        """
        Decide whether a payment can be refunded right now, and for how much.

        Attendance forecloses a refund permanently; a cancelled event refunds in
        full regardless of timing. Otherwise the amount only shrinks as the
        event gets closer.
        """
        def no(reason: str, hours: Optional[float] = None) -> RefundEligibility:
            return RefundEligibility(
                eligible=False, reason=reason, currency=currency,
                attendance_verified=attendance_verified, hours_until_start=hours,
            )

        if payment_status == PaymentStatus.REFUNDED:
            return no("Payment already refunded")
        if payment_status != PaymentStatus.SUCCEEDED:
            return no("Payment has not succeeded")
        if attendance_verified:
            return no("Attendance already verified")
        if event_cancelled:
            return RefundEligibility(
                eligible=True, reason="Event was cancelled", refundable_amount=amount_minor,
                currency=currency, attendance_verified=False,
            )
        if starts_at is None:
            return no("Event start time is unknown")

        hours = (as_utc(starts_at) - as_utc(now)).total_seconds() / 3600.0
        if hours < 0:
            return no("Event has already started", hours)
        if hours >= self.full_hours_before:
            return RefundEligibility(
                eligible=True, reason="Full refund available", refundable_amount=amount_minor,
                currency=currency, hours_until_start=hours,
            )
        if hours >= self.partial_hours_before:
            return RefundEligibility(
                eligible=True,
                reason=f"Partial refund ({self.partial_percent}%) available",
                refundable_amount=percent_of(amount_minor, self.partial_percent),
                currency=currency, hours_until_start=hours,
            )
        return no(f"Refunds close {self.partial_hours_before} hours before the event", hours)


def split_platform_fee(amount_minor: int, fee_percent: int) -> Tuple[int, int]:
    """Return (fee, host_amount) for a held amount."""
    fee = percent_of(amount_minor, fee_percent)
    return fee, amount_minor - fee
