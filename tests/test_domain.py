# tests/test_domain.py
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from gatherpay.domain.entities import (
    ParticipationStatus, PaymentStatus, EscrowStatus, RefundStatus, ensure_transition, can_transition,
)
from gatherpay.domain.errors import InvalidTransitionError, ValidationError
from gatherpay.domain.policies import RefundPolicy, split_platform_fee
from gatherpay.domain.value_objects import DiscountQuote, DiscountSelector, Money, percent_of
from gatherpay.application.services.currency_service import CurrencyConverter

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def evaluate(policy: RefundPolicy, hours_before: float, **overrides):
    fields = dict(
        payment_status=PaymentStatus.SUCCEEDED,
        amount_minor=2000,
        currency="EUR",
        attendance_verified=False,
        event_cancelled=False,
        starts_at=NOW + timedelta(hours=hours_before),
        now=NOW,
    )
    fields.update(overrides)
    return policy.evaluate(**fields)


def test_participation_transitions():
    assert can_transition(ParticipationStatus.RESERVED, ParticipationStatus.CONFIRMED)
    assert can_transition(ParticipationStatus.EXPIRED, ParticipationStatus.CONFIRMED)
    assert not can_transition(ParticipationStatus.ATTENDED, ParticipationStatus.CANCELLED)
    with pytest.raises(InvalidTransitionError):
        ensure_transition(ParticipationStatus.CONFIRMED, ParticipationStatus.RESERVED)


def test_money_state_machines_are_closed():
    with pytest.raises(InvalidTransitionError):
        ensure_transition(EscrowStatus.RELEASED, EscrowStatus.REFUNDED)
    with pytest.raises(InvalidTransitionError):
        ensure_transition(EscrowStatus.HELD, EscrowStatus.RELEASED)
    # A refund in flight can neither be claimed for payout nor skipped straight to RELEASED.
    assert not can_transition(EscrowStatus.REFUNDING, EscrowStatus.SCHEDULED)
    assert not can_transition(EscrowStatus.REFUNDING, EscrowStatus.RELEASED)
    assert not can_transition(EscrowStatus.SCHEDULED, EscrowStatus.REFUNDING)
    assert can_transition(EscrowStatus.FAILED, EscrowStatus.SCHEDULED)
    with pytest.raises(InvalidTransitionError):
        ensure_transition(RefundStatus.PROCESSED, RefundStatus.FAILED)
    # A failed attempt may still be captured later.
    ensure_transition(PaymentStatus.FAILED, PaymentStatus.SUCCEEDED)


def test_ensure_transition_rejects_mixed_types():
    with pytest.raises(TypeError):
        ensure_transition(PaymentStatus.PENDING, EscrowStatus.HELD)


def test_percent_of_rounds_half_up():
    assert percent_of(2000, 10) == 200
    assert percent_of(15, 50) == 8
    assert percent_of(999, 10) == 100


def test_split_platform_fee():
    assert split_platform_fee(2000, 10) == (200, 1800)
    assert split_platform_fee(1, 10) == (0, 1)
    assert split_platform_fee(0, 10) == (0, 0)


def test_money_validation():
    assert Money(100, "eur").currency == "EUR"
    with pytest.raises(ValueError):
        Money(-1, "EUR")
    with pytest.raises(TypeError):
        Money(1.5, "EUR")


def test_discount_selector_rejects_both_instruments():
    with pytest.raises(ValidationError):
        DiscountSelector(code="SPRING", reward_id=3)
    assert DiscountSelector(code="  spring ").code == "SPRING"
    assert DiscountSelector(code="   ").is_empty


def test_discount_quote_bounds():
    assert DiscountQuote(valid=True, base_amount=2000, discount_amount=500).final_amount == 1500
    with pytest.raises(ValueError):
        DiscountQuote(valid=True, base_amount=100, discount_amount=101)


class TestRefundPolicy:
    policy = RefundPolicy(full_hours_before=24, partial_hours_before=6, partial_percent=50)

    def test_full_refund_window(self):
        result = evaluate(self.policy, 48)
        assert result.eligible
        assert result.refundable_amount == 2000

    def test_full_refund_at_exact_boundary(self):
        assert evaluate(self.policy, 24).refundable_amount == 2000

    def test_partial_refund_window(self):
        result = evaluate(self.policy, 12)
        assert result.eligible
        assert result.refundable_amount == 1000
        assert "50%" in result.reason

    def test_closed_window(self):
        result = evaluate(self.policy, 2)
        assert not result.eligible
        assert result.refundable_amount == 0

    def test_event_started(self):
        assert evaluate(self.policy, -1).reason == "Event has already started"

    def test_attendance_forecloses_refund_even_when_cancelled(self):
        result = evaluate(self.policy, 48, attendance_verified=True, event_cancelled=True)
        assert not result.eligible
        assert result.reason == "Attendance already verified"

    def test_cancelled_event_refunds_in_full_regardless_of_timing(self):
        result = evaluate(self.policy, 1, event_cancelled=True)
        assert result.eligible
        assert result.refundable_amount == 2000

    def test_only_succeeded_payments(self):
        assert evaluate(self.policy, 48, payment_status=PaymentStatus.PENDING).reason == "Payment has not succeeded"
        assert evaluate(self.policy, 48, payment_status=PaymentStatus.REFUNDED).reason == "Payment already refunded"

    def test_amount_never_grows_as_event_approaches(self):
        amounts = [evaluate(self.policy, h).refundable_amount for h in (72, 30, 24, 20, 8, 6, 5, 0.5)]
        assert amounts == sorted(amounts, reverse=True)


class TestCurrencyConverter:
    converter = CurrencyConverter("EUR", {"EUR": Decimal("1"), "USD": Decimal("1.08"), "JPY": Decimal("160")})

    def test_same_currency_is_identity(self):
        assert self.converter.convert(1234, "eur", "EUR") == 1234

    def test_converts_through_base(self):
        assert self.converter.convert(1000, "EUR", "USD") == 1080
        assert self.converter.convert(1080, "USD", "EUR") == 1000

    def test_zero_decimal_currency(self):
        assert self.converter.convert(2000, "EUR", "JPY") == 3200

    def test_unsupported_currency(self):
        assert not self.converter.supports("CHF")
        with pytest.raises(ValidationError):
            self.converter.convert(100, "EUR", "CHF")

    def test_rejects_non_positive_rate(self):
        with pytest.raises(ValueError):
            CurrencyConverter("EUR", {"USD": Decimal("0")})
