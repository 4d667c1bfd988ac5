# src/gatherpay/application/services/currency_service.py
"""
Display-only currency conversion over a static rate table.

Rates are quoted as units of a currency per one unit of the base currency.
Settlement never goes through here: escrow, refunds and transfers stay in
the event's own currency.
"""

import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict

from gatherpay.domain.errors import ValidationError

log = logging.getLogger(__name__)

# ISO-4217 currencies without a minor unit.
ZERO_DECIMAL_CURRENCIES = frozenset({
    "BIF", "CLP", "DJF", "GNF", "ISK", "JPY", "KMF", "KRW",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
})


def minor_exponent(currency: str) -> int:
    return 0 if currency.upper() in ZERO_DECIMAL_CURRENCIES else 2


class CurrencyConverter:
    def __init__(self, base_currency: str, rates: Dict[str, Decimal]):
        self.base_currency = base_currency.upper()
        self.rates = {code.upper(): Decimal(rate) for code, rate in rates.items()}
        self.rates.setdefault(self.base_currency, Decimal("1"))
        for code, rate in self.rates.items():
            if rate <= 0:
                raise ValueError(f"Exchange rate for {code} must be positive")

    def supports(self, currency: str) -> bool:
        return currency.upper() in self.rates

    def rate(self, currency: str) -> Decimal:
        try:
            return self.rates[currency.upper()]
        except KeyError:
            raise ValidationError(f"Unsupported currency: {currency}")

    def convert(self, amount_minor: int, from_currency: str, to_currency: str) -> int:
        source, target = from_currency.upper(), to_currency.upper()
        if source == target:
            return amount_minor
        major = Decimal(amount_minor) / (Decimal(10) ** minor_exponent(source))
        converted = major / self.rate(source) * self.rate(target)
        minor = converted * (Decimal(10) ** minor_exponent(target))
        return int(minor.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
