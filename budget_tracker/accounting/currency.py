"""
Currency Conversion

Static exchange-rate table, stored as units of each currency per 1 USD.
Real rate fetching is out of scope; the table can be replaced at
construction time.
"""

from typing import Mapping, Optional


DEFAULT_RATES: dict[str, float] = {
    "USD": 1.0,
    "EUR": 0.92,
    "GBP": 0.79,
    "JPY": 150.0,
    "CAD": 1.35,
    "AUD": 1.52,
    "CHF": 0.88,
    "CNY": 7.20,
    "DKK": 6.85,
}

CURRENCY_SYMBOLS: dict[str, str] = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "CAD": "C$",
    "AUD": "A$",
    "CHF": "CHF",
    "CNY": "¥",
    "DKK": "kr",
}


class CurrencyConverter:
    """
    Converts amounts between currency codes through the reference unit.

    Unknown codes are treated as rate 1.0. This is a permissive default:
    a typo in a currency code degrades to an identity conversion rather
    than an error. No rounding happens here; callers format for display.
    """

    def __init__(self, rates: Optional[Mapping[str, float]] = None):
        self._rates = dict(DEFAULT_RATES if rates is None else rates)

    @property
    def currencies(self) -> list[str]:
        return sorted(self._rates)

    def rate(self, currency: Optional[str]) -> float:
        rate = self._rates.get((currency or "").upper())
        if not rate:
            return 1.0
        return rate

    def convert(self, amount: float, from_currency: str, to_currency: str) -> float:
        """Convert amount from one currency to another."""
        if (from_currency or "").upper() == (to_currency or "").upper():
            return amount
        return amount / self.rate(from_currency) * self.rate(to_currency)

    def symbol(self, currency: str) -> str:
        return CURRENCY_SYMBOLS.get((currency or "").upper(), "$")

    def format_amount(self, amount: float, currency: str) -> str:
        """Format for display, e.g. '$1,234.56' or 'kr1,200.00'."""
        sign = "-" if amount < 0 else ""
        return f"{sign}{self.symbol(currency)}{abs(amount):,.2f}"
