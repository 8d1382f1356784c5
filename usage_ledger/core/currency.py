"""
Currency conversion.

Converts USD amounts into the display currency with a rate multiplier.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Protocol

logger = logging.getLogger(__name__)

BASE_CURRENCY = "USD"

# Offline rates used when no live rate source is configured
FALLBACK_RATES: Dict[str, float] = {
    "USD": 1.0,
    "EUR": 0.9234,
    "GBP": 0.7892,
    "JPY": 149.67,
    "CHF": 0.8834,
    "CAD": 1.3562,
    "AUD": 1.4823,
    "CNY": 7.1234,
    "KRW": 1387.50,
    "INR": 83.42,
    "BRL": 5.8934,
    "MXN": 20.124,
}

CURRENCY_SYMBOLS: Dict[str, str] = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "CHF": "CHF ",
    "CAD": "C$",
    "AUD": "A$",
    "CNY": "¥",
    "KRW": "₩",
    "INR": "₹",
    "BRL": "R$",
    "MXN": "$",
}

# Currencies conventionally shown without minor units
ZERO_DECIMAL_CURRENCIES = {"JPY", "KRW"}


class CurrencyProvider(Protocol):
    """Source of USD -> target conversion multipliers."""

    def rate_for(self, code: str) -> float:
        ...


@dataclass(frozen=True)
class StaticCurrencyProvider:
    """Currency provider backed by fixed rates.

    Configured overrides take precedence over FALLBACK_RATES. Unknown
    codes convert at 1.0 so amounts stay in USD rather than failing.
    """
    overrides: Mapping[str, float] = field(default_factory=dict)

    def __post_init__(self):
        """Validate override rates are positive."""
        for code, rate in self.overrides.items():
            if rate <= 0:
                raise ValueError(f"exchange rate for {code} must be > 0")

    def rate_for(self, code: str) -> float:
        code = code.upper()
        if code in self.overrides:
            return float(self.overrides[code])
        if code in FALLBACK_RATES:
            return FALLBACK_RATES[code]
        logger.warning("No exchange rate for %s, amounts stay in USD", code)
        return 1.0


def convert_from_usd(amount: float, rate: float) -> float:
    """Convert a USD amount with a USD -> target multiplier."""
    return amount * rate


def currency_symbol(code: str) -> str:
    """Get the display symbol for a currency code."""
    return CURRENCY_SYMBOLS.get(code.upper(), f"{code.upper()} ")


def format_amount(amount: float, code: Optional[str] = None) -> str:
    """Format an already-converted amount with symbol and precision.

    Args:
        amount: Amount in the target currency
        code: Currency code, USD when omitted

    Returns:
        e.g. "$1,234.56", "¥1,235"
    """
    code = (code or BASE_CURRENCY).upper()
    decimals = 0 if code in ZERO_DECIMAL_CURRENCIES else 2
    sign = "-" if amount < 0 else ""
    return f"{sign}{currency_symbol(code)}{abs(amount):,.{decimals}f}"
