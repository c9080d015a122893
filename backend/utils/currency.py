"""Currency-related utilities: minor-unit precision, exchange rates, formatting, and conversion."""

import logging
import os
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Optional

import requests

from utils.errors import ValidationError


logger = logging.getLogger(__name__)

EXCHANGE_RATE_API_URL = os.getenv("EXCHANGE_RATE_API_URL", "https://api.frankfurter.app")

# Number of decimal places each currency is stored with. Ledger rows hold
# integer multiples of 10**-exponent. Token exponents are capped so balances
# fit a signed 64-bit column.
MINOR_UNITS = {
    "USD": 2,
    "EUR": 2,
    "GBP": 2,
    "JPY": 0,
    "CAD": 2,
    "CNY": 2,
    "HKD": 2,
    "INR": 2,
    "KRW": 0,
    "XLM": 7,
    "USDC": 6,
    "USDT": 6,
    "ETH": 9,
    "SOL": 9,
    "APT": 8,
}

DEFAULT_MINOR_UNITS = int(os.getenv("DEFAULT_MINOR_UNITS", "2"))

# Ledger columns are signed 64-bit integers
MAX_MINOR_UNITS = 2**63 - 1


def _load_overrides(raw: str) -> dict:
    """Parse LEDGER_MINOR_UNITS, e.g. "BTC=8,ETH=9"."""
    overrides = {}
    for entry in raw.split(","):
        if not entry.strip():
            continue
        code, _, exponent = entry.partition("=")
        overrides[code.strip().upper()] = int(exponent)
    return overrides


MINOR_UNITS.update(_load_overrides(os.getenv("LEDGER_MINOR_UNITS", "")))

# Exchange rates for currency conversion (fallback if API fails): 1 USD = X
EXCHANGE_RATES = {
    "USD": 1.0,
    "EUR": 0.92,
    "GBP": 0.79,
    "JPY": 149.5,
    "CAD": 1.38,
    "CNY": 7.2,
    "HKD": 7.8
}

# Currency symbols for formatting
CURRENCY_SYMBOLS = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "CAD": "CA$",
    "CNY": "¥",
    "HKD": "HK$"
}


def minor_unit_exponent(currency: str) -> int:
    return MINOR_UNITS.get(currency.upper(), DEFAULT_MINOR_UNITS)


def to_minor_units(amount, currency: str) -> int:
    """
    Round an amount to the currency's precision and return it as an integer
    count of minor units. This is the only rounding applied to ledger amounts.

    Args:
        amount: Major-unit amount (Decimal, int, float or numeric string)
        currency: Currency code or token symbol

    Returns:
        Integer minor units, rounded half away from zero (e.g. 12.345 USD -> 1235)

    Raises:
        ValidationError: not a finite number, or too large for a ledger column
    """
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {amount!r}")
    if not value.is_finite():
        raise ValidationError(f"Invalid amount: {amount!r}")

    scaled = value.scaleb(minor_unit_exponent(currency))
    # Checked before quantize, which fails past the context precision
    if abs(scaled) > MAX_MINOR_UNITS:
        raise ValidationError(f"Amount {amount!r} is too large for {currency}")
    result = int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP))
    if abs(result) > MAX_MINOR_UNITS:
        raise ValidationError(f"Amount {amount!r} is too large for {currency}")
    return result


def from_minor_units(amount: int, currency: str) -> Decimal:
    """Convert stored minor units back to a major-unit Decimal for display."""
    return Decimal(amount).scaleb(-minor_unit_exponent(currency))


def format_currency(amount_minor: int, currency: str) -> str:
    """
    Format an amount in minor units as a currency string with symbol.

    Args:
        amount_minor: Amount in minor units (e.g., 1234 for $12.34)
        currency: Currency code (e.g., "USD", "EUR")

    Returns:
        Formatted string with symbol (e.g., "$12.34", "-€12.34", "¥500")
    """
    symbol = CURRENCY_SYMBOLS.get(currency, f"{currency} ")
    amount = from_minor_units(amount_minor, currency)
    places = minor_unit_exponent(currency)

    if amount < 0:
        return f"-{symbol}{abs(amount):.{places}f}"
    return f"{symbol}{amount:.{places}f}"


def fetch_exchange_rate(from_currency: str, to_currency: str = "USD", date: Optional[str] = None) -> Optional[float]:
    """
    Fetch an exchange rate from the Frankfurter API (free, no key required).

    Args:
        from_currency: Source currency code (e.g., "EUR")
        to_currency: Target currency code (default: "USD")
        date: Optional ISO date (YYYY-MM-DD) for a historical rate; latest if omitted

    Returns:
        How many units of to_currency one unit of from_currency buys, or None if the fetch fails
    """
    if from_currency == to_currency:
        return 1.0

    try:
        url = f"{EXCHANGE_RATE_API_URL}/{date or 'latest'}"
        params = {
            "from": from_currency,
            "to": to_currency
        }

        response = requests.get(url, params=params, timeout=5)
        response.raise_for_status()

        data = response.json()

        if "rates" in data and to_currency in data["rates"]:
            return float(data["rates"][to_currency])

        return None

    except (requests.RequestException, ValueError) as e:
        logger.warning(f"Error fetching exchange rate ({from_currency} to {to_currency}): {e}")
        return None


def get_exchange_rate(from_currency: str, to_currency: str = "USD") -> Optional[float]:
    """
    Exchange rate from one currency to another, trying the API first and the
    static table second. Returns None when neither knows the pair.
    """
    rate = fetch_exchange_rate(from_currency, to_currency)
    if rate is not None:
        return rate

    if from_currency in EXCHANGE_RATES and to_currency in EXCHANGE_RATES:
        rate = EXCHANGE_RATES[to_currency] / EXCHANGE_RATES[from_currency]
        logger.info(f"Using fallback rate for {from_currency}->{to_currency}: {rate}")
        return rate

    logger.warning(f"No exchange rate available for {from_currency}->{to_currency}")
    return None


def get_current_exchange_rates() -> dict:
    """
    Get current exchange rates relative to USD (base currency).
    Falls back to static rates if the API is unavailable.
    """
    try:
        url = f"{EXCHANGE_RATE_API_URL}/latest"
        params = {
            "from": "USD",
            "to": ",".join(code for code in EXCHANGE_RATES if code != "USD")
        }

        response = requests.get(url, params=params, timeout=5)
        response.raise_for_status()

        data = response.json()

        if "rates" in data:
            rates = {"USD": 1.0}
            rates.update(data["rates"])
            return rates

        logger.warning("Exchange rate API response invalid, using fallback rates")
        return EXCHANGE_RATES

    except (requests.RequestException, ValueError) as e:
        logger.warning(f"Error fetching exchange rates: {e}")
        return EXCHANGE_RATES


def convert_currency(amount: float, from_currency: str, to_currency: str, rates: Optional[dict] = None) -> Optional[float]:
    """
    Convert a major-unit amount between currencies through USD.

    Args:
        amount: Amount in source currency
        from_currency: Source currency code (e.g., "EUR")
        to_currency: Target currency code (e.g., "GBP")
        rates: USD-based rates (1 USD = X); the static table if omitted

    Returns:
        Amount in target currency, or None if either currency has no rate
    """
    if from_currency == to_currency:
        return amount

    rates = rates or EXCHANGE_RATES
    if from_currency not in rates or to_currency not in rates:
        return None

    amount_in_usd = amount / rates[from_currency]
    return amount_in_usd * rates[to_currency]
