"""Shared command vocabulary: fiat currencies, abbreviated numbers, display formats."""
import math
import re
from typing import Optional

FIAT_CURRENCIES = frozenset({
    "usd", "eur", "gbp", "chf", "jpy", "cny", "cad", "aud", "nzd", "hkd",
    "sgd", "sek", "nok", "dkk", "krw", "inr", "brl", "mxn", "zar", "aed",
    "thb", "pln", "czk", "ils", "php", "idr", "myr", "try", "rub", "huf",
    "ron", "bgn", "hrk", "isk", "twd", "vnd",
})

_ABBREVIATED = re.compile(r"^(\d+(?:\.\d+)?)\s*([kmb])?$")
_MULTIPLIERS = {"k": 1_000, "m": 1_000_000, "b": 1_000_000_000}


def is_fiat(code: Optional[str]) -> bool:
    return bool(code) and code.lower() in FIAT_CURRENCIES


def parse_abbreviated_number(raw) -> Optional[float]:
    """Parse "52k", "1.5m", "$3,200" or "4811" into a float.

    Returns None for anything that is not a plain non-negative number with
    an optional k/m/b suffix, or that overflows to infinity.
    """
    if raw is None:
        return None
    cleaned = str(raw).replace("$", "").replace(",", "").strip().lower()
    match = _ABBREVIATED.match(cleaned)
    if not match:
        return None
    value = float(match.group(1))
    suffix = match.group(2)
    if suffix:
        value *= _MULTIPLIERS[suffix]
    return value if math.isfinite(value) else None


def fmt_number(n: float) -> str:
    """Shortest round-trip rendering, without a trailing ``.0``."""
    text = repr(float(n))
    return text[:-2] if text.endswith(".0") else text


def fmt_price(n: float) -> str:
    """``$1,234`` / ``$1,234.50`` for n >= 1, raw digits below one."""
    if n >= 1:
        if n % 1:
            return f"${n:,.2f}"
        return f"${n:,.0f}"
    return "$" + fmt_number(n)


def fmt_amount(n: float) -> str:
    """Thousands separators, at most two decimals (``5,000`` / ``4,810.5``)."""
    if math.isclose(n, round(n)):
        return f"{round(n):,}"
    text = f"{n:,.2f}".rstrip("0")
    return text.rstrip(".")
