"""Shared helpers."""
import math
import re
from typing import Any, Optional


def to_float(value: Any) -> Optional[float]:
    """Coerce a loosely-typed value into a finite float, or None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        result = float(value)
    else:
        text = str(value).strip().replace(",", "").replace("$", "")
        if not text:
            return None
        try:
            result = float(text)
        except ValueError:
            return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def account_slug(name: str) -> str:
    """Lowercase an account name and join its words with underscores."""
    return re.sub(r"\s+", "_", name.strip().lower())
