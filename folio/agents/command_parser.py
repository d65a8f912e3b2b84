"""Rule-based command parsing.

Regex extractors shared by the resolver (to patch fields a model missed) and
a pure-rule parser used when no model is available.

Examples:
    "sold 50% of GOOG at 195"  -> sell_partial GOOG, sellPercent=50, sellPrice=195
    "bought 10 AAPL for 1850"  -> buy AAPL, amount=10, totalCost=1850
    "5000 EUR to Revolut"      -> add_cash CASH_EUR, amount=5000, account=Revolut
    "N26 EUR is now 4810"      -> update_cash CASH_EUR, amount=4810, account=N26
    "BTC price 95k"            -> set_price BTC, newPrice=95000
"""
import re
from typing import NamedTuple, Optional, Sequence

from folio.agents.schemas import ActionType, CandidateAction, PositionContext
from folio.agents.vocabulary import is_fiat, parse_abbreviated_number
from folio.core.logging import get_logger

logger = get_logger(__name__)

RULE_CONFIDENCE = 0.3

REMOVE_INTENT = re.compile(r"^(?:remove|delete|drop)\s+", re.IGNORECASE)
PRICE_AFTER_WORD = re.compile(r"\bprice\s+\$?\d", re.IGNORECASE)
SET_PRICE_PREFIX = re.compile(r"^(?:set\s+)?price\s+", re.IGNORECASE)
ADD_CASH = re.compile(
    r"^(\d+(?:[.,]\d+)?[kmb]?)\s+([a-zA-Z]{3})\s+(?:to|in|into|at)\s+(.+)$", re.IGNORECASE
)
UPDATE_CASH = re.compile(
    r"^(.+?)\s+([a-zA-Z]{3})\s+(?:is\s+now|now|=|balance)\s+(\d+(?:[.,]\d+)?[kmb]?)$", re.IGNORECASE
)

BUY_VERB_AMOUNT = re.compile(r"(?:bought|purchased|added|buy)\s+(\d+(?:\.\d+)?)\s", re.IGNORECASE)
IMPLICIT_AMOUNT = re.compile(r"^(\d+(?:\.\d+)?)\s+\w", re.IGNORECASE)
PER_UNIT_PRICE = re.compile(r"(?:at|@)\s*(\$?\d+(?:\.\d+)?[kmb]?)", re.IGNORECASE)
TOTAL_FOR = re.compile(r"for\s+(\$?\d+(?:\.\d+)?[kmb]?)", re.IGNORECASE)
PERCENT = re.compile(r"(\d+)\s*%")
SELL_AMOUNT = re.compile(r"(?:sold|sell)\s+(\d+(?:\.\d+)?)\s+(?:shares?|units?|\w)", re.IGNORECASE)
NEW_PRICE = re.compile(r"(?:price|=)\s*(\$?\d+(?:[.,]\d+)?[kmb]?)", re.IGNORECASE)
ANY_NUMBER = re.compile(r"(\d+(?:[.,]\d+)?[kmb]?)", re.IGNORECASE)

PERCENT_WORDS = (
    (re.compile(r"\bhalf\b", re.IGNORECASE), 50.0),
    (re.compile(r"\bthird\b", re.IGNORECASE), 33.33),
    (re.compile(r"\bquarter\b", re.IGNORECASE), 25.0),
)

_SELL_VERBS = re.compile(r"\b(?:sold|sell|selling)\b", re.IGNORECASE)
_SELL_ALL_WORDS = re.compile(r"\b(?:all|everything|entire|whole)\b", re.IGNORECASE)
_BUY_VERBS = re.compile(r"\b(?:bought|buy|purchased|purchase|added)\b", re.IGNORECASE)
_UPDATE_VERBS = re.compile(r"^(?:update|edit|change|set)\b", re.IGNORECASE)
_SYMBOL_TOKEN = re.compile(r"^[A-Za-z][A-Za-z0-9.\-]{0,11}$")

_STOPWORDS = {
    "sold", "sell", "selling", "bought", "buy", "purchased", "purchase", "added", "add",
    "remove", "delete", "drop", "update", "edit", "change", "set", "price", "of", "my",
    "the", "all", "everything", "entire", "whole", "shares", "share", "units", "unit",
    "at", "for", "to", "in", "into", "half", "third", "quarter", "some", "more", "amount",
    "cost", "basis", "date", "is", "now", "balance", "and", "a", "an", "position",
}


class CashCommand(NamedTuple):
    amount: Optional[float]
    currency: str
    account: str


_THOUSANDS = re.compile(r"^\d{1,3}(?:,\d{3})+[kmb]?$", re.IGNORECASE)


def _cash_amount(raw: str) -> Optional[float]:
    # "5,000" is a thousands separator; "4810,50" is a decimal comma
    if _THOUSANDS.match(raw):
        return parse_abbreviated_number(raw.replace(",", ""))
    return parse_abbreviated_number(raw.replace(",", ".", 1))


def match_add_cash(text: str) -> Optional[CashCommand]:
    """"{num} {FIAT} to|in|into|at {account}", or None."""
    match = ADD_CASH.match(text.strip())
    if not match or not is_fiat(match.group(2)):
        return None
    return CashCommand(_cash_amount(match.group(1)), match.group(2).upper(), match.group(3).strip())


def match_update_cash(text: str) -> Optional[CashCommand]:
    """"{account} {FIAT} is now|now|=|balance {num}", or None."""
    match = UPDATE_CASH.match(text.strip())
    if not match or not is_fiat(match.group(2)):
        return None
    return CashCommand(_cash_amount(match.group(3)), match.group(2).upper(), match.group(1).strip())


def correct_intent(action: Optional[str], text: str) -> Optional[str]:
    """Override the intent where the phrasing is unambiguous.

    Later rules win: remove, then set_price, then add_cash, then update_cash.
    """
    trimmed = text.strip()
    if REMOVE_INTENT.match(trimmed):
        action = ActionType.REMOVE.value
    if PRICE_AFTER_WORD.search(trimmed) or SET_PRICE_PREFIX.match(trimmed):
        action = ActionType.SET_PRICE.value
    if match_add_cash(trimmed):
        action = ActionType.ADD_CASH.value
    if match_update_cash(trimmed):
        action = ActionType.UPDATE_CASH.value
    return action


def extract_buy_amount(text: str) -> Optional[float]:
    match = BUY_VERB_AMOUNT.search(text) or IMPLICIT_AMOUNT.match(text.strip())
    return float(match.group(1)) if match else None


def extract_per_unit_price(text: str) -> Optional[float]:
    match = PER_UNIT_PRICE.search(text)
    return parse_abbreviated_number(match.group(1)) if match else None


def extract_total(text: str) -> Optional[float]:
    match = TOTAL_FOR.search(text)
    return parse_abbreviated_number(match.group(1)) if match else None


def extract_percent(text: str) -> Optional[float]:
    match = PERCENT.search(text)
    if match:
        return float(match.group(1))
    for pattern, value in PERCENT_WORDS:
        if pattern.search(text):
            return value
    return None


def extract_sell_amount(text: str) -> Optional[float]:
    match = SELL_AMOUNT.search(text)
    return float(match.group(1)) if match else None


def extract_new_price(text: str) -> Optional[float]:
    match = NEW_PRICE.search(text)
    return parse_abbreviated_number(match.group(1)) if match else None


def extract_last_number(text: str) -> Optional[float]:
    numbers = ANY_NUMBER.findall(text)
    return _cash_amount(numbers[-1]) if numbers else None


def extract_symbol(text: str, positions: Sequence[PositionContext] = ()) -> Optional[str]:
    """Best-effort symbol: a held symbol named in the text, else the first ticker-like word."""
    tokens = [t.strip(",.;:!?") for t in text.split()]
    held = {p.symbol.upper() for p in positions if p.type != "cash"}
    for token in tokens:
        if token.upper() in held:
            return token.upper()
    for token in tokens:
        if token.lower() in _STOPWORDS or not _SYMBOL_TOKEN.match(token):
            continue
        if parse_abbreviated_number(token) is not None:
            continue
        return token.upper()
    return None


def _detect_intent(text: str) -> Optional[str]:
    corrected = correct_intent(None, text)
    if corrected:
        return corrected
    if _SELL_VERBS.search(text):
        has_quantity = extract_percent(text) is not None or extract_sell_amount(text) is not None
        if _SELL_ALL_WORDS.search(text) and not has_quantity:
            return ActionType.SELL_ALL.value
        return ActionType.SELL_PARTIAL.value
    if _UPDATE_VERBS.match(text.strip()):
        return ActionType.UPDATE_POSITION.value
    if _BUY_VERBS.search(text) or IMPLICIT_AMOUNT.match(text.strip()):
        return ActionType.BUY.value
    return None


def parse_command_rules(text: str, positions: Sequence[PositionContext] = ()) -> CandidateAction:
    """Build a candidate from the text alone, without a model.

    Field extraction is left to the resolver; this only settles the intent,
    the symbol and the cash details the resolver cannot infer by itself.
    """
    action = _detect_intent(text)
    candidate = CandidateAction(action=action, confidence=RULE_CONFIDENCE)

    if action in (ActionType.ADD_CASH.value, ActionType.UPDATE_CASH.value):
        cash = match_add_cash(text) or match_update_cash(text)
        if cash:
            candidate.currency = cash.currency
            candidate.account_name = cash.account
            candidate.amount = cash.amount
            candidate.symbol = f"CASH_{cash.currency}"
        candidate.asset_type = "cash"
        return candidate

    candidate.symbol = extract_symbol(text, positions)
    if action == ActionType.UPDATE_POSITION.value:
        candidate.amount = _labelled_number(text, r"amount")
        candidate.cost_basis = _labelled_number(text, r"cost\s*basis|cost")
    if action is None:
        logger.info("No intent recognized in command text")
    return candidate


def _labelled_number(text: str, label: str) -> Optional[float]:
    match = re.search(rf"(?:{label})\s+(?:to\s+|=\s*)?(\$?\d+(?:[.,]\d+)?[kmb]?)", text, re.IGNORECASE)
    return parse_abbreviated_number(match.group(1)) if match else None
