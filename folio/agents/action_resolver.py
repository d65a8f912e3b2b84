"""Command resolver.

Deterministic post-processing that turns an untrusted candidate (from the
model or the rule parser) plus the live positions into a ResolvedAction.

Pipeline, in order:
 1. intent correction and regex extraction of fields the parser missed
 2. date normalization
 3. auto-match to a position
 4. sell_all -> sell_partial downgrade
 5. percent -> absolute quantity
 6. buy / sell algebra
 7. sell_all quantity back-fill
 8. missing fields, recomputed from the final values
 9. summary, rebuilt from the final values

Extraction only fills empty fields and derived totals are recomputed from
their inputs, so resolving a resolved action again changes nothing.
``resolve_action`` never raises: problems surface as ``missing_fields``
and a lower ``confidence``.
"""
import math
from datetime import date
from typing import List, Optional, Sequence

from folio.agents import command_parser as rules
from folio.agents.schemas import (
    ActionType,
    CASH_ACTIONS,
    CandidateAction,
    PositionContext,
    ResolvedAction,
    SELL_ACTIONS,
)
from folio.agents.vocabulary import fmt_amount, fmt_number, fmt_price
from folio.core.logging import get_logger
from folio.core.time import parse_iso_date

logger = get_logger(__name__)

DEFAULT_CONFIDENCE = 0.5
INCOMPLETE_CONFIDENCE_CAP = 0.5
UNKNOWN_SYMBOL = "UNKNOWN"

_ACTION_ALIASES = {"update": ActionType.UPDATE_POSITION.value}


def _has(value: Optional[float]) -> bool:
    return value is not None and value > 0


def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def _find(positions: Sequence[PositionContext], position_id: Optional[str]) -> Optional[PositionContext]:
    if not position_id:
        return None
    return next((p for p in positions if p.id == position_id), None)


def _normalize(w: CandidateAction, positions: Sequence[PositionContext]) -> None:
    action = (w.action or "").lower()
    action = _ACTION_ALIASES.get(action, action)
    w.action = action if action in {a.value for a in ActionType} else ActionType.BUY.value
    w.symbol = (w.symbol or UNKNOWN_SYMBOL).upper().strip()

    # A supplied match is only kept if it names a live, mutable position
    matched = _find(positions, w.matched_position_id)
    if w.matched_position_id and (matched is None or matched.read_only):
        logger.info("Dropping candidate match %s: not a mutable position", w.matched_position_id)
        w.matched_position_id = None


def _extract(w: CandidateAction, text: str) -> None:
    w.action = rules.correct_intent(w.action, text)
    action = ActionType(w.action)
    is_sell = action in SELL_ACTIONS

    if action == ActionType.BUY and not _has(w.amount):
        w.amount = rules.extract_buy_amount(text) or w.amount

    per_unit = rules.extract_per_unit_price(text)
    if per_unit is not None:
        if action == ActionType.BUY and not _has(w.price_per_unit):
            w.price_per_unit = per_unit
        if is_sell and not _has(w.sell_price):
            w.sell_price = per_unit

    total = rules.extract_total(text)
    if total is not None:
        if is_sell and not _has(w.total_proceeds):
            w.total_proceeds = total
        if action == ActionType.BUY and not _has(w.total_cost):
            w.total_cost = total

    if action == ActionType.SELL_PARTIAL and not _has(w.sell_percent):
        w.sell_percent = rules.extract_percent(text) or w.sell_percent

    if is_sell and not _has(w.sell_amount) and not _has(w.sell_percent):
        w.sell_amount = rules.extract_sell_amount(text) or w.sell_amount

    if action in CASH_ACTIONS:
        cash = rules.match_add_cash(text) if action == ActionType.ADD_CASH else rules.match_update_cash(text)
        if cash:
            w.currency = w.currency or cash.currency
            w.account_name = w.account_name or cash.account
            if not _has(w.amount) and cash.amount is not None:
                w.amount = cash.amount
        if action == ActionType.UPDATE_CASH and not _has(w.amount):
            w.amount = rules.extract_last_number(text) or w.amount
        if w.currency:
            w.currency = w.currency.upper()
            if w.symbol == UNKNOWN_SYMBOL:
                w.symbol = f"CASH_{w.currency}"
        w.asset_type = "cash"

    if action == ActionType.SET_PRICE and not _has(w.new_price):
        w.new_price = rules.extract_new_price(text) or w.new_price


def _normalize_date(w: CandidateAction) -> None:
    today = date.today()
    # An update without a date must not stamp one on the position
    if w.action == ActionType.UPDATE_POSITION.value and not w.date:
        return
    parsed = parse_iso_date(w.date)
    if parsed is None or parsed > today:
        w.date = today.isoformat()
    else:
        w.date = parsed.isoformat()


def _cash_account_of(p: PositionContext) -> str:
    if p.account_name:
        return p.account_name.lower()
    return p.name.split("(")[0].strip().lower()


def _auto_match(w: CandidateAction, positions: Sequence[PositionContext]) -> None:
    if w.matched_position_id:
        return
    mutable = [p for p in positions if not p.read_only]

    if w.action in {a.value for a in CASH_ACTIONS}:
        if not w.currency:
            return
        prefix = f"CASH_{w.currency.upper()}"
        matches = [p for p in mutable if p.type == "cash" and p.symbol.upper().startswith(prefix)]
        if w.account_name:
            target = w.account_name.lower()
            matches = [p for p in matches if _cash_account_of(p) == target]
        elif len(matches) > 1:
            return
    else:
        if w.symbol == UNKNOWN_SYMBOL:
            return
        matches = [p for p in mutable if p.symbol.upper() == w.symbol]
        if len(matches) > 1:
            # Several same-symbol positions: only a lone non-debt one is unambiguous
            non_debt = [p for p in matches if not p.is_debt]
            matches = non_debt if len(non_debt) == 1 else matches

    if len(matches) == 1:
        match = matches[0]
        w.matched_position_id = match.id
        w.name = w.name or match.name
        w.asset_type = w.asset_type or match.type


def _downgrade_sell_all(w: CandidateAction, positions: Sequence[PositionContext]) -> None:
    if w.action != ActionType.SELL_ALL.value or not _has(w.sell_amount):
        return
    matched = _find(positions, w.matched_position_id)
    if matched and w.sell_amount < matched.amount:
        w.action = ActionType.SELL_PARTIAL.value


def _percent_to_quantity(w: CandidateAction, positions: Sequence[PositionContext]) -> None:
    if w.action != ActionType.SELL_PARTIAL.value or not _has(w.sell_percent) or _has(w.sell_amount):
        return
    matched = _find(positions, w.matched_position_id)
    if matched:
        w.sell_amount = matched.amount * (w.sell_percent / 100)


def _apply_sell_identity(w: CandidateAction) -> None:
    if not _has(w.sell_price) and _has(w.total_proceeds) and _has(w.sell_amount):
        w.sell_price = w.total_proceeds / w.sell_amount
    if (
        w.action == ActionType.SELL_PARTIAL.value
        and not _has(w.sell_amount)
        and _has(w.total_proceeds)
        and _has(w.sell_price)
    ):
        w.sell_amount = w.total_proceeds / w.sell_price
    if _has(w.sell_amount) and _has(w.sell_price):
        w.total_proceeds = w.sell_amount * w.sell_price


def _derive(w: CandidateAction) -> None:
    if w.action == ActionType.BUY.value:
        if not _has(w.price_per_unit) and _has(w.total_cost) and _has(w.amount):
            w.price_per_unit = w.total_cost / w.amount
        if not _has(w.amount) and _has(w.total_cost) and _has(w.price_per_unit):
            w.amount = w.total_cost / w.price_per_unit
        if _has(w.amount) and _has(w.price_per_unit):
            w.total_cost = w.amount * w.price_per_unit
    elif w.action in {a.value for a in SELL_ACTIONS}:
        _apply_sell_identity(w)


def _backfill_sell_all(w: CandidateAction, positions: Sequence[PositionContext]) -> None:
    if w.action != ActionType.SELL_ALL.value:
        return
    matched = _find(positions, w.matched_position_id)
    if matched:
        w.sell_amount = matched.amount
        _apply_sell_identity(w)


def compute_missing_fields(w: CandidateAction) -> List[str]:
    action = w.action
    missing: List[str] = []
    if action in (ActionType.SELL_PARTIAL.value, ActionType.SELL_ALL.value):
        if not _has(w.sell_price):
            missing.append("sellPrice")
        if action == ActionType.SELL_PARTIAL.value and not _has(w.sell_amount):
            missing.append("sellAmount")
    elif action == ActionType.BUY.value:
        if not _has(w.amount):
            missing.append("amount")
        if not _has(w.price_per_unit):
            missing.append("pricePerUnit")
    elif action == ActionType.ADD_CASH.value:
        if not _has(w.amount):
            missing.append("amount")
        if not w.currency:
            missing.append("currency")
    elif action == ActionType.UPDATE_CASH.value:
        if not _has(w.amount):
            missing.append("amount")
    elif action == ActionType.SET_PRICE.value:
        if not _has(w.new_price):
            missing.append("newPrice")
    elif action == ActionType.UPDATE_POSITION.value:
        if w.amount is None and w.cost_basis is None and not w.date:
            missing.extend(["amount", "costBasis", "date"])
    elif action == ActionType.REMOVE.value:
        if not w.matched_position_id and w.symbol == UNKNOWN_SYMBOL:
            missing.append("symbol")
    return missing


def build_summary(w: CandidateAction, positions: Sequence[PositionContext]) -> str:
    action = w.action
    symbol = w.symbol
    if action in (ActionType.SELL_PARTIAL.value, ActionType.SELL_ALL.value):
        matched = _find(positions, w.matched_position_id)
        if _has(w.sell_percent):
            qty = f"{fmt_number(w.sell_percent)}% of"
        elif _has(w.sell_amount):
            if matched and matched.amount > 0:
                pct = _round_half_up(w.sell_amount / matched.amount * 100)
                qty = f"{fmt_number(w.sell_amount)} ({pct}%) of"
            else:
                qty = fmt_number(w.sell_amount)
        else:
            qty = "all"
        price = f" at {fmt_price(w.sell_price)}" if _has(w.sell_price) else ""
        return f"Sell {qty} {symbol}{price}"
    if action == ActionType.BUY.value:
        qty = fmt_number(w.amount) if _has(w.amount) else "?"
        price = f" at {fmt_price(w.price_per_unit)}" if _has(w.price_per_unit) else ""
        return f"Buy {qty} {symbol}{price}"
    if action == ActionType.ADD_CASH.value:
        amount = fmt_amount(w.amount) if _has(w.amount) else "?"
        return f"Add {amount} {w.currency or '?'} to {w.account_name or '?'}"
    if action == ActionType.UPDATE_CASH.value:
        amount = fmt_amount(w.amount) if _has(w.amount) else "?"
        return f"Update {w.account_name or '?'} {w.currency or '?'} to {amount}"
    if action == ActionType.SET_PRICE.value:
        price = fmt_price(w.new_price) if _has(w.new_price) else "?"
        return f"Set {symbol} price to {price}"
    if action == ActionType.UPDATE_POSITION.value:
        parts = []
        if w.amount is not None:
            parts.append(f"amount to {fmt_number(w.amount)}")
        if w.cost_basis is not None:
            parts.append(f"cost basis to ${fmt_amount(w.cost_basis)}")
        if w.date:
            parts.append(f"date to {w.date}")
        return f"Update {symbol} {', '.join(parts)}" if parts else f"Update {symbol} position"
    return f"Remove {symbol}"


def _finalize(w: CandidateAction, missing: List[str], summary: str) -> ResolvedAction:
    confidence = w.confidence if w.confidence is not None else DEFAULT_CONFIDENCE
    confidence = min(max(confidence, 0.0), 1.0)
    if missing:
        confidence = min(confidence, INCOMPLETE_CONFIDENCE_CAP)

    is_cash = w.action in {a.value for a in CASH_ACTIONS}
    return ResolvedAction(
        action=ActionType(w.action),
        symbol=w.symbol,
        name=w.name,
        asset_type=w.asset_type or "crypto",
        amount=w.amount,
        price_per_unit=w.price_per_unit,
        total_cost=w.total_cost,
        sell_amount=w.sell_amount,
        sell_percent=w.sell_percent,
        sell_price=w.sell_price,
        total_proceeds=w.total_proceeds,
        new_price=w.new_price if w.action == ActionType.SET_PRICE.value else None,
        cost_basis=w.cost_basis if w.action == ActionType.UPDATE_POSITION.value else None,
        date=w.date,
        matched_position_id=w.matched_position_id,
        missing_fields=missing,
        confidence=confidence,
        summary=summary,
        currency=w.currency if is_cash else None,
        account_name=w.account_name if is_cash else None,
    )


def resolve_action(
    candidate: CandidateAction,
    text: str,
    positions: Sequence[PositionContext],
) -> ResolvedAction:
    """Resolve a candidate against the live positions. Never raises."""
    w = candidate.model_copy(deep=True)
    try:
        _normalize(w, positions)
        _extract(w, text)
        _normalize_date(w)
        _auto_match(w, positions)
        _downgrade_sell_all(w, positions)
        _percent_to_quantity(w, positions)
        _derive(w)
        _backfill_sell_all(w, positions)
        missing = compute_missing_fields(w)
        return _finalize(w, missing, build_summary(w, positions))
    except Exception as e:
        logger.exception("Resolver failed on %r", text[:200], extra={"error_class": type(e).__name__})
        return ResolvedAction(
            action=ActionType.BUY,
            symbol=(candidate.symbol or UNKNOWN_SYMBOL).upper(),
            missing_fields=["symbol", "amount"],
            confidence=0.0,
            summary=f"Could not resolve: {text[:80]}",
        )
