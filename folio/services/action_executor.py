"""
Apply a resolved command action to a portfolio snapshot.

``apply_action`` mutates the PortfolioData it is given; callers pass either a
deep copy (preview) or the state handed to a store transaction (confirm).
Failures raise PortfolioError before any field is touched, so a rejected
action never leaves a half-applied snapshot behind.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from folio.agents.schemas import ActionType, ResolvedAction
from folio.agents.vocabulary import fmt_amount, fmt_number
from folio.core.error_codes import not_found, validation_error
from folio.core.logging import get_logger
from folio.core.time import now_iso, now_ms, today_iso
from folio.db.models import Account, PortfolioData, Position
from folio.services.position_operations import (
    DUST_THRESHOLD,
    apply_operation,
    execute_buy,
    execute_full_sell,
    execute_partial_sell,
)

logger = get_logger(__name__)

CUSTOM_PRICE_NOTE = "Set via command palette"


@dataclass
class ExecutionResult:
    action: str
    summary: str
    position_id: Optional[str] = None
    transaction_id: Optional[str] = None
    removed_position_ids: List[str] = field(default_factory=list)


def _account_of(data: PortfolioData, position: Position) -> Optional[Account]:
    return data.find_account(position.account_id) if position.account_id else None


def _require_mutable(data: PortfolioData, position: Position) -> None:
    account = _account_of(data, position)
    if account is not None and account.is_synced:
        raise validation_error(
            f"Cannot modify {position.symbol}: account {account.name} is synced from "
            f"{account.connection.data_source}",
            position_id=position.id,
            account_id=account.id,
        )
    if position.wallet_address:
        raise validation_error("Cannot edit wallet-synced positions", position_id=position.id)


def _matched(data: PortfolioData, action: ResolvedAction, missing_message: str) -> Position:
    position = data.find_position(action.matched_position_id) if action.matched_position_id else None
    if position is None:
        raise not_found(missing_message, position_id=action.matched_position_id, symbol=action.symbol)
    _require_mutable(data, position)
    return position


def _update(position: Position, **changes: Any) -> None:
    for key, value in changes.items():
        setattr(position, key, value)
    position.updated_at = now_iso()


def _sell_partial(data: PortfolioData, action: ResolvedAction) -> ExecutionResult:
    position = _matched(data, action, "No matching position found to sell")
    amount = action.sell_amount or 0.0
    if amount > position.amount + DUST_THRESHOLD:
        raise validation_error(
            "Insufficient amount",
            available=position.amount,
            requested=amount,
        )
    op = execute_partial_sell(position, min(amount, position.amount), action.sell_price, action.date or today_iso())
    apply_operation(data, position, op)
    return ExecutionResult(
        action=action.action.value,
        summary=f"Sold {fmt_number(amount)} {position.symbol}",
        position_id=None if op.removed_position_id else position.id,
        transaction_id=op.transaction.id,
        removed_position_ids=[op.removed_position_id] if op.removed_position_id else [],
    )


def _sell_all(data: PortfolioData, action: ResolvedAction) -> ExecutionResult:
    position = _matched(data, action, "No matching position found to sell")
    op = execute_full_sell(position, action.sell_price, action.date or today_iso())
    apply_operation(data, position, op)
    return ExecutionResult(
        action=action.action.value,
        summary=f"Sold all {position.symbol}",
        transaction_id=op.transaction.id,
        removed_position_ids=[position.id],
    )


def _buy(data: PortfolioData, action: ResolvedAction) -> ExecutionResult:
    existing = None
    if action.matched_position_id:
        existing = _matched(data, action, "No matching position found to buy into")
    op = execute_buy(
        existing,
        symbol=action.symbol,
        amount=action.amount,
        price_per_unit=action.price_per_unit,
        total_cost=action.total_cost,
        date=action.date or today_iso(),
        name=action.name,
        asset_type=action.asset_type or "crypto",
    )
    apply_operation(data, existing, op)
    position_id = existing.id if existing else op.new_position.id
    return ExecutionResult(
        action=action.action.value,
        summary=f"Bought {fmt_number(action.amount)} {action.symbol}",
        position_id=position_id,
        transaction_id=op.transaction.id,
    )


def _manual_account_named(data: PortfolioData, name: str) -> Optional[Account]:
    target = name.strip().lower()
    return next(
        (a for a in data.accounts if not a.is_synced and a.name.strip().lower() == target),
        None,
    )


def _add_cash(data: PortfolioData, action: ResolvedAction) -> ExecutionResult:
    amount = action.amount or 0.0
    if amount <= 0:
        raise validation_error("Amount must be greater than zero")
    currency = (action.currency or "").upper()
    if not currency:
        raise validation_error("No currency provided")

    if action.matched_position_id:
        position = _matched(data, action, "No matching cash position found")
        new_amount = position.amount + amount
        _update(position, amount=new_amount, cost_basis=new_amount)
        return ExecutionResult(
            action=action.action.value,
            summary=f"Added {fmt_amount(amount)} {currency} to {position.name}",
            position_id=position.id,
        )

    symbol = f"CASH_{currency}_{now_ms()}"
    account_name = (action.account_name or "").strip()
    account = _manual_account_named(data, account_name) if account_name else None
    position = Position(
        symbol=symbol,
        name=f"{account_name} ({currency})" if account_name else f"Cash ({currency})",
        type="cash",
        amount=amount,
        cost_basis=amount,
        account_id=account.id if account else None,
    )
    data.positions.append(position)
    data.prices[symbol.lower()] = {
        "symbol": currency,
        "price": 1,
        "change24h": 0,
        "changePercent24h": 0,
        "lastUpdated": now_iso(),
    }
    return ExecutionResult(
        action=action.action.value,
        summary=f"Added {fmt_amount(amount)} {currency}",
        position_id=position.id,
    )


def _update_cash(data: PortfolioData, action: ResolvedAction) -> ExecutionResult:
    amount = action.amount
    if amount is None or amount < 0:
        raise validation_error("No amount provided")
    if action.matched_position_id:
        target = _matched(data, action, "No matching cash position found")
    else:
        cash = [p for p in data.positions if p.is_cash]
        if len(cash) != 1:
            raise not_found("No matching cash position found", currency=action.currency)
        target = cash[0]
        _require_mutable(data, target)
    _update(target, amount=amount, cost_basis=amount)
    return ExecutionResult(
        action=action.action.value,
        summary=f"Updated {target.name} to {fmt_amount(amount)}",
        position_id=target.id,
    )


def _remove(data: PortfolioData, action: ResolvedAction) -> ExecutionResult:
    if action.matched_position_id:
        targets = [_matched(data, action, f"No position found for {action.symbol}")]
    else:
        targets = [p for p in data.positions if p.symbol.upper() == action.symbol.upper()]
        if not targets:
            raise not_found(f"No position found for {action.symbol}", symbol=action.symbol)
        for p in targets:
            _require_mutable(data, p)
    removed = {p.id for p in targets}
    data.positions = [p for p in data.positions if p.id not in removed]
    return ExecutionResult(
        action=action.action.value,
        summary=f"Removed {action.symbol}",
        removed_position_ids=[p.id for p in targets],
    )


def _set_price(data: PortfolioData, action: ResolvedAction) -> ExecutionResult:
    if not action.new_price or action.new_price <= 0:
        raise validation_error("Price must be greater than zero")
    data.custom_prices[action.symbol.lower()] = {
        "price": action.new_price,
        "note": CUSTOM_PRICE_NOTE,
        "setAt": now_iso(),
    }
    return ExecutionResult(
        action=action.action.value,
        summary=f"Set {action.symbol} price to {fmt_number(action.new_price)}",
    )


def _update_position(data: PortfolioData, action: ResolvedAction) -> ExecutionResult:
    position = _matched(data, action, "No matching position found to update")
    changes: Dict[str, Any] = {}
    if action.amount is not None:
        if action.amount <= 0:
            raise validation_error("Amount must be greater than 0")
        changes["amount"] = action.amount
    if action.cost_basis is not None:
        if action.cost_basis < 0:
            raise validation_error("Cost basis must be >= 0")
        changes["cost_basis"] = action.cost_basis
    if action.date:
        changes["purchase_date"] = action.date
    if not changes:
        raise validation_error("No fields to update")
    _update(position, **changes)
    return ExecutionResult(
        action=action.action.value,
        summary=f"Updated {position.symbol}",
        position_id=position.id,
    )


_EXECUTORS = {
    ActionType.BUY: _buy,
    ActionType.SELL_PARTIAL: _sell_partial,
    ActionType.SELL_ALL: _sell_all,
    ActionType.ADD_CASH: _add_cash,
    ActionType.UPDATE_CASH: _update_cash,
    ActionType.REMOVE: _remove,
    ActionType.SET_PRICE: _set_price,
    ActionType.UPDATE_POSITION: _update_position,
}


def apply_action(data: PortfolioData, action: ResolvedAction) -> ExecutionResult:
    """Apply ``action`` to ``data`` in place.

    Raises:
        PortfolioError: VALIDATION_ERROR for incomplete or invalid actions,
            NOT_FOUND when the target position no longer exists.
    """
    if action.missing_fields:
        raise validation_error(
            f"Action is missing required fields: {', '.join(action.missing_fields)}",
            missing_fields=action.missing_fields,
        )
    result = _EXECUTORS[action.action](data, action)
    logger.debug(
        "Applied %s: %s", action.action.value, result.summary,
        extra={"event": "action_applied"},
    )
    return result
