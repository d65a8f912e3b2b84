"""
Position arithmetic for buys and sells.

Pure functions: each takes the current position (or None for a new buy) and
returns a PositionOperation describing the transaction to log and the change
to apply. Nothing here touches the store.

A partial sell reduces cost basis proportionally:
    new_cost_basis = cost_basis * (remaining / original)
and the realized P&L is measured against the sold slice of that basis.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from folio.core.error_codes import validation_error
from folio.core.time import now_iso
from folio.db.models import PortfolioData, Position, Transaction, asset_class_from_type

# Remainders below this are treated as a fully closed position
DUST_THRESHOLD = 1e-6


@dataclass
class PositionOperation:
    transaction: Transaction
    updates: Dict[str, Any] = field(default_factory=dict)
    removed_position_id: Optional[str] = None
    new_position: Optional[Position] = None


def execute_partial_sell(
    position: Position,
    sell_amount: float,
    sell_price: float,
    date: str,
    notes: Optional[str] = None,
) -> PositionOperation:
    """Sell part of a position, removing it when the remainder is dust."""
    original = position.amount
    if sell_amount <= 0:
        raise validation_error("Sell amount must be greater than 0")
    remaining = original - sell_amount
    if remaining < -DUST_THRESHOLD:
        raise validation_error(
            f"Cannot sell {sell_amount} - only {original} available",
            available=original,
            requested=sell_amount,
        )

    cost_at_execution = None
    new_cost_basis = None
    if position.cost_basis is not None and original > 0:
        cost_at_execution = position.cost_basis * (sell_amount / original)
        new_cost_basis = position.cost_basis * (max(remaining, 0.0) / original)

    total_value = sell_amount * sell_price
    tx = Transaction(
        type="sell",
        symbol=position.symbol,
        name=position.name,
        asset_type=position.type,
        amount=sell_amount,
        price_per_unit=sell_price,
        total_value=total_value,
        cost_basis_at_execution=cost_at_execution,
        realized_pnl=total_value - cost_at_execution if cost_at_execution is not None else None,
        position_id=position.id,
        date=date,
        notes=notes,
    )

    if remaining < DUST_THRESHOLD:
        return PositionOperation(transaction=tx, removed_position_id=position.id)

    updates: Dict[str, Any] = {"amount": remaining}
    if new_cost_basis is not None:
        updates["cost_basis"] = new_cost_basis
    return PositionOperation(transaction=tx, updates=updates)


def execute_full_sell(
    position: Position,
    sell_price: float,
    date: str,
    notes: Optional[str] = None,
) -> PositionOperation:
    """Sell the whole position."""
    total_value = position.amount * sell_price
    cost = position.cost_basis
    tx = Transaction(
        type="sell",
        symbol=position.symbol,
        name=position.name,
        asset_type=position.type,
        amount=position.amount,
        price_per_unit=sell_price,
        total_value=total_value,
        cost_basis_at_execution=cost,
        realized_pnl=total_value - cost if cost is not None else None,
        position_id=position.id,
        date=date,
        notes=notes,
    )
    return PositionOperation(transaction=tx, removed_position_id=position.id)


def execute_buy(
    existing: Optional[Position],
    symbol: str,
    amount: float,
    price_per_unit: Optional[float],
    total_cost: Optional[float],
    date: str,
    name: Optional[str] = None,
    asset_type: str = "crypto",
    notes: Optional[str] = None,
) -> PositionOperation:
    """Add to an existing position (cost bases sum) or open a new one."""
    if not amount or amount <= 0:
        raise validation_error("Buy amount must be greater than zero")
    price = price_per_unit or 0.0
    total_value = total_cost if total_cost is not None else amount * price

    if existing is not None:
        tx = Transaction(
            type="buy",
            symbol=existing.symbol,
            name=existing.name,
            asset_type=existing.type,
            amount=amount,
            price_per_unit=price,
            total_value=total_value,
            position_id=existing.id,
            date=date,
            notes=notes,
        )
        return PositionOperation(
            transaction=tx,
            updates={
                "amount": existing.amount + amount,
                "cost_basis": (existing.cost_basis or 0.0) + total_value,
                "purchase_date": existing.purchase_date or date,
            },
        )

    position = Position(
        symbol=symbol,
        name=name or symbol,
        type=asset_type,
        asset_class=asset_class_from_type(asset_type),
        amount=amount,
        cost_basis=total_value,
        purchase_date=date,
    )
    tx = Transaction(
        type="buy",
        symbol=symbol,
        name=position.name,
        asset_type=asset_type,
        amount=amount,
        price_per_unit=price,
        total_value=total_value,
        position_id=position.id,
        date=date,
        notes=notes,
    )
    return PositionOperation(transaction=tx, new_position=position)


def apply_operation(data: PortfolioData, position: Optional[Position], op: PositionOperation) -> None:
    """Commit ``op`` to ``data`` in place and log its transaction."""
    if op.removed_position_id:
        data.positions = [p for p in data.positions if p.id != op.removed_position_id]
    elif op.new_position is not None:
        data.positions.append(op.new_position)
    elif position is not None and op.updates:
        for key, value in op.updates.items():
            setattr(position, key, value)
        position.updated_at = now_iso()
    data.transactions.append(op.transaction)
