"""Position CRUD and direct sells."""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from folio.api.deps import get_portfolio_store
from folio.core.error_codes import not_found, validation_error
from folio.core.time import now_iso, to_date_only, today_iso
from folio.db.models import PortfolioData, Position, asset_class_from_type
from folio.db.store import PortfolioStore
from folio.services.position_operations import apply_operation, execute_full_sell, execute_partial_sell

router = APIRouter()

_camel = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PositionInput(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    symbol: Optional[str] = None
    amount: Optional[float] = None
    asset_class: Optional[str] = None
    type: Optional[str] = None
    name: Optional[str] = None
    price: Optional[float] = None
    cost_basis: Optional[float] = None
    account_id: Optional[str] = None
    is_debt: bool = False
    chain: Optional[str] = None
    protocol: Optional[str] = None

    def to_position(self) -> Position:
        symbol = self.symbol.upper()
        asset_class = self.asset_class or (asset_class_from_type(self.type) if self.type else "crypto")
        cost_basis = self.cost_basis
        if not cost_basis and self.price:
            cost_basis = self.price * (self.amount or 0.0)
        return Position(
            symbol=symbol,
            name=self.name or symbol,
            amount=self.amount or 0.0,
            asset_class=asset_class,
            type=self.type,
            cost_basis=cost_basis or None,
            account_id=self.account_id,
            is_debt=self.is_debt,
            chain=self.chain,
            protocol=self.protocol,
        )


class BulkCreateRequest(BaseModel):
    positions: List[PositionInput] = Field(default_factory=list)


class BulkDeleteRequest(BaseModel):
    ids: List[str]


class PositionUpdate(BaseModel):
    model_config = _camel

    amount: Optional[float] = None
    cost_basis: Optional[float] = None
    purchase_date: Optional[str] = None
    date: Optional[str] = None
    account_id: Optional[str] = None


class SellRequest(BaseModel):
    amount: Optional[float] = None
    percent: Optional[float] = None
    price: Optional[float] = None
    date: Optional[str] = None


def _require(data: PortfolioData, position_id: str) -> Position:
    position = data.find_position(position_id)
    if position is None:
        raise not_found("Position not found", position_id=position_id)
    return position


def stored_price(data: PortfolioData, symbol: str) -> Optional[float]:
    """Custom price first, then market price; lower-case keys before upper-case."""
    lower, upper = symbol.lower(), symbol.upper()
    for table, key in (
        (data.custom_prices, lower),
        (data.prices, lower),
        (data.custom_prices, upper),
        (data.prices, upper),
    ):
        entry = table.get(key)
        price = entry.get("price") if isinstance(entry, dict) else None
        if price is not None:
            return price if isinstance(price, (int, float)) and price > 0 else None
    return None


@router.get("")
async def list_positions(
    account_id: Optional[str] = Query(None, alias="accountId"),
    asset_class: Optional[str] = Query(None, alias="assetClass"),
    type: Optional[str] = None,
    search: Optional[str] = None,
    top: Optional[int] = Query(None, ge=0),
    store: PortfolioStore = Depends(get_portfolio_store),
):
    data = await store.read()
    positions = data.positions
    total = len(positions)

    if account_id:
        positions = [p for p in positions if p.account_id == account_id]
    if asset_class:
        positions = [p for p in positions if p.asset_class == asset_class]
    if type:
        positions = [p for p in positions if p.type == type]
    if search:
        s = search.lower()
        positions = [p for p in positions if s in p.symbol.lower() or s in p.name.lower()]
    if top is not None:
        positions = positions[:top]

    return {
        "data": [p.to_doc() for p in positions],
        "meta": {"total": total, "filtered": len(positions)},
    }


@router.post("", status_code=201)
async def create_position(
    request_body: PositionInput,
    store: PortfolioStore = Depends(get_portfolio_store),
):
    if not request_body.symbol:
        raise validation_error("symbol is required")
    if request_body.amount is None:
        raise validation_error("amount is required")
    position = request_body.to_position()

    def _create(current: PortfolioData):
        updated = current.model_copy(deep=True)
        updated.positions.append(position)
        return updated, position

    created = await store.transact(_create)
    return {"data": created.to_doc()}


@router.post("/bulk", status_code=201)
async def bulk_create_positions(
    request_body: BulkCreateRequest,
    store: PortfolioStore = Depends(get_portfolio_store),
):
    if not request_body.positions:
        raise validation_error("positions array is required")
    new_positions = []
    for item in request_body.positions:
        if not item.symbol:
            raise validation_error("symbol is required", index=len(new_positions))
        new_positions.append(item.to_position())

    def _create(current: PortfolioData):
        updated = current.model_copy(deep=True)
        updated.positions.extend(new_positions)
        return updated, new_positions

    created = await store.transact(_create)
    return {"data": [p.to_doc() for p in created]}


@router.delete("")
async def bulk_delete_positions(
    request_body: BulkDeleteRequest,
    store: PortfolioStore = Depends(get_portfolio_store),
):
    ids = set(request_body.ids)

    def _delete(current: PortfolioData):
        updated = current.model_copy(deep=True)
        updated.positions = [p for p in updated.positions if p.id not in ids]
        return updated, len(current.positions) - len(updated.positions)

    deleted = await store.transact(_delete)
    return {"data": {"deleted": deleted}}


@router.get("/{position_id}")
async def get_position(position_id: str, store: PortfolioStore = Depends(get_portfolio_store)):
    data = await store.read()
    return {"data": _require(data, position_id).to_doc()}


@router.put("/{position_id}")
async def update_position(
    position_id: str,
    request_body: PositionUpdate,
    store: PortfolioStore = Depends(get_portfolio_store),
):
    provided = request_body.model_fields_set

    def _update(current: PortfolioData):
        updated = current.model_copy(deep=True)
        position = _require(updated, position_id)
        changes: Dict[str, Any] = {}

        if "amount" in provided and request_body.amount is not None:
            if request_body.amount <= 0:
                raise validation_error("Amount must be greater than 0")
            changes["amount"] = request_body.amount
            if position.is_cash and "cost_basis" not in provided:
                changes["cost_basis"] = request_body.amount

        if "cost_basis" in provided and request_body.cost_basis is not None:
            if request_body.cost_basis < 0:
                raise validation_error("Cost basis must be >= 0")
            changes["cost_basis"] = request_body.cost_basis

        date_input = request_body.purchase_date if request_body.purchase_date is not None else request_body.date
        if date_input is not None and date_input.strip():
            changes["purchase_date"] = to_date_only(date_input)

        if "account_id" in provided:
            account_id = (request_body.account_id or "").strip()
            if account_id and updated.find_account(account_id) is None:
                raise validation_error(f"Unknown accountId: {account_id}")
            changes["account_id"] = account_id or None

        if not changes:
            raise validation_error("No supported update fields provided")

        for key, value in changes.items():
            setattr(position, key, value)
        position.updated_at = now_iso()
        return updated, position

    position = await store.transact(_update)
    return {"data": position.to_doc()}


@router.delete("/{position_id}")
async def delete_position(
    position_id: str,
    sell: bool = False,
    price: Optional[float] = Query(None, gt=0),
    store: PortfolioStore = Depends(get_portfolio_store),
):
    """Delete a position; with ``?sell=true&price=`` also log a full sell."""
    def _delete(current: PortfolioData):
        updated = current.model_copy(deep=True)
        position = _require(updated, position_id)
        if sell and price:
            apply_operation(updated, position, execute_full_sell(position, price, today_iso()))
        else:
            updated.positions = [p for p in updated.positions if p.id != position_id]
        return updated, {"deleted": True}

    result = await store.transact(_delete)
    return {"data": result}


@router.post("/{position_id}/sell")
async def sell_position(
    position_id: str,
    request_body: SellRequest,
    store: PortfolioStore = Depends(get_portfolio_store),
):
    """Partial sell by amount or percent; price falls back to the stored price."""
    def _sell(current: PortfolioData):
        updated = current.model_copy(deep=True)
        position = _require(updated, position_id)

        amount = request_body.amount or 0.0
        if not amount and request_body.percent:
            amount = position.amount * (request_body.percent / 100)
        if not amount or amount <= 0:
            raise validation_error("No sell amount or percent provided")
        if amount > position.amount:
            raise validation_error("Insufficient amount", available=position.amount, requested=amount)

        sell_price = request_body.price if request_body.price and request_body.price > 0 else None
        sell_price = sell_price or stored_price(updated, position.symbol)
        if not sell_price:
            raise validation_error("No sell price provided and no stored price available")

        op = execute_partial_sell(position, amount, sell_price, to_date_only(request_body.date))
        apply_operation(updated, position, op)
        remaining = 0.0 if op.removed_position_id else position.amount
        return updated, {
            "sold": amount,
            "remaining": remaining,
            "transaction": op.transaction.to_doc(),
            "position": None if op.removed_position_id else position.to_doc(),
        }

    result = await store.transact(_sell)
    return {"data": result}
