"""Transaction log: list with filters, append."""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from folio.api.deps import get_portfolio_store
from folio.core.error_codes import validation_error
from folio.core.time import today_iso
from folio.db.models import PortfolioData, Transaction
from folio.db.store import PortfolioStore

router = APIRouter()

TRANSACTION_TYPES = ("buy", "sell", "transfer")
REQUIRED_FIELDS = ("type", "symbol", "name", "asset_type", "amount", "price_per_unit", "total_value")


class TransactionRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    type: Optional[str] = None
    symbol: Optional[str] = None
    name: Optional[str] = None
    asset_type: Optional[str] = None
    amount: Optional[float] = None
    price_per_unit: Optional[float] = None
    total_value: Optional[float] = None
    position_id: Optional[str] = None
    date: Optional[str] = None
    notes: Optional[str] = None


@router.get("")
async def list_transactions(
    symbol: Optional[str] = None,
    position_id: Optional[str] = Query(None, alias="positionId"),
    date_from: Optional[str] = Query(None, alias="from"),
    date_to: Optional[str] = Query(None, alias="to"),
    store: PortfolioStore = Depends(get_portfolio_store),
):
    data = await store.read()
    transactions = data.transactions
    if symbol:
        transactions = [t for t in transactions if t.symbol.upper() == symbol.upper()]
    if position_id:
        transactions = [t for t in transactions if t.position_id == position_id]
    # ISO dates compare correctly as strings
    if date_from:
        transactions = [t for t in transactions if t.date >= date_from]
    if date_to:
        transactions = [t for t in transactions if t.date <= date_to]
    return {"data": [t.to_doc() for t in transactions]}


@router.post("", status_code=201)
async def create_transaction(
    request_body: TransactionRequest,
    store: PortfolioStore = Depends(get_portfolio_store),
):
    if any(getattr(request_body, name) in (None, "") for name in REQUIRED_FIELDS):
        raise validation_error(
            "Missing required fields: type, symbol, name, assetType, amount, pricePerUnit, totalValue"
        )
    if request_body.type not in TRANSACTION_TYPES:
        raise validation_error("type must be buy, sell, or transfer")

    transaction = Transaction(
        type=request_body.type,
        symbol=request_body.symbol,
        name=request_body.name,
        asset_type=request_body.asset_type,
        amount=request_body.amount,
        price_per_unit=request_body.price_per_unit,
        total_value=request_body.total_value,
        position_id=request_body.position_id,
        date=request_body.date or today_iso(),
        notes=request_body.notes,
    )

    def _append(current: PortfolioData):
        updated = current.model_copy(deep=True)
        updated.transactions.append(transaction)
        return updated, transaction

    created = await store.transact(_append)
    return {"data": created.to_doc()}
