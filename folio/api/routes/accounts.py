"""Account CRUD. Deleting an account cascades to its positions."""
from typing import Dict, Optional, Set

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from folio.api.deps import get_portfolio_store
from folio.core.error_codes import not_found, validation_error
from folio.core.utils import account_slug
from folio.db.models import MANUAL_DATA_SOURCE, Account, AccountConnection, PortfolioData
from folio.db.store import PortfolioStore

router = APIRouter()

WALLET_SOURCES = {"debank", "helius"}
CEX_SOURCES = {"binance", "coinbase", "kraken", "okx"}
ACCOUNT_TYPE_FILTERS = ("wallet", "cex", "brokerage", "cash")


class AccountRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: Optional[str] = None
    connection: Optional[AccountConnection] = None
    slug: Optional[str] = None
    is_active: Optional[bool] = None


def _holdings(data: PortfolioData) -> Dict[str, Set[str]]:
    """account id -> {"cash", "other"} flags for what the account holds."""
    held: Dict[str, Set[str]] = {}
    for p in data.positions:
        if p.account_id:
            held.setdefault(p.account_id, set()).add("cash" if p.asset_class == "cash" else "other")
    return held


def _matches(account: Account, type_filter: str, held: Dict[str, Set[str]]) -> bool:
    source = account.connection.data_source
    if type_filter == "wallet":
        return source in WALLET_SOURCES
    if type_filter == "cex":
        return source in CEX_SOURCES
    if source != MANUAL_DATA_SOURCE:
        return False
    flags = held.get(account.id)
    # Empty manual accounts show up under both manual filters
    if not flags:
        return True
    return ("cash" if type_filter == "cash" else "other") in flags


def _require(data: PortfolioData, account_id: str) -> Account:
    account = data.find_account(account_id)
    if account is None:
        raise not_found("Account not found", account_id=account_id)
    return account


@router.get("")
async def list_accounts(
    type: Optional[str] = Query(None),
    store: PortfolioStore = Depends(get_portfolio_store),
):
    data = await store.read()
    accounts = data.accounts
    if type:
        if type not in ACCOUNT_TYPE_FILTERS:
            raise validation_error(
                f"Invalid type filter: {type}. Must be one of: {', '.join(ACCOUNT_TYPE_FILTERS)}"
            )
        held = _holdings(data)
        accounts = [a for a in accounts if _matches(a, type, held)]
    return {
        "data": [a.to_doc() for a in accounts],
        "meta": {"total": len(data.accounts), "filtered": len(accounts)},
    }


@router.post("")
async def create_account(
    request_body: AccountRequest,
    store: PortfolioStore = Depends(get_portfolio_store),
):
    """Create an account. A manual account whose name already exists is returned as-is (200)."""
    name = (request_body.name or "").strip()
    if not name:
        raise validation_error("name is required")
    connection = request_body.connection
    if connection is None or "data_source" not in connection.model_fields_set or not connection.data_source:
        raise validation_error("connection with dataSource is required")

    def _create(current: PortfolioData):
        if connection.data_source == MANUAL_DATA_SOURCE:
            wanted = name.lower()
            existing = next(
                (a for a in current.accounts if not a.is_synced and a.name.strip().lower() == wanted),
                None,
            )
            if existing is None and request_body.slug:
                existing = next(
                    (a for a in current.accounts if a.slug == account_slug(request_body.slug)),
                    None,
                )
            if existing is not None:
                return None, (existing, True)

        account = Account(
            name=name,
            is_active=request_body.is_active if request_body.is_active is not None else True,
            connection=connection,
            slug=account_slug(request_body.slug) if request_body.slug else None,
        )
        updated = current.model_copy(deep=True)
        updated.accounts.append(account)
        return updated, (account, False)

    account, duplicate = await store.transact(_create)
    return JSONResponse(status_code=200 if duplicate else 201, content={"data": account.to_doc()})


@router.get("/{account_id}")
async def get_account(account_id: str, store: PortfolioStore = Depends(get_portfolio_store)):
    data = await store.read()
    account = _require(data, account_id)
    positions = [p.to_doc() for p in data.positions if p.account_id == account_id]
    return {"data": {**account.to_doc(), "positions": positions}}


@router.put("/{account_id}")
async def update_account(
    account_id: str,
    request_body: AccountRequest,
    store: PortfolioStore = Depends(get_portfolio_store),
):
    def _update(current: PortfolioData):
        updated = current.model_copy(deep=True)
        account = _require(updated, account_id)
        if request_body.name is not None:
            account.name = request_body.name.strip()
        if request_body.is_active is not None:
            account.is_active = request_body.is_active
        if request_body.connection is not None:
            account.connection = request_body.connection
        return updated, account

    account = await store.transact(_update)
    return {"data": account.to_doc()}


@router.delete("/{account_id}")
async def delete_account(account_id: str, store: PortfolioStore = Depends(get_portfolio_store)):
    def _delete(current: PortfolioData):
        updated = current.model_copy(deep=True)
        account = _require(updated, account_id)
        updated.accounts = [a for a in updated.accounts if a.id != account_id]
        kept = [p for p in updated.positions if p.account_id != account_id]
        removed = len(updated.positions) - len(kept)
        updated.positions = kept
        return updated, (account, removed)

    account, removed = await store.transact(_delete)
    return {"data": {"deleted": account.to_doc(), "removedPositions": removed}}
