"""Persisted portfolio models.

The on-disk document uses camelCase keys; models expose snake_case
attributes through an alias generator and accept either spelling.
Unknown keys are kept so data written by other clients (price keys,
wallet metadata) survives a round-trip.
"""
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from folio.core.ids import new_id
from folio.core.time import now_iso

_CLASS_FROM_TYPE = {
    "crypto": "crypto",
    "stock": "equity",
    "etf": "equity",
    "cash": "cash",
    "manual": "other",
}
_TYPE_FROM_CLASS = {
    "crypto": "crypto",
    "equity": "stock",
    "cash": "cash",
    "other": "manual",
}

MANUAL_DATA_SOURCE = "manual"


def asset_class_from_type(asset_type: Optional[str]) -> str:
    return _CLASS_FROM_TYPE.get((asset_type or "").lower(), "other")


def type_from_asset_class(asset_class: Optional[str]) -> str:
    return _TYPE_FROM_CLASS.get((asset_class or "").lower(), "manual")


class _Document(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def to_doc(self) -> Dict[str, Any]:
        """Serialize with camelCase keys, dropping unset optionals."""
        return self.model_dump(by_alias=True, exclude_none=True)


class Position(_Document):
    id: str = Field(default_factory=lambda: new_id("pos_"))
    symbol: str
    name: str = ""
    type: str = "crypto"
    asset_class: str = "crypto"
    amount: float = 0.0
    cost_basis: Optional[float] = None
    account_id: Optional[str] = None
    is_debt: bool = False
    chain: Optional[str] = None
    protocol: Optional[str] = None
    wallet_address: Optional[str] = None
    purchase_date: Optional[str] = None
    added_at: str = Field(default_factory=now_iso)
    updated_at: str = Field(default_factory=now_iso)

    @model_validator(mode="before")
    @classmethod
    def _derive_classification(cls, data: Any) -> Any:
        """Fill whichever of ``type``/``assetClass`` is missing from the other."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        asset_type = data.get("type")
        asset_class = data.get("assetClass") or data.get("asset_class")
        if not asset_class:
            asset_class = asset_class_from_type(asset_type) if asset_type else "crypto"
        if not asset_type:
            asset_type = type_from_asset_class(asset_class)
        data["type"] = asset_type
        data.pop("asset_class", None)
        data["assetClass"] = asset_class
        if not data.get("name"):
            data["name"] = str(data.get("symbol") or "")
        if data.get("isDebt") is None and data.get("is_debt") is None:
            data["isDebt"] = False
        return data

    @property
    def is_cash(self) -> bool:
        return self.type == "cash"


class AccountConnection(_Document):
    data_source: str = MANUAL_DATA_SOURCE


class Account(_Document):
    id: str = Field(default_factory=lambda: new_id("acc_"))
    name: str
    is_active: bool = True
    connection: AccountConnection = Field(default_factory=AccountConnection)
    slug: Optional[str] = None
    added_at: str = Field(default_factory=now_iso)

    @property
    def is_synced(self) -> bool:
        """True for wallet/exchange accounts whose positions come from an external feed."""
        return self.connection.data_source != MANUAL_DATA_SOURCE


class Transaction(_Document):
    id: str = Field(default_factory=lambda: new_id("tx_"))
    type: Literal["buy", "sell", "transfer"]
    symbol: str
    name: str
    asset_type: str
    amount: float
    price_per_unit: float
    total_value: float
    cost_basis_at_execution: Optional[float] = None
    realized_pnl: Optional[float] = Field(default=None, alias="realizedPnL")
    position_id: Optional[str] = None
    date: str
    notes: Optional[str] = None
    created_at: str = Field(default_factory=now_iso)


class PortfolioData(_Document):
    """The persisted aggregate. Reads and writes always cover all of it."""

    positions: List[Position] = Field(default_factory=list)
    accounts: List[Account] = Field(default_factory=list)
    prices: Dict[str, Any] = Field(default_factory=dict)
    custom_prices: Dict[str, Any] = Field(default_factory=dict)
    fx_rates: Dict[str, Any] = Field(default_factory=dict)
    transactions: List[Transaction] = Field(default_factory=list)
    snapshots: List[Any] = Field(default_factory=list)
    last_refresh: Optional[str] = None
    hide_balances: bool = False
    hide_dust: bool = False
    risk_free_rate: float = 0.05

    def to_doc(self) -> Dict[str, Any]:
        doc = self.model_dump(by_alias=True, exclude={"positions", "accounts", "transactions"})
        doc["positions"] = [p.to_doc() for p in self.positions]
        doc["accounts"] = [a.to_doc() for a in self.accounts]
        doc["transactions"] = [t.to_doc() for t in self.transactions]
        return doc

    def find_position(self, position_id: str) -> Optional[Position]:
        return next((p for p in self.positions if p.id == position_id), None)

    def find_account(self, account_id: str) -> Optional[Account]:
        return next((a for a in self.accounts if a.id == account_id), None)

    def debt_count(self) -> int:
        return sum(1 for p in self.positions if p.is_debt)


def empty_portfolio() -> PortfolioData:
    return PortfolioData()
