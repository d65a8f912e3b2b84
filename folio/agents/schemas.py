"""Pydantic schemas for command parsing: menu items, candidates, resolved actions."""
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from folio.agents.vocabulary import parse_abbreviated_number
from folio.core.utils import to_float
from folio.db.models import PortfolioData


class ActionType(str, Enum):
    BUY = "buy"
    SELL_PARTIAL = "sell_partial"
    SELL_ALL = "sell_all"
    UPDATE_POSITION = "update_position"
    REMOVE = "remove"
    ADD_CASH = "add_cash"
    UPDATE_CASH = "update_cash"
    SET_PRICE = "set_price"


SELL_ACTIONS = (ActionType.SELL_PARTIAL, ActionType.SELL_ALL)
CASH_ACTIONS = (ActionType.ADD_CASH, ActionType.UPDATE_CASH)

_NUMERIC_FIELDS = (
    "amount", "price_per_unit", "total_cost", "sell_amount", "sell_percent",
    "sell_price", "total_proceeds", "new_price", "cost_basis",
)

_camel = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PositionContext(BaseModel):
    """Read-only view of a position handed to the catalog and resolver."""
    model_config = _camel

    id: str
    symbol: str
    name: str = ""
    type: str = "crypto"
    amount: float = 0.0
    cost_basis: Optional[float] = None
    purchase_date: Optional[str] = None
    account_name: Optional[str] = None
    wallet_address: Optional[str] = None
    is_debt: bool = False
    read_only: bool = False


def position_contexts(data: PortfolioData) -> List[PositionContext]:
    """Project the stored positions into resolver contexts.

    Positions held in externally-synced accounts are flagged read-only.
    """
    accounts = {a.id: a for a in data.accounts}
    contexts = []
    for p in data.positions:
        account = accounts.get(p.account_id) if p.account_id else None
        contexts.append(PositionContext(
            id=p.id,
            symbol=p.symbol,
            name=p.name,
            type=p.type,
            amount=p.amount,
            cost_basis=p.cost_basis,
            purchase_date=p.purchase_date,
            account_name=account.name if account else None,
            wallet_address=p.wallet_address,
            is_debt=p.is_debt,
            read_only=bool(account and account.is_synced),
        ))
    return contexts


class ActionField(BaseModel):
    name: str
    required: bool
    type: Literal["number", "string"]


class MenuItem(BaseModel):
    """One option offered to the parser. ``handler`` and ``context`` stay server-side."""
    id: str
    label: str
    description: str
    fields: List[ActionField] = Field(default_factory=list)
    handler: str
    context: Dict[str, Any] = Field(default_factory=dict)


class MenuResponse(BaseModel):
    """What the parser returns after picking from the menu."""
    menu_id: str = Field(alias="menuId")
    values: Dict[str, str] = Field(default_factory=dict)
    confidence: float = 0.0

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("values", mode="before")
    @classmethod
    def _stringify_values(cls, v: Any) -> Dict[str, str]:
        if not isinstance(v, dict):
            return {}
        return {str(k): str(val) for k, val in v.items() if val is not None and str(val).strip() != ""}

    @field_validator("confidence", mode="before")
    @classmethod
    def _coerce_confidence(cls, v: Any) -> float:
        return to_float(v) or 0.0


class CandidateAction(BaseModel):
    """Untrusted, possibly incomplete action produced by a parser.

    Every field is optional; numeric fields accept numbers or abbreviated
    strings ("50k") and silently become None when unparsable.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    action: Optional[str] = None
    symbol: Optional[str] = None
    name: Optional[str] = None
    asset_type: Optional[str] = None
    amount: Optional[float] = None
    price_per_unit: Optional[float] = None
    total_cost: Optional[float] = None
    sell_amount: Optional[float] = None
    sell_percent: Optional[float] = None
    sell_price: Optional[float] = None
    total_proceeds: Optional[float] = None
    new_price: Optional[float] = None
    cost_basis: Optional[float] = None
    date: Optional[str] = None
    matched_position_id: Optional[str] = None
    missing_fields: List[str] = Field(default_factory=list)
    confidence: Optional[float] = None
    summary: Optional[str] = None
    currency: Optional[str] = None
    account_name: Optional[str] = None

    @field_validator(*_NUMERIC_FIELDS, mode="before")
    @classmethod
    def _coerce_number(cls, v: Any) -> Optional[float]:
        if v is None or isinstance(v, bool):
            return None
        if isinstance(v, (int, float)):
            return to_float(v)
        return parse_abbreviated_number(v)

    @field_validator("confidence", mode="before")
    @classmethod
    def _coerce_confidence(cls, v: Any) -> Optional[float]:
        return to_float(v)

    @field_validator("action", "symbol", "name", "asset_type", "date", "matched_position_id",
                     "summary", "currency", "account_name", mode="before")
    @classmethod
    def _coerce_text(cls, v: Any) -> Optional[str]:
        if v is None:
            return None
        text = str(v).strip()
        return text or None

    @field_validator("missing_fields", mode="before")
    @classmethod
    def _coerce_list(cls, v: Any) -> List[str]:
        return [str(x) for x in v] if isinstance(v, list) else []


class ResolvedAction(BaseModel):
    """Fully derived action ready for preview and confirmation."""
    model_config = _camel

    action: ActionType
    symbol: str
    name: Optional[str] = None
    asset_type: str = "crypto"
    amount: Optional[float] = None
    price_per_unit: Optional[float] = None
    total_cost: Optional[float] = None
    sell_amount: Optional[float] = None
    sell_percent: Optional[float] = None
    sell_price: Optional[float] = None
    total_proceeds: Optional[float] = None
    new_price: Optional[float] = None
    cost_basis: Optional[float] = None
    date: Optional[str] = None
    matched_position_id: Optional[str] = None
    missing_fields: List[str] = Field(default_factory=list)
    confidence: float = 0.5
    summary: str = ""
    currency: Optional[str] = None
    account_name: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return not self.missing_fields

    def to_candidate(self) -> CandidateAction:
        """Feed a resolved action back through the resolver."""
        return CandidateAction.model_validate(self.model_dump(mode="json"))

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
