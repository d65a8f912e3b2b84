"""Action schema catalog.

Turns the live position list into a concrete menu of intents the command
parser may choose from ("sell_partial_goog", "add_cash_revolut_eur", ...),
builds the prompt and JSON schema that constrain the parser to that menu,
and maps the parser's pick back into a CandidateAction.

Menu ids are lowercase, unique and stable for the same position set.
"""
import re
from typing import Dict, List, Optional, Sequence

from folio.agents.schemas import (
    ActionField,
    ActionType,
    CandidateAction,
    MenuItem,
    MenuResponse,
    PositionContext,
)
from folio.agents.vocabulary import FIAT_CURRENCIES, fmt_amount, is_fiat, parse_abbreviated_number
from folio.core.ids import short_id
from folio.core.logging import get_logger
from folio.core.utils import account_slug

logger = get_logger(__name__)

MIN_FILTERED_ITEMS = 3
MAX_FILTERED_ITEMS = 20
GENERIC_MENU_IDS = ("buy_new", "add_cash_generic")

_CASH_SYMBOL = re.compile(r"CASH_([A-Z]{3})")
_ACCOUNT_FROM_NAME = re.compile(r"^(.+?)\s*\(")
ADD_CASH_PATTERN = re.compile(
    r"^(?:add\s+)?(\d+(?:[.,]\d+)?[kmb]?)\s+([a-z]{3})\s+(?:to|in|into|at)\s+(.+)$",
    re.IGNORECASE,
)


def _num(name: str, required: bool = False) -> ActionField:
    return ActionField(name=name, required=required, type="number")


def _str(name: str, required: bool = False) -> ActionField:
    return ActionField(name=name, required=required, type="string")


def _value(values: Dict[str, str], key: str) -> Optional[float]:
    raw = values.get(key)
    return parse_abbreviated_number(raw) if raw else None


def _cash_currency(p: PositionContext) -> str:
    match = _CASH_SYMBOL.search(p.symbol.upper())
    return match.group(1) if match else "USD"


def _cash_account(p: PositionContext) -> str:
    if p.account_name:
        return p.account_name
    match = _ACCOUNT_FROM_NAME.match(p.name)
    return match.group(1) if match else p.name


def _non_cash(positions: Sequence[PositionContext]) -> List[PositionContext]:
    return [p for p in positions if p.type != "cash"]


class ActionHandler:
    """Generates menu items for one intent and resolves picks of them."""

    id: str = ""
    action_type: ActionType

    def generate_menu_items(self, positions: Sequence[PositionContext]) -> List[MenuItem]:
        raise NotImplementedError

    def resolve(
        self,
        item: MenuItem,
        values: Dict[str, str],
        positions: Sequence[PositionContext],
    ) -> CandidateAction:
        raise NotImplementedError


class UpdateCashHandler(ActionHandler):
    id = "update-cash"
    action_type = ActionType.UPDATE_CASH

    def generate_menu_items(self, positions):
        items = []
        for p in positions:
            if p.type != "cash":
                continue
            currency = _cash_currency(p)
            account = _cash_account(p)
            items.append(MenuItem(
                id=f"update_cash_{account_slug(account)}_{currency.lower()}",
                label=f"Update {account} {currency} balance",
                description=f"Set balance (currently {fmt_amount(p.amount)} {currency})",
                fields=[_num("amount", required=True)],
                handler=self.id,
                context={"position_id": p.id, "currency": currency, "account_name": account, "symbol": p.symbol},
            ))
        return items

    def resolve(self, item, values, positions):
        ctx = item.context
        return CandidateAction(
            action=self.action_type.value,
            symbol=ctx["symbol"],
            asset_type="cash",
            amount=_value(values, "amount"),
            currency=ctx["currency"],
            account_name=ctx["account_name"],
            matched_position_id=ctx["position_id"],
            confidence=0.95,
        )


class AddCashHandler(ActionHandler):
    id = "add-cash"
    action_type = ActionType.ADD_CASH

    def generate_menu_items(self, positions):
        items = []
        for p in positions:
            if p.type != "cash":
                continue
            currency = _cash_currency(p)
            account = _cash_account(p)
            items.append(MenuItem(
                id=f"add_cash_{account_slug(account)}_{currency.lower()}",
                label=f"Add cash to {account} ({currency})",
                description=f"Add to balance (currently {fmt_amount(p.amount)} {currency})",
                fields=[_num("amount", required=True)],
                handler=self.id,
                context={"position_id": p.id, "currency": currency, "account_name": account, "symbol": p.symbol},
            ))

        items.append(MenuItem(
            id="add_cash_generic",
            label="Add cash to an account",
            description="New cash position",
            fields=[_num("amount", required=True), _str("currency", required=True), _str("account", required=True)],
            handler=self.id,
        ))
        return items

    def resolve(self, item, values, positions):
        ctx = item.context
        amount = _value(values, "amount")
        if ctx.get("position_id"):
            return CandidateAction(
                action=self.action_type.value,
                symbol=ctx["symbol"],
                asset_type="cash",
                amount=amount,
                currency=ctx["currency"],
                account_name=ctx["account_name"],
                matched_position_id=ctx["position_id"],
                confidence=0.95,
            )

        currency = (values.get("currency") or "USD").upper()
        return CandidateAction(
            action=self.action_type.value,
            symbol=f"CASH_{currency}",
            asset_type="cash",
            amount=amount,
            currency=currency,
            account_name=values.get("account") or None,
            confidence=0.9,
        )


class BuyHandler(ActionHandler):
    id = "buy"
    action_type = ActionType.BUY

    def generate_menu_items(self, positions):
        items = [
            MenuItem(
                id=f"buy_{p.symbol.lower()}",
                label=f"Buy more {p.symbol}",
                description=f"Have: {fmt_amount(p.amount)}",
                fields=[_num("amount", required=True), _num("price"), _num("totalCost")],
                handler=self.id,
                context={"position_id": p.id, "symbol": p.symbol, "name": p.name, "asset_type": p.type},
            )
            for p in _non_cash(positions)
        ]
        items.append(MenuItem(
            id="buy_new",
            label="Buy a new asset",
            description="Asset not in portfolio",
            fields=[
                _str("symbol", required=True),
                _num("amount", required=True),
                _num("price"),
                _num("totalCost"),
                _str("assetType"),
            ],
            handler=self.id,
        ))
        return items

    def resolve(self, item, values, positions):
        ctx = item.context
        symbol = (ctx.get("symbol") or values.get("symbol") or "UNKNOWN").upper()
        asset_type = ctx.get("asset_type") or values.get("assetType") or "crypto"
        position_id = ctx.get("position_id")
        if not position_id:
            match = next((p for p in positions if p.symbol.upper() == symbol and not p.read_only), None)
            if match:
                position_id = match.id
                asset_type = match.type
        return CandidateAction(
            action=self.action_type.value,
            symbol=symbol,
            name=ctx.get("name"),
            asset_type=asset_type,
            amount=_value(values, "amount"),
            price_per_unit=_value(values, "price"),
            total_cost=_value(values, "totalCost"),
            matched_position_id=position_id,
            confidence=0.9,
        )


class SellPartialHandler(ActionHandler):
    id = "sell-partial"
    action_type = ActionType.SELL_PARTIAL

    def generate_menu_items(self, positions):
        return [
            MenuItem(
                id=f"sell_partial_{p.symbol.lower()}",
                label=f"Sell some {p.symbol}",
                description=f"Have: {fmt_amount(p.amount)}",
                fields=[_num("percent"), _num("sellAmount"), _num("price")],
                handler=self.id,
                context={"position_id": p.id, "symbol": p.symbol, "name": p.name, "asset_type": p.type},
            )
            for p in _non_cash(positions)
        ]

    def resolve(self, item, values, positions):
        ctx = item.context
        return CandidateAction(
            action=self.action_type.value,
            symbol=ctx["symbol"],
            name=ctx.get("name"),
            asset_type=ctx.get("asset_type"),
            sell_percent=_value(values, "percent"),
            sell_amount=_value(values, "sellAmount"),
            sell_price=_value(values, "price"),
            matched_position_id=ctx["position_id"],
            confidence=0.9,
        )


class SellAllHandler(ActionHandler):
    id = "sell-all"
    action_type = ActionType.SELL_ALL

    def generate_menu_items(self, positions):
        return [
            MenuItem(
                id=f"sell_all_{p.symbol.lower()}",
                label=f"Sell all {p.symbol}",
                description=f"Have: {fmt_amount(p.amount)}",
                fields=[_num("price")],
                handler=self.id,
                context={"position_id": p.id, "symbol": p.symbol, "name": p.name, "asset_type": p.type},
            )
            for p in _non_cash(positions)
        ]

    def resolve(self, item, values, positions):
        ctx = item.context
        return CandidateAction(
            action=self.action_type.value,
            symbol=ctx["symbol"],
            name=ctx.get("name"),
            asset_type=ctx.get("asset_type"),
            sell_price=_value(values, "price"),
            matched_position_id=ctx["position_id"],
            confidence=0.95,
        )


class RemoveHandler(ActionHandler):
    id = "remove"
    action_type = ActionType.REMOVE

    def generate_menu_items(self, positions):
        return [
            MenuItem(
                id=f"remove_{p.symbol.lower()}",
                label=f"Remove {p.symbol}",
                description=f"{p.name} ({fmt_amount(p.amount)})",
                handler=self.id,
                context={"position_id": p.id, "symbol": p.symbol, "name": p.name, "asset_type": p.type},
            )
            for p in positions
        ]

    def resolve(self, item, values, positions):
        ctx = item.context
        return CandidateAction(
            action=self.action_type.value,
            symbol=ctx["symbol"],
            name=ctx.get("name"),
            asset_type=ctx.get("asset_type"),
            matched_position_id=ctx["position_id"],
            confidence=0.95,
        )


class SetPriceHandler(ActionHandler):
    id = "set-price"
    action_type = ActionType.SET_PRICE

    def generate_menu_items(self, positions):
        items = []
        seen = set()
        for p in _non_cash(positions):
            symbol = p.symbol.upper()
            if symbol in seen:
                continue
            seen.add(symbol)
            items.append(MenuItem(
                id=f"set_price_{symbol.lower()}",
                label=f"Set {symbol} price",
                description=p.name,
                fields=[_num("price", required=True)],
                handler=self.id,
                context={"position_id": p.id, "symbol": symbol, "name": p.name, "asset_type": p.type},
            ))
        return items

    def resolve(self, item, values, positions):
        ctx = item.context
        return CandidateAction(
            action=self.action_type.value,
            symbol=ctx["symbol"],
            asset_type=ctx.get("asset_type"),
            new_price=_value(values, "price"),
            matched_position_id=ctx["position_id"],
            confidence=0.95,
        )


class UpdatePositionHandler(ActionHandler):
    id = "update-position"
    action_type = ActionType.UPDATE_POSITION

    def generate_menu_items(self, positions):
        items = []
        for p in _non_cash(positions):
            if p.wallet_address:
                continue
            cost = f" (cost: ${fmt_amount(p.cost_basis)})" if p.cost_basis is not None else ""
            items.append(MenuItem(
                id=f"update_position_{p.symbol.lower()}_{short_id(p.id)}",
                label=f"Update {p.symbol} position",
                description=f"Current: {fmt_amount(p.amount)}{cost}",
                fields=[_num("amount"), _num("costBasis"), _str("date")],
                handler=self.id,
                context={"position_id": p.id, "symbol": p.symbol, "name": p.name, "asset_type": p.type},
            ))
        return items

    def resolve(self, item, values, positions):
        ctx = item.context
        return CandidateAction(
            action=self.action_type.value,
            symbol=ctx["symbol"],
            name=ctx.get("name"),
            asset_type=ctx.get("asset_type"),
            amount=_value(values, "amount"),
            cost_basis=_value(values, "costBasis"),
            date=values.get("date") or None,
            matched_position_id=ctx["position_id"],
            confidence=0.95,
        )


ALL_HANDLERS: List[ActionHandler] = [
    UpdateCashHandler(),
    AddCashHandler(),
    BuyHandler(),
    SellPartialHandler(),
    SellAllHandler(),
    RemoveHandler(),
    SetPriceHandler(),
    UpdatePositionHandler(),
]
_HANDLERS_BY_ID = {h.id: h for h in ALL_HANDLERS}


def generate_menu(positions: Sequence[PositionContext]) -> List[MenuItem]:
    """Full menu from every handler, in handler order.

    Read-only (externally synced) positions get no items. On id collision
    the first item wins.
    """
    mutable = [p for p in positions if not p.read_only]
    items: List[MenuItem] = []
    seen = set()
    for handler in ALL_HANDLERS:
        for item in handler.generate_menu_items(mutable):
            if item.id in seen:
                continue
            seen.add(item.id)
            items.append(item)
    return items


def generate_filtered_menu(positions: Sequence[PositionContext], text: str) -> List[MenuItem]:
    """Menu narrowed to items relevant to ``text``.

    Items are scored by how many command tokens appear in their id, label
    or description. The top MAX_FILTERED_ITEMS survive, plus the generic
    fallbacks. If fewer than MIN_FILTERED_ITEMS matched, the full menu is
    returned instead.
    """
    all_items = generate_menu(positions)
    tokens = [t for t in text.lower().split() if t]

    scored = []
    for index, item in enumerate(all_items):
        haystack = f"{item.id} {item.label} {item.description}".lower()
        score = sum(1 for t in tokens if t in haystack)
        if score > 0:
            scored.append((score, index, item))
    scored.sort(key=lambda s: (-s[0], s[1]))
    matched = [item for _, _, item in scored[:MAX_FILTERED_ITEMS]]

    # "{NUM} {FIAT} to {account}": drop per-account add_cash items for other accounts
    cash_match = ADD_CASH_PATTERN.match(text.strip())
    if cash_match and is_fiat(cash_match.group(2)):
        target = cash_match.group(3).strip().lower()
        matched = [
            item for item in matched
            if not (
                item.handler == AddCashHandler.id
                and item.id != "add_cash_generic"
                and str(item.context.get("account_name", "")).lower() != target
            )
        ]

    if len(matched) < MIN_FILTERED_ITEMS:
        return all_items

    result: List[MenuItem] = []
    seen = set()
    generics = [i for i in all_items if i.id in GENERIC_MENU_IDS]
    for item in matched + generics:
        if item.id not in seen:
            seen.add(item.id)
            result.append(item)
    return result


def build_menu_prompt(menu: Sequence[MenuItem]) -> str:
    """System prompt describing the menu and the command micro-grammar."""
    lines = []
    for item in menu:
        needs = ", ".join(f"{f.name}{'' if f.required else '?'}" for f in item.fields) or "nothing"
        lines.append(f"{item.id:<35} | {item.label:<35} | {item.description:<25} | needs: {needs}")
    menu_lines = "\n".join(lines)
    fiat_list = ", ".join(sorted(c.upper() for c in FIAT_CURRENCIES))

    return f"""Pick the best option and extract the needed values from the user's message.

ABBREVIATED NUMBERS:
- "50k" = "50000", "1.5m" = "1500000", "1b" = "1000000000"
- Always return abbreviations expanded as plain number strings

FIAT CURRENCIES: {fiat_list}

UPDATE POSITION RULES:
- "update/edit {{SYMBOL}} amount/cost basis/date to {{VALUE}}" -> always update_position
- This applies to non-cash asset edits (crypto, stocks, equities)

CASH PATTERN RULES (apply BEFORE looking at the menu):
- "{{NUM}} {{FIAT_CURRENCY}} to/in/into {{account}}" -> ALWAYS add_cash (adding to balance), NEVER update_cash or buy
  Examples: "5000 EUR to Revolut", "50k USD to IBKR", "3000 GBP in Wise"
- "{{account}} {{FIAT_CURRENCY}} to/is/=/balance {{NUM}}" -> ALWAYS update_cash (setting balance)
  Examples: "N26 EUR to 4810", "Revolut EUR balance 5000", "Wise USD = 30000"
- ACCOUNT MATCHING: the account name in the user's input must appear in the menu item label. If no add_cash item mentions that account, use add_cash_generic; do NOT pick a different account's add_cash item
- When a fiat currency appears with "to {{account}}", it is NEVER a buy, even if the account name looks like a stock ticker

MENU:
{menu_lines}

RULES:
- Pick the single best menuId from the MENU above
- Extract ONLY the values listed in "needs" for that item
- ALL values must be strings (numbers as digit strings like "4811", "95000")
- If a value is marked with "?" it is optional; only include it if mentioned
- "at $X" or "at Xk" means per-unit price
- "for $X" means total cost/proceeds
- "half" = percent "50", "third" = percent "33.33", "quarter" = percent "25"
- Do NOT invent values not mentioned in the user's message

Respond with JSON matching the provided schema."""


def build_menu_json_schema(menu: Sequence[MenuItem]) -> dict:
    """JSON schema restricting the parser to one menu id plus string values."""
    return {
        "type": "object",
        "properties": {
            "menuId": {"type": "string", "enum": [item.id for item in menu]},
            "values": {"type": "object", "additionalProperties": {"type": "string"}},
            "confidence": {"type": "number"},
        },
        "required": ["menuId", "values", "confidence"],
    }


def _unresolvable(reason: str) -> CandidateAction:
    return CandidateAction(
        action=ActionType.BUY.value,
        symbol="UNKNOWN",
        asset_type="crypto",
        confidence=0.0,
        summary=reason,
        missing_fields=["symbol", "amount"],
    )


def resolve_menu_response(response: MenuResponse, positions: Sequence[PositionContext]) -> CandidateAction:
    """Map the parser's menu pick to a candidate action.

    An unknown id falls back to a prefix match in either direction. If that
    fails too the candidate carries confidence 0. A positive parser
    confidence overrides the handler default.
    """
    all_items = generate_menu(positions)
    item = next((i for i in all_items if i.id == response.menu_id), None)
    if item is None:
        item = next(
            (i for i in all_items if response.menu_id.startswith(i.id) or i.id.startswith(response.menu_id)),
            None,
        )
        if item is None or not response.menu_id:
            logger.warning("Parser picked unknown menu item %r", response.menu_id)
            return _unresolvable(f"Unknown menu item: {response.menu_id}")

    handler = _HANDLERS_BY_ID.get(item.handler)
    if handler is None:
        return _unresolvable(f"No handler for: {item.handler}")

    candidate = handler.resolve(item, response.values, positions)
    if response.confidence > 0:
        candidate.confidence = response.confidence
    return candidate
