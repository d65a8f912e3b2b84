"""Command resolver tests: algebra, auto-match, completeness, idempotence."""
from datetime import date, timedelta

import pytest

from folio.agents.action_resolver import resolve_action
from folio.agents.command_parser import parse_command_rules
from folio.agents.schemas import ActionType, CandidateAction, PositionContext

GOOG = PositionContext(id="pos_goog000001", symbol="GOOG", name="Alphabet", type="stock", amount=100, cost_basis=1000)
REVOLUT_EUR = PositionContext(
    id="pos_cash000001", symbol="CASH_EUR_1", name="Revolut (EUR)", type="cash", amount=5000,
)


def _resolve(text, positions=(), **fields):
    return resolve_action(CandidateAction(**fields), text, list(positions))


class TestBuyAlgebra:
    def test_price_derived_from_total(self):
        resolved = _resolve("bought 10 AAPL for 1850", action="buy", symbol="aapl",
                            amount=10, total_cost=1850, confidence=0.9)
        assert resolved.action == ActionType.BUY
        assert resolved.symbol == "AAPL"
        assert resolved.price_per_unit == pytest.approx(185)
        assert resolved.total_cost == pytest.approx(1850)
        assert resolved.missing_fields == []
        assert resolved.confidence == 0.9

    def test_amount_derived_from_total_and_price(self):
        resolved = _resolve("bought ETH for 6000 at 3000", action="buy", symbol="ETH")
        assert resolved.amount == pytest.approx(2)
        assert resolved.price_per_unit == 3000

    def test_missing_price_caps_confidence(self):
        resolved = _resolve("buy 5 ETH", action="buy", symbol="ETH", confidence=0.9)
        assert resolved.amount == 5
        assert resolved.missing_fields == ["pricePerUnit"]
        assert resolved.confidence == 0.5
        assert not resolved.is_complete


class TestSells:
    def test_percent_becomes_quantity(self):
        resolved = _resolve("sold 50% of GOOG at 195", [GOOG], action="sell_partial", symbol="GOOG")
        assert resolved.matched_position_id == GOOG.id
        assert resolved.sell_percent == 50
        assert resolved.sell_amount == pytest.approx(50)
        assert resolved.sell_price == 195
        assert resolved.total_proceeds == pytest.approx(9750)
        assert resolved.summary == "Sell 50% of GOOG at $195"

    def test_sell_all_with_smaller_quantity_is_downgraded(self):
        resolved = _resolve("sold 40 GOOG at 10", [GOOG], action="sell_all", symbol="GOOG",
                            sell_amount=40, sell_price=10)
        assert resolved.action == ActionType.SELL_PARTIAL
        assert resolved.summary == "Sell 40 (40%) of GOOG at $10"

    def test_sell_all_backfills_quantity(self):
        resolved = _resolve("sell all GOOG at 200", [GOOG], action="sell_all", symbol="GOOG")
        assert resolved.sell_amount == 100
        assert resolved.total_proceeds == pytest.approx(20000)
        assert resolved.missing_fields == []

    def test_price_from_total_proceeds(self):
        resolved = _resolve("sold 10 GOOG for 2000", [GOOG], action="sell_partial", symbol="GOOG")
        assert resolved.sell_amount == 10
        assert resolved.sell_price == pytest.approx(200)

    def test_sell_without_price_is_incomplete(self):
        resolved = _resolve("sold 10 GOOG", [GOOG], action="sell_partial", symbol="GOOG")
        assert "sellPrice" in resolved.missing_fields


class TestAutoMatch:
    def test_lone_non_debt_position_wins(self):
        collateral = PositionContext(id="pos_btc0000001", symbol="BTC", amount=2)
        loan = PositionContext(id="pos_btc0000002", symbol="BTC", amount=1, is_debt=True)
        resolved = _resolve("sell all BTC at 60000", [collateral, loan], action="sell_all", symbol="BTC")
        assert resolved.matched_position_id == collateral.id

    def test_ambiguous_symbol_stays_unmatched(self):
        a = PositionContext(id="pos_btc0000001", symbol="BTC", amount=2)
        b = PositionContext(id="pos_btc0000002", symbol="BTC", amount=1)
        resolved = _resolve("sell all BTC at 60000", [a, b], action="sell_all", symbol="BTC")
        assert resolved.matched_position_id is None

    def test_read_only_match_is_dropped(self):
        synced = GOOG.model_copy(update={"read_only": True})
        resolved = _resolve("sold 10 GOOG at 190", [synced], action="sell_partial", symbol="GOOG",
                            matched_position_id=synced.id)
        assert resolved.matched_position_id is None

    def test_cash_matches_by_currency_and_account(self):
        resolved = _resolve("500 EUR to Revolut", [REVOLUT_EUR], action="buy")
        assert resolved.action == ActionType.ADD_CASH
        assert resolved.currency == "EUR"
        assert resolved.account_name == "Revolut"
        assert resolved.amount == 500
        assert resolved.asset_type == "cash"
        assert resolved.matched_position_id == REVOLUT_EUR.id


class TestNormalization:
    def test_unknown_action_becomes_buy(self):
        assert _resolve("something", action="teleport", symbol="X").action == ActionType.BUY

    def test_update_alias(self):
        resolved = _resolve("update GOOG amount to 120", [GOOG], action="update", symbol="GOOG", amount=120)
        assert resolved.action == ActionType.UPDATE_POSITION
        assert resolved.date is None

    def test_future_date_becomes_today(self):
        future = (date.today() + timedelta(days=3)).isoformat()
        resolved = _resolve("bought 1 BTC at 50000", action="buy", symbol="BTC", date=future)
        assert resolved.date == date.today().isoformat()

    def test_past_date_kept(self):
        resolved = _resolve("bought 1 BTC at 50000", action="buy", symbol="BTC", date="2024-03-01T10:00:00Z")
        assert resolved.date == "2024-03-01"

    def test_fields_gated_by_action(self):
        resolved = _resolve("bought 1 BTC at 50000", action="buy", symbol="BTC",
                            new_price=1, cost_basis=2, currency="EUR")
        assert resolved.new_price is None
        assert resolved.cost_basis is None
        assert resolved.currency is None


class TestIdempotence:
    @pytest.mark.parametrize("text,fields", [
        ("bought 10 AAPL for 1850", {"action": "buy", "symbol": "AAPL", "amount": 10, "total_cost": 1850}),
        ("sold 50% of GOOG at 195", {"action": "sell_partial", "symbol": "GOOG"}),
        ("sell all GOOG at 200", {"action": "sell_all", "symbol": "GOOG"}),
        ("buy 5 ETH", {"action": "buy", "symbol": "ETH", "confidence": 0.9}),
        ("500 EUR to Revolut", {"action": "add_cash"}),
    ])
    def test_resolving_twice_changes_nothing(self, text, fields):
        positions = [GOOG, REVOLUT_EUR]
        first = _resolve(text, positions, **fields)
        second = resolve_action(first.to_candidate(), text, positions)
        assert second.model_dump() == first.model_dump()


class TestRuleFallbackPipeline:
    def test_set_price_from_rules(self):
        text = "BTC price 95k"
        resolved = resolve_action(parse_command_rules(text), text, [])
        assert resolved.action == ActionType.SET_PRICE
        assert resolved.new_price == 95000
        assert resolved.summary == "Set BTC price to $95,000"
        assert resolved.confidence == pytest.approx(0.3)

    def test_wire_format_is_camel_case(self):
        resolved = _resolve("bought 10 AAPL for 1850", action="buy", symbol="AAPL", amount=10, total_cost=1850)
        wire = resolved.to_wire()
        assert wire["pricePerUnit"] == pytest.approx(185)
        assert wire["missingFields"] == []
        assert "price_per_unit" not in wire
