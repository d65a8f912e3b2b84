"""Executor and position arithmetic tests."""
import pytest

from folio.agents.schemas import ActionType, ResolvedAction
from folio.core.error_codes import PortfolioError, PortfolioErrorCode
from folio.services.action_executor import CUSTOM_PRICE_NOTE, apply_action
from folio.services.position_operations import execute_buy, execute_full_sell, execute_partial_sell

from conftest import make_portfolio, make_position, manual_account, synced_account


def _action(action, symbol, **fields):
    return ResolvedAction(action=action, symbol=symbol, **fields)


class TestPositionOperations:
    def test_partial_sell_is_proportional(self):
        position = make_position("GOOG", 100, cost_basis=1000, type="stock")
        op = execute_partial_sell(position, 40, 12, "2024-05-01")
        assert op.updates == {"amount": 60, "cost_basis": pytest.approx(600)}
        tx = op.transaction
        assert tx.type == "sell"
        assert tx.total_value == 480
        assert tx.cost_basis_at_execution == pytest.approx(400)
        assert tx.realized_pnl == pytest.approx(80)
        assert tx.to_doc()["realizedPnL"] == pytest.approx(80)

    def test_dust_remainder_removes_position(self):
        position = make_position("BTC", 1.0, cost_basis=30000)
        op = execute_partial_sell(position, 1.0 - 1e-9, 60000, "2024-05-01")
        assert op.removed_position_id == position.id

    def test_overselling_is_rejected(self):
        with pytest.raises(PortfolioError):
            execute_partial_sell(make_position("BTC", 1.0), 2.0, 100, "2024-05-01")

    def test_full_sell_without_cost_basis(self):
        op = execute_full_sell(make_position("ETH", 2), 3000, "2024-05-01")
        assert op.transaction.total_value == 6000
        assert op.transaction.realized_pnl is None

    def test_buy_into_existing_sums_cost_basis(self):
        position = make_position("ETH", 2, cost_basis=4000)
        op = execute_buy(position, "ETH", 1, 3000, None, "2024-05-01")
        assert op.updates["amount"] == 3
        assert op.updates["cost_basis"] == 7000

    def test_buy_new_position(self):
        op = execute_buy(None, "AAPL", 10, 185, 1850, "2024-05-01", asset_type="stock")
        assert op.new_position.symbol == "AAPL"
        assert op.new_position.asset_class == "equity"
        assert op.new_position.cost_basis == 1850
        assert op.transaction.position_id == op.new_position.id


class TestApplyAction:
    def test_sell_partial_updates_position_and_logs_transaction(self):
        goog = make_position("GOOG", 100, cost_basis=1000, type="stock")
        data = make_portfolio([goog])
        result = apply_action(data, _action(
            ActionType.SELL_PARTIAL, "GOOG", sell_amount=40, sell_price=12,
            matched_position_id=goog.id, date="2024-05-01",
        ))
        assert data.positions[0].amount == 60
        assert data.positions[0].cost_basis == pytest.approx(600)
        assert len(data.transactions) == 1
        assert result.transaction_id == data.transactions[0].id
        assert result.position_id == goog.id

    def test_sell_only_touches_matched_position(self):
        a = make_position("BTC", 2, cost_basis=100)
        b = make_position("BTC", 5, cost_basis=900)
        data = make_portfolio([a, b])
        apply_action(data, _action(ActionType.SELL_ALL, "BTC", sell_amount=2, sell_price=10,
                                   matched_position_id=a.id))
        assert [p.id for p in data.positions] == [b.id]
        assert data.positions[0].amount == 5

    def test_incomplete_action_is_rejected(self):
        with pytest.raises(PortfolioError) as exc_info:
            apply_action(make_portfolio(), _action(ActionType.BUY, "ETH", amount=1, missing_fields=["pricePerUnit"]))
        assert exc_info.value.error_code == PortfolioErrorCode.VALIDATION_ERROR
        assert exc_info.value.details["missing_fields"] == ["pricePerUnit"]

    def test_stale_match_is_not_found(self):
        with pytest.raises(PortfolioError) as exc_info:
            apply_action(make_portfolio(), _action(
                ActionType.SELL_ALL, "BTC", sell_amount=1, sell_price=1, matched_position_id="pos_gone",
            ))
        assert exc_info.value.error_code == PortfolioErrorCode.NOT_FOUND

    def test_synced_positions_are_refused(self):
        wallet = synced_account("Main wallet")
        btc = make_position("BTC", 1, account_id=wallet.id)
        data = make_portfolio([btc], [wallet])
        with pytest.raises(PortfolioError) as exc_info:
            apply_action(data, _action(ActionType.REMOVE, "BTC", matched_position_id=btc.id))
        assert "synced" in exc_info.value.message
        assert data.positions == [btc]

    def test_buy_new(self):
        data = make_portfolio()
        result = apply_action(data, _action(ActionType.BUY, "AAPL", amount=10, price_per_unit=185,
                                            total_cost=1850, asset_type="stock"))
        assert data.positions[0].id == result.position_id
        assert data.transactions[0].type == "buy"

    def test_add_cash_to_existing(self):
        cash = make_position("CASH_EUR_1", 1000, type="cash", cost_basis=1000, name="Revolut (EUR)")
        data = make_portfolio([cash])
        apply_action(data, _action(ActionType.ADD_CASH, "CASH_EUR", amount=500, currency="EUR",
                                   matched_position_id=cash.id))
        assert data.positions[0].amount == 1500
        assert data.positions[0].cost_basis == 1500

    def test_add_cash_creates_position_in_named_account(self):
        revolut = manual_account("Revolut")
        data = make_portfolio(accounts=[revolut])
        result = apply_action(data, _action(ActionType.ADD_CASH, "CASH_EUR", amount=5000, currency="EUR",
                                            account_name="revolut", asset_type="cash"))
        position = data.find_position(result.position_id)
        assert position.symbol.startswith("CASH_EUR_")
        assert position.name == "revolut (EUR)"
        assert position.account_id == revolut.id
        assert data.prices[position.symbol.lower()]["price"] == 1

    def test_update_cash_single_cash_position(self):
        cash = make_position("CASH_USD", 10, type="cash")
        data = make_portfolio([cash, make_position("BTC", 1)])
        apply_action(data, _action(ActionType.UPDATE_CASH, "CASH_USD", amount=30000, currency="USD"))
        assert data.positions[0].amount == 30000
        assert data.positions[0].cost_basis == 30000

    def test_remove_by_symbol_removes_every_match(self):
        data = make_portfolio([make_position("ETH", 1), make_position("ETH", 2), make_position("BTC", 1)])
        result = apply_action(data, _action(ActionType.REMOVE, "ETH"))
        assert [p.symbol for p in data.positions] == ["BTC"]
        assert len(result.removed_position_ids) == 2

    def test_remove_unknown_symbol(self):
        with pytest.raises(PortfolioError) as exc_info:
            apply_action(make_portfolio(), _action(ActionType.REMOVE, "DOGE"))
        assert exc_info.value.message == "No position found for DOGE"

    def test_set_price(self):
        data = make_portfolio()
        apply_action(data, _action(ActionType.SET_PRICE, "BTC", new_price=95000))
        assert data.custom_prices["btc"]["price"] == 95000
        assert data.custom_prices["btc"]["note"] == CUSTOM_PRICE_NOTE

    def test_update_position(self):
        eth = make_position("ETH", 1, cost_basis=2000)
        data = make_portfolio([eth])
        apply_action(data, _action(ActionType.UPDATE_POSITION, "ETH", cost_basis=2500, date="2024-01-02",
                                   matched_position_id=eth.id))
        assert data.positions[0].cost_basis == 2500
        assert data.positions[0].purchase_date == "2024-01-02"

    def test_update_wallet_position_refused(self):
        eth = make_position("ETH", 1, wallet_address="0xabc")
        data = make_portfolio([eth])
        with pytest.raises(PortfolioError) as exc_info:
            apply_action(data, _action(ActionType.UPDATE_POSITION, "ETH", amount=2, matched_position_id=eth.id))
        assert exc_info.value.message == "Cannot edit wallet-synced positions"
