"""Tests for dry-run previews of resolved actions."""
import pytest

from folio.agents.schemas import ActionType, ResolvedAction
from folio.services.mutation_preview import build_preview, diff_portfolio

from conftest import make_portfolio, make_position, synced_account


def test_partial_sell_preview_lists_field_changes():
    goog = make_position("GOOG", 100, cost_basis=1000, type="stock")
    data = make_portfolio([goog])
    action = ResolvedAction(action=ActionType.SELL_PARTIAL, symbol="GOOG", sell_amount=40,
                            sell_price=12, matched_position_id=goog.id, date="2024-05-01")

    preview = build_preview(data, action)

    assert preview.executable
    fields = {c.field: (c.before, c.after) for c in preview.changes}
    assert fields["amount"] == (100, 60)
    assert fields["costBasis"][1] == pytest.approx(600)
    assert "updatedAt" not in fields
    assert len(preview.transactions) == 1
    assert preview.transactions[0]["type"] == "sell"
    # Source snapshot is untouched
    assert data.positions[0].amount == 100
    assert data.transactions == []


def test_buy_new_preview_lists_added_position():
    preview = build_preview(make_portfolio(), ResolvedAction(
        action=ActionType.BUY, symbol="AAPL", amount=10, price_per_unit=185, total_cost=1850,
        asset_type="stock",
    ))
    assert [p["symbol"] for p in preview.added] == ["AAPL"]
    assert preview.removed == []
    assert preview.to_dict()["added"][0]["costBasis"] == 1850


def test_remove_preview_lists_removed_position():
    eth = make_position("ETH", 2)
    preview = build_preview(make_portfolio([eth]), ResolvedAction(action=ActionType.REMOVE, symbol="ETH"))
    assert [p["id"] for p in preview.removed] == [eth.id]


def test_set_price_preview_shows_custom_price_diff():
    preview = build_preview(make_portfolio(), ResolvedAction(action=ActionType.SET_PRICE, symbol="BTC",
                                                             new_price=95000))
    payload = preview.to_dict()
    assert payload["customPrices"]["btc"]["before"] is None
    assert payload["customPrices"]["btc"]["after"]["price"] == 95000


def test_unexecutable_action_reports_error():
    wallet = synced_account("Ledger")
    btc = make_position("BTC", 1, account_id=wallet.id)
    data = make_portfolio([btc], [wallet])
    preview = build_preview(data, ResolvedAction(action=ActionType.REMOVE, symbol="BTC",
                                                 matched_position_id=btc.id, summary="Remove BTC"))
    assert preview.executable is False
    assert "synced" in preview.error
    assert preview.summary == "Remove BTC"
    assert preview.is_empty


def test_identical_snapshots_have_empty_diff():
    data = make_portfolio([make_position("BTC", 1)])
    assert diff_portfolio(data, data.model_copy(deep=True)).is_empty
