"""End-to-end tests for the command preview/confirm/cancel endpoints."""
import pytest
from fastapi.testclient import TestClient

from folio.api.deps import get_action_parser, get_previews_repo
from folio.api.main import app
from folio.core.config import reset_settings
from folio.core.error_codes import PortfolioError, PortfolioErrorCode
from folio.db.repo.previews_repo import PreviewsRepo

from conftest import StubParser, make_portfolio, make_position, read_document, synced_account, write_document


@pytest.fixture
def goog_db(isolated_db):
    goog = make_position("GOOG", 100, cost_basis=1000, type="stock", name="Alphabet")
    write_document(isolated_db, make_portfolio([goog]))
    return goog


@pytest.fixture
def client():
    previews = PreviewsRepo()
    app.dependency_overrides[get_previews_repo] = lambda: previews
    yield TestClient(app)
    app.dependency_overrides.clear()


def _use_parser(parser):
    app.dependency_overrides[get_action_parser] = lambda: parser
    return parser


class TestSubmitCommand:
    def test_returns_preview_without_writing(self, client, goog_db, isolated_db):
        parser = _use_parser(StubParser("sell_all_goog", {"price": "200"}, confidence=0.9))
        before = read_document(isolated_db)

        response = client.post("/api/v1/command", json={"text": "sell all GOOG at 200"})

        assert response.status_code == 200
        body = response.json()
        assert body["previewId"].startswith("prev_")
        assert body["menuId"] == "sell_all_goog"
        assert body["source"] == "stub"
        assert body["confidence"] == 0.9
        action = body["resolvedAction"]
        assert action["action"] == "sell_all"
        assert action["matchedPositionId"] == goog_db.id
        assert action["sellAmount"] == 100
        assert action["totalProceeds"] == 20000
        assert body["preview"]["executable"] is True
        assert [p["id"] for p in body["preview"]["removed"]] == [goog_db.id]
        assert parser.calls[0]["text"] == "sell all GOOG at 200"
        assert read_document(isolated_db) == before

    def test_synced_positions_are_not_offered(self, client, isolated_db):
        wallet = synced_account("Ledger")
        write_document(isolated_db, make_portfolio([make_position("BTC", 1, account_id=wallet.id)], [wallet]))
        parser = _use_parser(StubParser("buy_new", {"symbol": "ETH", "amount": "1", "price": "3000"}))

        client.post("/api/v1/command", json={"text": "buy 1 ETH at 3000"})

        assert "sell_all_btc" not in parser.calls[0]["prompt"]

    def test_blank_text_is_a_validation_error(self, client):
        _use_parser(StubParser())
        response = client.post("/api/v1/command", json={"text": "  \x00 "})
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["message"].startswith("Invalid request:")

    def test_unknown_fields_are_rejected(self, client):
        _use_parser(StubParser())
        response = client.post("/api/v1/command", json={"text": "sell btc", "force": True})
        assert response.status_code == 400

    def test_parser_unavailable_maps_to_503(self, client, goog_db):
        _use_parser(StubParser(error=PortfolioError(PortfolioErrorCode.UPSTREAM_UNAVAILABLE, "Cannot connect")))
        response = client.post("/api/v1/command", json={"text": "sell all GOOG"})
        assert response.status_code == 503
        body = response.json()
        assert body["status"] == "ERROR"
        assert body["error"]["code"] == "UPSTREAM_UNAVAILABLE"
        assert body["error"]["request_id"] == body["request_id"]
        assert response.headers["X-Request-ID"] == body["request_id"]

    def test_rule_fallback_when_enabled(self, client, goog_db, monkeypatch):
        monkeypatch.setenv("COMMAND_RULE_FALLBACK", "true")
        reset_settings()
        _use_parser(StubParser(error=PortfolioError(PortfolioErrorCode.MODEL_NOT_FOUND, "missing")))

        response = client.post("/api/v1/command", json={"text": "BTC price 95k"})

        assert response.status_code == 200
        body = response.json()
        assert body["source"] == "rules"
        assert body["menuId"] is None
        assert body["resolvedAction"]["newPrice"] == 95000


class TestConfirmAndCancel:
    def _submit(self, client, text="sell all GOOG at 200", menu_id="sell_all_goog", values=None):
        _use_parser(StubParser(menu_id, values if values is not None else {"price": "200"}, confidence=0.9))
        return client.post("/api/v1/command", json={"text": text}).json()["previewId"]

    def test_confirm_applies_once(self, client, goog_db, isolated_db):
        preview_id = self._submit(client)

        response = client.post(f"/api/v1/command/{preview_id}/confirm")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "CONFIRMED"
        assert body["removedPositionIds"] == [goog_db.id]

        state = read_document(isolated_db)["state"]
        assert state["positions"] == []
        assert state["transactions"][0]["id"] == body["transactionId"]
        assert state["transactions"][0]["totalValue"] == 20000

        again = client.post(f"/api/v1/command/{preview_id}/confirm")
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "PREVIEW_NOT_PENDING"
        assert again.json()["error"]["details"]["status"] == "CONFIRMED"

    def test_confirm_runs_against_latest_state(self, client, goog_db, isolated_db):
        preview_id = self._submit(client, "sell 40 GOOG at 10", "sell_partial_goog",
                                  {"sellAmount": "40", "price": "10"})
        # A direct edit lands between preview and confirm
        client.put(f"/api/v1/portfolio/positions/{goog_db.id}", json={"amount": 200})

        response = client.post(f"/api/v1/command/{preview_id}/confirm")

        assert response.status_code == 200
        position = read_document(isolated_db)["state"]["positions"][0]
        assert position["amount"] == 160

    def test_incomplete_action_cannot_be_confirmed(self, client, goog_db, isolated_db):
        preview_id = self._submit(client, "sell all GOOG", values={})
        response = client.post(f"/api/v1/command/{preview_id}/confirm")
        assert response.status_code == 400
        assert response.json()["error"]["details"]["missing_fields"] == ["sellPrice"]
        assert len(read_document(isolated_db)["state"]["positions"]) == 1

    def test_cancel_then_confirm(self, client, goog_db):
        preview_id = self._submit(client)
        cancelled = client.post(f"/api/v1/command/{preview_id}/cancel")
        assert cancelled.json() == {"status": "CANCELLED", "previewId": preview_id}

        response = client.post(f"/api/v1/command/{preview_id}/confirm")
        assert response.status_code == 409
        assert response.json()["error"]["message"] == "Preview is cancelled"

    def test_unknown_preview(self, client):
        response = client.post("/api/v1/command/prev_missing/confirm")
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"
