"""Transactional store tests: ordering, atomicity, tolerant reads."""
import asyncio
import json
import os
import time

import pytest

from folio.core.error_codes import PortfolioError
from folio.db.models import PortfolioData
from folio.db.store import CORRUPT_SUFFIX, PortfolioStore, get_store, parse_document
from folio.services.sync_guards import admit_sync

from conftest import make_portfolio, make_position, read_document, write_document


class TestParseDocument:
    @pytest.mark.parametrize("raw", ["", "   ", "{}", '{"version": 13}'])
    def test_empty_inputs_yield_empty_portfolio(self, raw):
        data, corrupt = parse_document(raw)
        assert data.positions == [] and data.accounts == []
        assert not corrupt

    def test_flat_document_is_accepted(self):
        raw = json.dumps({"positions": [{"id": "p1", "symbol": "BTC", "amount": 2}]})
        data, corrupt = parse_document(raw)
        assert not corrupt
        assert data.positions[0].symbol == "BTC"
        assert data.positions[0].asset_class == "crypto"

    def test_wrapped_document_is_accepted(self):
        raw = json.dumps({"state": {"positions": [{"id": "p1", "symbol": "AAPL", "type": "stock"}]}, "version": 13})
        data, _ = parse_document(raw)
        assert data.positions[0].asset_class == "equity"

    def test_null_collections_fall_back_to_defaults(self):
        raw = json.dumps({"state": {"positions": None, "customPrices": None, "lastRefresh": None}})
        data, corrupt = parse_document(raw)
        assert not corrupt
        assert data.positions == [] and data.custom_prices == {}

    def test_flat_document_with_empty_collections_keeps_other_state(self):
        raw = json.dumps({
            "positions": [],
            "accounts": [],
            "transactions": [{
                "id": "tx_1", "type": "buy", "symbol": "BTC", "name": "Bitcoin", "assetType": "crypto",
                "amount": 1, "pricePerUnit": 50000, "totalValue": 50000, "date": "2024-03-01",
            }],
            "customPrices": {"btc": {"price": 95000, "note": "manual"}},
            "hideBalances": True,
        })
        data, corrupt = parse_document(raw)
        assert not corrupt
        assert [t.id for t in data.transactions] == ["tx_1"]
        assert data.custom_prices["btc"]["price"] == 95000
        assert data.hide_balances is True

    def test_garbage_is_flagged_corrupt(self):
        data, corrupt = parse_document("{not json")
        assert corrupt
        assert data.positions == []

    def test_unknown_fields_survive(self):
        raw = json.dumps({"state": {"positions": [{"id": "p1", "symbol": "ETH", "logo": "eth.png"}]}})
        data, _ = parse_document(raw)
        assert data.to_doc()["positions"][0]["logo"] == "eth.png"


class TestTransact:
    @pytest.mark.asyncio
    async def test_missing_file_reads_as_empty(self, isolated_db):
        data = await get_store().read()
        assert isinstance(data, PortfolioData)
        assert not os.path.exists(isolated_db)

    @pytest.mark.asyncio
    async def test_write_is_wrapped_with_version(self, isolated_db):
        store = get_store()
        await store.replace(make_portfolio([make_position("BTC", 1)]))
        doc = read_document(isolated_db)
        assert doc["version"] == 13
        assert doc["state"]["positions"][0]["symbol"] == "BTC"

    @pytest.mark.asyncio
    async def test_read_only_transaction_does_not_write(self, isolated_db):
        await get_store().transact(lambda current: (None, len(current.positions)))
        assert not os.path.exists(isolated_db)

    @pytest.mark.asyncio
    async def test_concurrent_increments_are_serialized(self, isolated_db):
        store = get_store()
        await store.replace(make_portfolio([make_position("BTC", 0, id="p1")]))

        def increment(current):
            updated = current.model_copy(deep=True)
            updated.positions[0].amount += 1
            return updated, updated.positions[0].amount

        results = await asyncio.gather(*(store.transact(increment) for _ in range(25)))

        # FIFO: the n-th submitted transaction sees n-1 predecessors
        assert results == [float(i) for i in range(1, 26)]
        assert (await store.read()).positions[0].amount == 25

    @pytest.mark.asyncio
    async def test_failed_transaction_writes_nothing_and_queue_continues(self, isolated_db):
        store = get_store()
        await store.replace(make_portfolio([make_position("BTC", 1)]))
        before = read_document(isolated_db)

        def boom(current):
            raise RuntimeError("mid-transaction failure")

        def add_eth(current):
            updated = current.model_copy(deep=True)
            updated.positions.append(make_position("ETH", 3))
            return updated, None

        outcomes = await asyncio.gather(store.transact(boom), store.transact(add_eth), return_exceptions=True)
        assert isinstance(outcomes[0], RuntimeError)
        assert outcomes[1] is None
        symbols = [p["symbol"] for p in read_document(isolated_db)["state"]["positions"]]
        assert symbols == ["BTC", "ETH"]
        assert before["state"]["positions"][0]["symbol"] == "BTC"

    @pytest.mark.asyncio
    async def test_rejected_replace_leaves_document_untouched(self, isolated_db):
        store = get_store()
        await store.replace(make_portfolio([make_position("BTC"), make_position("ETH")]))
        before = read_document(isolated_db)

        with pytest.raises(PortfolioError):
            await store.replace(make_portfolio(), admit=admit_sync)

        assert read_document(isolated_db) == before

    @pytest.mark.asyncio
    async def test_corrupt_document_is_preserved_before_overwrite(self, isolated_db):
        with open(isolated_db, "w", encoding="utf-8") as fh:
            fh.write("{truncated")
        store = get_store()
        await store.replace(make_portfolio([make_position("BTC")]))

        with open(isolated_db + CORRUPT_SUFFIX, "r", encoding="utf-8") as fh:
            assert fh.read() == "{truncated"
        assert read_document(isolated_db)["state"]["positions"][0]["symbol"] == "BTC"

    @pytest.mark.asyncio
    async def test_no_temp_files_left_behind(self, isolated_db, tmp_path):
        store = get_store()
        for i in range(3):
            await store.replace(make_portfolio([make_position(f"T{i}")]))
        assert [p.name for p in tmp_path.iterdir()] == ["db.json"]

    @pytest.mark.asyncio
    async def test_clear_writes_empty_state(self, isolated_db):
        write_document(isolated_db, make_portfolio([make_position("BTC")]))
        await get_store().clear()
        assert read_document(isolated_db)["state"]["positions"] == []


class TestRegistry:
    def test_one_store_per_path(self, isolated_db):
        assert get_store() is get_store(isolated_db)

    def test_explicit_version(self, tmp_path):
        store = PortfolioStore(str(tmp_path / "other.json"), version=7)
        assert store.wrap(make_portfolio())["version"] == 7


class _SlowWriteStore(PortfolioStore):
    def _write(self, data, preserve_existing):
        time.sleep(0.3)
        super()._write(data, preserve_existing)


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_lose_its_write(self, isolated_db):
        store = _SlowWriteStore(isolated_db)

        def add(symbol):
            def _add(current):
                updated = current.model_copy(deep=True)
                updated.positions.append(make_position(symbol))
                return updated, None
            return _add

        first = asyncio.ensure_future(store.transact(add("BTC")))
        await asyncio.sleep(0.1)
        first.cancel()
        with pytest.raises(asyncio.CancelledError):
            await first

        await store.transact(add("ETH"))

        symbols = [p["symbol"] for p in read_document(isolated_db)["state"]["positions"]]
        assert symbols == ["BTC", "ETH"]
