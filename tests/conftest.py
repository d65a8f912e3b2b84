"""Shared pytest fixtures for the test suite.

Provides:
- An isolated portfolio document per test (PORTFOLIO_DB_PATH in a tmp dir)
- Builders for positions, accounts and portfolio snapshots
- A stub ActionParser that returns canned menu picks
"""
import json
import os
from typing import Any, Dict, List, Optional

import pytest

# Keep a developer's .env from pointing tests at a real provider
os.environ["LLM_PROVIDER"] = "ollama"
os.environ["COMMAND_RULE_FALLBACK"] = "false"

from folio.agents.schemas import MenuResponse  # noqa: E402
from folio.core.config import reset_settings  # noqa: E402
from folio.db.models import Account, AccountConnection, PortfolioData, Position  # noqa: E402
from folio.db.store import reset_stores  # noqa: E402


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Point the store at a fresh document for each test function."""
    db_path = tmp_path / "db.json"
    monkeypatch.setenv("PORTFOLIO_DB_PATH", str(db_path))
    monkeypatch.delenv("PORTFOLIO_DATA_DIR", raising=False)
    reset_settings()
    reset_stores()
    yield str(db_path)
    reset_settings()
    reset_stores()


def make_position(symbol: str, amount: float = 1.0, **kwargs) -> Position:
    return Position(symbol=symbol, amount=amount, **kwargs)


def make_portfolio(
    positions: Optional[List[Position]] = None,
    accounts: Optional[List[Account]] = None,
    **kwargs,
) -> PortfolioData:
    return PortfolioData(positions=positions or [], accounts=accounts or [], **kwargs)


def manual_account(name: str, **kwargs) -> Account:
    return Account(name=name, connection=AccountConnection(data_source="manual"), **kwargs)


def synced_account(name: str, source: str = "debank", **kwargs) -> Account:
    return Account(name=name, connection=AccountConnection(data_source=source), **kwargs)


def write_document(path: str, data: PortfolioData, version: int = 13) -> None:
    with open(path, "w", encoding="utf-8") as fh:
        json.dump({"state": data.to_doc(), "version": version}, fh)


def read_document(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as fh:
        return json.load(fh)


class StubParser:
    """ActionParser stand-in returning a fixed pick, or raising a fixed error."""

    name = "stub"

    def __init__(self, menu_id: str = "", values: Optional[Dict[str, str]] = None,
                 confidence: float = 0.0, error: Optional[Exception] = None):
        self.response = MenuResponse(menuId=menu_id, values=values or {}, confidence=confidence)
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    async def parse(self, prompt: str, schema: Dict[str, Any], text: str) -> MenuResponse:
        self.calls.append({"prompt": prompt, "schema": schema, "text": text})
        if self.error is not None:
            raise self.error
        return self.response
