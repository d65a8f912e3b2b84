"""FastAPI dependencies."""
from folio.agents.action_parser import ActionParser, build_action_parser
from folio.db.repo.previews_repo import PreviewsRepo
from folio.db.store import PortfolioStore, get_store

_previews_repo = PreviewsRepo()


def get_portfolio_store() -> PortfolioStore:
    """Store for the configured document path."""
    return get_store()


def get_action_parser() -> ActionParser:
    """Parser for the configured LLM provider. Overridden in tests."""
    return build_action_parser()


def get_previews_repo() -> PreviewsRepo:
    return _previews_repo
