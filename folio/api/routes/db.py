"""Raw document access."""
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends

from folio.api.deps import get_portfolio_store
from folio.api.routes.sync import parse_incoming_state
from folio.core.logging import get_logger
from folio.db.store import PortfolioStore
from folio.services.sync_guards import admit_sync

logger = get_logger(__name__)

router = APIRouter()


@router.get("")
async def read_db(store: PortfolioStore = Depends(get_portfolio_store)):
    """The committed document in its wrapped on-disk shape."""
    return await store.read_document()


@router.put("")
async def write_db(
    body: Dict[str, Any] = Body(...),
    store: PortfolioStore = Depends(get_portfolio_store),
):
    """Replace the document. ``{}`` is an explicit clear and skips the guards."""
    if not body:
        await store.clear()
        logger.warning("Portfolio document cleared via PUT /db", extra={"event": "db_cleared"})
        return {"ok": True, "cleared": True}
    incoming = parse_incoming_state(body)
    await store.replace(incoming, admit=admit_sync)
    return {"ok": True}
