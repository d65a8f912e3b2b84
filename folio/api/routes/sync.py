"""Guarded whole-state replacement pushed by background sync clients."""
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends
from pydantic import ValidationError

from folio.api.deps import get_portfolio_store
from folio.core.error_codes import validation_error
from folio.core.logging import get_logger
from folio.db.models import PortfolioData
from folio.db.store import PortfolioStore
from folio.services.sync_guards import admit_sync

logger = get_logger(__name__)

router = APIRouter()


def parse_incoming_state(body: Dict[str, Any]) -> PortfolioData:
    """Accept a flat state or a wrapped ``{"state": ..., "version": N}`` document."""
    state = body.get("state") if isinstance(body.get("state"), dict) else body
    try:
        return PortfolioData.model_validate({k: v for k, v in state.items() if v is not None})
    except ValidationError as e:
        raise validation_error(
            "Invalid portfolio state",
            errors=[{"loc": list(err["loc"]), "msg": err["msg"]} for err in e.errors()[:20]],
        ) from e


@router.post("/sync")
async def sync_portfolio(
    body: Dict[str, Any] = Body(...),
    store: PortfolioStore = Depends(get_portfolio_store),
):
    """Replace the document if every admission guard allows it (409 otherwise)."""
    incoming = parse_incoming_state(body)
    await store.replace(incoming, admit=admit_sync)
    logger.info(
        "Sync accepted: %d positions, %d accounts", len(incoming.positions), len(incoming.accounts),
        extra={"event": "sync_accepted"},
    )
    return {"ok": True}
