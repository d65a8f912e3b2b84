"""Command palette API: free text -> preview -> confirm/cancel."""
import re
from typing import Any, Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, field_validator

from folio.agents.action_parser import ActionParser
from folio.agents.schemas import ResolvedAction
from folio.api.deps import get_action_parser, get_portfolio_store, get_previews_repo
from folio.core.config import get_settings
from folio.core.error_codes import PortfolioError, PortfolioErrorCode, not_found
from folio.core.logging import get_logger
from folio.db.repo.previews_repo import CANCELLED, CONFIRMED, PreviewsRepo
from folio.db.store import PortfolioStore
from folio.services.action_executor import apply_action
from folio.services.command_pipeline import interpret_command
from folio.services.mutation_preview import build_preview

logger = get_logger(__name__)

router = APIRouter()


class CommandRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=1000, description="Natural language command")

    model_config = {"extra": "forbid"}

    @field_validator('text')
    @classmethod
    def validate_text(cls, v: str) -> str:
        """Strip control characters and collapse whitespace."""
        v = re.sub(r'[\x00-\x08\x0B-\x0C\x0E-\x1F\x7F]', '', v)
        v = re.sub(r'\s+', ' ', v).strip()
        if not v:
            raise ValueError("text must not be blank")
        return v


def _load_pending(repo: PreviewsRepo, preview_id: str) -> Dict[str, Any]:
    row = repo.get_by_id(preview_id)
    if row is None:
        raise not_found(f"Preview {preview_id} not found", preview_id=preview_id)
    return row


def _not_pending(row: Dict[str, Any]) -> PortfolioError:
    return PortfolioError(
        PortfolioErrorCode.PREVIEW_NOT_PENDING,
        f"Preview is {row['status'].lower()}",
        details={"preview_id": row["id"], "status": row["status"]},
    )


@router.post("")
async def submit_command(
    request_body: CommandRequest,
    store: PortfolioStore = Depends(get_portfolio_store),
    parser: ActionParser = Depends(get_action_parser),
    previews: PreviewsRepo = Depends(get_previews_repo),
):
    """
    Interpret a command and return a preview of what it would change.

    Never mutates the portfolio; the returned previewId is confirmed or
    cancelled separately.
    """
    settings = get_settings()
    data = await store.read()
    result = await interpret_command(
        request_body.text, data, parser, rule_fallback=settings.command_rule_fallback
    )
    preview = build_preview(data, result.action)
    preview_id = previews.create_pending(
        text=request_body.text,
        action=result.action.model_dump(mode="json"),
        preview=preview.to_dict(),
        ttl_seconds=settings.preview_ttl_seconds,
    )
    return {
        "previewId": preview_id,
        "menuId": result.menu_id,
        "resolvedAction": result.action.to_wire(),
        "confidence": result.action.confidence,
        "preview": preview.to_dict(),
        "source": result.source,
    }


@router.post("/{preview_id}/confirm")
async def confirm_command(
    preview_id: str,
    store: PortfolioStore = Depends(get_portfolio_store),
    previews: PreviewsRepo = Depends(get_previews_repo),
):
    """Apply a pending preview. Single-use: a second confirm gets 409."""
    row = _load_pending(previews, preview_id)
    if not previews.mark_confirmed(preview_id):
        raise _not_pending(previews.get_by_id(preview_id) or row)

    action = ResolvedAction.model_validate(row["action"])

    def _apply(current):
        updated = current.model_copy(deep=True)
        return updated, apply_action(updated, action)

    result = await store.transact(_apply)
    logger.info(
        "Preview %s confirmed: %s", preview_id, result.summary,
        extra={"event": "preview_confirmed", "preview_id": preview_id},
    )
    return {
        "status": CONFIRMED,
        "previewId": preview_id,
        "summary": result.summary,
        "positionId": result.position_id,
        "transactionId": result.transaction_id,
        "removedPositionIds": result.removed_position_ids,
    }


@router.post("/{preview_id}/cancel")
async def cancel_command(
    preview_id: str,
    previews: PreviewsRepo = Depends(get_previews_repo),
):
    row = _load_pending(previews, preview_id)
    if not previews.mark_cancelled(preview_id):
        raise _not_pending(previews.get_by_id(preview_id) or row)
    logger.info("Preview %s cancelled", preview_id, extra={"preview_id": preview_id})
    return {"status": CANCELLED, "previewId": preview_id}
