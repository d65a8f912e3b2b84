"""
Mutation preview: what a resolved action would change, without changing it.

The action is applied to a deep copy of the snapshot and the copy is diffed
against the original. The diff is what the confirm step will commit, provided
nothing else writes in between.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from folio.agents.schemas import ResolvedAction
from folio.core.error_codes import PortfolioError
from folio.core.logging import get_logger
from folio.db.models import PortfolioData, Position
from folio.services.action_executor import apply_action

logger = get_logger(__name__)

# Bookkeeping fields that change on every write
_IGNORED_FIELDS = {"updatedAt"}


@dataclass
class FieldChange:
    position_id: str
    symbol: str
    field: str
    before: Any
    after: Any

    def to_dict(self) -> Dict[str, Any]:
        return {
            "positionId": self.position_id,
            "symbol": self.symbol,
            "field": self.field,
            "before": self.before,
            "after": self.after,
        }


@dataclass
class MutationPreview:
    summary: str
    executable: bool = True
    error: Optional[str] = None
    added: List[Dict[str, Any]] = field(default_factory=list)
    removed: List[Dict[str, Any]] = field(default_factory=list)
    changes: List[FieldChange] = field(default_factory=list)
    custom_prices: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    transactions: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.added or self.removed or self.changes or self.custom_prices or self.transactions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary,
            "executable": self.executable,
            "error": self.error,
            "added": self.added,
            "removed": self.removed,
            "changes": [c.to_dict() for c in self.changes],
            "customPrices": self.custom_prices,
            "transactions": self.transactions,
        }


def _diff_position(before: Position, after: Position) -> List[FieldChange]:
    old, new = before.to_doc(), after.to_doc()
    changes = []
    for key in sorted(set(old) | set(new)):
        if key in _IGNORED_FIELDS:
            continue
        if old.get(key) != new.get(key):
            changes.append(FieldChange(
                position_id=before.id,
                symbol=before.symbol,
                field=key,
                before=old.get(key),
                after=new.get(key),
            ))
    return changes


def diff_portfolio(before: PortfolioData, after: PortfolioData, summary: str = "") -> MutationPreview:
    """Structural diff of two snapshots, keyed by position id."""
    preview = MutationPreview(summary=summary)
    old_positions = {p.id: p for p in before.positions}
    new_positions = {p.id: p for p in after.positions}

    for pid, position in old_positions.items():
        if pid not in new_positions:
            preview.removed.append(position.to_doc())
        else:
            preview.changes.extend(_diff_position(position, new_positions[pid]))
    for pid, position in new_positions.items():
        if pid not in old_positions:
            preview.added.append(position.to_doc())

    for key in sorted(set(before.custom_prices) | set(after.custom_prices)):
        old, new = before.custom_prices.get(key), after.custom_prices.get(key)
        if old != new:
            preview.custom_prices[key] = {"before": old, "after": new}

    known = {t.id for t in before.transactions}
    preview.transactions = [t.to_doc() for t in after.transactions if t.id not in known]
    return preview


def build_preview(data: PortfolioData, action: ResolvedAction) -> MutationPreview:
    """Preview ``action`` against ``data``. ``data`` is left untouched.

    An action that cannot be applied yields ``executable=False`` with the
    reason in ``error`` instead of raising.
    """
    working = data.model_copy(deep=True)
    try:
        result = apply_action(working, action)
    except PortfolioError as e:
        logger.info(
            "Preview not executable: %s", e.message,
            extra={"event": "preview_not_executable", "error_class": e.error_code.value},
        )
        return MutationPreview(summary=action.summary, executable=False, error=e.message)
    return diff_portfolio(data, working, summary=result.summary)
