"""
Sync admission guards.

Run before a whole-state snapshot replaces the persisted document. They are
the last line of defense against partial syncs, upstream API failures, or
client bugs that would overwrite a populated document with incomplete data.

Each guard is a pure function ``(existing, incoming) -> GuardResult`` and
never mutates either snapshot. ``SYNC_GUARDS`` is evaluated in order and the
first rejection wins.
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from folio.core.error_codes import PortfolioError, PortfolioErrorCode
from folio.core.logging import get_logger
from folio.db.models import PortfolioData

logger = get_logger(__name__)

# Minimum ratio of incoming/existing positions allowed
POSITION_DROP_THRESHOLD = 0.5

# Minimum existing positions before the ratio guard kicks in
THRESHOLD_MIN_EXISTING = 10


class GuardName(str, Enum):
    TOTAL_WIPE = "total_wipe"
    PARTIAL_LOSS = "partial_loss"
    DEBT_LOSS = "debt_loss"


@dataclass
class GuardResult:
    """Outcome of one guard, or of the whole pipeline."""
    allowed: bool
    guard: Optional[GuardName] = None
    reason: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"allowed": self.allowed}
        if not self.allowed:
            d["guard"] = self.guard.value if self.guard else None
            d["reason"] = self.reason
            d["details"] = self.details
        return d


ALLOWED = GuardResult(allowed=True)

Guard = Callable[[PortfolioData, PortfolioData], GuardResult]


def _percent(ratio: float) -> int:
    # Round half up, matching how the percentage is shown to users elsewhere
    return int(math.floor(ratio * 100 + 0.5))


def _counts(existing: PortfolioData, incoming: PortfolioData) -> Dict[str, Any]:
    return {
        "existing_positions": len(existing.positions),
        "incoming_positions": len(incoming.positions),
        "existing_accounts": len(existing.accounts),
        "incoming_accounts": len(incoming.accounts),
        "existing_debt": existing.debt_count(),
        "incoming_debt": incoming.debt_count(),
        "threshold": POSITION_DROP_THRESHOLD,
    }


def guard_total_wipe(existing: PortfolioData, incoming: PortfolioData) -> GuardResult:
    """Reject an incoming state with no positions and no accounts over a populated one."""
    if existing.positions and not incoming.positions and not incoming.accounts:
        return GuardResult(
            allowed=False,
            guard=GuardName.TOTAL_WIPE,
            reason=(
                "Refusing to wipe database: incoming state has 0 positions and 0 accounts "
                f"but existing db has {len(existing.positions)} positions."
            ),
            details=_counts(existing, incoming),
        )
    return ALLOWED


def guard_partial_loss(existing: PortfolioData, incoming: PortfolioData) -> GuardResult:
    """Reject when fewer than half of the existing positions survive.

    Only active once the existing document holds THRESHOLD_MIN_EXISTING
    positions; exactly 50% is allowed.
    """
    existing_count = len(existing.positions)
    if existing_count < THRESHOLD_MIN_EXISTING:
        return ALLOWED

    incoming_count = len(incoming.positions)
    ratio = incoming_count / existing_count
    if ratio < POSITION_DROP_THRESHOLD:
        details = _counts(existing, incoming)
        details["ratio"] = ratio
        return GuardResult(
            allowed=False,
            guard=GuardName.PARTIAL_LOSS,
            reason=(
                f"Refusing to sync: position count would drop from {existing_count} to "
                f"{incoming_count} ({_percent(ratio)}% remaining). This looks like a partial "
                f"sync failure. Threshold: {_percent(POSITION_DROP_THRESHOLD)}%."
            ),
            details=details,
        )
    return ALLOWED


def guard_debt_loss(existing: PortfolioData, incoming: PortfolioData) -> GuardResult:
    """Reject when every existing debt position would disappear.

    Losing some but not all debt positions is tolerated: a loan may have
    genuinely been closed.
    """
    existing_debt = existing.debt_count()
    if existing_debt > 0 and incoming.debt_count() == 0:
        return GuardResult(
            allowed=False,
            guard=GuardName.DEBT_LOSS,
            reason=(
                f"Refusing to sync: all {existing_debt} debt positions would be lost. "
                "Debt positions represent real liabilities and must not silently disappear."
            ),
            details=_counts(existing, incoming),
        )
    return ALLOWED


SYNC_GUARDS: List[Guard] = [guard_total_wipe, guard_partial_loss, guard_debt_loss]


def run_sync_guards(
    existing: PortfolioData,
    incoming: PortfolioData,
    guards: Optional[List[Guard]] = None,
) -> GuardResult:
    """Run guards in order and return the first rejection, or ALLOWED."""
    for guard in guards if guards is not None else SYNC_GUARDS:
        result = guard(existing, incoming)
        if not result.allowed:
            return result
    return ALLOWED


def admit_sync(existing: PortfolioData, incoming: PortfolioData) -> None:
    """Store admission hook: raise ADMISSION_REJECTED when a guard fails."""
    result = run_sync_guards(existing, incoming)
    if result.allowed:
        return
    logger.warning(
        "Sync rejected by %s guard: %s", result.guard.value, result.reason,
        extra={"event": "sync_rejected"},
    )
    raise PortfolioError(
        PortfolioErrorCode.ADMISSION_REJECTED,
        result.reason,
        details={"guard": result.guard.value, **result.details},
    )
