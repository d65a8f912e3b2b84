from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
import threading

from folio.core.ids import new_id
from folio.core.logging import get_logger

logger = get_logger(__name__)

PENDING = "PENDING"
CONFIRMED = "CONFIRMED"
CANCELLED = "CANCELLED"
EXPIRED = "EXPIRED"

# Settled rows are kept this long past expiry so late confirms still get a status
RETENTION = timedelta(hours=1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PreviewsRepo:
    """In-memory store of pending command previews.

    Previews live only as long as the process; a restart drops every pending
    confirmation, which the client handles by re-submitting the command.
    """

    def __init__(self):
        self._rows: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def create_pending(
        self,
        text: str,
        action: Dict[str, Any],
        preview: Dict[str, Any],
        ttl_seconds: int = 300,
    ) -> str:
        """Create a new pending preview."""
        preview_id = new_id("prev_")
        now = _utcnow()
        row = {
            "id": preview_id,
            "text": text,
            "action": action,
            "preview": preview,
            "status": PENDING,
            "created_at": now.isoformat(),
            "expires_at": (now + timedelta(seconds=ttl_seconds)).isoformat(),
            "confirmed_at": None,
        }
        self.purge_expired()
        with self._lock:
            self._rows[preview_id] = row
        logger.info("Created pending preview %s", preview_id, extra={"preview_id": preview_id})
        return preview_id

    def get_by_id(self, preview_id: str) -> Optional[Dict[str, Any]]:
        """Get preview by ID, expiring it first if its TTL has passed."""
        with self._lock:
            row = self._rows.get(preview_id)
            if row is None:
                return None
            self._expire_if_stale(row)
            return dict(row)

    def mark_confirmed(self, preview_id: str) -> bool:
        """Mark preview as CONFIRMED (single-use).

        Only a PENDING, unexpired preview transitions; concurrent confirms
        see False after the first one wins.
        """
        with self._lock:
            row = self._rows.get(preview_id)
            if row is None:
                return False
            self._expire_if_stale(row)
            if row["status"] != PENDING:
                return False
            row["status"] = CONFIRMED
            row["confirmed_at"] = _utcnow().isoformat()
            return True

    def mark_cancelled(self, preview_id: str) -> bool:
        """Mark preview as CANCELLED. Returns False unless it was pending."""
        with self._lock:
            row = self._rows.get(preview_id)
            if row is None:
                return False
            self._expire_if_stale(row)
            if row["status"] != PENDING:
                return False
            row["status"] = CANCELLED
            return True

    def purge_expired(self) -> int:
        """Drop rows past expiry plus retention. Returns the number removed."""
        cutoff = _utcnow() - RETENTION
        with self._lock:
            stale = [
                pid for pid, row in self._rows.items()
                if datetime.fromisoformat(row["expires_at"]) <= cutoff
            ]
            for pid in stale:
                del self._rows[pid]
        return len(stale)

    def _expire_if_stale(self, row: Dict[str, Any]) -> None:
        if row["status"] == PENDING and datetime.fromisoformat(row["expires_at"]) <= _utcnow():
            row["status"] = EXPIRED
            logger.info("Preview %s expired", row["id"], extra={"preview_id": row["id"]})
