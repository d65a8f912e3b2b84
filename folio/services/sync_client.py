"""Debounced background push of portfolio state to the sync endpoint."""
import asyncio
from typing import Any, Dict, Optional

import httpx

from folio.core.config import get_settings
from folio.core.logging import get_logger
from folio.db.models import PortfolioData

logger = get_logger(__name__)

TIMEOUT_SECONDS = 10


class DebouncedSyncClient:
    """Coalesce rapid state changes into one POST after a quiet period.

    Each ``schedule`` call restarts the timer; only the latest state is sent.
    Failures are logged and dropped: the next change triggers a fresh push,
    and the server's admission guards decide whether a push is safe.

    Note: Never raises from the background task.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        debounce_seconds: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        settings = get_settings()
        self.url = url or settings.sync_target_url
        self.debounce_seconds = (
            debounce_seconds if debounce_seconds is not None else settings.sync_debounce_seconds
        )
        self._client = client or httpx.AsyncClient(timeout=TIMEOUT_SECONDS)
        self._owns_client = client is None
        self._pending: Optional[Dict[str, Any]] = None
        self._timer: Optional[asyncio.Task] = None
        self.last_status: Optional[int] = None

    def schedule(self, state: PortfolioData) -> None:
        """Queue ``state`` for sending, cancelling any pending timer."""
        self._pending = state.to_doc()
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().create_task(self._fire_later())

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    async def flush(self) -> None:
        """Send the pending state now."""
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None
        await self._send()

    async def aclose(self) -> None:
        """Cancel any pending push and release the HTTP client. Pending state is dropped."""
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
        self._timer = None
        self._pending = None
        if self._owns_client:
            await self._client.aclose()

    async def _fire_later(self) -> None:
        await asyncio.sleep(self.debounce_seconds)
        await self._send()

    async def _send(self) -> None:
        state, self._pending = self._pending, None
        if state is None:
            return
        try:
            response = await self._client.post(self.url, json=state)
        except httpx.HTTPError as e:
            logger.warning("Portfolio sync failed: %s", e, extra={"error_class": type(e).__name__})
            return
        self.last_status = response.status_code
        if response.status_code >= 400:
            logger.warning(
                "Portfolio sync rejected (HTTP %d): %s",
                response.status_code, response.text[:500],
                extra={"event": "sync_rejected"},
            )
        else:
            logger.debug("Portfolio sync sent (%d positions)", len(state.get("positions", [])))
