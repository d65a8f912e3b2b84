"""Transactional JSON document store.

All access to the persisted portfolio document goes through
:class:`PortfolioStore`. A transaction is a plain function
``fn(current) -> (updated, result)``; the store runs transactions one at a
time in submission order, hands each one the fully committed state left by
its predecessor, and replaces the file atomically (temp file in the same
directory, then rename). ``updated=None`` means "read only, don't write".

If ``fn`` raises, nothing is written and the exception propagates to the
caller; the next queued transaction still runs.
"""
import asyncio
import itertools
import json
import os
import shutil
import tempfile
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar

from pydantic import ValidationError

from folio.core.config import get_settings
from folio.core.logging import get_logger
from folio.db.models import PortfolioData, empty_portfolio
from folio.db.paths import get_db_path

logger = get_logger(__name__)

T = TypeVar("T")
Transaction = Callable[[PortfolioData], Tuple[Optional[PortfolioData], T]]
Admission = Callable[[PortfolioData, PortfolioData], None]

CORRUPT_SUFFIX = ".corrupt"


def parse_document(raw: str) -> Tuple[PortfolioData, bool]:
    """Normalize a raw document into ``(data, corrupt)``.

    Wrapped ``{"state": ..., "version": N}`` and flat documents are both
    accepted. Empty text, ``{}`` and objects carrying neither a state nor
    positions/accounts yield the empty aggregate. Text that is not JSON, or
    whose state does not validate, also yields the empty aggregate but is
    flagged ``corrupt`` so the caller can keep a copy before overwriting.
    """
    text = raw.strip()
    if not text or text == "{}":
        return empty_portfolio(), False
    try:
        parsed = json.loads(text)
    except ValueError:
        return empty_portfolio(), True
    if not isinstance(parsed, dict):
        return empty_portfolio(), True

    state = parsed.get("state")
    if isinstance(state, dict):
        source = state
    elif "positions" in parsed or "accounts" in parsed:
        source = parsed
    else:
        return empty_portfolio(), False

    try:
        return PortfolioData.model_validate(_without_nulls(source)), False
    except ValidationError as e:
        logger.error("Portfolio document failed validation: %s", str(e)[:500])
        return empty_portfolio(), True


def _without_nulls(source: Dict[str, Any]) -> Dict[str, Any]:
    """Drop top-level nulls so field defaults apply (``lastRefresh`` stays nullable)."""
    return {k: v for k, v in source.items() if v is not None or k == "lastRefresh"}


class PortfolioStore:
    """Serialized read-modify-write access to one portfolio document."""

    def __init__(self, path: Optional[str] = None, version: Optional[int] = None):
        self.path = get_db_path(path)
        self.version = version if version is not None else get_settings().portfolio_store_version
        self._lock: Optional[asyncio.Lock] = None
        self._lock_loop: Optional[asyncio.AbstractEventLoop] = None
        self._seq = itertools.count(1)

    def _queue(self) -> asyncio.Lock:
        # asyncio.Lock wakes waiters in FIFO order. A lock is bound to the loop
        # that first waits on it, so a fresh one is made if the loop changed.
        loop = asyncio.get_running_loop()
        if self._lock is None or (self._lock_loop is not loop and not self._lock.locked()):
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    async def transact(self, fn: Transaction) -> T:
        """Run ``fn`` against the committed state and persist its result.

        Once submitted, the transaction runs to completion even if the caller
        is cancelled; the caller just stops waiting for the result.
        """
        seq = next(self._seq)
        task = asyncio.get_running_loop().create_task(self._run(fn, seq))
        # Failures are already logged in _run; mark them retrieved for abandoned callers
        task.add_done_callback(lambda t: t.cancelled() or t.exception())
        return await asyncio.shield(task)

    async def _run(self, fn: Transaction, seq: int) -> T:
        async with self._queue():
            started = time.monotonic()
            current, corrupt = await asyncio.to_thread(self._load)
            try:
                updated, result = fn(current)
            except Exception as e:
                logger.info(
                    "Store transaction %d aborted: %s", seq, e,
                    extra={"event": "store_tx_aborted", "seq": seq, "error_class": type(e).__name__},
                )
                raise
            if updated is not None:
                await asyncio.to_thread(self._write, updated, corrupt)
            logger.debug(
                "Store transaction %d committed (write=%s)", seq, updated is not None,
                extra={
                    "event": "store_tx_committed",
                    "seq": seq,
                    "elapsed_ms": round((time.monotonic() - started) * 1000, 2),
                },
            )
            return result

    async def read(self) -> PortfolioData:
        """Snapshot of the committed state, ordered after queued writes."""
        return await self.transact(lambda current: (None, current))

    async def replace(self, incoming: PortfolioData, admit: Optional[Admission] = None) -> None:
        """Replace the whole document, optionally gated by ``admit(existing, incoming)``.

        ``admit`` raises to reject; the document is then left untouched.
        """
        def _replace(current: PortfolioData):
            if admit is not None:
                admit(current, incoming)
            return incoming.model_copy(deep=True), None

        await self.transact(_replace)

    async def clear(self) -> None:
        await self.transact(lambda current: (empty_portfolio(), None))

    async def read_document(self) -> Dict[str, Any]:
        """The committed state in its wrapped on-disk shape."""
        data = await self.read()
        return self.wrap(data)

    def wrap(self, data: PortfolioData) -> Dict[str, Any]:
        return {"state": data.to_doc(), "version": self.version}

    # --- file I/O (runs in a worker thread) ---

    def _load(self) -> Tuple[PortfolioData, bool]:
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                raw = fh.read()
        except FileNotFoundError:
            return empty_portfolio(), False
        except UnicodeDecodeError:
            return empty_portfolio(), True
        return parse_document(raw)

    def _write(self, data: PortfolioData, preserve_existing: bool) -> None:
        directory = os.path.dirname(self.path)
        os.makedirs(directory, exist_ok=True)

        if preserve_existing and os.path.exists(self.path):
            backup = self.path + CORRUPT_SUFFIX
            shutil.copy2(self.path, backup)
            logger.warning("Unreadable portfolio document preserved at %s", backup)

        payload = json.dumps(self.wrap(data))
        fd, tmp_path = tempfile.mkstemp(prefix=".db-", suffix=".tmp", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise


_stores: Dict[str, PortfolioStore] = {}
_stores_lock = threading.Lock()


def get_store(path: Optional[str] = None) -> PortfolioStore:
    """One store per document path, so every writer shares one queue."""
    resolved = get_db_path(path)
    with _stores_lock:
        store = _stores.get(resolved)
        if store is None:
            store = PortfolioStore(resolved)
            _stores[resolved] = store
        return store


def reset_stores() -> None:
    """Forget cached stores. Used for test isolation."""
    with _stores_lock:
        _stores.clear()
