"""Trailing-edge debounced session writes."""
import asyncio
import logging
from typing import Any, Callable

from .config import config
from .errors import DeckError, PersistenceError, SessionNotFound
from .storage import SessionRepository

logger = logging.getLogger(__name__)

SnapshotProvider = Callable[[], dict[str, Any] | None]
SessionIdProvider = Callable[[], str | None]
ErrorFunc = Callable[[str, str], None]

class DebouncedSessionPersister:
    """Coalesces change notifications into one write per quiet period.

    notify_change() with no arguments reads the active session id and the
    snapshot when the timer fires. Passing session_id and snapshot captures
    them at schedule time instead; use that when a session switch may happen
    before the timer fires. Writes are always keyed by an explicit id.

    A snapshot provider returning None means there is nothing safe to save
    right now (e.g. a switch is mid-flight); the change stays dirty.
    """

    def __init__(self, repository: SessionRepository, snapshot_provider: SnapshotProvider,
                 active_session_provider: SessionIdProvider, delay: float | None = None,
                 on_error: ErrorFunc | None = None):
        self.repository = repository
        self.snapshot_provider = snapshot_provider
        self.active_session_provider = active_session_provider
        self.on_error = on_error
        self.last_error: str | None = None
        self._delay = delay
        self._timer: asyncio.Task | None = None
        self._timer_args: tuple[str | None, dict | None] = (None, None)
        self._change_seq = 0
        self._saved_seq = 0
        self._locks: dict[str, asyncio.Lock] = {}
        # Snapshots whose write failed for a session that is no longer live
        self._unsaved: dict[str, dict] = {}
        self.write_count = 0

    @property
    def delay(self) -> float:
        return config.debounce_seconds if self._delay is None else self._delay

    @property
    def dirty(self) -> bool:
        return self._change_seq != self._saved_seq

    @property
    def pending(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def mark_clean(self) -> None:
        self._saved_seq = self._change_seq
        self.last_error = None

    def mark_dirty(self) -> None:
        self._change_seq += 1

    @property
    def unsaved_sessions(self) -> tuple[str, ...]:
        return tuple(self._unsaved)

    def keep_unsaved(self, session_id: str, snapshot: dict) -> None:
        """Hold a snapshot that could not be written; the next flush retries it."""
        self._unsaved[session_id] = dict(snapshot)

    def forget_unsaved(self, session_id: str) -> None:
        self._unsaved.pop(session_id, None)

    async def retry_unsaved(self, skip: str | None = None) -> int:
        """Write held snapshots. Failures stay held; deleted sessions are dropped."""
        written = 0
        for session_id, snapshot in list(self._unsaved.items()):
            if session_id == skip:
                continue
            lock = self._locks.setdefault(session_id, asyncio.Lock())
            try:
                async with lock:
                    await self.repository.update_session(session_id, snapshot)
            except SessionNotFound:
                logger.warning(f"Dropping unsaved edits of deleted session {session_id}")
                self._unsaved.pop(session_id, None)
                continue
            except DeckError as e:
                logger.warning(f"Retry of unsaved edits for {session_id} failed: {e}")
                continue
            if self._unsaved.get(session_id) is snapshot:
                del self._unsaved[session_id]
            written += 1
            logger.info(f"Saved held edits of session {session_id}")
        return written

    def notify_change(self, session_id: str | None = None, snapshot: dict | None = None) -> None:
        self._change_seq += 1
        self.cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; change stays dirty until the next flush")
            return
        self._timer_args = (session_id, dict(snapshot) if snapshot is not None else None)
        self._timer = loop.create_task(self._debounced(*self._timer_args))

    def cancel(self) -> None:
        """Drop the scheduled flush, if any. A write already started still lands."""
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def _debounced(self, session_id: str | None, snapshot: dict | None) -> None:
        await asyncio.sleep(self.delay)
        # Past this point a new notify_change must not cancel the write.
        if self._timer is asyncio.current_task():
            self._timer = None
        try:
            await self._flush(session_id, snapshot)
        except DeckError as e:
            self.last_error = str(e)
            logger.error(f"Debounced save failed: {e}")
            if self.on_error:
                self.on_error("Could not save session", str(e))

    async def flush_now(self, session_id: str | None = None, snapshot: dict | None = None) -> bool:
        """Write immediately. Raises PersistenceError; dirty stays set on failure."""
        self.cancel()
        try:
            return await self._flush(session_id, snapshot)
        except DeckError as e:
            self.last_error = str(e)
            if isinstance(e, PersistenceError):
                raise
            raise PersistenceError(str(e)) from e

    async def drain(self) -> bool:
        """Run a scheduled flush right away instead of waiting for the timer."""
        if not self.pending:
            return False
        session_id, snapshot = self._timer_args
        return await self.flush_now(session_id, snapshot)

    async def _flush(self, session_id: str | None, snapshot: dict | None) -> bool:
        target = session_id if session_id is not None else self.active_session_provider()
        if self._unsaved:
            await self.retry_unsaved(skip=target)
        if target is None:
            logger.debug("No active session; nothing to save")
            return False
        seq = self._change_seq
        data = snapshot if snapshot is not None else self.snapshot_provider()
        if data is None:
            logger.debug(f"Session {target} is not ready; deferring save")
            return False

        lock = self._locks.setdefault(target, asyncio.Lock())
        async with lock:
            await self.repository.update_session(target, data)
        self.write_count += 1
        self._unsaved.pop(target, None)
        if seq == self._change_seq:
            self._saved_seq = seq
        self.last_error = None
        logger.debug(f"Saved session {target}")
        return True
