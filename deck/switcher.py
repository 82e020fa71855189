"""Session switch state machine."""
import logging
import threading
from enum import Enum
from typing import Any, Callable, Protocol

from .catalog import CatalogSync, ErrorFunc
from .errors import AbortedOperation, DeckError, SessionNotFound, ensure_not_cancelled
from .fields import SessionFields
from .persister import DebouncedSessionPersister
from .selection import SelectionStore
from .storage import SessionRepository

logger = logging.getLogger(__name__)

class ActiveSessionHolder(Protocol):
    def get(self) -> str | None: ...
    def set(self, session_id: str | None) -> None: ...

class SwitchPhase(Enum):
    """Where the coordinator is in a switch.

    IDLE: no session applied (start state, null target, or failed switch).
    SAVING_OUTGOING: writing the outgoing session's last snapshot.
    RESETTING: clearing store and fields to empty defaults.
    LOADING_INCOMING: fetching the incoming session record.
    APPLYING_INCOMING: fields applied, waiting for the catalog to land.
    READY: incoming session fully applied.
    """
    IDLE = "idle"
    SAVING_OUTGOING = "saving_outgoing"
    RESETTING = "resetting"
    LOADING_INCOMING = "loading_incoming"
    APPLYING_INCOMING = "applying_incoming"
    READY = "ready"

class SessionSwitchCoordinator:
    """Runs one switch at a time; a newer switch abandons the older one.

    Each switch owns a cancel event. Starting a new switch sets the previous
    event, and every step after a suspension point checks its own event
    before touching shared state, so an abandoned switch can never land.
    """

    def __init__(self, repository: SessionRepository, store: SelectionStore, fields: SessionFields,
                 catalog: CatalogSync, persister: DebouncedSessionPersister,
                 active_session: ActiveSessionHolder, directory_provider: Callable[[], str],
                 on_error: ErrorFunc | None = None):
        self.repository = repository
        self.store = store
        self.fields = fields
        self.catalog = catalog
        self.persister = persister
        self.active_session = active_session
        self.directory_provider = directory_provider
        self.on_error = on_error
        self.phase = SwitchPhase.IDLE
        self.initialized_id: str | None = None
        self.target_id: str | None = None
        self._token: threading.Event | None = None

    @property
    def is_switching(self) -> bool:
        return self._token is not None

    @property
    def is_ready(self) -> bool:
        return (self.phase is SwitchPhase.READY and self._token is None
                and self.initialized_id is not None
                and self.initialized_id == self.active_session.get())

    def capture_snapshot(self) -> dict[str, Any]:
        """Full field snapshot of the live state, selection included.

        While the declared selection is still waiting for a catalog, the
        store holds nothing meaningful and the declared lists are saved
        back unchanged.
        """
        data = self.fields.snapshot()
        declared = self.catalog.deferred_selection
        if declared is not None:
            data["included_files"] = list(declared.included)
            data["force_excluded_files"] = list(declared.excluded)
            data["has_saved_selection"] = declared.exclusive
            return data
        projection = self.store.derive()
        data["included_files"] = list(projection.included_paths)
        data["force_excluded_files"] = list(projection.excluded_paths)
        data["has_saved_selection"] = not self.store.is_empty()
        return data

    def live_snapshot(self) -> dict[str, Any] | None:
        """Snapshot for debounced saves; None while no session is fully applied."""
        return self.capture_snapshot() if self.is_ready else None

    async def switch(self, new_id: str | None, force_reload: bool = False) -> SwitchPhase:
        if new_id is not None and new_id == self.initialized_id and self.is_ready:
            if not force_reload:
                logger.debug(f"Session {new_id} already active")
                return self.phase
            logger.info(f"Reloading session {new_id}")
            return await self._run(new_id, save_outgoing=False)
        return await self._run(new_id, save_outgoing=True)

    async def _run(self, new_id: str | None, save_outgoing: bool) -> SwitchPhase:
        if self._token is not None:
            self._token.set()
            logger.info(f"Abandoning switch to {self.target_id} for {new_id}")
        token = threading.Event()
        self._token = token
        self.target_id = new_id

        outgoing_id = self.initialized_id
        should_save = (save_outgoing and outgoing_id is not None
                       and (self.persister.dirty or self.persister.pending))
        snapshot = self.capture_snapshot() if should_save else None

        self.catalog.loader.cancel()
        self.persister.cancel()
        self.initialized_id = None
        # Jobs for the outgoing session are rejected from here on.
        self.active_session.set(new_id)

        try:
            if should_save and snapshot is not None:
                self.phase = SwitchPhase.SAVING_OUTGOING
                await self._save_outgoing(outgoing_id, snapshot)
                ensure_not_cancelled(token, "session switch")

            self.phase = SwitchPhase.RESETTING
            self._reset(new_id)

            if new_id is None:
                self.phase = SwitchPhase.IDLE
                logger.info("No active session")
                return self.phase

            self.phase = SwitchPhase.LOADING_INCOMING
            if new_id in self.persister.unsaved_sessions:
                await self.persister.retry_unsaved()
                ensure_not_cancelled(token, "session switch")
            try:
                session = await self.repository.get_session(new_id)
            except SessionNotFound:
                ensure_not_cancelled(token, "session switch")
                logger.warning(f"Session {new_id} not found")
                self._fall_back_to_idle()
                if self.on_error:
                    self.on_error("Session not found", f"Session {new_id} no longer exists")
                return self.phase
            except DeckError as e:
                ensure_not_cancelled(token, "session switch")
                logger.error(f"Could not load session {new_id}: {e}")
                self._fall_back_to_idle()
                if self.on_error:
                    self.on_error("Could not load session", str(e))
                return self.phase
            ensure_not_cancelled(token, "session switch")

            self.phase = SwitchPhase.APPLYING_INCOMING
            restored = self.fields.apply_session(session)
            self.catalog.defer_selections(session.included_files, session.force_excluded_files,
                                         exclusive=session.has_saved_selection)
            await self.catalog.load_files(self.directory_provider(), force=True,
                                          preserve_selection=False, cancel_event=token)
            ensure_not_cancelled(token, "session switch")

            self.persister.mark_clean()
            if restored:
                self.persister.mark_dirty()
            self.initialized_id = new_id
            self.phase = SwitchPhase.READY
            logger.info(f"Session {new_id} ({session.name!r}) ready")
            return self.phase
        except AbortedOperation:
            logger.debug(f"Switch to {new_id} abandoned")
            return self.phase
        finally:
            if self._token is token:
                self._token = None

    async def _save_outgoing(self, session_id: str, snapshot: dict) -> None:
        try:
            await self.persister.flush_now(session_id, snapshot)
            logger.info(f"Saved outgoing session {session_id}")
        except DeckError as e:
            logger.error(f"Could not save outgoing session {session_id}, holding edits for retry: {e}")
            self.persister.keep_unsaved(session_id, snapshot)
            if self.on_error:
                self.on_error("Could not save session", str(e))

    def detach(self) -> None:
        """Drop the applied session without saving or forgetting it."""
        if self._token is not None:
            self._token.set()
            self._token = None
        self.catalog.loader.cancel()
        self.persister.cancel()
        self.initialized_id = None
        self.target_id = None
        self._reset(None)
        self.persister.mark_clean()
        self.phase = SwitchPhase.IDLE

    def _reset(self, new_id: str | None) -> None:
        self.store.clear()
        self.fields.reset(new_id)
        self.catalog.clear_deferred()
        self.catalog.loader.forget()

    def _fall_back_to_idle(self) -> None:
        self._reset(None)
        self.active_session.set(None)
        self.phase = SwitchPhase.IDLE
