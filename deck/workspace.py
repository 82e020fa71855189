"""Workspace: the session engine for one project directory, as the UI sees it."""
import asyncio
import logging
from types import MappingProxyType
from typing import Callable, Iterable, Mapping

from .catalog import CatalogLoader, CatalogService, CatalogSync
from .config import FILE_FINDER_MODES, config
from .errors import PersistenceError, ValidationError
from .fields import REGEX_FIELDS, SessionFields
from .fs import LocalCatalogService, normalize_path
from .jobs import BackgroundJobReconciler, LocalJobService
from .kv_cache import JsonKeyValueCache, KeyValueCache, task_backup_key
from .llm import parse_path_list
from .merge import IncludePolicy
from .models import BackgroundJob, FileEntry, JobKind, SessionState
from .persister import DebouncedSessionPersister
from .selection import SelectionStore
from .storage import ActiveSessionStore, SessionRepository
from .switcher import ActiveSessionHolder, SessionSwitchCoordinator, SwitchPhase

logger = logging.getLogger(__name__)

ErrorFunc = Callable[[str, str], None]
MAX_RECENT_ERRORS = 50

class Workspace:
    """Composes store, loader, persister, switcher and job reconciler.

    Consumers read the derived projections and call the intent methods;
    they never write the selection map or session fields directly. Every
    user mutation schedules a debounced save of the active session.
    """

    def __init__(
        self,
        directory: str,
        repository: SessionRepository | None = None,
        catalog_service: CatalogService | None = None,
        job_service: LocalJobService | None = None,
        kv_cache: KeyValueCache | None = None,
        active_session: ActiveSessionHolder | None = None,
        include_policy: IncludePolicy | None = None,
        on_error: ErrorFunc | None = None,
        on_regex_applied: Callable[[int], None] | None = None,
        debounce_seconds: float | None = None,
        min_load_interval: float | None = None,
    ):
        self.directory = normalize_path(directory)
        self.repository = repository or SessionRepository()
        self.job_service = job_service or LocalJobService()
        self.kv_cache = kv_cache if kv_cache is not None else JsonKeyValueCache()
        self._owns_active_store = active_session is None
        self.active_session = active_session or ActiveSessionStore(self.directory)
        self.on_error = on_error
        self.on_regex_applied = on_regex_applied
        self.errors: list[tuple[str, str]] = []

        self.store = SelectionStore()
        self.fields = SessionFields(self.kv_cache, on_regex_applied=self._regex_applied)
        self.loader = CatalogLoader(catalog_service or LocalCatalogService(), min_interval=min_load_interval)
        self.catalog = CatalogSync(self.loader, self.store, include_policy, on_error=self._report)
        self.persister = DebouncedSessionPersister(
            self.repository, self._live_snapshot, self._active_id,
            delay=debounce_seconds, on_error=self._report,
        )
        self.switcher = SessionSwitchCoordinator(
            self.repository, self.store, self.fields, self.catalog, self.persister,
            self.active_session, lambda: self.directory, on_error=self._report,
        )
        self.reconciler = BackgroundJobReconciler(
            self._active_id, self.store, self.fields,
            on_error=self._report, on_applied=self._job_applied,
            ready_provider=lambda: self.switcher.is_ready,
        )
        self.store.subscribe(self._on_interaction)

    # --- callbacks -------------------------------------------------------

    def _active_id(self) -> str | None:
        return self.active_session.get()

    def _live_snapshot(self) -> dict | None:
        return self.switcher.live_snapshot()

    def _report(self, title: str, message: str) -> None:
        self.errors.append((title, message))
        del self.errors[:-MAX_RECENT_ERRORS]
        if self.on_error:
            self.on_error(title, message)

    def _on_interaction(self, action: str) -> None:
        self.persister.notify_change()

    def _regex_applied(self, count: int) -> None:
        logger.info(f"Applied {count} generated regex patterns")
        if self.on_regex_applied:
            self.on_regex_applied(count)

    def _job_applied(self, job: BackgroundJob) -> None:
        self.persister.notify_change()

    # --- read models -----------------------------------------------------

    @property
    def included_paths(self) -> tuple[str, ...]:
        return self.store.derive().included_paths

    @property
    def excluded_paths(self) -> tuple[str, ...]:
        return self.store.derive().excluded_paths

    @property
    def files_map(self) -> Mapping[str, FileEntry]:
        return self.store.files_map

    @property
    def is_loading_files(self) -> bool:
        return self.catalog.is_loading(self.directory)

    @property
    def is_finding_files(self) -> bool:
        return self.reconciler.is_finding_files

    @property
    def is_dirty(self) -> bool:
        return self.persister.dirty

    @property
    def active_session_id(self) -> str | None:
        return self.active_session.get()

    @property
    def phase(self) -> SwitchPhase:
        return self.switcher.phase

    @property
    def field_errors(self) -> Mapping[str, str]:
        return MappingProxyType(dict(self.fields.regex.errors))

    # --- selection intents -----------------------------------------------

    def toggle_file_selection(self, path: str) -> bool:
        return self.store.toggle_include(path)

    def toggle_file_exclusion(self, path: str) -> bool:
        return self.store.toggle_exclude(path)

    def bulk_toggle(self, paths: Iterable[str], included: bool) -> int:
        return self.store.bulk_set(paths, included)

    def apply_selections_from_paths(self, paths: str | Iterable[str], mode: str = "replace") -> list[str]:
        """Select the pasted paths. Returns the ones not found in the project."""
        if mode not in FILE_FINDER_MODES:
            raise ValueError(f"Unknown selection mode: {mode}")
        if isinstance(paths, str):
            self.fields.pasted_paths = paths
            paths = parse_path_list(paths)
        else:
            paths = list(paths)
        if mode == "extend":
            unknown = self.store.include_paths(paths)
        else:
            unknown = self.store.replace_all(paths)
        if unknown:
            logger.warning(f"{len(unknown)} pasted paths are not in the project: {unknown[:5]}")
        return unknown

    # --- field intents ---------------------------------------------------

    def _set(self, name: str, value) -> None:
        self.fields.set_field(name, value)
        self.persister.notify_change()

    def set_task_description(self, text: str) -> None:
        self._set("task_description", text)

    def set_task_selection(self, start: int, end: int) -> None:
        """Remember the highlighted range that text improvement rewrites."""
        self.fields.selection_range = (min(start, end), max(start, end))

    def set_search_term(self, term: str) -> None:
        self._set("search_term", term)

    def set_pasted_paths(self, text: str) -> None:
        self._set("pasted_paths", text)

    def set_search_selected_files_only(self, enabled: bool) -> None:
        self._set("search_selected_files_only", enabled)

    def set_diff_temperature(self, temperature: float) -> None:
        self._set("diff_temperature", temperature)

    def set_regex(self, name: str, pattern: str) -> str | None:
        """Store a regex field; returns its validation error, if any."""
        self._set(name, pattern)
        return self.fields.regex.errors.get(name)

    def toggle_regex_active(self) -> bool:
        self._set("is_regex_active", not self.fields.regex.is_regex_active)
        return self.fields.regex.is_regex_active

    def clear_regex_patterns(self) -> None:
        self.fields.regex.clear_patterns()
        self.persister.notify_change()

    # --- session intents -------------------------------------------------

    async def open(self) -> SwitchPhase:
        """Restore the remembered session, or just list the files if there is none."""
        session_id = self.active_session.get()
        if session_id:
            return await self.switch_session(session_id)
        await self.catalog.load_files(self.directory)
        return self.phase

    async def switch_session(self, session_id: str | None) -> SwitchPhase:
        self.reconciler.clear_tracking()
        return await self.switcher.switch(session_id)

    async def reload_session(self) -> SwitchPhase:
        """Re-read the active session from storage, saving unsaved edits first."""
        session_id = self.active_session.get()
        if session_id is None:
            return self.phase
        if self.switcher.is_ready and (self.persister.dirty or self.persister.pending):
            await self.flush_now()
        return await self.switcher.switch(session_id, force_reload=True)

    async def flush_now(self) -> bool:
        """Save the active session right away. Raises PersistenceError."""
        if not self.switcher.is_ready:
            return False
        return await self.persister.flush_now(self.active_session.get(), self.switcher.capture_snapshot())

    async def refresh_files(self, preserve_selection: bool = True) -> bool:
        return await self.catalog.refresh_files(self.directory, preserve_selection=preserve_selection)

    async def load_files(self) -> bool:
        """Load the catalog unless it is still fresh."""
        return await self.catalog.load_files(self.directory)

    async def set_project_directory(self, directory: str) -> SwitchPhase:
        """Move to another project; the previous session is saved, not forgotten."""
        new_dir = normalize_path(directory)
        if new_dir == self.directory:
            return self.phase
        if self.switcher.is_ready and (self.persister.dirty or self.persister.pending):
            try:
                await self.flush_now()
            except PersistenceError as e:
                logger.error(f"Could not save session before changing directory: {e}")
                self._report("Could not save session", str(e))
        self.persister.cancel()
        self.switcher.detach()
        self.reconciler.clear_tracking()
        self.directory = new_dir
        if self._owns_active_store:
            self.active_session = ActiveSessionStore(self.directory)
            self.switcher.active_session = self.active_session
        logger.info(f"Project directory is now {self.directory}")
        return await self.open()

    async def create_session(self, name: str, task_description: str | None = None,
                             from_current: bool = True) -> str:
        """Save a new session (seeded from the live state) and make it active."""
        fields = self.switcher.capture_snapshot() if from_current else {}
        fields["name"] = name
        fields["project_directory"] = self.directory
        if task_description is not None:
            fields["task_description"] = task_description
        session_id = await self.repository.create_session(fields)
        await self.switch_session(session_id)
        return session_id

    async def delete_session(self, session_id: str) -> None:
        if session_id == self.active_session.get():
            # Unsaved edits of a session being deleted are dropped, not written.
            self.persister.cancel()
            self.persister.mark_clean()
            await self.switch_session(None)
        self.persister.forget_unsaved(session_id)
        await self.repository.delete_session(session_id)
        self.kv_cache.delete(task_backup_key(session_id))

    async def rename_session(self, session_id: str, name: str) -> SessionState:
        return await self.repository.rename_session(session_id, name)

    async def list_sessions(self) -> list[SessionState]:
        return await self.repository.list_sessions(self.directory)

    async def close(self) -> None:
        """Write pending edits and stop in-flight work."""
        self.loader.cancel()
        if self.switcher.is_ready and (self.persister.dirty or self.persister.pending):
            await self.flush_now()
        self.persister.cancel()
        if self.persister.unsaved_sessions:
            await self.persister.retry_unsaved()

    # --- background jobs -------------------------------------------------

    def _require_session(self) -> str:
        session_id = self.active_session.get()
        if session_id is None or not self.switcher.is_ready:
            raise ValidationError("session", "No active session")
        return session_id

    def find_relevant_files(self, mode: str | None = None) -> str:
        session_id = self._require_session()
        task = self.fields.task_description.strip()
        if not task:
            raise ValidationError("task_description", "Describe the task first")
        mode = mode or config.file_finder_mode
        if mode not in FILE_FINDER_MODES:
            raise ValueError(f"Unknown file finder mode: {mode}")
        job_id = self.job_service.submit_job(
            JobKind.FILE_FINDER, {"task": task, "paths": list(self.store.files_map)},
            session_id, metadata={"mode": mode},
        )
        self.reconciler.track_finding(job_id)
        return job_id

    def generate_regex(self) -> str:
        session_id = self._require_session()
        task = self.fields.task_description.strip()
        if not task:
            raise ValidationError("task_description", "Describe the task first")
        return self.job_service.submit_job(JobKind.REGEX_GENERATION, {"task": task}, session_id)

    def improve_text(self, target_field: str = "task_description") -> str:
        session_id = self._require_session()
        if target_field not in ("task_description", "pasted_paths", "search_term") + REGEX_FIELDS:
            raise ValueError(f"Cannot improve field: {target_field}")
        metadata = {"target_field": target_field}
        if target_field == "task_description":
            text = self.fields.task_description
            if self.fields.selection_range:
                start, end = self.fields.selection_range
                text = text[start:end]
                metadata["selection"] = [start, end]
        elif target_field in REGEX_FIELDS:
            text = getattr(self.fields.regex, target_field)
        else:
            text = getattr(self.fields, target_field)
        if not text.strip():
            raise ValidationError(target_field, "Nothing to improve")
        return self.job_service.submit_job(
            JobKind.TEXT_IMPROVEMENT,
            {"text": text, "temperature": self.fields.diff_temperature},
            session_id, metadata=metadata,
        )

    def cancel_job(self, job_id: str) -> bool:
        return self.job_service.cancel_job(job_id)

    def poll_jobs(self) -> list[str]:
        return self.reconciler.observe(self.job_service.list_jobs())

    def has_running_jobs(self) -> bool:
        return any(not j.status.is_terminal for j in self.job_service.list_jobs())

    async def run_job_poller(self, stop_event: asyncio.Event | None = None,
                             until_idle: bool = False, interval: float | None = None) -> None:
        """Poll the job service until stopped (or until no job is running)."""
        delay = config.job_poll_interval if interval is None else interval
        while True:
            self.poll_jobs()
            if stop_event is not None and stop_event.is_set():
                return
            if until_idle and not self.has_running_jobs():
                self.poll_jobs()
                return
            await asyncio.sleep(delay)
