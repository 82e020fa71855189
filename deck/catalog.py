"""Cancellable catalog loading and merging into the live selection."""
import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Protocol

from .config import config
from .errors import AbortedOperation, LoadError, ensure_not_cancelled
from .fs import normalize_path
from .merge import IncludePolicy, apply_declared_selections, build_files_map, merge_catalogs
from .models import CatalogListing
from .selection import SelectionStore

logger = logging.getLogger(__name__)

ErrorFunc = Callable[[str, str], None]

class CatalogService(Protocol):
    async def list_files(self, directory: str) -> CatalogListing: ...

@dataclass
class PendingOperation:
    """The single in-flight load for one directory."""
    directory: str
    cancel_event: threading.Event = field(default_factory=threading.Event)
    started_at: float = 0.0

@dataclass(frozen=True)
class DeclaredSelection:
    """A session's saved selection, waiting for its catalog."""
    included: tuple[str, ...] = ()
    excluded: tuple[str, ...] = ()
    exclusive: bool = False

class CatalogLoader:
    """Fetches catalogs with at most one live load per directory.

    A new load for a directory cancels its predecessor first. A load inside
    the freshness window of the last successful load for the same directory
    is skipped unless forced. Cancelled and skipped loads return None.
    """

    def __init__(self, catalog_service: CatalogService, min_interval: float | None = None,
                 clock: Callable[[], float] = time.monotonic):
        self._service = catalog_service
        self._min_interval = min_interval
        self._clock = clock
        self._pending: dict[str, PendingOperation] = {}
        self._last_loaded: dict[str, float] = {}

    @property
    def min_interval(self) -> float:
        return config.min_load_interval if self._min_interval is None else self._min_interval

    def is_loading(self, directory: str | None = None) -> bool:
        if directory is None:
            return bool(self._pending)
        return normalize_path(directory) in self._pending

    def is_fresh(self, directory: str) -> bool:
        last = self._last_loaded.get(normalize_path(directory))
        if last is None:
            return False
        return (self._clock() - last) < self.min_interval

    def cancel(self, directory: str | None = None) -> None:
        """Cancel the in-flight load for directory, or every load."""
        keys = list(self._pending) if directory is None else [normalize_path(directory)]
        for key in keys:
            op = self._pending.pop(key, None)
            if op is not None:
                op.cancel_event.set()
                logger.debug(f"Cancelled catalog load for {key}")

    def forget(self, directory: str | None = None) -> None:
        """Drop freshness records so the next load is not skipped."""
        if directory is None:
            self._last_loaded.clear()
        else:
            self._last_loaded.pop(normalize_path(directory), None)

    async def load(self, directory: str, force: bool = False,
                   cancel_event: threading.Event | None = None) -> CatalogListing | None:
        key = normalize_path(directory)
        if not force and self.is_fresh(key):
            logger.debug(f"Catalog for {key} is fresh, skipping reload")
            return None

        previous = self._pending.get(key)
        if previous is not None:
            previous.cancel_event.set()
            logger.debug(f"Superseding in-flight catalog load for {key}")

        op = PendingOperation(directory=key, started_at=self._clock())
        self._pending[key] = op
        try:
            ensure_not_cancelled(cancel_event, "catalog load")
            listing = await self._service.list_files(key)
            ensure_not_cancelled(op.cancel_event, "catalog load")
            ensure_not_cancelled(cancel_event, "catalog load")
        except AbortedOperation:
            logger.debug(f"Catalog load for {key} aborted")
            return None
        except (LoadError, asyncio.CancelledError):
            raise
        except Exception as e:
            raise LoadError(f"Failed to list files in {key}: {e}") from e
        finally:
            if self._pending.get(key) is op:
                del self._pending[key]

        self._last_loaded[key] = self._clock()
        if listing.is_empty:
            logger.warning(f"Catalog for {key} returned no files")
        else:
            logger.info(f"Loaded catalog for {key}: {len(listing.paths)} files")
        return listing

class CatalogSync:
    """Feeds loader output through the merge engine into the SelectionStore.

    Declared session selections can be deferred until the next successful
    load so they are never applied against an empty map.
    """

    def __init__(self, loader: CatalogLoader, store: SelectionStore,
                 include_policy: IncludePolicy | None = None, on_error: ErrorFunc | None = None):
        self.loader = loader
        self.store = store
        self.include_policy = include_policy
        self.on_error = on_error
        self.last_error: str | None = None
        self.last_load_empty = False
        self._deferred: DeclaredSelection | None = None

    def is_loading(self, directory: str | None = None) -> bool:
        return self.loader.is_loading(directory)

    @property
    def has_deferred_selections(self) -> bool:
        return self._deferred is not None

    @property
    def deferred_selection(self) -> DeclaredSelection | None:
        return self._deferred

    def defer_selections(self, included: Iterable[str], excluded: Iterable[str], exclusive: bool = False) -> None:
        self._deferred = DeclaredSelection(tuple(included), tuple(excluded), exclusive)

    def clear_deferred(self) -> None:
        self._deferred = None

    async def load_files(self, directory: str, force: bool = False, preserve_selection: bool = True,
                         cancel_event: threading.Event | None = None) -> bool:
        """Load, merge and apply. Returns True when a new map landed."""
        try:
            listing = await self.loader.load(directory, force=force or self.store.is_empty(),
                                             cancel_event=cancel_event)
        except LoadError as e:
            self.last_error = str(e)
            logger.error(f"Catalog load failed: {e}")
            if self.on_error:
                self.on_error("Could not load project files", str(e))
            return False

        if listing is None:
            return False

        self.last_error = None
        self.last_load_empty = listing.is_empty
        if listing.is_empty and self.on_error:
            self.on_error("No files found", f"{listing.directory} contains no selectable files")

        base = self.store.snapshot_map() if preserve_selection else {}
        if base:
            new_map = merge_catalogs(base, listing, self.include_policy)
        else:
            new_map = build_files_map(listing, self.include_policy)

        if self._deferred is not None:
            declared = self._deferred
            new_map = apply_declared_selections(new_map, declared.included, declared.excluded,
                                                exclusive=declared.exclusive)
            self._deferred = None
            logger.debug(f"Applied deferred selections: {len(declared.included)} included, "
                         f"{len(declared.excluded)} excluded")

        self.store.set_files_map(new_map)
        return True

    async def refresh_files(self, directory: str, preserve_selection: bool = True,
                            cancel_event: threading.Event | None = None) -> bool:
        """Reload bypassing the freshness window."""
        return await self.load_files(directory, force=True, preserve_selection=preserve_selection,
                                     cancel_event=cancel_event)
