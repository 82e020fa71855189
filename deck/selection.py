"""Live file selection state."""
import logging
from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import Callable, Iterable, Mapping

from .fs import normalize_relative_path
from .models import FileEntry, FilesMap

logger = logging.getLogger(__name__)

InteractionListener = Callable[[str], None]

@dataclass(frozen=True)
class SelectionProjection:
    included_paths: tuple[str, ...]
    excluded_paths: tuple[str, ...]

class SelectionStore:
    """Owns the path -> FileEntry map.

    User mutations emit an interaction signal synchronously to every
    subscriber, before the mutating call returns. Catalog replacement via
    set_files_map is not a user interaction and stays silent unless asked.
    """

    def __init__(self):
        self._files: FilesMap = {}
        self._listeners: list[InteractionListener] = []

    def subscribe(self, listener: InteractionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)
        return _unsubscribe

    def _emit(self, action: str) -> None:
        for listener in list(self._listeners):
            listener(action)

    @property
    def files_map(self) -> Mapping[str, FileEntry]:
        return MappingProxyType(self._files)

    def snapshot_map(self) -> FilesMap:
        """Independent copy for the merge engine."""
        return {p: replace(e) for p, e in self._files.items()}

    def __len__(self) -> int:
        return len(self._files)

    def __contains__(self, path: str) -> bool:
        return path in self._files

    def is_empty(self) -> bool:
        return not self._files

    def set_files_map(self, files_map: FilesMap, notify: bool = False) -> None:
        self._files = dict(files_map)
        if notify:
            self._emit("set_files_map")

    def clear(self) -> None:
        self._files = {}

    def toggle_include(self, path: str) -> bool:
        """Flip inclusion. A force-excluded path becomes included."""
        entry = self._files.get(path)
        if entry is None:
            logger.debug(f"toggle_include: unknown path {path}")
            return False
        if entry.force_excluded:
            self._files[path] = replace(entry, included=True, force_excluded=False)
        else:
            self._files[path] = replace(entry, included=not entry.included)
        self._emit("toggle_include")
        return True

    def toggle_exclude(self, path: str) -> bool:
        """Flip forced exclusion. Excluding always clears inclusion."""
        entry = self._files.get(path)
        if entry is None:
            logger.debug(f"toggle_exclude: unknown path {path}")
            return False
        if entry.force_excluded:
            self._files[path] = replace(entry, force_excluded=False)
        else:
            self._files[path] = replace(entry, included=False, force_excluded=True)
        self._emit("toggle_exclude")
        return True

    def bulk_set(self, paths: Iterable[str], included: bool) -> int:
        changed = 0
        for path in paths:
            entry = self._files.get(path)
            if entry is None:
                continue
            if included:
                if entry.included and not entry.force_excluded:
                    continue
                self._files[path] = replace(entry, included=True, force_excluded=False)
            else:
                if not entry.included:
                    continue
                self._files[path] = replace(entry, included=False)
            changed += 1
        if changed:
            self._emit("bulk_set")
        return changed

    def replace_all(self, paths: Iterable[str]) -> list[str]:
        """Clear every inclusion, then include exactly these paths.

        Returns the requested paths that are not in the catalog.
        """
        wanted = {normalize_relative_path(p) for p in paths if p and p.strip()}
        for path, entry in self._files.items():
            if path in wanted:
                self._files[path] = replace(entry, included=True, force_excluded=False)
            elif entry.included:
                self._files[path] = replace(entry, included=False)
        self._emit("replace_all")
        return sorted(p for p in wanted if p not in self._files)

    def include_paths(self, paths: Iterable[str]) -> list[str]:
        """Additive variant of replace_all: include these, leave the rest alone."""
        wanted = {normalize_relative_path(p) for p in paths if p and p.strip()}
        for path in wanted:
            entry = self._files.get(path)
            if entry is not None:
                self._files[path] = replace(entry, included=True, force_excluded=False)
        self._emit("include_paths")
        return sorted(p for p in wanted if p not in self._files)

    def derive(self) -> SelectionProjection:
        included = sorted(p for p, e in self._files.items() if e.included and not e.force_excluded)
        excluded = sorted(p for p, e in self._files.items() if e.force_excluded)
        return SelectionProjection(included_paths=tuple(included), excluded_paths=tuple(excluded))
