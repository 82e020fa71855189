"""Pure functions combining catalogs with selection flags.

Nothing here owns state: every function takes a map and returns a new one,
leaving its inputs untouched.
"""
import fnmatch
from dataclasses import replace
from typing import Callable, Iterable

from .config import config
from .models import CatalogListing, FileEntry, FilesMap

IncludePolicy = Callable[[str], bool]

def pattern_policy(patterns: Iterable[str]) -> IncludePolicy:
    """Build a default-inclusion policy that rejects paths matching any glob."""
    lowered = [p.lower() for p in patterns]

    def _include(path: str) -> bool:
        p = path.lower()
        return not any(fnmatch.fnmatchcase(p, pat) for pat in lowered)

    return _include

def should_include_by_default(path: str) -> bool:
    """Default policy driven by the configured exclude patterns."""
    return pattern_policy(config.exclude_patterns)(path)

def build_files_map(listing: CatalogListing, include_policy: IncludePolicy | None = None) -> FilesMap:
    """Fresh map for a catalog with no prior selection."""
    policy = include_policy or should_include_by_default
    files_map: FilesMap = {}
    for i, path in enumerate(listing.paths):
        files_map[path] = FileEntry(
            path=path,
            size=listing.size_of(i),
            included=policy(path),
            force_excluded=False,
        )
    return files_map

def merge_catalogs(old_map: FilesMap, listing: CatalogListing, include_policy: IncludePolicy | None = None) -> FilesMap:
    """Carry selection flags from old_map onto a freshly listed catalog.

    Paths in both keep their old flags (sizes come from the new listing),
    new-only paths get the default-inclusion policy, and old-only paths are
    dropped because they no longer exist on disk.
    """
    policy = include_policy or should_include_by_default
    merged: FilesMap = {}
    for i, path in enumerate(listing.paths):
        size = listing.size_of(i)
        previous = old_map.get(path)
        if previous is not None:
            merged[path] = FileEntry(
                path=path,
                size=size if size is not None else previous.size,
                included=previous.included and not previous.force_excluded,
                force_excluded=previous.force_excluded,
            )
        else:
            merged[path] = FileEntry(path=path, size=size, included=policy(path), force_excluded=False)
    return merged

def apply_declared_selections(files_map: FilesMap, included_paths: Iterable[str], excluded_paths: Iterable[str],
                              exclusive: bool = False) -> FilesMap:
    """Force the declared paths into the given state; exclusion wins ties.

    Entries not named in either set are carried over untouched, unless
    exclusive is set: then the declared sets are the whole selection and
    every other entry ends up not included. Declared paths the map does
    not know about are ignored. Applying the same sets twice yields the
    same map.
    """
    included = set(included_paths)
    excluded = set(excluded_paths)
    result: FilesMap = {}
    for path, entry in files_map.items():
        if path in excluded:
            result[path] = replace(entry, included=False, force_excluded=True)
        elif path in included:
            result[path] = replace(entry, included=True, force_excluded=False)
        elif exclusive:
            result[path] = replace(entry, included=False, force_excluded=False)
        else:
            result[path] = replace(entry)
    return result

def unknown_paths(files_map: FilesMap, paths: Iterable[str]) -> list[str]:
    """Declared paths that have no catalog entry."""
    return sorted({p for p in paths if p not in files_map})
