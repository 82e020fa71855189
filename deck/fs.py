"""File system catalog listing and per-directory data helpers."""
import asyncio
import logging
import os
from pathlib import Path
from typing import Any

from .config import config, load_json_file, save_json_file, DEFAULT_HIDDEN
from .errors import LoadError
from .models import CatalogListing

logger = logging.getLogger(__name__)

def normalize_path(path: Path | str) -> str:
    """Canonical form used as a directory key: absolute, resolved, forward slashes."""
    try:
        p = Path(path).expanduser().resolve()
    except (OSError, RuntimeError):
        p = Path(path).expanduser().absolute()
    return str(p).replace("\\", "/")

def normalize_relative_path(path: str) -> str:
    """Catalog-relative form: forward slashes, no leading './' or '/'."""
    p = path.strip().replace("\\", "/")
    while p.startswith("./"):
        p = p[2:]
    return p.lstrip("/")

def is_hidden_name(name: str) -> bool:
    return name.startswith('.') or name in DEFAULT_HIDDEN

def scan_directory(path: Path, include_hidden: bool = False) -> tuple[list[str], list[str]]:
    files = []
    dirs = []
    try:
        with os.scandir(str(path)) as it:
            for entry in it:
                if not include_hidden and is_hidden_name(entry.name):
                    continue
                if entry.is_file():
                    files.append(entry.name)
                elif entry.is_dir():
                    dirs.append(entry.name)
    except OSError as e:
        logger.debug(f"Could not scan {path}: {e}")

    files.sort(key=lambda s: s.lower())
    dirs.sort(key=lambda s: s.lower())
    return files, dirs

def walk_catalog(root: Path, include_hidden: bool = False, max_files: int | None = None) -> CatalogListing:
    """Breadth-first walk of root returning every file as a root-relative path."""
    if not root.exists() or not root.is_dir():
        raise LoadError(f"Directory not found: {root}")
    if not os.access(root, os.R_OK):
        raise LoadError(f"Directory not readable: {root}")

    paths: list[str] = []
    sizes: list[int] = []
    pending = [root]
    while pending:
        folder = pending.pop(0)
        files, dirs = scan_directory(folder, include_hidden=include_hidden)
        for name in files:
            full_path = folder / name
            try:
                size = full_path.stat().st_size
            except OSError:
                continue
            paths.append(full_path.relative_to(root).as_posix())
            sizes.append(size)
            if max_files and len(paths) >= max_files:
                logger.warning(f"Catalog for {root} truncated at {max_files} files")
                return _sorted_listing(root, paths, sizes)
        pending.extend(folder / d for d in dirs)
    return _sorted_listing(root, paths, sizes)

def _sorted_listing(root: Path, paths: list[str], sizes: list[int]) -> CatalogListing:
    order = sorted(range(len(paths)), key=lambda i: paths[i].lower())
    return CatalogListing(
        directory=normalize_path(root),
        paths=tuple(paths[i] for i in order),
        sizes=tuple(sizes[i] for i in order),
    )

class LocalCatalogService:
    """Catalog service backed by the local file system."""

    def __init__(self, include_hidden: bool | None = None, max_files: int | None = None):
        self.include_hidden = config.include_hidden if include_hidden is None else include_hidden
        self.max_files = config.max_catalog_files if max_files is None else max_files

    async def list_files(self, directory: str) -> CatalogListing:
        root = Path(directory)
        return await asyncio.to_thread(walk_catalog, root, self.include_hidden, self.max_files)

def load_dir_data(filepath: Path | str, directory: str) -> Any:
    data = load_json_file(filepath, {})
    if isinstance(data, dict):
        return data.get(normalize_path(directory))
    return None

def save_dir_data(filepath: Path | str, directory: str, value: Any, indent: int = 2) -> bool:
    data = load_json_file(filepath, {})
    if not isinstance(data, dict):
        data = {}
    key = normalize_path(directory)
    if value is None:
        data.pop(key, None)
    else:
        data[key] = value
    return save_json_file(filepath, data, indent)
