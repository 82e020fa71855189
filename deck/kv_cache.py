"""Best-effort key-value cache used as a crash-recovery backup."""
import logging
import threading
from pathlib import Path
from typing import Protocol

from .config import APP_DATA_DIR, load_json_file, save_json_file

logger = logging.getLogger(__name__)

KV_CACHE_PATH = APP_DATA_DIR / "kv_cache.json"
NO_SESSION_KEY = "__no_session__"

def task_backup_key(session_id: str | None) -> str:
    """The one place the task-description backup key is built."""
    return f"task-description-backup:{session_id or NO_SESSION_KEY}"

class KeyValueCache(Protocol):
    def get(self, key: str) -> str | None: ...
    def set(self, key: str, value: str) -> None: ...
    def delete(self, key: str) -> None: ...

class MemoryKeyValueCache:
    def __init__(self):
        self._data: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

class JsonKeyValueCache:
    """Single JSON file of string values. Failures are logged, never raised."""

    def __init__(self, path: Path | str | None = None):
        self.path = Path(path) if path is not None else KV_CACHE_PATH
        self._lock = threading.Lock()
        data = load_json_file(self.path, {})
        self._data: dict[str, str] = data if isinstance(data, dict) else {}

    def get(self, key: str) -> str | None:
        value = self._data.get(key)
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> None:
        with self._lock:
            if self._data.get(key) == value:
                return
            self._data[key] = value
            if not save_json_file(self.path, self._data):
                logger.debug(f"Backup write for {key} failed")

    def delete(self, key: str) -> None:
        with self._lock:
            if self._data.pop(key, None) is not None:
                save_json_file(self.path, self._data)
