"""Durable session storage."""
import asyncio
import json
import logging
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Mapping

from .config import APP_DATA_DIR
from .errors import PersistenceError, SessionNotFound
from .fs import load_dir_data, normalize_path, save_dir_data
from .models import SESSION_FIELDS, SessionState

logger = logging.getLogger(__name__)

SESSIONS_DIR = APP_DATA_DIR / "sessions"
ACTIVE_SESSIONS_PATH = APP_DATA_DIR / "active_sessions.json"

def _atomic_write_json(path: Path, payload: Mapping[str, Any]) -> None:
    """Write JSON payload to path atomically (temp file + rename)."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)

    fd, temp_path = tempfile.mkstemp(
        dir=str(target.parent),
        prefix=".tmp_session_",
        suffix=".json",
        text=True,
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, sort_keys=True)
            handle.write("\n")

        os.replace(temp_path, target)
    except Exception:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise

def _is_safe_id(session_id: str) -> bool:
    return bool(session_id) and all(c.isalnum() or c in "_-" for c in session_id)

class SessionRepository:
    """One JSON document per session, written atomically.

    Blocking file work runs on worker threads; the public API is async.
    """

    def __init__(self, sessions_dir: Path | str | None = None):
        self.sessions_dir = Path(sessions_dir) if sessions_dir is not None else SESSIONS_DIR
        self._lock = threading.Lock()

    def _path_for(self, session_id: str) -> Path:
        if not _is_safe_id(session_id):
            raise SessionNotFound(session_id)
        return self.sessions_dir / f"{session_id}.json"

    def _read(self, session_id: str) -> SessionState:
        path = self._path_for(session_id)
        if not path.exists():
            raise SessionNotFound(session_id)
        try:
            with path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Could not read session {session_id}: {e}") from e
        if not isinstance(data, dict):
            raise PersistenceError(f"Session data must be a JSON object: {path}")
        data.setdefault("id", session_id)
        return SessionState.from_dict(data)

    def _write(self, session: SessionState) -> None:
        try:
            _atomic_write_json(self._path_for(session.id), session.to_dict())
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(f"Could not write session {session.id}: {e}") from e

    def _create_sync(self, fields: Mapping[str, Any]) -> str:
        session_id = f"session_{os.urandom(8).hex()}"
        session = SessionState(id=session_id)
        _apply_fields(session, fields)
        if session.project_directory:
            session.project_directory = normalize_path(session.project_directory)
        with self._lock:
            self._write(session)
        logger.info(f"Created session {session_id} ({session.name!r})")
        return session_id

    def _update_sync(self, session_id: str, fields: Mapping[str, Any]) -> SessionState:
        with self._lock:
            session = self._read(session_id)
            _apply_fields(session, fields)
            session.updated_at = time.time()
            self._write(session)
        logger.debug(f"Updated session {session_id}: {sorted(fields)}")
        return session

    def _delete_sync(self, session_id: str) -> None:
        path = self._path_for(session_id)
        with self._lock:
            if not path.exists():
                raise SessionNotFound(session_id)
            try:
                path.unlink()
            except OSError as e:
                raise PersistenceError(f"Could not delete session {session_id}: {e}") from e
        logger.info(f"Deleted session {session_id}")

    def _list_sync(self, directory: str | None) -> list[SessionState]:
        if not self.sessions_dir.exists():
            return []
        wanted = normalize_path(directory) if directory else None
        sessions = []
        for p in self.sessions_dir.glob("*.json"):
            try:
                session = self._read(p.stem)
            except (PersistenceError, SessionNotFound) as e:
                logger.warning(f"Skipping unreadable session file {p.name}: {e}")
                continue
            if wanted is None or session.project_directory == wanted:
                sessions.append(session)
        sessions.sort(key=lambda s: s.updated_at, reverse=True)
        return sessions

    async def create_session(self, fields: Mapping[str, Any]) -> str:
        return await asyncio.to_thread(self._create_sync, dict(fields))

    async def get_session(self, session_id: str) -> SessionState:
        return await asyncio.to_thread(self._read, session_id)

    async def update_session(self, session_id: str, fields: Mapping[str, Any]) -> SessionState:
        return await asyncio.to_thread(self._update_sync, session_id, dict(fields))

    async def rename_session(self, session_id: str, name: str) -> SessionState:
        return await self.update_session(session_id, {"name": name})

    async def delete_session(self, session_id: str) -> None:
        await asyncio.to_thread(self._delete_sync, session_id)

    async def list_sessions(self, directory: str | None = None) -> list[SessionState]:
        return await asyncio.to_thread(self._list_sync, directory)

def _apply_fields(session: SessionState, fields: Mapping[str, Any]) -> None:
    for key, value in fields.items():
        if key not in SESSION_FIELDS:
            logger.debug(f"Ignoring unknown session field {key!r}")
            continue
        if key in ("included_files", "force_excluded_files"):
            value = list(value or [])
        setattr(session, key, value)

class ActiveSessionStore:
    """Remembers which session is active for one project directory.

    This is the narrow get/set interface the engine uses for the active
    session id; the value lives outside the engine.
    """

    def __init__(self, directory: str, path: Path | str | None = None):
        self.directory = normalize_path(directory)
        self.path = Path(path) if path is not None else ACTIVE_SESSIONS_PATH
        self._value: str | None = load_dir_data(self.path, self.directory)

    def get(self) -> str | None:
        return self._value

    def set(self, session_id: str | None) -> None:
        if session_id == self._value:
            return
        self._value = session_id
        if not save_dir_data(self.path, self.directory, session_id):
            logger.warning(f"Could not remember active session for {self.directory}")
