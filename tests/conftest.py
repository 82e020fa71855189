import asyncio
import os
import shutil
import stat
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from deck.errors import PersistenceError
from deck.fs import normalize_path
from deck.jobs import LocalJobService
from deck.kv_cache import MemoryKeyValueCache
from deck.models import CatalogListing
from deck.storage import SessionRepository
from deck.workspace import Workspace

PROJECT_DIR = normalize_path("/project")

# Helper for Windows permission removal
def remove_readonly(func, path, _):
    os.chmod(path, stat.S_IWRITE)
    func(path)

@pytest.fixture
def temp_cwd():
    """Create a temporary directory and change CWD to it."""
    orig_cwd = os.getcwd()
    temp_dir = tempfile.mkdtemp()
    os.chdir(temp_dir)
    yield Path(temp_dir)
    os.chdir(orig_cwd)
    shutil.rmtree(temp_dir, onerror=remove_readonly)

@pytest.fixture(autouse=True)
def mock_app_data(tmp_path):
    """Redirect all AppData writes to a temp directory."""
    temp_app_data = tmp_path / "contextdeck_test_appdata"
    temp_app_data.mkdir(parents=True, exist_ok=True)
    (temp_app_data / "sessions").mkdir(exist_ok=True)

    with patch("deck.config.SETTINGS_PATH", temp_app_data / "settings.json"), \
         patch("deck.storage.SESSIONS_DIR", temp_app_data / "sessions"), \
         patch("deck.storage.ACTIVE_SESSIONS_PATH", temp_app_data / "active_sessions.json"), \
         patch("deck.kv_cache.KV_CACHE_PATH", temp_app_data / "kv_cache.json"), \
         patch("application_state.APP_DATA_DIR", temp_app_data), \
         patch("application_state.PROJECT_HISTORY_PATH", str(temp_app_data / "project_history.json")):
        yield temp_app_data

class FakeCatalogService:
    """In-memory catalog. hold_next() gates the next list_files call on an asyncio.Event."""

    def __init__(self):
        self.listings: dict[str, list[str]] = {}
        self.calls: list[str] = []
        self.fail: Exception | None = None
        self._gates: list[asyncio.Event] = []

    def set_files(self, directory: str, paths: list[str]) -> None:
        self.listings[normalize_path(directory)] = list(paths)

    def hold_next(self) -> asyncio.Event:
        gate = asyncio.Event()
        self._gates.append(gate)
        return gate

    async def list_files(self, directory: str) -> CatalogListing:
        self.calls.append(directory)
        paths = list(self.listings.get(directory, []))
        gate = self._gates.pop(0) if self._gates else None
        if gate is not None:
            await gate.wait()
        if self.fail is not None:
            raise self.fail
        return CatalogListing(directory=directory, paths=tuple(paths))

class GatedRepository(SessionRepository):
    """Real JSON repository whose reads can be delayed and writes counted or failed."""

    def __init__(self, sessions_dir):
        super().__init__(sessions_dir)
        self.read_gates: dict[str, asyncio.Event] = {}
        self.writes: list[tuple[str, dict]] = []
        self.fail_writes = False

    async def get_session(self, session_id):
        gate = self.read_gates.get(session_id)
        if gate is not None:
            await gate.wait()
        return await super().get_session(session_id)

    async def update_session(self, session_id, fields):
        if self.fail_writes:
            raise PersistenceError(f"Could not write session {session_id}: disk full")
        self.writes.append((session_id, dict(fields)))
        return await super().update_session(session_id, fields)

def include_nothing(path: str) -> bool:
    return False

@pytest.fixture
def catalog():
    service = FakeCatalogService()
    service.set_files(PROJECT_DIR, ["a.ts", "b.ts", "c.ts"])
    return service

@pytest.fixture
def repo(mock_app_data):
    return GatedRepository(mock_app_data / "sessions")

@pytest.fixture
def kv():
    return MemoryKeyValueCache()

@pytest.fixture
def make_workspace(catalog, repo, kv):
    """Factory for a Workspace wired to the fakes; must be called inside a running loop
    only if the test submits jobs."""
    def _make(directory=PROJECT_DIR, runner=None, **kwargs):
        kwargs.setdefault("include_policy", include_nothing)
        kwargs.setdefault("debounce_seconds", 0.05)
        kwargs.setdefault("min_load_interval", 60)
        return Workspace(
            directory,
            repository=repo,
            catalog_service=catalog,
            job_service=LocalJobService(runner=runner) if runner else None,
            kv_cache=kv,
            **kwargs,
        )
    return _make
