"""Facade for the contextdeck session engine."""

from .config import (
    config, API_KEY, APP_DATA_DIR, API_BASE_URL, AVAILABLE_MODELS,
    DEFAULT_EXCLUDE_PATTERNS, FILE_FINDER_MODES, SETTINGS_PATH,
    update_core_settings, load_json_file, save_json_file, estimate_tokens
)

from .errors import (
    DeckError, LoadError, AbortedOperation, PersistenceError,
    SessionNotFound, StaleJobMismatch, ValidationError, ensure_not_cancelled
)

from .models import (
    FileEntry, FilesMap, CatalogListing, SessionState, BackgroundJob,
    JobKind, JobStatus
)

from .fs import LocalCatalogService, walk_catalog, normalize_path, load_dir_data, save_dir_data

from .merge import (
    build_files_map, merge_catalogs, apply_declared_selections,
    pattern_policy, should_include_by_default
)

from .selection import SelectionStore, SelectionProjection
from .catalog import CatalogLoader, CatalogSync
from .storage import SessionRepository, ActiveSessionStore
from .kv_cache import JsonKeyValueCache, MemoryKeyValueCache, task_backup_key
from .fields import SessionFields, RegexFilter, validate_regex
from .persister import DebouncedSessionPersister
from .switcher import SessionSwitchCoordinator, SwitchPhase
from .jobs import LocalJobService, BackgroundJobReconciler
from .workspace import Workspace
