"""Configuration and constants for contextdeck."""
import json
import logging
import os
import shutil
import sys
from pathlib import Path
from typing import Any

# Constants
DEFAULT_HIDDEN = {
    ".git", ".svn", ".hg", ".DS_Store", "Thumbs.db",
    "__pycache__", ".pytest_cache", ".mypy_cache", ".ruff_cache", ".tox",
    ".vscode", ".idea", ".vs",
    "venv", ".venv", "env", "node_modules", "site-packages", # Python/Node
    "target", "out", "obj", # Build artifacts
    "coverage"
}

# Paths matching these are not included by default when first discovered
DEFAULT_EXCLUDE_PATTERNS = [
    "*.log", "*.lock", "*.min.js", "*.min.css", "*.map",
    "dist/*", "*/dist/*", "build/*", "*/build/*", "*/vendor/*",
    "package-lock.json", "*/package-lock.json",
    "yarn.lock", "pnpm-lock.yaml", "*/pnpm-lock.yaml",
]

FILE_FINDER_MODES = ("replace", "extend")

logger = logging.getLogger(__name__)

def get_app_data_dir() -> Path:
    """Get the application data directory for the current platform."""
    home = Path.home()
    if sys.platform == "win32":
        return Path(os.getenv("APPDATA") or home / "AppData" / "Roaming") / "contextdeck"
    elif sys.platform == "darwin":
        return home / "Library" / "Application Support" / "contextdeck"
    return Path(os.getenv("XDG_CONFIG_HOME") or home / ".config") / "contextdeck"

APP_DATA_DIR = get_app_data_dir()
APP_DATA_DIR.mkdir(parents=True, exist_ok=True)

# _TOOL_DIR is relative to this file (deck/config.py) -> parent (deck) -> parent (repo)
_TOOL_DIR = Path(__file__).parent.parent.resolve()

SETTINGS_FILENAME = "settings.json"
DEFAULT_SETTINGS_FILENAME = "default_settings.json"
SETTINGS_PATH = APP_DATA_DIR / SETTINGS_FILENAME
DEFAULT_SETTINGS_PATH = _TOOL_DIR / DEFAULT_SETTINGS_FILENAME

def load_json_file(path: Path | str, default: Any = None) -> Any:
    """Load a JSON file safely."""
    try:
        p = Path(path)
        if p.exists():
            with open(p, "r", encoding="utf-8") as f:
                return json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"Failed to read JSON {path}: {e}")
    return default

def save_json_file(path: Path | str, data: Any, indent: int = 2) -> bool:
    """Save data to a JSON file safely."""
    try:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        with open(p, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=indent)
        return True
    except (OSError, TypeError, ValueError) as e:
        logger.error(f"Failed to save JSON {path}: {e}")
        return False

def _load_settings() -> dict:
    """Load settings from settings.json."""
    if not SETTINGS_PATH.exists() and DEFAULT_SETTINGS_PATH.exists():
        try:
            shutil.copy2(DEFAULT_SETTINGS_PATH, SETTINGS_PATH)
        except OSError as e:
            logger.warning(f"Could not seed settings from defaults: {e}")

    data = load_json_file(SETTINGS_PATH)
    if data: return data

    data = load_json_file(DEFAULT_SETTINGS_PATH)
    return data or {}

def _save_settings(settings: dict) -> None:
    """Save settings to settings.json."""
    save_json_file(SETTINGS_PATH, settings)

_settings = _load_settings()

API_KEY = (
    _settings.get("api_key")
    or os.environ.get("CONTEXTDECK_API_KEY")
    or os.environ.get("OPENROUTER_API_KEY")
    or os.environ.get("OPENAI_API_KEY")
    or ""
)
API_BASE_URL = _settings.get("api_base_url", "https://openrouter.ai/api/v1")
TOKENS_PER_CHAR_ESTIMATE = _settings.get("tokens_per_char_estimate", 4)
DEFAULT_MODEL = _settings.get("default_model", "google/gemini-2.5-flash")
AVAILABLE_MODELS = _settings.get("available_models", {
    "google/gemini-2.5-flash": {"input": 0.30, "output": 2.50},
})

def update_core_settings(api_key: str, base_url: str, models: dict) -> None:
    """Update and save core API settings."""
    global API_KEY, API_BASE_URL

    _settings["api_key"] = api_key
    _settings["api_base_url"] = base_url
    _settings["available_models"] = models

    _save_settings(_settings)

    API_KEY = api_key
    API_BASE_URL = base_url

    AVAILABLE_MODELS.clear()
    AVAILABLE_MODELS.update(models)

class DeckConfig:
    """Configuration for the session engine."""

    def __init__(self):
        self.model = _settings.get("default_model", DEFAULT_MODEL)

        # Seconds of quiet before a debounced session write fires
        self.debounce_seconds = _settings.get("debounce_seconds", 1.25)
        # Seconds a successful catalog load stays fresh for its directory
        self.min_load_interval = _settings.get("min_load_interval", 60.0)
        self.job_poll_interval = _settings.get("job_poll_interval", 1.5)

        self.max_regex_length = _settings.get("max_regex_length", 500)
        self.max_catalog_files = _settings.get("max_catalog_files", 20000)
        self.include_hidden = _settings.get("include_hidden", False)
        self.exclude_patterns = list(_settings.get("exclude_patterns", DEFAULT_EXCLUDE_PATTERNS))

        mode = _settings.get("file_finder_mode", "replace")
        self.file_finder_mode = mode if mode in FILE_FINDER_MODES else "replace"

        self.default_diff_temperature = _settings.get("default_diff_temperature", 0.9)
        self.job_timeout = _settings.get("job_timeout", 120.0)

    def set_model(self, model_name: str) -> None:
        self.model = model_name
        _settings["default_model"] = model_name
        _save_settings(_settings)

    def set_debounce_seconds(self, seconds: float) -> None:
        self.debounce_seconds = seconds
        _settings["debounce_seconds"] = seconds
        _save_settings(_settings)

    def set_min_load_interval(self, seconds: float) -> None:
        self.min_load_interval = seconds
        _settings["min_load_interval"] = seconds
        _save_settings(_settings)

    def set_job_poll_interval(self, seconds: float) -> None:
        self.job_poll_interval = seconds
        _settings["job_poll_interval"] = seconds
        _save_settings(_settings)

    def set_max_regex_length(self, length: int) -> None:
        self.max_regex_length = length
        _settings["max_regex_length"] = length
        _save_settings(_settings)

    def set_include_hidden(self, enabled: bool) -> None:
        self.include_hidden = enabled
        _settings["include_hidden"] = enabled
        _save_settings(_settings)

    def set_exclude_patterns(self, patterns: list[str]) -> None:
        self.exclude_patterns = list(patterns)
        _settings["exclude_patterns"] = list(patterns)
        _save_settings(_settings)

    def set_file_finder_mode(self, mode: str) -> None:
        if mode not in FILE_FINDER_MODES:
            raise ValueError(f"Unknown file finder mode: {mode}")
        self.file_finder_mode = mode
        _settings["file_finder_mode"] = mode
        _save_settings(_settings)

config = DeckConfig()

def estimate_tokens(text: str) -> int:
    """Estimate the number of tokens in text."""
    return len(text) // TOKENS_PER_CHAR_ESTIMATE
