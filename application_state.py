"""Application state, notifications and logging setup."""
import logging
import queue
import time
from collections import deque
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path

import deck
from deck import APP_DATA_DIR, Workspace

# Persistence files
PROJECT_HISTORY_PATH = str(APP_DATA_DIR / "project_history.json")
MAX_PROJECT_HISTORY = 10

@dataclass
class Notification:
    """An advisory message for the user (banner/toast)."""
    title: str
    message: str
    level: str = "error"
    timestamp: float = field(default_factory=time.time)

@dataclass
class AppState:
    """Global application state."""
    workspace: Workspace | None = None

    # Events for the UI layer: Notification records and log entries
    notifications: queue.Queue = field(default_factory=queue.Queue)
    logs: deque = field(default_factory=lambda: deque(maxlen=2000))

    project_history: list = field(default_factory=list)
    # Set when generated regex patterns land; the filter view switches to regex mode
    show_regex_filter: bool = False

# Global state instance
state: AppState = AppState()

def init_app_state():
    """Initialize or reset the global app state."""
    # Reset the existing state object in-place to preserve references
    # held by other modules (cli.py)
    new_state = AppState()
    state.__dict__.clear()
    state.__dict__.update(new_state.__dict__)

def notify(title: str, message: str, level: str = "error") -> None:
    state.notifications.put(Notification(title=title, message=message, level=level))

def drain_notifications() -> list[Notification]:
    items = []
    while True:
        try:
            item = state.notifications.get_nowait()
        except queue.Empty:
            return items
        if isinstance(item, Notification):
            items.append(item)

def _on_regex_applied(count: int) -> None:
    state.show_regex_filter = True

class NotificationLogHandler(logging.Handler):
    """Pushes warning-and-above log records to the notification queue."""
    def __init__(self, level=logging.WARNING):
        super().__init__(level)

    def emit(self, record):
        try:
            msg = self.format(record)
            state.logs.append((record.levelname, msg, record.created))
            state.notifications.put({
                "type": "log_entry",
                "level": record.levelname,
                "message": msg,
                "timestamp": record.created
            })
        except Exception:
            self.handleError(record)

def setup_logging(enable_notifications=True):
    """Configure application logging to file and the notification queue."""
    log_dir = APP_DATA_DIR / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "contextdeck.log"

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Silence noisy libraries
    for lib in ["urllib3", "httpcore", "httpx", "openai", "asyncio"]:
        logging.getLogger(lib).setLevel(logging.WARNING)

    # Remove existing handlers to avoid duplicates on restart
    for h in root_logger.handlers[:]:
        root_logger.removeHandler(h)

    # File Handler
    file_handler = RotatingFileHandler(log_file, maxBytes=1024*1024*5, backupCount=3, encoding='utf-8')
    file_fmt = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    file_handler.setFormatter(file_fmt)
    root_logger.addHandler(file_handler)

    if enable_notifications:
        note_handler = NotificationLogHandler()
        note_handler.setFormatter(logging.Formatter('%(message)s'))
        root_logger.addHandler(note_handler)

def load_project_history():
    state.project_history = deck.load_json_file(PROJECT_HISTORY_PATH, [])

def save_project_history():
    deck.save_json_file(PROJECT_HISTORY_PATH, state.project_history[:MAX_PROJECT_HISTORY])

def add_to_project_history(path_str: str):
    try:
        abs_path = str(Path(path_str).resolve())
    except OSError as e:
        logging.warning(f"Could not resolve project path {path_str}: {e}")
        return
    if abs_path in state.project_history:
        state.project_history.remove(abs_path)
    state.project_history.insert(0, abs_path)
    del state.project_history[MAX_PROJECT_HISTORY:]
    save_project_history()

def open_workspace(directory: str, **kwargs) -> Workspace:
    """Create the workspace for a project directory and make it current."""
    kwargs.setdefault("on_error", notify)
    kwargs.setdefault("on_regex_applied", _on_regex_applied)
    state.workspace = Workspace(directory, **kwargs)
    add_to_project_history(directory)
    return state.workspace
