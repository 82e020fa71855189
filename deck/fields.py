"""Session-scoped text, regex and option fields."""
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable

from .config import config
from .errors import ValidationError
from .kv_cache import KeyValueCache, task_backup_key
from .models import SessionState

logger = logging.getLogger(__name__)

REGEX_FIELDS = ("title_regex", "content_regex", "negative_title_regex", "negative_content_regex")
TEXT_FIELDS = ("task_description", "pasted_paths", "search_term")

def validate_regex(pattern: str, max_length: int | None = None) -> str | None:
    """Return an error message for a malformed pattern, None when usable."""
    if not pattern or not pattern.strip():
        return None
    limit = config.max_regex_length if max_length is None else max_length
    if len(pattern) > limit:
        return f"Regex pattern is too long (max {limit} characters)"
    try:
        re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        return f"Invalid regex: {e}"
    return None

@dataclass
class RegexFilter:
    title_regex: str = ""
    content_regex: str = ""
    negative_title_regex: str = ""
    negative_content_regex: str = ""
    is_regex_active: bool = True
    errors: dict = field(default_factory=dict)  # field name -> message

    def set_pattern(self, name: str, value: str) -> str | None:
        """Store a pattern even when invalid; the error stays scoped to its field."""
        if name not in REGEX_FIELDS:
            raise ValueError(f"Unknown regex field: {name}")
        setattr(self, name, value or "")
        error = validate_regex(value or "")
        if error:
            self.errors[name] = error
        else:
            self.errors.pop(name, None)
        return error

    def apply_patterns(self, patterns: dict[str, str | None]) -> int:
        """Set every given pattern and activate regex mode if any was given."""
        count = 0
        for name in REGEX_FIELDS:
            value = patterns.get(name)
            if value is None:
                continue
            self.set_pattern(name, value)
            count += 1
        if count:
            self.is_regex_active = True
        return count

    def clear_patterns(self) -> None:
        for name in REGEX_FIELDS:
            setattr(self, name, "")
        self.errors.clear()

    def raise_for_errors(self) -> None:
        for name in REGEX_FIELDS:
            if name in self.errors:
                raise ValidationError(name, self.errors[name])

    def to_dict(self) -> dict:
        return {
            "title_regex": self.title_regex,
            "content_regex": self.content_regex,
            "negative_title_regex": self.negative_title_regex,
            "negative_content_regex": self.negative_content_regex,
            "is_regex_active": self.is_regex_active,
        }

class SessionFields:
    """Non-selection fields of the active session.

    The task description is mirrored into a key-value backup on every
    change so it can be recovered if the session write never landed.
    """

    def __init__(self, kv_cache: KeyValueCache | None = None,
                 on_regex_applied: Callable[[int], None] | None = None):
        self.kv_cache = kv_cache
        self.on_regex_applied = on_regex_applied
        self.session_id: str | None = None
        self._set_defaults()

    def _set_defaults(self) -> None:
        self.task_description = ""
        self.pasted_paths = ""
        self.search_term = ""
        self.search_selected_files_only = False
        self.diff_temperature = config.default_diff_temperature
        self.regex = RegexFilter()
        self.selection_range: tuple[int, int] | None = None

    def reset(self, session_id: str | None = None) -> None:
        self.session_id = session_id
        self._set_defaults()

    def apply_session(self, session: SessionState) -> bool:
        """Load persisted fields. Returns True if the task text came from the backup."""
        self.session_id = session.id
        self.task_description = session.task_description
        self.pasted_paths = session.pasted_paths
        self.search_term = session.search_term
        self.search_selected_files_only = session.search_selected_files_only
        self.diff_temperature = session.diff_temperature
        self.regex = RegexFilter(is_regex_active=session.is_regex_active)
        for name in REGEX_FIELDS:
            self.regex.set_pattern(name, getattr(session, name))

        if not self.task_description and self.kv_cache is not None:
            backup = self.kv_cache.get(task_backup_key(session.id))
            if backup:
                logger.info(f"Restored task description for {session.id} from backup ({len(backup)} chars)")
                self.task_description = backup
                return True
        return False

    def set_task_description(self, value: str) -> None:
        self.task_description = value
        if self.kv_cache is not None:
            self.kv_cache.set(task_backup_key(self.session_id), value)

    def splice_task_description(self, text: str, selection: tuple[int, int] | None = None) -> None:
        """Replace the selected range (or everything) with text."""
        rng = selection or self.selection_range
        if rng is None:
            self.set_task_description(text)
            return
        start, end = rng
        current = self.task_description
        start = max(0, min(start, len(current)))
        end = max(start, min(end, len(current)))
        self.set_task_description(current[:start] + text + current[end:])
        self.selection_range = None

    def set_field(self, name: str, value: Any) -> None:
        if name == "task_description":
            self.set_task_description(value)
        elif name in REGEX_FIELDS:
            self.regex.set_pattern(name, value)
        elif name == "is_regex_active":
            self.regex.is_regex_active = bool(value)
        elif name in ("pasted_paths", "search_term"):
            setattr(self, name, value or "")
        elif name == "search_selected_files_only":
            self.search_selected_files_only = bool(value)
        elif name == "diff_temperature":
            self.diff_temperature = float(value)
        else:
            raise ValueError(f"Unknown session field: {name}")

    def apply_regex_patterns(self, patterns: dict[str, str | None]) -> int:
        count = self.regex.apply_patterns(patterns)
        if count and self.on_regex_applied:
            self.on_regex_applied(count)
        return count

    def snapshot(self) -> dict:
        data = {
            "task_description": self.task_description,
            "pasted_paths": self.pasted_paths,
            "search_term": self.search_term,
            "search_selected_files_only": self.search_selected_files_only,
            "diff_temperature": self.diff_temperature,
        }
        data.update(self.regex.to_dict())
        return data
