"""Data structures shared by the session engine."""
import time
from dataclasses import dataclass, field, fields as dataclass_fields
from enum import Enum
from typing import Any


@dataclass
class FileEntry:
    """Selection flags for one catalog path."""
    path: str
    size: int | None = None
    included: bool = False
    force_excluded: bool = False

FilesMap = dict[str, FileEntry]

@dataclass(frozen=True)
class CatalogListing:
    """Raw catalog for one directory, independent of any selection."""
    directory: str
    paths: tuple[str, ...] = ()
    sizes: tuple[int, ...] | None = None

    def size_of(self, index: int) -> int | None:
        if self.sizes is None or index >= len(self.sizes):
            return None
        return self.sizes[index]

    @property
    def is_empty(self) -> bool:
        return not self.paths

@dataclass
class SessionState:
    """A persisted, named bundle of task text, regex filters and file selection."""
    id: str
    name: str = ""
    project_directory: str = ""
    task_description: str = ""
    title_regex: str = ""
    content_regex: str = ""
    negative_title_regex: str = ""
    negative_content_regex: str = ""
    is_regex_active: bool = True
    diff_temperature: float = 0.9
    included_files: list = field(default_factory=list)
    force_excluded_files: list = field(default_factory=list)
    # True once the selection was saved from a loaded catalog; undeclared paths are then not included
    has_saved_selection: bool = False
    search_term: str = ""
    search_selected_files_only: bool = False
    pasted_paths: str = ""
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        """Serialize session state to a dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "project_directory": self.project_directory,
            "task_description": self.task_description,
            "title_regex": self.title_regex,
            "content_regex": self.content_regex,
            "negative_title_regex": self.negative_title_regex,
            "negative_content_regex": self.negative_content_regex,
            "is_regex_active": self.is_regex_active,
            "diff_temperature": self.diff_temperature,
            "included_files": list(self.included_files),
            "force_excluded_files": list(self.force_excluded_files),
            "has_saved_selection": self.has_saved_selection,
            "search_term": self.search_term,
            "search_selected_files_only": self.search_selected_files_only,
            "pasted_paths": self.pasted_paths,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SessionState":
        """Restore session state from a dictionary, tolerating missing keys."""
        now = time.time()
        return cls(
            id=str(data["id"]),
            name=data.get("name", ""),
            project_directory=data.get("project_directory", ""),
            task_description=data.get("task_description") or "",
            title_regex=data.get("title_regex", ""),
            content_regex=data.get("content_regex", ""),
            negative_title_regex=data.get("negative_title_regex", ""),
            negative_content_regex=data.get("negative_content_regex", ""),
            is_regex_active=bool(data.get("is_regex_active", True)),
            diff_temperature=float(data.get("diff_temperature", 0.9)),
            included_files=list(data.get("included_files", [])),
            force_excluded_files=list(data.get("force_excluded_files", [])),
            has_saved_selection=bool(data.get("has_saved_selection", False)),
            search_term=data.get("search_term", ""),
            search_selected_files_only=bool(data.get("search_selected_files_only", False)),
            pasted_paths=data.get("pasted_paths", ""),
            created_at=data.get("created_at", now),
            updated_at=data.get("updated_at", now),
        )

# Fields a session update may touch; id and timestamps are owned by the repository
SESSION_FIELDS = frozenset(
    f.name for f in dataclass_fields(SessionState)
    if f.name not in ("id", "created_at", "updated_at")
)

class JobStatus(Enum):
    """Lifecycle of a background job.

    Attributes:
        QUEUED: Submitted, not yet picked up
        RUNNING: AI call in progress
        COMPLETED: Finished with a response
        FAILED: Finished with an error message
        CANCELED: Cancelled before completion
    """

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELED)

class JobKind(Enum):
    FILE_FINDER = "file_finder"
    REGEX_GENERATION = "regex_generation"
    TEXT_IMPROVEMENT = "text_improvement"

@dataclass
class BackgroundJob:
    """Externally owned job record; the engine only reads it."""
    id: str
    session_id: str | None
    kind: JobKind
    status: JobStatus = JobStatus.QUEUED
    response: str | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @property
    def target_field(self) -> str | None:
        return self.metadata.get("target_field")
