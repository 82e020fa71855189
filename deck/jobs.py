"""Background AI jobs and reconciliation of their results into the session."""
import asyncio
import logging
import os
import threading
import time
from dataclasses import replace
from typing import Any, Callable, Iterable

from . import llm
from .config import FILE_FINDER_MODES, config
from .errors import StaleJobMismatch
from .fields import REGEX_FIELDS, TEXT_FIELDS, SessionFields
from .models import BackgroundJob, JobKind, JobStatus
from .selection import SelectionStore

logger = logging.getLogger(__name__)

JobRunner = Callable[[JobKind, dict, threading.Event], tuple[str, dict]]
ErrorFunc = Callable[[str, str], None]

TARGET_FIELDS = TEXT_FIELDS + REGEX_FIELDS

def run_ai_job(kind: JobKind, payload: dict, cancel_event: threading.Event) -> tuple[str, dict]:
    """Blocking worker body. Returns the response text and extra metadata."""
    if kind is JobKind.FILE_FINDER:
        messages = llm.build_file_finder_messages(payload.get("task", ""), list(payload.get("paths", [])))
        paths = llm.parse_path_list(llm.complete(messages, cancel_event))
        return "\n".join(paths), {}
    if kind is JobKind.REGEX_GENERATION:
        text = llm.complete(llm.build_regex_messages(payload.get("task", "")), cancel_event)
        return text, {"regex_patterns": llm.parse_regex_patterns(text)}
    if kind is JobKind.TEXT_IMPROVEMENT:
        text = llm.complete(llm.build_improve_text_messages(payload.get("text", "")), cancel_event,
                            temperature=payload.get("temperature"))
        return llm.parse_improved_text(text), {}
    raise ValueError(f"Unsupported job kind: {kind}")

class LocalJobService:
    """Runs jobs on worker threads and keeps their records in memory.

    Callers poll get_job/list_jobs; the records they get back are copies.
    """

    def __init__(self, runner: JobRunner | None = None):
        self._runner = runner or run_ai_job
        self._jobs: dict[str, BackgroundJob] = {}
        self._cancel_events: dict[str, threading.Event] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._lock = threading.Lock()

    def submit_job(self, kind: JobKind, payload: dict, session_id: str | None,
                   metadata: dict[str, Any] | None = None) -> str:
        job_id = f"job_{os.urandom(8).hex()}"
        job = BackgroundJob(id=job_id, session_id=session_id, kind=kind, metadata=dict(metadata or {}))
        cancel_event = threading.Event()
        with self._lock:
            self._jobs[job_id] = job
            self._cancel_events[job_id] = cancel_event
        self._tasks[job_id] = asyncio.get_running_loop().create_task(self._run(job_id, dict(payload)))
        logger.info(f"Submitted {kind.value} job {job_id} for session {session_id}")
        return job_id

    def _update(self, job_id: str, **changes: Any) -> None:
        with self._lock:
            job = self._jobs[job_id]
            if job.status.is_terminal:
                return
            for key, value in changes.items():
                setattr(job, key, value)
            job.updated_at = time.time()

    async def _run(self, job_id: str, payload: dict) -> None:
        kind = self._jobs[job_id].kind
        cancel_event = self._cancel_events[job_id]
        self._update(job_id, status=JobStatus.RUNNING)
        try:
            response, extra = await asyncio.to_thread(self._runner, kind, payload, cancel_event)
        except llm.CancelledError:
            self._update(job_id, status=JobStatus.CANCELED, error_message="Cancelled")
            logger.info(f"Job {job_id} cancelled")
            return
        except Exception as e:
            logger.error(f"Job {job_id} failed: {e}")
            self._update(job_id, status=JobStatus.FAILED, error_message=str(e) or type(e).__name__)
            return
        with self._lock:
            metadata = {**self._jobs[job_id].metadata, **extra}
        self._update(job_id, status=JobStatus.COMPLETED, response=response, metadata=metadata)
        logger.info(f"Job {job_id} completed")

    def get_job(self, job_id: str) -> BackgroundJob | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return replace(job, metadata=dict(job.metadata)) if job else None

    def list_jobs(self, session_id: str | None = None) -> list[BackgroundJob]:
        with self._lock:
            jobs = [replace(j, metadata=dict(j.metadata)) for j in self._jobs.values()
                    if session_id is None or j.session_id == session_id]
        return sorted(jobs, key=lambda j: j.created_at)

    def cancel_job(self, job_id: str) -> bool:
        event = self._cancel_events.get(job_id)
        job = self._jobs.get(job_id)
        if event is None or job is None or job.status.is_terminal:
            return False
        event.set()
        self._update(job_id, status=JobStatus.CANCELED, error_message="Cancelled")
        return True

    async def wait(self, job_id: str) -> BackgroundJob | None:
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)
        return self.get_job(job_id)

class BackgroundJobReconciler:
    """Applies finished job results to the session that asked for them.

    Each terminal job is handled once. A job whose session is no longer the
    active one is dropped without touching any state. A job for the active
    session waits while that session is still being applied.
    """

    def __init__(self, active_session_provider: Callable[[], str | None], store: SelectionStore,
                 fields: SessionFields, on_error: ErrorFunc | None = None,
                 on_applied: Callable[[BackgroundJob], None] | None = None,
                 ready_provider: Callable[[], bool] | None = None):
        self.active_session_provider = active_session_provider
        self.ready_provider = ready_provider
        self.store = store
        self.fields = fields
        self.on_error = on_error
        self.on_applied = on_applied
        self.finding_job_id: str | None = None
        self.last_unknown_paths: list[str] = []
        self._processed: set[str] = set()

    @property
    def is_finding_files(self) -> bool:
        return self.finding_job_id is not None

    def track_finding(self, job_id: str) -> None:
        self.finding_job_id = job_id

    def clear_tracking(self) -> None:
        self.finding_job_id = None

    def is_processed(self, job_id: str) -> bool:
        return job_id in self._processed

    def observe(self, jobs: Iterable[BackgroundJob]) -> list[str]:
        """Handle newly terminal jobs. Returns the ids whose results were applied."""
        applied = []
        for job in jobs:
            if not job.status.is_terminal or job.id in self._processed:
                continue

            active = self.active_session_provider()
            if job.session_id != active:
                self._mark_processed(job)
                logger.debug(str(StaleJobMismatch(job.id, job.session_id, active)))
                continue
            if self.ready_provider is not None and not self.ready_provider():
                logger.debug(f"Session {active} is still loading; job {job.id} waits")
                continue
            self._mark_processed(job)

            if job.status is not JobStatus.COMPLETED:
                message = job.error_message or f"Job {job.status.value}"
                logger.warning(f"{job.kind.value} job {job.id} {job.status.value}: {message}")
                if self.on_error:
                    self.on_error(f"{_kind_title(job.kind)} {job.status.value}", message)
                continue

            if self._apply(job):
                applied.append(job.id)
                if self.on_applied:
                    self.on_applied(job)
        return applied

    def _mark_processed(self, job: BackgroundJob) -> None:
        self._processed.add(job.id)
        if job.id == self.finding_job_id:
            self.finding_job_id = None

    def _apply(self, job: BackgroundJob) -> bool:
        response = job.response or ""
        if job.kind is JobKind.FILE_FINDER:
            return self._apply_file_finder(job, response)
        if job.kind is JobKind.REGEX_GENERATION:
            patterns = job.metadata.get("regex_patterns")
            if not patterns:
                try:
                    patterns = llm.parse_regex_patterns(response)
                except llm.GenerationError as e:
                    logger.warning(f"Regex job {job.id} returned no usable patterns: {e}")
                    if self.on_error:
                        self.on_error("Regex generation failed", str(e))
                    return False
            self.fields.apply_regex_patterns(patterns)
            return True

        target = job.target_field
        if target not in TARGET_FIELDS:
            logger.warning(f"Job {job.id} has no usable target field ({target!r})")
            return False
        text = llm.parse_improved_text(response) if job.kind is JobKind.TEXT_IMPROVEMENT else response
        selection = job.metadata.get("selection")
        if target == "task_description" and selection:
            self.fields.splice_task_description(text, (int(selection[0]), int(selection[1])))
        else:
            self.fields.set_field(target, text)
        return True

    def _apply_file_finder(self, job: BackgroundJob, response: str) -> bool:
        paths = llm.parse_path_list(response)
        mode = job.metadata.get("mode", config.file_finder_mode)
        if mode not in FILE_FINDER_MODES:
            mode = "replace"
        if mode == "extend":
            unknown = self.store.include_paths(paths)
        else:
            unknown = self.store.replace_all(paths)
        self.fields.pasted_paths = "\n".join(paths)
        self.last_unknown_paths = unknown
        if unknown:
            logger.warning(f"File finder suggested {len(unknown)} paths not in the project: {unknown[:5]}")
        logger.info(f"Applied {len(paths) - len(unknown)} found files ({mode})")
        return True

def _kind_title(kind: JobKind) -> str:
    return {
        JobKind.FILE_FINDER: "File finder",
        JobKind.REGEX_GENERATION: "Regex generation",
        JobKind.TEXT_IMPROVEMENT: "Text improvement",
    }[kind]
