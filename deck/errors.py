"""Error taxonomy for the session engine."""
import threading


class DeckError(Exception): pass

class LoadError(DeckError):
    """Catalog fetch failed. Retryable; existing selection state is kept."""

class AbortedOperation(DeckError):
    """A cancelled task reached a guard check. Not a failure."""

class PersistenceError(DeckError):
    """A session write failed. The dirty flag stays set."""

class SessionNotFound(DeckError):
    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id

class StaleJobMismatch(DeckError):
    def __init__(self, job_id: str, job_session_id: str | None, active_session_id: str | None):
        super().__init__(
            f"Job {job_id} belongs to session {job_session_id}, active is {active_session_id}"
        )
        self.job_id = job_id
        self.job_session_id = job_session_id
        self.active_session_id = active_session_id

class ValidationError(DeckError):
    def __init__(self, field_name: str, message: str):
        super().__init__(f"{field_name}: {message}")
        self.field_name = field_name
        self.message = message

def ensure_not_cancelled(cancel_event: threading.Event | None, what: str = "operation") -> None:
    """Guard check placed immediately before a state mutation."""
    if cancel_event is not None and cancel_event.is_set():
        raise AbortedOperation(f"{what} cancelled")
