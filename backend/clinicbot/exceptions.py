# /clinicbot/exceptions.py

# Error taxonomy for the dialogue engine. Only PersistenceFailure and
# RateLimited are allowed to abort a turn; the orchestrator maps every other
# failure to a safe default response.


class DialogueError(Exception):
    """Base class for all dialogue engine errors."""


class PersistenceFailure(DialogueError):
    """A session, patient or booking write (or read) failed or timed out."""


class SessionConflict(PersistenceFailure):
    """The session version changed between load and write (lost-update guard)."""

    def __init__(self, session_id: str, expected_version: int):
        super().__init__(f"Session {session_id} is no longer at version {expected_version}")
        self.session_id = session_id
        self.expected_version = expected_version


class ClassificationUnavailable(DialogueError):
    """The probabilistic classifier failed, timed out or returned garbage."""


class InvariantViolation(DialogueError):
    """Stored conversation state references a flow/step that does not exist."""


class RegistryMiss(InvariantViolation):
    """A flow or step id was not found in the flow registry."""


class RateLimited(DialogueError):
    """The sender exceeded the per-identity message budget for the window."""

    def __init__(self, identity: str, count: int, limit: int):
        super().__init__(f"Rate limit exceeded for {identity}: {count}/{limit}")
        self.identity = identity
        self.count = count
        self.limit = limit
