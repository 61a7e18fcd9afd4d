"""
Engine exception classes.

Generation problems are recovered locally where possible and only reach the
caller once every retry and fallback is exhausted. Persistence failures are
always raised so a lost write is visible to the caller.
"""

from typing import Optional


class MasteryEngineError(Exception):
    """Base class for all engine exceptions."""

    def __init__(self, message: str, original_exception: Optional[Exception] = None):
        super().__init__(message)
        self.message = message
        self.original_exception = original_exception


class GenerationError(MasteryEngineError):
    """Raised when the text-generation collaborator cannot produce usable questions."""

    def __init__(self, message: str, original_exception: Optional[Exception] = None):
        super().__init__(f"Failed to generate question: {message}", original_exception)


class InvalidQuestionError(GenerationError):
    """Raised when generated output fails shape validation."""

    def __init__(self, reason: str):
        super().__init__(f"invalid shape ({reason})")
        self.reason = reason


class SessionGenerationError(MasteryEngineError):
    """Raised when a practice session is stored in the error state."""

    def __init__(self, session_id: str, message: Optional[str]):
        super().__init__(message or "Failed to prepare session.")
        self.session_id = session_id


class SessionNotFoundError(MasteryEngineError):
    """Raised when a practice session id does not exist."""

    def __init__(self, session_id: str):
        super().__init__(f"Practice session {session_id} not found")
        self.session_id = session_id


class InvalidSessionStateError(MasteryEngineError):
    """Raised when a lifecycle operation is not allowed from the current status."""

    def __init__(self, session_id: str, status: str, action: str):
        super().__init__(f"Cannot {action} session {session_id} while it is {status}")
        self.session_id = session_id
        self.status = status
        self.action = action


class PersistenceError(MasteryEngineError):
    """
    Raised when a database write fails.

    The transaction has been rolled back; callers may retry the whole operation.
    """

    def __init__(self, action: str, original_exception: Optional[Exception] = None):
        super().__init__(f"Database error while trying to {action}", original_exception)
        self.action = action
        self.retryable = True
