"""Domain errors raised by the lexicon, lifecycle and ingestion services.

Services raise these instead of HTTP exceptions so the same code paths can be
driven from scripts and tests. The FastAPI layer translates each type to a
status code in one place (see `main.py`).
"""


class ChronoError(Exception):
    """Base class for all domain errors."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r})"


class NotFoundError(ChronoError):
    """A request, layer or user does not exist (or is hidden from the caller)."""


class InvalidStateError(ChronoError):
    """A lifecycle transition was attempted from the wrong status.

    Also raised when a conditional update affects zero rows because a
    concurrent writer moved the request first.
    """

    def __init__(self, message: str, current_status: str | None = None) -> None:
        self.current_status = current_status
        super().__init__(message)


class UnauthorizedError(ChronoError):
    """The caller lacks the role or ownership required for the operation."""


class ValidationError(ChronoError):
    """Required input is missing or malformed (e.g. empty analysis text)."""


class AuthError(ChronoError):
    """The shared secret presented on result ingestion does not verify."""


class DependencyError(ChronoError):
    """The external computation service failed or could not be reached."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)
