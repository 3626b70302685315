"""Commission engine error taxonomy."""

from __future__ import annotations

import re

_TRANSITION_MESSAGE = re.compile(
    r'^Invalid commission transition: "(?P<source>[^"]*)" -> "(?P<target>[^"]*)"\. '
    r'Valid transitions from "[^"]*": (?P<allowed>.*)$',
)
_TERMINAL_TEXT = "(none, terminal state)"


class CommissionError(RuntimeError):
    """Base class for errors raised to callers of commission operations."""


class NotFound(CommissionError):
    """Unknown commission, project, or worker."""


class InvalidState(CommissionError):
    """Operation attempted from a status that forbids it."""

    def __init__(self, message: str, *, current: str | None = None) -> None:
        super().__init__(message)
        self.current = current


class InvalidTransition(CommissionError):
    """State machine edge rejected."""

    def __init__(self, source: str, target: str, allowed: tuple[str, ...]) -> None:
        allowed_text = ", ".join(allowed) if allowed else _TERMINAL_TEXT
        super().__init__(
            f'Invalid commission transition: "{source}" -> "{target}". '
            f'Valid transitions from "{source}": {allowed_text}',
        )
        self.source = source
        self.target = target
        self.allowed = allowed

    @classmethod
    def from_message(cls, message: str) -> InvalidTransition:
        """Rebuild the error from its message, as reported over HTTP."""

        match = _TRANSITION_MESSAGE.match(message)
        if match is None:
            error = cls.__new__(cls)
            CommissionError.__init__(error, message)
            error.source = ""
            error.target = ""
            error.allowed = ()
            return error
        allowed_text = match["allowed"]
        allowed = () if allowed_text == _TERMINAL_TEXT else tuple(allowed_text.split(", "))
        return cls(match["source"], match["target"], allowed)


class SpawnFailure(CommissionError):
    """Worker process could not be created."""


class PersistenceFailure(CommissionError):
    """Artifact write failed after a state decision was made."""
