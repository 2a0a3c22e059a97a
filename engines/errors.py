"""Exception taxonomy shared by the mastery and planning engines."""

from __future__ import annotations

from typing import Any, Dict, Optional, Sequence


class EngineError(Exception):
    """Base class for all engine failures surfaced to callers."""


class NotFoundError(EngineError, KeyError):
    """An unknown student, concept, session, plan, goal or branch was referenced."""

    def __init__(self, kind: str, identifier: Any) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")

    def __str__(self) -> str:
        # KeyError would otherwise quote the message
        return str(self.args[0])


class InvalidTransitionError(EngineError):
    """The session state machine has no rule for ``event`` in ``state``."""

    def __init__(
        self,
        state: str,
        event: str,
        allowed: Optional[Sequence[str]] = None,
    ) -> None:
        self.state = state
        self.event = event
        self.allowed = tuple(allowed or ())
        message = f"Invalid transition: event {event} is not allowed in state {state}"
        if self.allowed:
            message += f" (allowed events: {', '.join(self.allowed)})"
        super().__init__(message)


class DataIntegrityError(EngineError):
    """Curriculum data is inconsistent (prerequisite cycle, empty goal, ...)."""

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        self.details = dict(details or {})
        super().__init__(message)


class PlanLimitError(EngineError):
    """Creating another plan would break the active-plan limits."""


class ConcurrencyConflictError(EngineError):
    """A mastery update kept losing the optimistic version check; retry later."""

    transient = True


__all__ = [
    "ConcurrencyConflictError",
    "DataIntegrityError",
    "EngineError",
    "InvalidTransitionError",
    "NotFoundError",
    "PlanLimitError",
]
