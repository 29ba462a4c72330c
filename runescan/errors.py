from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ._types import Decision


class RunescanError(Exception):
    """Base class for failures of the tool itself, never of the observed target."""


class ValidationError(RunescanError, ValueError):
    pass


class AuthorizationError(RunescanError):
    def __init__(self, decision: "Decision"):
        super().__init__(decision.reason)
        self.decision = decision


class SpawnError(RunescanError, RuntimeError):
    pass


class ExecutionError(RunescanError, RuntimeError):
    pass


class DuplicateNameError(RunescanError, KeyError):
    pass


class UnknownTriggerError(RunescanError, KeyError):
    pass


class TriggerRegistryFull(RunescanError):
    pass


class TimelineOverflow(UserWarning):
    """Held by a full Timeline and reported next to results; never raised."""

    def __init__(self, capacity: int, dropped: int = 0):
        super().__init__(capacity, dropped)
        self.capacity = capacity
        self.dropped = dropped

    def __str__(self):
        return f"timeline capacity {self.capacity} reached, {self.dropped} checkpoint(s) dropped"
