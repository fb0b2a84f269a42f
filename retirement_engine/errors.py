"""Error types raised by the simulation engine."""

from __future__ import annotations

from typing import Iterable


class EngineError(Exception):
    """Base class for every error the engine reports to its caller."""

    retryable: bool = False


class IncompleteInputError(EngineError, ValueError):
    """Required retirement-planning fields are missing from the profile."""

    def __init__(self, missing_fields: Iterable[str]):
        self.missing_fields = tuple(missing_fields)
        super().__init__(
            "Profile is missing required fields: " + ", ".join(self.missing_fields)
        )


class InvalidParameterError(EngineError, ValueError):
    """Simulation parameters are out of range or inconsistent."""

    def __init__(self, problems: Iterable[str]):
        self.problems = tuple(problems)
        super().__init__("Invalid simulation parameters: " + "; ".join(self.problems))


class ComputeTimeoutError(EngineError, TimeoutError):
    """A simulation run did not finish inside its wall-clock budget."""

    retryable = True

    def __init__(self, budget_seconds: float, completed: int = 0, total: int = 0):
        self.budget_seconds = budget_seconds
        self.completed = completed
        self.total = total
        super().__init__(
            f"Simulation exceeded {budget_seconds:g}s budget "
            f"({completed}/{total} batches finished)"
        )


class CacheInconsistencyError(EngineError):
    """A stored result was computed from different inputs than requested."""

    def __init__(self, expected_hash: str, stored_hash: str):
        self.expected_hash = expected_hash
        self.stored_hash = stored_hash
        super().__init__(
            f"Cached result hash {stored_hash[:12]} does not match inputs {expected_hash[:12]}"
        )
