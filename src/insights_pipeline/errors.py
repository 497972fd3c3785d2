"""Error hierarchy for the pipeline.

Only `ConfigError` is fatal to a run. The other errors are raised and handled
inside the pipeline: a failed domain fetch drops that domain for one user, an
insufficient cohort skips aggregation, a held lock leaves the trends to the
run that holds it.
"""

from __future__ import annotations

from typing import Any, Optional


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class ConfigError(PipelineError):
    """Missing or invalid configuration, or an unreachable store."""


class DomainFetchError(PipelineError):
    """One raw-record domain could not be read for one user."""

    def __init__(
        self,
        message: str,
        domain: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details)
        self.domain = domain


class InsufficientCohortError(PipelineError):
    """Too few distinct contributors in the window to publish anything."""

    def __init__(self, contributors: int, floor: int) -> None:
        super().__init__(
            f"{contributors} contributors in window, {floor} required",
            details={"contributors": contributors, "floor": floor},
        )
        self.contributors = contributors
        self.floor = floor


class LockHeldError(PipelineError):
    """Another process holds the advisory lock."""

    def __init__(self, lock_key: str, holder: str | None = None) -> None:
        super().__init__(
            f"Lock {lock_key!r} is held by {holder or 'another run'}",
            details={"lock_key": lock_key, "holder": holder},
        )
        self.lock_key = lock_key
        self.holder = holder
