"""Error taxonomy shared by the lifecycle and progress engines.

Caller-correctable errors (InvalidTransition, Unauthorized,
ValidationFailed, NotFound) propagate immediately and are never retried.
PersistenceVerificationFailed and ConflictingWrite are fatal for the
current operation but leave previously stored state intact; the caller
may retry explicitly.  ConflictDetected is not an exception at all: a
client/server merge reports it inside its result.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass


class CourseflowError(Exception):
    """Base class for every domain error raised by the engines."""


class InvalidTransition(CourseflowError):
    def __init__(
        self, from_status: str, to_status: str, message: str | None = None
    ) -> None:
        super().__init__(
            message or f"Invalid state transition from {from_status} to {to_status}"
        )
        self.from_status = from_status
        self.to_status = to_status


class Unauthorized(CourseflowError):
    pass


class ValidationFailed(CourseflowError):
    """Course content failed submission gating.

    Carries the full error list so the author can fix and resubmit.
    """

    def __init__(self, errors: Sequence[str]) -> None:
        super().__init__("Course validation failed: " + ", ".join(errors))
        self.errors = list(errors)


class NotFound(CourseflowError):
    pass


class PersistenceVerificationFailed(CourseflowError):
    """The store accepted a write but the read-back does not reflect it."""


class ConflictingWrite(CourseflowError):
    """A read-modify-write kept losing the optimistic-concurrency race."""


class StaleWriteError(Exception):
    """Raised by repositories when a document's revision no longer matches.

    Also raised by ``add`` when a concurrent writer created the same
    document first.  Services retry on it; it never reaches the caller
    directly (it is converted to ConflictingWrite once retries run out).
    """


@dataclass(frozen=True, slots=True)
class ConflictDetected:
    """Divergent completion state found while merging client and server.

    Reported in the sync result, never raised.
    """

    type: str
    server_only: tuple[str, ...]
    client_only: tuple[str, ...]
