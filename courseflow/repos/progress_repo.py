from __future__ import annotations

from dataclasses import replace
from typing import Protocol

from courseflow.core.errors import StaleWriteError
from courseflow.models.progress import Progress


class ProgressRepo(Protocol):
    """One progress document per (user_id, course_id)."""

    async def get(self, user_id: str, course_id: str) -> Progress | None: ...
    async def add(self, progress: Progress) -> Progress: ...
    async def save(self, progress: Progress) -> Progress: ...
    async def list_by_course(self, course_id: str) -> list[Progress]: ...
    async def list_by_user(self, user_id: str) -> list[Progress]: ...


class InMemoryProgressRepo:
    """Revision-checked in-memory store.

    ``save`` only succeeds when the caller's copy carries the revision
    currently stored, the same contract the PostgreSQL repo enforces
    with ``WHERE revision = :expected``.
    """

    def __init__(self) -> None:
        self._store: dict[tuple[str, str], Progress] = {}

    async def get(self, user_id: str, course_id: str) -> Progress | None:
        return self._store.get((user_id, course_id))

    async def add(self, progress: Progress) -> Progress:
        key = (progress.user_id, progress.course_id)
        if key in self._store:
            raise StaleWriteError(
                f"progress for user={progress.user_id} course={progress.course_id} "
                "already exists"
            )
        stored = replace(progress, revision=1)
        self._store[key] = stored
        return stored

    async def save(self, progress: Progress) -> Progress:
        key = (progress.user_id, progress.course_id)
        current = self._store.get(key)
        if current is None or current.revision != progress.revision:
            raise StaleWriteError(f"progress {progress.id} changed since it was read")
        stored = replace(progress, revision=progress.revision + 1)
        self._store[key] = stored
        return stored

    async def list_by_course(self, course_id: str) -> list[Progress]:
        return [p for (_, c), p in self._store.items() if c == course_id]

    async def list_by_user(self, user_id: str) -> list[Progress]:
        return [p for (u, _), p in self._store.items() if u == user_id]
