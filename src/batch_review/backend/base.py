"""Review backend interface consumed by the orchestration core."""

from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from batch_review.models import (
        ChainEntry,
        ChangeDetail,
        FileInfo,
        LabelInfo,
        Person,
        ReviewItem,
        SubmitRequirements,
    )


class BackendError(Exception):
    """A backend query failed (transport error, non-2xx status, bad payload)."""


@dataclass
class BackendResult:
    success: bool
    error: str = ""


class ReviewBackend(abc.ABC):
    """Abstract code-review server capability.

    Queries raise BackendError on failure. Mutations (votes, submits)
    return a BackendResult carrying the server's error text instead.
    """

    @abc.abstractmethod
    async def list_assigned_changes(self, query: str) -> list[ReviewItem]:
        """Return the open changes matching ``query``."""
        ...

    @abc.abstractmethod
    async def related_chain(self, change_id: str) -> list[ChainEntry]:
        """Related changes of ``change_id``, tip first. Empty when unrelated."""
        ...

    @abc.abstractmethod
    async def change_detail(self, change_id: str) -> ChangeDetail:
        ...

    @abc.abstractmethod
    async def current_revision(self, rest_id: str) -> str:
        ...

    @abc.abstractmethod
    async def post_vote(
        self, rest_id: str, revision_id: str, labels: dict[str, int],
        *, message: str | None = None, reviewers: list[str] | None = None,
        cc: list[str] | None = None, resolved: bool | None = None,
    ) -> BackendResult:
        ...

    @abc.abstractmethod
    async def submit(self, rest_id: str) -> BackendResult:
        ...

    @abc.abstractmethod
    async def submit_requirements(self, rest_id: str) -> SubmitRequirements:
        """Current submittability and the names of unmet requirements."""
        ...

    @abc.abstractmethod
    async def file_list(self, rest_id: str) -> list[FileInfo]:
        ...

    @abc.abstractmethod
    async def labels(self, rest_id: str) -> list[LabelInfo]:
        """Labels the current user may vote on for ``rest_id``, with permitted values."""
        ...

    @abc.abstractmethod
    async def suggest_people(self, rest_id: str, query: str, *, cc: bool = False) -> list[Person]:
        """Reviewer (or CC when ``cc``) suggestions for ``rest_id`` matching ``query``."""
        ...

    async def close(self) -> None:
        """Clean up resources."""
        return None
