"""Shared fixtures for batch review tests."""

from __future__ import annotations

import pytest

from batch_review.backend.base import BackendError, BackendResult, ReviewBackend
from batch_review.models import (
    ChainEntry,
    ChangeDetail,
    ChangeStatus,
    FileInfo,
    LabelInfo,
    Owner,
    Person,
    ReviewItem,
    Severity,
    SubmitRequirements,
)


def make_item(rest_id: str, number: int = 0, severity: Severity | None = None) -> ReviewItem:
    return ReviewItem(
        rest_id=rest_id,
        vcs_id=f"I{rest_id}",
        number=number,
        subject=f"Change {rest_id}",
        project="platform",
        branch="main",
        owner=Owner(name="Dev", account_id=1000),
        severity=severity,
    )


class FakeBackend(ReviewBackend):
    """In-memory ReviewBackend that records every call."""

    def __init__(self, changes: list[ReviewItem] | None = None) -> None:
        self.changes = list(changes or [])
        self.chains: dict[str, list[ChainEntry]] = {}
        self.details: dict[str, ChangeDetail] = {}
        self.requirements: dict[str, SubmitRequirements] = {}
        self.files: dict[str, list[FileInfo]] = {}
        self.label_info: dict[str, list[LabelInfo]] = {}
        self.people: list[Person] = []
        self.vote_errors: dict[str, str] = {}
        self.submit_errors: dict[str, str] = {}
        self.failing: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self.votes: list[tuple[str, str, dict]] = []
        self.vote_kwargs: list[dict] = []
        self.submitted: list[str] = []
        self.closed = False

    def add_chain(self, items: list[ReviewItem], merged: tuple[str, ...] = ()) -> None:
        """Link ``items`` (base first) into one relation chain.

        ``merged`` names rest_ids of members already merged.
        """
        entries = [
            ChainEntry(
                commit=f"c-{item.rest_id}",
                vcs_id=item.vcs_id,
                number=item.number or None,
                status=ChangeStatus.MERGED if item.rest_id in merged else ChangeStatus.NEW,
            )
            for item in reversed(items)
        ]
        for item in items:
            self.chains[item.rest_id] = entries
            status = ChangeStatus.MERGED if item.rest_id in merged else ChangeStatus.NEW
            detail = ChangeDetail(vcs_id=item.vcs_id, number=item.number, status=status)
            self.details[item.rest_id] = detail
            self.details[item.vcs_id] = detail

    def _check(self, method: str, key: str) -> None:
        self.calls.append((method, key))
        if method in self.failing or key in self.failing:
            raise BackendError(f"{method} failed for {key}")

    async def list_assigned_changes(self, query: str) -> list[ReviewItem]:
        self._check("list_assigned_changes", query)
        return [item.model_copy(deep=True) for item in self.changes]

    async def related_chain(self, change_id: str) -> list[ChainEntry]:
        self._check("related_chain", change_id)
        return list(self.chains.get(change_id, []))

    async def change_detail(self, change_id: str) -> ChangeDetail:
        self._check("change_detail", change_id)
        if change_id not in self.details:
            raise BackendError(f"no such change {change_id}")
        return self.details[change_id]

    async def current_revision(self, rest_id: str) -> str:
        self._check("current_revision", rest_id)
        return f"rev-{rest_id}"

    async def post_vote(
        self, rest_id: str, revision_id: str, labels: dict[str, int],
        *, message: str | None = None, reviewers: list[str] | None = None,
        cc: list[str] | None = None, resolved: bool | None = None,
    ) -> BackendResult:
        self._check("post_vote", rest_id)
        if rest_id in self.vote_errors:
            return BackendResult(success=False, error=self.vote_errors[rest_id])
        self.votes.append((rest_id, revision_id, labels))
        self.vote_kwargs.append({"message": message, "reviewers": reviewers, "cc": cc, "resolved": resolved})
        return BackendResult(success=True)

    async def submit(self, rest_id: str) -> BackendResult:
        self._check("submit", rest_id)
        if rest_id in self.submit_errors:
            return BackendResult(success=False, error=self.submit_errors[rest_id])
        self.submitted.append(rest_id)
        return BackendResult(success=True)

    async def submit_requirements(self, rest_id: str) -> SubmitRequirements:
        self._check("submit_requirements", rest_id)
        return self.requirements.get(rest_id, SubmitRequirements(submittable=True))

    async def file_list(self, rest_id: str) -> list[FileInfo]:
        self._check("file_list", rest_id)
        return list(self.files.get(rest_id, []))

    async def labels(self, rest_id: str) -> list[LabelInfo]:
        self._check("labels", rest_id)
        if rest_id not in self.label_info:
            raise BackendError(f"no label info for {rest_id}")
        return list(self.label_info[rest_id])

    async def suggest_people(self, rest_id: str, query: str, *, cc: bool = False) -> list[Person]:
        self._check("suggest_people", rest_id)
        return [p for p in self.people if query.lower() in p.name.lower() and (cc or not p.is_group)]

    async def close(self) -> None:
        self.closed = True


@pytest.fixture(autouse=True)
def _isolate_cwd(tmp_path, monkeypatch):
    """Keep tests from reading a real .batch-review/ directory."""
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def items() -> list[ReviewItem]:
    return [make_item(rest_id, number) for number, rest_id in enumerate("ABCDE", start=101)]


@pytest.fixture
def backend(items) -> FakeBackend:
    return FakeBackend(items)
