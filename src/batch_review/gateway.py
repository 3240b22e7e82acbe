"""Submission gateway: the only code path that votes on or submits changes.

Every entry point consumes a confirmation token for its own action. Tokens
come from ConfirmationGate.arm(), which only the presentation channel
calls in response to a human arming a control; the automation server has
no handle on either object.
"""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from batch_review.backend.base import BackendError
from batch_review.models import ReviewItem, SubmissionAction, SubmissionReport

if TYPE_CHECKING:
    from batch_review.backend.base import ReviewBackend
    from batch_review.config import SubmissionSettings
    from batch_review.queue_store import ChangeQueueStore

logger = logging.getLogger(__name__)


class ConfirmationRequiredError(Exception):
    """A gateway call was made without a valid, unexpired confirmation."""


@dataclass
class _ArmedToken:
    action: SubmissionAction
    expires_at: float
    claimed: bool = False


class ConfirmationGate:
    """Single-use tokens that expire shortly after being armed.

    A claimed token no longer expires; it stays valid until consumed or
    disarmed.
    """

    def __init__(self, ttl_seconds: float = 10.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._armed: dict[str, _ArmedToken] = {}

    def arm(self, action: SubmissionAction) -> str:
        self._expire()
        token = secrets.token_urlsafe(16)
        self._armed[token] = _ArmedToken(action=action, expires_at=self._clock() + self.ttl_seconds)
        return token

    def disarm(self, token: str | None) -> None:
        if token:
            self._armed.pop(token, None)

    def _valid(self, token: str | None, action: SubmissionAction) -> _ArmedToken:
        self._expire()
        armed = self._armed.get(token) if token else None
        if armed is None:
            raise ConfirmationRequiredError(f"{action.value} requires a fresh confirmation")
        if armed.action != action:
            self._armed.pop(token, None)
            raise ConfirmationRequiredError(
                f"confirmation was armed for {armed.action.value}, not {action.value}"
            )
        return armed

    def claim(self, token: str | None, action: SubmissionAction) -> None:
        """Check ``token`` for ``action`` without spending it, and stop its expiry clock."""
        self._valid(token, action).claimed = True

    def consume(self, token: str | None, action: SubmissionAction) -> None:
        """Spend ``token`` for ``action``. Raises ConfirmationRequiredError if it is not valid."""
        self._valid(token, action)
        del self._armed[token]

    def _expire(self) -> None:
        now = self._clock()
        for token in [t for t, a in self._armed.items() if not a.claimed and a.expires_at <= now]:
            del self._armed[token]


def _label(item: ReviewItem) -> str:
    return f"Change {item.number or item.rest_id}"


class SubmissionGateway:
    """Applies votes and submissions to a Batch snapshot, one change at a time."""

    def __init__(
        self,
        backend: ReviewBackend,
        store: ChangeQueueStore,
        gate: ConfirmationGate,
        settings: SubmissionSettings,
    ) -> None:
        self.backend = backend
        self.store = store
        self.gate = gate
        self.settings = settings

    async def _vote_one(
        self,
        item: ReviewItem,
        labels: dict[str, int],
        *,
        message: str | None = None,
        reviewers: list[str] | None = None,
        cc: list[str] | None = None,
        resolved: bool | None = None,
    ) -> str | None:
        """Post one vote. Returns the error line, or None on success."""
        try:
            revision = await self.backend.current_revision(item.rest_id)
        except BackendError as exc:
            return f"{_label(item)}: Could not get current revision ({exc})"
        if not revision:
            return f"{_label(item)}: Could not get current revision"
        try:
            result = await self.backend.post_vote(
                item.rest_id, revision, labels,
                message=message, reviewers=reviewers, cc=cc, resolved=resolved,
            )
        except BackendError as exc:
            return f"{_label(item)}: {exc}"
        if not result.success:
            return f"{_label(item)}: {result.error or 'vote rejected'}"
        return None

    async def apply_vote(
        self,
        confirmation: str | None,
        items: list[ReviewItem],
        labels: dict[str, int],
        *,
        message: str | None = None,
        reviewers: list[str] | None = None,
        cc: list[str] | None = None,
        resolved: bool | None = None,
    ) -> SubmissionReport:
        """Vote on every item in order; those items leave the Batch whatever the outcome.

        Changes added to the Batch while the vote runs were never voted on
        and stay where they are.
        """
        self.gate.consume(confirmation, SubmissionAction.VOTE)
        report = SubmissionReport(action=SubmissionAction.VOTE)
        try:
            for item in items:
                error = await self._vote_one(
                    item, labels, message=message, reviewers=reviewers, cc=cc, resolved=resolved,
                )
                if error is None:
                    report.success_count += 1
                else:
                    report.failure_count += 1
                    report.errors.append(error)
        finally:
            self.store.discard_from_batch([item.rest_id for item in items])
        logger.info("Vote applied: %d ok, %d failed", report.success_count, report.failure_count)
        return report

    async def _approve(self, items: list[ReviewItem], report: SubmissionReport) -> int:
        labels = {self.settings.approve_label: self.settings.approve_value}
        approved = 0
        for item in items:
            error = await self._vote_one(item, labels)
            if error is None:
                approved += 1
                self.store.update_item(item.rest_id, has_approving_vote=True)
            else:
                report.failure_count += 1
                report.errors.append(error)
        return approved

    async def apply_approving_vote_only(self, confirmation: str | None, items: list[ReviewItem]) -> SubmissionReport:
        """Post only the approving label; items stay in Batch."""
        self.gate.consume(confirmation, SubmissionAction.APPROVE)
        report = SubmissionReport(action=SubmissionAction.APPROVE)
        report.success_count = await self._approve(items, report)
        logger.info("Approval applied: %d ok, %d failed", report.success_count, report.failure_count)
        return report

    async def _submit(self, items: list[ReviewItem], report: SubmissionReport) -> None:
        submitted: list[str] = []
        try:
            for item in items:
                try:
                    requirements = await self.backend.submit_requirements(item.rest_id)
                except BackendError as exc:
                    report.failure_count += 1
                    report.errors.append(f"{_label(item)}: Could not check submit requirements ({exc})")
                    continue
                if not requirements.submittable:
                    reason = ", ".join(requirements.unmet) or "not submittable"
                    report.skipped_count += 1
                    report.errors.append(f"{_label(item)}: skipped, {reason}")
                    self.store.update_item(item.rest_id, submittable=False, skip_reason=reason)
                    continue
                try:
                    result = await self.backend.submit(item.rest_id)
                except BackendError as exc:
                    result = None
                    error = str(exc)
                else:
                    error = result.error
                if result is not None and result.success:
                    report.success_count += 1
                    submitted.append(item.rest_id)
                else:
                    report.failure_count += 1
                    report.errors.append(f"{_label(item)}: {error or 'submit rejected'}")
                    self.store.update_item(item.rest_id, skip_reason=error or "submit rejected")
        finally:
            self.store.discard_from_batch(submitted)
        logger.info(
            "Submit finished: %d submitted, %d failed, %d skipped",
            report.success_count, report.failure_count, report.skipped_count,
        )

    async def submit_all(self, confirmation: str | None, items: list[ReviewItem]) -> SubmissionReport:
        """Submit in order, re-checking submittability right before each submit.

        An earlier submission can make a later chain member submittable,
        so status is never taken from the snapshot. Only successfully
        submitted items leave the Batch.
        """
        self.gate.consume(confirmation, SubmissionAction.SUBMIT)
        report = SubmissionReport(action=SubmissionAction.SUBMIT)
        await self._submit(items, report)
        return report

    async def approve_and_submit(self, confirmation: str | None, items: list[ReviewItem]) -> SubmissionReport:
        """Approve every item, then submit whatever has become submittable.

        ``success_count`` counts submitted changes. Approval failures are
        reported but the change is still offered for submission.
        """
        self.gate.consume(confirmation, SubmissionAction.APPROVE_AND_SUBMIT)
        report = SubmissionReport(action=SubmissionAction.APPROVE_AND_SUBMIT)
        approved = await self._approve(items, report)
        logger.info("Approved %d of %d change(s) before submitting", approved, len(items))
        await self._submit(items, report)
        return report
