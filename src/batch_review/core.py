"""Orchestration core: wires queues, chains, ordering, selection, server and gateway."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

from batch_review.automation import AutomationCallbacks, AutomationServer, ServerStartError
from batch_review.backend.base import BackendError
from batch_review.chain import ChainCache, ChainResolver
from batch_review.config import Settings
from batch_review.gateway import ConfirmationGate, SubmissionGateway
from batch_review.models import (
    DEFAULT_LABELS,
    CoreSnapshot,
    FileInfo,
    LabelInfo,
    Person,
    QueueName,
    ReviewItem,
    SelectionState,
    ServerState,
    ServerStatus,
    Severity,
    SubmissionAction,
    SubmissionReport,
)
from batch_review.organizer import BatchOrganizer
from batch_review.queue_store import ChangeQueueStore
from batch_review.selection import SelectAction, Selection, SelectionEvent
from batch_review.sse import SnapshotBroker

if TYPE_CHECKING:
    from batch_review.backend.base import ReviewBackend

logger = logging.getLogger(__name__)


class ReviewCore:
    """One orchestration-core instance. Construct explicitly and pass it around."""

    def __init__(self, backend: ReviewBackend, settings: Settings | None = None) -> None:
        self.settings = settings or Settings()
        self.backend = backend
        self.store = ChangeQueueStore()
        self.resolver = ChainResolver(backend, ChainCache(self.settings.chain_cache_size))
        self.organizer = BatchOrganizer(self.store, self.resolver)
        self.selections: dict[QueueName, Selection] = {
            QueueName.INCOMING: Selection(),
            QueueName.BATCH: Selection(),
        }
        self.gate = ConfirmationGate(self.settings.submission.confirmation_ttl_seconds)
        self.gateway = SubmissionGateway(backend, self.store, self.gate, self.settings.submission)
        self.broker = SnapshotBroker()
        self.loading = False
        self.labels: list[LabelInfo] = [label.model_copy(deep=True) for label in DEFAULT_LABELS]
        self._labels_fetched = False
        self.automation = AutomationServer(
            AutomationCallbacks(
                get_batch=lambda: self.store.batch,
                get_incoming=lambda: self.store.incoming,
                add_to_batch=self._automation_add,
                clear_batch=self.clear_batch,
            ),
            self.settings.automation,
            on_state_change=self._on_server_state,
        )
        self.store.subscribe(self._on_store_changed)

    # --- Snapshots ---

    def snapshot(self) -> CoreSnapshot:
        return CoreSnapshot(
            incoming=self.store.incoming,
            batch=self.store.batch,
            selection={
                name: selection.state(self.store.ids(name))
                for name, selection in self.selections.items()
            },
            server=ServerStatus(state=self.automation.state, port=self.automation.port),
            labels=self.labels,
            loading=self.loading,
        )

    def publish(self) -> None:
        self.broker.publish("state", self.snapshot())

    def _on_store_changed(self) -> None:
        for name, selection in self.selections.items():
            selection.sync(self.store.ids(name))
        self.publish()

    def _on_server_state(self, state: ServerState, port: int | None) -> None:
        self.publish()

    def _publish_error(self, operation: str, message: str) -> None:
        self.broker.publish("error", {"operation": operation, "message": message})

    # --- Queue operations ---

    async def refresh(self) -> bool:
        """Re-fetch Incoming from the backend. Returns False if the fetch failed."""
        self.loading = True
        self.publish()
        try:
            items = await self.backend.list_assigned_changes(self.settings.backend.incoming_query)
        except BackendError as exc:
            logger.warning("Refresh failed: %s", exc)
            self.loading = False
            self._publish_error("refresh", str(exc))
            self.publish()
            return False
        except BaseException:
            self.loading = False
            raise
        self.loading = False
        self.store.replace_incoming(items)
        logger.info("Refreshed incoming: %d change(s)", len(self.store.incoming))
        return True

    async def add_to_batch(
        self,
        ids: Iterable[str],
        severities: dict[str, Severity] | None = None,
        insert_at: int | None = None,
    ) -> list[ReviewItem]:
        was_empty = not self.store.batch
        added = self.store.add_to_batch(ids, severities, insert_at)
        if not added:
            return added
        if was_empty:
            # First items: show them already ordered.
            await self.organizer.organize()
            if not self._labels_fetched:
                await self._fetch_labels()
        else:
            self.organizer.schedule()
        return added

    async def _automation_add(self, ids: list[str], severities: dict[str, Severity]) -> None:
        await self.add_to_batch(ids, severities)

    async def remove_from_batch(self, ids: Iterable[str], insert_at: int | None = None) -> list[ReviewItem]:
        removed = self.store.remove_from_batch(ids, insert_at)
        if removed and self.store.batch:
            self.organizer.schedule()
        return removed

    async def clear_batch(self) -> list[ReviewItem]:
        return self.store.clear_batch()

    async def reorder(self, ids: Iterable[str], target: QueueName, drop_index: int) -> None:
        # A manual reorder is not re-sorted; the next add re-applies the canonical order.
        self.store.reorder(ids, target, drop_index)

    async def load_files(self, rest_id: str) -> list[FileInfo]:
        """Fetch and attach the file list of a change; empty on failure."""
        if self.store.find(rest_id) is None:
            return []
        try:
            files = await self.backend.file_list(rest_id)
        except BackendError as exc:
            logger.warning("Could not load files for %s: %s", rest_id, exc)
            files = []
        self.store.update_item(rest_id, files=files, files_loaded=True)
        return files

    async def _fetch_labels(self) -> None:
        """Load the votable labels from the first Batch change; keep the defaults on failure."""
        if not self.store.batch:
            return
        rest_id = self.store.batch[0].rest_id
        try:
            labels = await self.backend.labels(rest_id)
        except BackendError as exc:
            logger.warning("Could not load labels for %s, using defaults: %s", rest_id, exc)
            return
        self._labels_fetched = True
        if labels:
            self.labels = labels
            self.publish()

    async def suggest_people(self, query: str, *, cc: bool = False) -> list[Person]:
        """Reviewer or CC suggestions, asked of the first Batch change. Empty with no Batch."""
        if not self.store.batch:
            return []
        rest_id = self.store.batch[0].rest_id
        try:
            return await self.backend.suggest_people(rest_id, query, cc=cc)
        except BackendError as exc:
            logger.warning("People suggestions failed for %s: %s", rest_id, exc)
            return []

    # --- Selection ---

    async def select(self, queue: QueueName, event: SelectionEvent) -> SelectionState:
        ids = self.store.ids(queue)
        chain_key = None
        if event.action == SelectAction.CHAIN:
            infos = await self.resolver.resolve_many(self.store.queue(queue))
            ids = self.store.ids(queue)

            def chain_key(rest_id: str) -> str | None:
                info = infos.get(rest_id)
                return info.chain_base_id if info is not None and info.in_chain else None

        selection = self.selections[queue]
        selection.apply(event, ids, chain_key)
        self.publish()
        return selection.state(ids)

    def selected(self, queue: QueueName) -> list[str]:
        return self.selections[queue].state(self.store.ids(queue)).selected

    # --- Automation server ---

    async def start_server(self) -> int:
        try:
            return await self.automation.start()
        except ServerStartError as exc:
            logger.error("Automation server failed to start: %s", exc)
            self._publish_error("startServer", str(exc))
            raise

    async def stop_server(self) -> None:
        await self.automation.stop()

    # --- Human-confirmed actions ---

    def arm(self, action: SubmissionAction) -> str:
        return self.gate.arm(action)

    async def _ordered_batch(self) -> list[ReviewItem]:
        await self.organizer.drain()
        await self.organizer.organize()
        return self.store.batch

    async def _confirmed_batch(self, confirmation: str | None, action: SubmissionAction) -> list[ReviewItem]:
        """Claim ``confirmation`` before ordering, so an invalid token costs no backend traffic."""
        self.gate.claim(confirmation, action)
        try:
            return await self._ordered_batch()
        except BaseException:
            self.gate.disarm(confirmation)
            raise

    def _report(self, report: SubmissionReport) -> SubmissionReport:
        self.broker.publish("report", report)
        if report.errors:
            logger.warning(report.summary(self.settings.submission.error_summary_lines))
        return report

    async def vote(
        self,
        confirmation: str | None,
        labels: dict[str, int],
        *,
        message: str | None = None,
        reviewers: list[str] | None = None,
        cc: list[str] | None = None,
        resolved: bool | None = None,
    ) -> SubmissionReport:
        items = await self._confirmed_batch(confirmation, SubmissionAction.VOTE)
        report = await self.gateway.apply_vote(
            confirmation, items, labels, message=message, reviewers=reviewers, cc=cc, resolved=resolved,
        )
        return self._report(report)

    async def approve_all(self, confirmation: str | None) -> SubmissionReport:
        items = await self._confirmed_batch(confirmation, SubmissionAction.APPROVE)
        return self._report(await self.gateway.apply_approving_vote_only(confirmation, items))

    async def submit_all(self, confirmation: str | None) -> SubmissionReport:
        items = await self._confirmed_batch(confirmation, SubmissionAction.SUBMIT)
        return self._report(await self.gateway.submit_all(confirmation, items))

    async def approve_and_submit(self, confirmation: str | None) -> SubmissionReport:
        items = await self._confirmed_batch(confirmation, SubmissionAction.APPROVE_AND_SUBMIT)
        return self._report(await self.gateway.approve_and_submit(confirmation, items))

    async def close(self) -> None:
        await self.organizer.close()
        await self.automation.stop()
        self.broker.disconnect_all()
        await self.backend.close()
