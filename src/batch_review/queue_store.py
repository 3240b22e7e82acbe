"""Queue store: the Incoming and Batch collections and their mutations."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any

from batch_review.models import QueueName, ReviewItem, Severity

logger = logging.getLogger(__name__)

StoreListener = Callable[[], Any]


class ChangeQueueStore:
    """Owns the two ordered queues.

    A ``rest_id`` lives in at most one queue and at most once within it;
    every mutation path deduplicates rather than checking afterwards.
    Mutations never await, so within one event loop they cannot interleave.
    """

    def __init__(self) -> None:
        self._incoming: list[ReviewItem] = []
        self._batch: list[ReviewItem] = []
        self._listeners: list[StoreListener] = []

    # --- Observation ---

    @property
    def incoming(self) -> list[ReviewItem]:
        return list(self._incoming)

    @property
    def batch(self) -> list[ReviewItem]:
        return list(self._batch)

    def queue(self, name: QueueName) -> list[ReviewItem]:
        return self.batch if name == QueueName.BATCH else self.incoming

    def ids(self, name: QueueName) -> list[str]:
        items = self._batch if name == QueueName.BATCH else self._incoming
        return [item.rest_id for item in items]

    def find(self, rest_id: str) -> tuple[QueueName, ReviewItem] | None:
        for item in self._incoming:
            if item.rest_id == rest_id:
                return QueueName.INCOMING, item
        for item in self._batch:
            if item.rest_id == rest_id:
                return QueueName.BATCH, item
        return None

    def subscribe(self, listener: StoreListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: StoreListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                logger.exception("Queue listener failed")

    # --- Mutations ---

    def add_to_batch(
        self,
        ids: Iterable[str],
        severities: dict[str, Severity] | None = None,
        insert_at: int | None = None,
    ) -> list[ReviewItem]:
        """Move matching Incoming items into Batch. Unknown ids are ignored."""
        wanted = set(ids)
        if not wanted:
            return []
        severities = severities or {}

        moving = [item for item in self._incoming if item.rest_id in wanted]
        if not moving:
            return []
        self._incoming = [item for item in self._incoming if item.rest_id not in wanted]

        in_batch = {item.rest_id for item in self._batch}
        added: list[ReviewItem] = []
        for item in moving:
            if item.rest_id in in_batch:
                continue
            in_batch.add(item.rest_id)
            if item.rest_id in severities:
                item.severity = severities[item.rest_id]
            added.append(item)

        self._batch = _splice(self._batch, added, insert_at)
        logger.debug("Added %d item(s) to batch", len(added))
        self._notify()
        return added

    def remove_from_batch(self, ids: Iterable[str], insert_at: int | None = None) -> list[ReviewItem]:
        """Move matching Batch items back to Incoming, clearing their badges."""
        wanted = set(ids)
        moving = [item for item in self._batch if item.rest_id in wanted]
        if not moving:
            return []
        self._batch = [item for item in self._batch if item.rest_id not in wanted]

        returned = self._return_to_incoming(moving, insert_at)
        self._notify()
        return returned

    def clear_batch(self) -> list[ReviewItem]:
        """Move every Batch item back to Incoming."""
        if not self._batch:
            return []
        moving, self._batch = self._batch, []
        returned = self._return_to_incoming(moving, None)
        self._notify()
        return returned

    def discard_from_batch(self, ids: Iterable[str] | None = None) -> list[ReviewItem]:
        """Drop items from Batch without returning them to Incoming.

        With ``ids=None`` the whole Batch is dropped.
        """
        if ids is None:
            dropped, self._batch = self._batch, []
        else:
            wanted = set(ids)
            dropped = [item for item in self._batch if item.rest_id in wanted]
            self._batch = [item for item in self._batch if item.rest_id not in wanted]
        if dropped:
            self._notify()
        return dropped

    def reorder(self, ids: Iterable[str], target: QueueName, drop_index: int) -> None:
        """Move ``ids`` as a block to ``drop_index`` within one queue.

        ``drop_index`` counts positions in the queue as it is now; moved
        items keep their relative order, as do the items left in place.
        """
        moving_ids = set(ids)
        current = self._batch if target == QueueName.BATCH else self._incoming
        moving = [item for item in current if item.rest_id in moving_ids]
        if not moving:
            return
        remaining = [item for item in current if item.rest_id not in moving_ids]

        adjusted = 0
        for item in current[:max(drop_index, 0)]:
            if item.rest_id not in moving_ids:
                adjusted += 1

        reordered = remaining[:adjusted] + moving + remaining[adjusted:]
        if [i.rest_id for i in reordered] == [i.rest_id for i in current]:
            return
        if target == QueueName.BATCH:
            self._batch = reordered
        else:
            self._incoming = reordered
        self._notify()

    def replace_incoming(self, items: Iterable[ReviewItem]) -> None:
        """Replace Incoming after a refresh, skipping anything already in Batch."""
        seen = {item.rest_id for item in self._batch}
        fresh: list[ReviewItem] = []
        for item in items:
            if item.rest_id in seen:
                continue
            seen.add(item.rest_id)
            fresh.append(item)
        self._incoming = fresh
        self._notify()

    def set_batch_order(self, ids: list[str]) -> bool:
        """Apply a permutation of the current Batch. Returns True if the order changed."""
        current = [item.rest_id for item in self._batch]
        if ids == current:
            return False
        if len(ids) != len(current) or set(ids) != set(current):
            logger.debug("Ignoring stale batch order (%d ids vs %d in batch)", len(ids), len(current))
            return False
        by_id = {item.rest_id: item for item in self._batch}
        self._batch = [by_id[rest_id] for rest_id in ids]
        self._notify()
        return True

    def update_item(self, rest_id: str, /, **fields: Any) -> ReviewItem | None:
        """Set fields on the item with ``rest_id`` in whichever queue holds it."""
        found = self.find(rest_id)
        if found is None:
            return None
        _, item = found
        for key, value in fields.items():
            if key not in ReviewItem.model_fields or key == "rest_id":
                raise ValueError(f"Unknown or immutable field: {key}")
            setattr(item, key, value)
        self._notify()
        return item

    # --- Helpers ---

    def _return_to_incoming(self, items: list[ReviewItem], insert_at: int | None) -> list[ReviewItem]:
        present = {item.rest_id for item in self._incoming}
        returned = []
        for item in items:
            if item.rest_id in present:
                continue
            present.add(item.rest_id)
            returned.append(item.clear_badges())
        self._incoming = _splice(self._incoming, returned, insert_at)
        return returned


def _splice(target: list[ReviewItem], items: list[ReviewItem], insert_at: int | None) -> list[ReviewItem]:
    if not items:
        return target
    if insert_at is None or insert_at < 0:
        return target + items
    at = min(insert_at, len(target))
    return target[:at] + items + target[at:]
