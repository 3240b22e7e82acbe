"""Batch ordering: chains base-first, then by severity."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from batch_review.models import ChainInfo, ReviewItem, severity_priority

if TYPE_CHECKING:
    from batch_review.chain import ChainResolver
    from batch_review.queue_store import ChangeQueueStore

logger = logging.getLogger(__name__)

_STANDALONE_UNIT = 0
_CHAIN_UNIT = 1


def compute_order(items: list[ReviewItem], infos: dict[str, ChainInfo]) -> list[ReviewItem]:
    """Canonical Batch order.

    Chain members are grouped by base and ordered base first. A chain
    ranks by its most severe member. Standalone items and chains are
    ranked together by priority; on equal priority standalone items come
    first. Sorting is stable, so equal-ranked units keep their current
    relative order.
    """
    standalone: list[ReviewItem] = []
    groups: dict[str, list[ReviewItem]] = {}
    for item in items:
        info = infos.get(item.rest_id)
        if info is not None and info.in_chain and info.chain_base_id:
            groups.setdefault(info.chain_base_id, []).append(item)
        else:
            standalone.append(item)

    units: list[tuple[int, int, list[ReviewItem]]] = [
        (severity_priority(item.severity), _STANDALONE_UNIT, [item]) for item in standalone
    ]
    for members in groups.values():
        members.sort(key=lambda m: infos[m.rest_id].position or 0)
        top = max(severity_priority(m.severity) for m in members)
        units.append((top, _CHAIN_UNIT, members))

    units.sort(key=lambda unit: (-unit[0], unit[1]))
    return [item for _, _, members in units for item in members]


class BatchOrganizer:
    """Re-sorts the Batch queue in the background after mutations."""

    def __init__(self, store: ChangeQueueStore, resolver: ChainResolver) -> None:
        self.store = store
        self.resolver = resolver
        self.chain_infos: dict[str, ChainInfo] = {}
        self._tasks: set[asyncio.Task] = set()

    async def organize(self) -> bool:
        """Resolve chains and apply the canonical order. Returns True if the order changed."""
        items = self.store.batch
        if not items:
            return False
        infos = await self.resolver.resolve_many(items)
        self.chain_infos.update(infos)

        current = self.store.batch
        if {i.rest_id for i in current} != {i.rest_id for i in items}:
            # A newer mutation scheduled its own run.
            logger.debug("Batch membership changed while organizing; discarding result")
            return False
        ordered = compute_order(current, infos)
        changed = self.store.set_batch_order([item.rest_id for item in ordered])
        if changed:
            logger.info("Reordered batch of %d change(s)", len(ordered))
        return changed

    def schedule(self) -> asyncio.Task:
        """Run organize() in the background."""
        task = asyncio.create_task(self.organize(), name="batch-organize")
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Batch organize failed: %s", exc, exc_info=exc)

    async def drain(self) -> None:
        """Wait for every scheduled run to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    def chain_key(self, rest_id: str) -> str | None:
        info = self.chain_infos.get(rest_id)
        if info is None or not info.in_chain:
            return None
        return info.chain_base_id
