"""Relation-chain resolution with a session-lifetime cache.

A change belongs to a chain when the backend reports more than one
*active* (not yet merged) member in its related-changes graph. Merged
ancestors are done: they neither count toward the chain length nor
shift positions. Position 1 is the base, the oldest active ancestor.

Chain membership is treated as stable for the lifetime of the core.
A dependent pushed onto an already-resolved chain mid-session is not
seen until a new core re-resolves it.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Iterable
from typing import TYPE_CHECKING

from batch_review.backend.base import BackendError
from batch_review.models import ChainEntry, ChainInfo, ChangeStatus, ReviewItem

if TYPE_CHECKING:
    from batch_review.backend.base import ReviewBackend

logger = logging.getLogger(__name__)

STANDALONE = ChainInfo(in_chain=False)


class ChainCache:
    """ChainInfo keyed by ``vcs_id``.

    Unbounded by default, so entries live as long as the core. With
    ``max_entries`` set, the oldest entries are evicted past that size.
    """

    def __init__(self, max_entries: int | None = None) -> None:
        self.max_entries = max_entries
        self._entries: OrderedDict[str, ChainInfo] = OrderedDict()

    def get(self, vcs_id: str) -> ChainInfo | None:
        info = self._entries.get(vcs_id)
        return info.model_copy() if info is not None else None

    def put(self, vcs_id: str, info: ChainInfo) -> None:
        self._entries[vcs_id] = info.model_copy()
        self._entries.move_to_end(vcs_id)
        while self.max_entries is not None and len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Evicted chain info for %s", evicted)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, vcs_id: object) -> bool:
        return vcs_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class ChainResolver:
    """Resolves ChainInfo for changes, caching and sharing in-flight lookups."""

    def __init__(self, backend: ReviewBackend, cache: ChainCache | None = None) -> None:
        self.backend = backend
        self.cache = cache if cache is not None else ChainCache()
        self._inflight: dict[str, asyncio.Future[ChainInfo]] = {}

    async def chain_info(self, vcs_id: str, rest_id: str | None = None) -> ChainInfo:
        """ChainInfo for a change; never raises, degrades to standalone."""
        cached = self.cache.get(vcs_id)
        if cached is not None:
            return cached

        pending = self._inflight.get(vcs_id)
        if pending is not None:
            info = await asyncio.shield(pending)
            return info.model_copy()

        future: asyncio.Future[ChainInfo] = asyncio.get_running_loop().create_future()
        self._inflight[vcs_id] = future
        try:
            info = await self._lookup(vcs_id, rest_id or vcs_id)
        except asyncio.CancelledError:
            future.cancel()
            raise
        finally:
            self._inflight.pop(vcs_id, None)
        future.set_result(info)
        return info.model_copy()

    async def _lookup(self, vcs_id: str, lookup_id: str) -> ChainInfo:
        try:
            info = await self._resolve(vcs_id, lookup_id)
        except (BackendError, ValueError) as exc:
            logger.warning("Chain lookup for %s failed, treating as standalone: %s", vcs_id, exc)
            return STANDALONE.model_copy()
        except Exception:
            logger.exception("Unexpected error resolving chain for %s", vcs_id)
            return STANDALONE.model_copy()
        self.cache.put(vcs_id, info)
        return info

    async def resolve_many(self, items: Iterable[ReviewItem]) -> dict[str, ChainInfo]:
        """Resolve every item concurrently. Keyed by ``rest_id``."""
        items = list(items)
        infos = await asyncio.gather(
            *(self.chain_info(item.vcs_id or item.rest_id, item.rest_id) for item in items)
        )
        return {item.rest_id: info for item, info in zip(items, infos)}

    async def _resolve(self, vcs_id: str, lookup_id: str) -> ChainInfo:
        chain = await self.backend.related_chain(lookup_id)
        if len(chain) < 2:
            return STANDALONE.model_copy()

        own = await self.backend.change_detail(lookup_id)
        entries = await asyncio.gather(*(self._with_status(entry) for entry in chain))
        active = [entry for entry in entries if entry.status != ChangeStatus.MERGED]

        merged = len(entries) - len(active)
        logger.debug(
            "Chain for %s: %d total, %d merged, %d active", vcs_id, len(entries), merged, len(active),
        )

        if len(active) < 2:
            return STANDALONE.model_copy()
        index = next((i for i, entry in enumerate(active) if entry.vcs_id == own.vcs_id), -1)
        if index < 0:
            # The change itself is merged or missing from its own graph.
            return STANDALONE.model_copy()

        base = active[-1]
        base_number = base.number
        if base_number is None:
            base_number = await self._number_of(base.vcs_id)
        return ChainInfo(
            in_chain=True,
            position=len(active) - index,
            chain_length=len(active),
            chain_base_id=base.vcs_id,
            chain_base_number=base_number,
        )

    async def _with_status(self, entry: ChainEntry) -> ChainEntry:
        if entry.status is not None:
            return entry
        try:
            detail = await self.backend.change_detail(entry.vcs_id)
        except BackendError as exc:
            # Unknown status counts as active.
            logger.warning("Status lookup for chain member %s failed: %s", entry.vcs_id, exc)
            return entry
        return entry.model_copy(update={"status": detail.status, "number": entry.number or detail.number})

    async def _number_of(self, vcs_id: str) -> int | None:
        try:
            detail = await self.backend.change_detail(vcs_id)
        except BackendError as exc:
            logger.warning("Could not fetch base change %s: %s", vcs_id, exc)
            return None
        return detail.number
