"""Anchor-based selection state machine, one instance per list."""

from __future__ import annotations

import enum
from collections.abc import Callable, Sequence

from pydantic import BaseModel

from batch_review.models import SelectionState


class SelectAction(str, enum.Enum):
    TOGGLE = "toggle"  # checkbox or Ctrl/Cmd+click
    RANGE = "range"  # Shift+click
    ANCHOR = "anchor"  # plain row click: move the anchor only
    CHAIN = "chain"  # click on a chain badge
    ALL = "all"
    NONE = "none"


class SelectionEvent(BaseModel):
    action: SelectAction
    rest_id: str | None = None


ChainKey = Callable[[str], str | None]


class Selection:
    """Selected ids plus the anchor used as the origin of range selection.

    The anchor is stored as an id, not an index, and ``sync`` drops it
    whenever it no longer resolves in the list, so a range can never be
    computed from a stale position.
    """

    def __init__(self) -> None:
        self.selected: set[str] = set()
        self.anchor: str | None = None

    def apply(
        self,
        event: SelectionEvent,
        ids: Sequence[str],
        chain_key: ChainKey | None = None,
    ) -> set[str]:
        """Apply ``event`` against the list ``ids`` in display order."""
        action = event.action
        if action == SelectAction.ALL:
            self.selected = set(ids)
            return set(self.selected)
        if action == SelectAction.NONE:
            self.selected = set()
            return set()

        clicked = event.rest_id
        if clicked is None or clicked not in ids:
            raise ValueError(f"{action.value} selection needs an id present in the list, got {clicked!r}")

        if action == SelectAction.TOGGLE:
            if clicked in self.selected:
                self.selected.discard(clicked)
            else:
                self.selected.add(clicked)
            self.anchor = clicked
        elif action == SelectAction.ANCHOR:
            self.anchor = clicked
        elif action == SelectAction.RANGE:
            self._select_range(clicked, ids)
        elif action == SelectAction.CHAIN:
            self._select_chain(clicked, ids, chain_key)
        return set(self.selected)

    def _select_range(self, clicked: str, ids: Sequence[str]) -> None:
        end = ids.index(clicked)
        if self.anchor is not None and self.anchor in ids:
            start = ids.index(self.anchor)
        else:
            start = 0
            self.anchor = clicked
        low, high = min(start, end), max(start, end)
        self.selected.update(ids[low:high + 1])

    def _select_chain(self, clicked: str, ids: Sequence[str], chain_key: ChainKey | None) -> None:
        key = chain_key(clicked) if chain_key is not None else None
        if key is None:
            return
        members = {rest_id for rest_id in ids if chain_key(rest_id) == key}
        if members <= self.selected:
            self.selected -= members
        else:
            self.selected |= members
        self.anchor = clicked

    def sync(self, ids: Sequence[str]) -> None:
        """Re-validate against the list after a membership or order change."""
        present = set(ids)
        if self.anchor is not None and self.anchor not in present:
            self.anchor = None
        self.selected &= present

    def state(self, ids: Sequence[str] | None = None) -> SelectionState:
        selected = [rest_id for rest_id in ids if rest_id in self.selected] if ids is not None else sorted(self.selected)
        return SelectionState(selected=selected, anchor=self.anchor)
