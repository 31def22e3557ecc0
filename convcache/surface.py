from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class LiveItem:
    """One rendered item: its id and the representation needed to render it again."""

    id: str
    serialized: str


class RenderSurface(Protocol):
    def list_visible_items(self) -> Sequence[LiveItem]: ...

    def remove_items(self, ids: Sequence[str]) -> None: ...

    def insert_items_at_top(self, serialized_items: Sequence[str]) -> None: ...

    def on_reached_top_edge(self, callback: Callable[[], object]) -> None: ...

    def on_reached_bottom_edge(self, callback: Callable[[], object]) -> None: ...
