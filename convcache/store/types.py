from __future__ import annotations

from dataclasses import dataclass
from typing import Any, TypedDict


@dataclass
class WindowEntry:
    id: int
    conversation_key: str
    item_id: str | None
    payload: str
    created_at: float


@dataclass
class OverlayRecord:
    id: str
    pinned_at: float
    item: dict[str, Any] | None = None


class PartitionCount(TypedDict):
    conversation_key: str
    count: int
    oldest_at: float
    newest_at: float
