from __future__ import annotations

from ._store import CacheStore
from .types import OverlayRecord, PartitionCount, WindowEntry

__all__ = [
    "CacheStore",
    "OverlayRecord",
    "PartitionCount",
    "WindowEntry",
]
