from __future__ import annotations

import logging
import sqlite3
import threading
import time
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any, TypeVar

from .. import db
from ..errors import StoreUnavailable
from . import kv as store_kv
from . import ledger as store_ledger
from . import window_log as store_window_log
from .types import OverlayRecord, PartitionCount, WindowEntry

logger = logging.getLogger(__name__)

T = TypeVar("T")

_STORE_ERRORS = (sqlite3.Error, OSError, StoreUnavailable)


class CacheStore:
    """Local sqlite replica: the window log, the pin ledger and a small kv table.

    Every public operation is best-effort. When the database cannot be opened
    or written, writes degrade to no-ops and reads to empty results; nothing
    is raised to the caller.
    """

    def __init__(
        self,
        db_path: Path | str = db.DEFAULT_DB_PATH,
        *,
        check_same_thread: bool = False,
    ):
        self.db_path = Path(db_path).expanduser()
        self._check_same_thread = check_same_thread
        self._conn: sqlite3.Connection | None = None
        self._closed = False
        self._lock = threading.RLock()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._closed:
            raise StoreUnavailable("store is closed")
        if self._conn is None:
            try:
                conn = db.connect(self.db_path, check_same_thread=self._check_same_thread)
                db.initialize_schema(conn)
            except (sqlite3.Error, OSError) as exc:
                raise StoreUnavailable(f"cannot open {self.db_path}: {exc}") from exc
            self._conn = conn
        return self._conn

    def close(self) -> None:
        with self._lock:
            self._closed = True
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _run(self, label: str, fn: Callable[[sqlite3.Connection], T], fallback: T) -> T:
        with self._lock:
            try:
                return fn(self.conn)
            except _STORE_ERRORS as exc:
                logger.warning("store %s failed; degrading", label, exc_info=exc)
                return fallback

    # Window log (per-conversation partitions)

    def append_window_entry(
        self, conversation_key: str, payload: str, *, item_id: str | None = None
    ) -> int | None:
        ids = self.append_window_entries(conversation_key, [(item_id, payload)])
        return ids[0] if ids else None

    def append_window_entries(
        self,
        conversation_key: str,
        entries: Sequence[tuple[str | None, str]],
        *,
        now_ms: float | None = None,
    ) -> list[int]:
        return self._run(
            "append",
            lambda conn: store_window_log.append_entries(
                conn, conversation_key, entries, now_ms=now_ms
            ),
            [],
        )

    def evict_oldest(self, conversation_key: str, max_count: int | None) -> int:
        return self._run(
            "evict",
            lambda conn: store_window_log.evict_oldest(conn, conversation_key, max_count),
            0,
        )

    def take_newest(self, conversation_key: str, count: int) -> list[WindowEntry]:
        return self._run(
            "take",
            lambda conn: store_window_log.take_newest(conn, conversation_key, count),
            [],
        )

    def count_window_entries(self, conversation_key: str) -> int:
        return self._run(
            "count",
            lambda conn: store_window_log.count_entries(conn, conversation_key),
            0,
        )

    def window_partitions(self) -> list[PartitionCount]:
        return self._run("partitions", store_window_log.list_partitions, [])

    def clear_window_partition(self, conversation_key: str) -> int:
        return self._run(
            "clear partition",
            lambda conn: store_window_log.clear_partition(conn, conversation_key),
            0,
        )

    # Pin ledger

    def set_pinned(
        self,
        item_id: str,
        pinned_at: float | None = None,
        *,
        item: dict[str, Any] | None = None,
    ) -> None:
        timestamp = time.time() * 1000.0 if pinned_at is None else float(pinned_at)
        self._run(
            "set pinned",
            lambda conn: store_ledger.set_pinned(conn, item_id, timestamp, item=item),
            None,
        )

    def clear_pinned(self, item_id: str) -> bool:
        return self._run(
            "clear pinned", lambda conn: store_ledger.clear_pinned(conn, item_id), False
        )

    def update_pinned_item(self, item_id: str, item: dict[str, Any]) -> bool:
        return self._run(
            "update pinned item",
            lambda conn: store_ledger.update_item(conn, item_id, item),
            False,
        )

    def get_pinned(self, item_id: str) -> OverlayRecord | None:
        return self._run(
            "get pinned", lambda conn: store_ledger.get_pinned(conn, item_id), None
        )

    def list_pinned(self) -> list[OverlayRecord]:
        return self._run("list pinned", store_ledger.list_pinned, [])

    def clear_all_pinned(self) -> int:
        def _clear(conn: sqlite3.Connection) -> int:
            removed = store_ledger.clear_all(conn)
            store_kv.delete(conn, store_kv.KV_PINS_BASELINE)
            return removed

        return self._run("clear all pinned", _clear, 0)

    # Single-slot snapshots

    def load_list_snapshot(self) -> Any:
        return self._run(
            "load list snapshot",
            lambda conn: store_kv.get_json(conn, store_kv.KV_LIST_SNAPSHOT),
            None,
        )

    def save_list_snapshot(self, snapshot: Any) -> None:
        self._run(
            "save list snapshot",
            lambda conn: store_kv.put_json(conn, store_kv.KV_LIST_SNAPSHOT, snapshot),
            None,
        )

    def load_pins_baseline(self) -> list[Any]:
        def _load(conn: sqlite3.Connection) -> list[Any]:
            value = store_kv.get_json(conn, store_kv.KV_PINS_BASELINE)
            return value if isinstance(value, list) else []

        return self._run("load pins baseline", _load, [])

    def save_pins_baseline(self, entries: list[Any]) -> None:
        self._run(
            "save pins baseline",
            lambda conn: store_kv.put_json(conn, store_kv.KV_PINS_BASELINE, entries),
            None,
        )

    def stats(self) -> dict[str, Any]:
        def _stats(conn: sqlite3.Connection) -> dict[str, Any]:
            window_total = conn.execute("SELECT COUNT(*) FROM window_entries").fetchone()[0]
            partitions = conn.execute(
                "SELECT COUNT(DISTINCT conversation_key) FROM window_entries"
            ).fetchone()[0]
            pinned = conn.execute("SELECT COUNT(*) FROM pinned_items").fetchone()[0]
            return {
                "window_entries": int(window_total),
                "partitions": int(partitions),
                "pinned_items": int(pinned),
            }

        empty = {"window_entries": 0, "partitions": 0, "pinned_items": 0}
        counts = self._run("stats", _stats, empty)
        size = self.db_path.stat().st_size if self.db_path.exists() else 0
        return {"database": {"path": str(self.db_path), "size_bytes": size, **counts}}
