from __future__ import annotations

import datetime as dt
import sqlite3
from typing import Any

from .. import db
from .types import OverlayRecord


def _now_iso() -> str:
    return dt.datetime.now(dt.UTC).isoformat()


def _record_from_row(row: sqlite3.Row) -> OverlayRecord:
    item = db.from_json(row["item_json"])
    return OverlayRecord(
        id=str(row["id"]),
        pinned_at=float(row["pinned_at"]),
        item=item if isinstance(item, dict) else None,
    )


def set_pinned(
    conn: sqlite3.Connection,
    item_id: str,
    pinned_at: float,
    *,
    item: dict[str, Any] | None = None,
) -> None:
    """Insert a pin record, or attach ``item`` to an existing one.

    A repeated pin of an id that is already pinned keeps the first
    ``pinned_at``; only an unpin followed by a pin stamps a new time, so
    pinned lists keep a stable order while the flag is re-sent.
    """
    with conn:
        conn.execute(
            """
            INSERT INTO pinned_items(id, pinned_at, item_json, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                item_json = COALESCE(excluded.item_json, pinned_items.item_json)
            """,
            (item_id, pinned_at, db.to_json(item) if item is not None else None, _now_iso()),
        )


def clear_pinned(conn: sqlite3.Connection, item_id: str) -> bool:
    with conn:
        cur = conn.execute("DELETE FROM pinned_items WHERE id = ?", (item_id,))
    return cur.rowcount > 0


def update_item(conn: sqlite3.Connection, item_id: str, item: dict[str, Any]) -> bool:
    """Attach item data to an existing record; never creates one."""
    with conn:
        cur = conn.execute(
            "UPDATE pinned_items SET item_json = ?, updated_at = ? WHERE id = ?",
            (db.to_json(item), _now_iso(), item_id),
        )
    return cur.rowcount > 0


def get_pinned(conn: sqlite3.Connection, item_id: str) -> OverlayRecord | None:
    row = conn.execute(
        "SELECT id, pinned_at, item_json FROM pinned_items WHERE id = ?", (item_id,)
    ).fetchone()
    if row is None:
        return None
    return _record_from_row(row)


def list_pinned(conn: sqlite3.Connection) -> list[OverlayRecord]:
    rows = conn.execute(
        "SELECT id, pinned_at, item_json FROM pinned_items ORDER BY pinned_at DESC, id ASC"
    ).fetchall()
    return [_record_from_row(row) for row in rows]


def clear_all(conn: sqlite3.Connection) -> int:
    with conn:
        cur = conn.execute("DELETE FROM pinned_items")
    return int(cur.rowcount)
