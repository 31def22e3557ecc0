from __future__ import annotations

import sqlite3
import time
from collections.abc import Sequence

from .types import PartitionCount, WindowEntry

# Spacing between records appended in one batch, in milliseconds.
BATCH_OFFSET_MS = 0.001


def _now_ms() -> float:
    return time.time() * 1000.0


def _newest_created_at(conn: sqlite3.Connection, conversation_key: str) -> float | None:
    row = conn.execute(
        "SELECT MAX(created_at) AS newest FROM window_entries WHERE conversation_key = ?",
        (conversation_key,),
    ).fetchone()
    if row is None or row["newest"] is None:
        return None
    return float(row["newest"])


def append_entries(
    conn: sqlite3.Connection,
    conversation_key: str,
    entries: Sequence[tuple[str | None, str]],
    *,
    now_ms: float | None = None,
) -> list[int]:
    """Append ``(item_id, payload)`` pairs to a partition, oldest first.

    ``created_at`` keeps increasing within the partition even when the wall
    clock does not: a batch starts after the newest existing record, and the
    records inside a batch are spaced by a fractional offset so their reading
    order survives.
    """
    if not entries:
        return []
    base = _now_ms() if now_ms is None else float(now_ms)
    ids: list[int] = []
    with conn:
        newest = _newest_created_at(conn, conversation_key)
        if newest is not None and newest >= base:
            base = newest + BATCH_OFFSET_MS
        for index, (item_id, payload) in enumerate(entries):
            cur = conn.execute(
                """
                INSERT INTO window_entries(conversation_key, item_id, payload, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (conversation_key, item_id, payload, base + index * BATCH_OFFSET_MS),
            )
            ids.append(int(cur.lastrowid or 0))
    return ids


def evict_oldest(conn: sqlite3.Connection, conversation_key: str, max_count: int | None) -> int:
    if max_count is None:
        return 0
    max_count = max(0, int(max_count))
    with conn:
        row = conn.execute(
            "SELECT COUNT(*) AS total FROM window_entries WHERE conversation_key = ?",
            (conversation_key,),
        ).fetchone()
        excess = int(row["total"]) - max_count
        if excess <= 0:
            return 0
        cur = conn.execute(
            """
            DELETE FROM window_entries
            WHERE id IN (
                SELECT id FROM window_entries
                WHERE conversation_key = ?
                ORDER BY created_at ASC, id ASC
                LIMIT ?
            )
            """,
            (conversation_key, excess),
        )
    return int(cur.rowcount)


def take_newest(conn: sqlite3.Connection, conversation_key: str, count: int) -> list[WindowEntry]:
    """Remove and return up to ``count`` of the most recently appended records.

    The result is oldest-first so callers can prepend it in reading order.
    """
    if count <= 0:
        return []
    with conn:
        rows = conn.execute(
            """
            SELECT id, conversation_key, item_id, payload, created_at
            FROM window_entries
            WHERE conversation_key = ?
            ORDER BY id DESC
            LIMIT ?
            """,
            (conversation_key, count),
        ).fetchall()
        if not rows:
            return []
        ids = [int(row["id"]) for row in rows]
        placeholders = ",".join("?" for _ in ids)
        conn.execute(f"DELETE FROM window_entries WHERE id IN ({placeholders})", ids)
    entries = [
        WindowEntry(
            id=int(row["id"]),
            conversation_key=str(row["conversation_key"]),
            item_id=row["item_id"],
            payload=str(row["payload"]),
            created_at=float(row["created_at"]),
        )
        for row in rows
    ]
    entries.reverse()
    return entries


def count_entries(conn: sqlite3.Connection, conversation_key: str) -> int:
    row = conn.execute(
        "SELECT COUNT(*) AS total FROM window_entries WHERE conversation_key = ?",
        (conversation_key,),
    ).fetchone()
    return int(row["total"]) if row else 0


def list_partitions(conn: sqlite3.Connection) -> list[PartitionCount]:
    rows = conn.execute(
        """
        SELECT conversation_key,
               COUNT(*) AS count,
               MIN(created_at) AS oldest_at,
               MAX(created_at) AS newest_at
        FROM window_entries
        GROUP BY conversation_key
        ORDER BY newest_at DESC
        """
    ).fetchall()
    return [
        {
            "conversation_key": str(row["conversation_key"]),
            "count": int(row["count"]),
            "oldest_at": float(row["oldest_at"]),
            "newest_at": float(row["newest_at"]),
        }
        for row in rows
    ]


def clear_partition(conn: sqlite3.Connection, conversation_key: str) -> int:
    with conn:
        cur = conn.execute(
            "DELETE FROM window_entries WHERE conversation_key = ?", (conversation_key,)
        )
    return int(cur.rowcount)
