from __future__ import annotations

import datetime as dt
import sqlite3
from typing import Any

from .. import db

KV_LIST_SNAPSHOT = "list_snapshot"
KV_PINS_BASELINE = "pins_baseline"


def get_json(conn: sqlite3.Connection, key: str) -> Any:
    row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
    if row is None:
        return None
    return db.from_json(row["value"])


def put_json(conn: sqlite3.Connection, key: str, value: Any) -> None:
    with conn:
        conn.execute(
            """
            INSERT INTO kv(key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = excluded.updated_at
            """,
            (key, db.to_json(value), dt.datetime.now(dt.UTC).isoformat()),
        )


def delete(conn: sqlite3.Connection, key: str) -> None:
    with conn:
        conn.execute("DELETE FROM kv WHERE key = ?", (key,))
