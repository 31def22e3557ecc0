from __future__ import annotations

import datetime as dt

from rich import print
from rich.table import Table


def window_list_cmd(*, store_from_path, db_path: str | None) -> None:
    store = store_from_path(db_path)
    try:
        partitions = store.window_partitions()
    finally:
        store.close()
    if not partitions:
        print("No evicted items stored")
        return
    table = Table("conversation", "stored", "newest")
    for partition in partitions:
        newest = dt.datetime.fromtimestamp(partition["newest_at"] / 1000.0, dt.UTC)
        table.add_row(
            partition["conversation_key"],
            str(partition["count"]),
            newest.isoformat(timespec="seconds"),
        )
    print(table)


def window_clear_cmd(*, store_from_path, db_path: str | None, conversation_key: str) -> None:
    store = store_from_path(db_path)
    try:
        removed = store.clear_window_partition(conversation_key)
    finally:
        store.close()
    print(f"Removed {removed} stored items for {conversation_key}")
