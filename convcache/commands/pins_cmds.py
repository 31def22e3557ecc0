from __future__ import annotations

import datetime as dt

from rich import print
from rich.table import Table

from ..reconciler import OverlayReconciler


def _format_ms(value_ms: float) -> str:
    return dt.datetime.fromtimestamp(value_ms / 1000.0, dt.UTC).isoformat(timespec="seconds")


def pins_list_cmd(*, store_from_path, db_path: str | None) -> None:
    store = store_from_path(db_path)
    try:
        records = store.list_pinned()
    finally:
        store.close()
    if not records:
        print("No pinned items")
        return
    table = Table("id", "pinned at", "title")
    for record in records:
        title = ""
        if record.item:
            title = str(record.item.get("title") or "")
        table.add_row(record.id, _format_ms(record.pinned_at), title)
    print(table)


def pins_set_cmd(*, store_from_path, db_path: str | None, item_id: str, pinned: bool) -> None:
    store = store_from_path(db_path)
    try:
        OverlayReconciler(store).apply_flag(item_id, pinned)
    finally:
        store.close()
    print(f"{'Pinned' if pinned else 'Unpinned'} {item_id}")


def pins_clear_cmd(*, store_from_path, db_path: str | None) -> None:
    store = store_from_path(db_path)
    try:
        removed = OverlayReconciler(store).clear_all_pinned()
    finally:
        store.close()
    print(f"Cleared {removed} pinned items")
