from __future__ import annotations

from rich import print


def _format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    if size < 1024 * 1024 * 1024:
        return f"{size / 1024 / 1024:.1f} MB"
    return f"{size / 1024 / 1024 / 1024:.1f} GB"


def init_db_cmd(*, store_from_path, db_path: str | None) -> None:
    """Create the SQLite database (no-op if it already exists)."""

    store = store_from_path(db_path)
    try:
        store.stats()
    finally:
        store.close()
    print(f"Initialized database at {store.db_path}")


def stats_cmd(*, store_from_path, db_path: str | None) -> None:
    store = store_from_path(db_path)
    try:
        stats_data = store.stats()
    finally:
        store.close()

    db_stats = stats_data["database"]
    print("[bold]Database[/bold]")
    print(f"- Path: {db_stats['path']}")
    print(f"- Size: {_format_bytes(int(db_stats['size_bytes']))}")
    print(f"- Pinned items: {db_stats['pinned_items']}")
    print(
        f"- Window entries: {db_stats['window_entries']} "
        f"across {db_stats['partitions']} conversations"
    )
