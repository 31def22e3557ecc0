from __future__ import annotations

import logging

import typer
from rich import print

from . import __version__
from .commands.config_cmds import config_path_cmd, config_set_cmd, config_show_cmd
from .commands.maintenance_cmds import init_db_cmd, stats_cmd
from .commands.pins_cmds import pins_clear_cmd, pins_list_cmd, pins_set_cmd
from .commands.window_cmds import window_clear_cmd, window_list_cmd
from .config import load_config
from .proxy import run_proxy
from .store import CacheStore

app = typer.Typer(help="convcache: local overlay cache for the conversation-list API")
pins_app = typer.Typer(help="Inspect and edit the local pin ledger")
window_app = typer.Typer(help="Inspect evicted conversation items")
config_app = typer.Typer(help="Show or change settings")
app.add_typer(pins_app, name="pins")
app.add_typer(window_app, name="window")
app.add_typer(config_app, name="config")


def _store(db_path: str | None) -> CacheStore:
    return CacheStore(db_path or load_config().db_path)


@app.command()
def version() -> None:
    """Print the installed version."""
    print(__version__)


@app.command()
def serve(
    host: str = typer.Option(None, help="Host to bind the proxy"),
    port: int = typer.Option(None, help="Port to bind the proxy"),
    upstream: str = typer.Option(None, help="Base URL of the real API"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
    log_exchanges: bool = typer.Option(
        False, "--log-exchanges", help="Log one line per tracked exchange"
    ),
) -> None:
    """Run the overlay proxy in the foreground."""

    cfg = load_config()
    if host:
        cfg.proxy_host = host
    if port is not None:
        cfg.proxy_port = port
    if upstream:
        cfg.upstream = upstream
    if db_path:
        cfg.db_path = db_path
    if log_exchanges:
        cfg.log_exchanges = True
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    print(f"convcache proxy on http://{cfg.proxy_host}:{cfg.proxy_port} -> {cfg.upstream}")
    try:
        run_proxy(cfg)
    except KeyboardInterrupt:
        print("Stopped")
    except OSError as exc:
        print(f"[red]Could not start proxy: {exc}[/red]")
        raise typer.Exit(code=1) from exc


@app.command()
def init_db(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Create the SQLite database (no-op if it already exists)."""
    init_db_cmd(store_from_path=_store, db_path=db_path)


@app.command()
def stats(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Show database statistics."""
    stats_cmd(store_from_path=_store, db_path=db_path)


@pins_app.command("list")
def pins_list(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """List locally pinned items, newest first."""
    pins_list_cmd(store_from_path=_store, db_path=db_path)


@pins_app.command("add")
def pins_add(
    item_id: str,
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Pin an item locally."""
    pins_set_cmd(store_from_path=_store, db_path=db_path, item_id=item_id, pinned=True)


@pins_app.command("remove")
def pins_remove(
    item_id: str,
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Unpin an item locally."""
    pins_set_cmd(store_from_path=_store, db_path=db_path, item_id=item_id, pinned=False)


@pins_app.command("clear")
def pins_clear(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Remove every local pin."""
    pins_clear_cmd(store_from_path=_store, db_path=db_path)


@window_app.command("list")
def window_list(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """List conversations with evicted items in storage."""
    window_list_cmd(store_from_path=_store, db_path=db_path)


@window_app.command("clear")
def window_clear(
    conversation_key: str,
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Drop the stored items of one conversation."""
    window_clear_cmd(store_from_path=_store, db_path=db_path, conversation_key=conversation_key)


@config_app.command("show")
def config_show() -> None:
    """Print the effective settings."""
    config_show_cmd()


@config_app.command("set")
def config_set(key: str, value: str) -> None:
    """Write one setting to the config file."""
    config_set_cmd(key=key, value=value)


@config_app.command("path")
def config_path() -> None:
    """Print the config file location."""
    config_path_cmd()


def main() -> None:
    app()


if __name__ == "__main__":
    main()
