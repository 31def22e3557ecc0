from __future__ import annotations

import json
from dataclasses import fields

import typer
from rich import print

from ..config import (
    ConvcacheConfig,
    get_config_path,
    load_config,
    read_config_file,
    write_config_file,
)


def read_config_or_exit() -> dict:
    try:
        return read_config_file()
    except ValueError as exc:
        print(f"[red]Invalid config file: {exc}[/red]")
        raise typer.Exit(code=1) from exc


def config_show_cmd() -> None:
    print(json.dumps(load_config().to_dict(), indent=2))


def config_path_cmd() -> None:
    print(str(get_config_path()))


def config_set_cmd(*, key: str, value: str) -> None:
    known = {f.name for f in fields(ConvcacheConfig)}
    if key not in known:
        print(f"[red]Unknown setting: {key}[/red]")
        raise typer.Exit(code=1)
    data = read_config_or_exit()
    try:
        data[key] = json.loads(value)
    except json.JSONDecodeError:
        data[key] = value
    path = write_config_file(data)
    print(f"Set {key} in {path}")
