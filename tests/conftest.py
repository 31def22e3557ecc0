from __future__ import annotations

import os
from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def _isolate_convcache_paths(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for name in list(os.environ):
        if name.startswith("CONVCACHE_"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("CONVCACHE_CONFIG", str(tmp_path / "config" / "config.json"))
    monkeypatch.setenv("CONVCACHE_DB", str(tmp_path / "convcache.sqlite"))
