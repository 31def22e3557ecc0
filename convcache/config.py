from __future__ import annotations

import json
import math
import os
import warnings
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from .db import DEFAULT_DB_PATH

DEFAULT_CONFIG_PATH = Path("~/.config/convcache/config.json").expanduser()

DEFAULT_KEEP_LAST = 4
KEEP_LAST_MIN = 1
KEEP_LAST_MAX = 99

CONFIG_ENV_OVERRIDES = {
    "keep_last": "CONVCACHE_KEEP_LAST",
    "max_retained_per_conversation": "CONVCACHE_MAX_RETAINED",
    "restore_batch_size": "CONVCACHE_RESTORE_BATCH_SIZE",
    "max_restore_batches_per_edge": "CONVCACHE_RESTORE_MAX_BATCHES",
    "scroll_edge_threshold_px": "CONVCACHE_SCROLL_EDGE_PX",
    "db_path": "CONVCACHE_DB",
    "upstream": "CONVCACHE_UPSTREAM",
    "proxy_host": "CONVCACHE_PROXY_HOST",
    "proxy_port": "CONVCACHE_PROXY_PORT",
    "list_path": "CONVCACHE_LIST_PATH",
    "pins_path": "CONVCACHE_PINS_PATH",
    "item_prefix": "CONVCACHE_ITEM_PREFIX",
    "pinned_field": "CONVCACHE_PINNED_FIELD",
    "pinned_at_field": "CONVCACHE_PINNED_AT_FIELD",
    "detail_timeout_s": "CONVCACHE_DETAIL_TIMEOUT_S",
    "log_exchanges": "CONVCACHE_LOG_EXCHANGES",
}

_INT_KEYS = {
    "keep_last",
    "restore_batch_size",
    "max_restore_batches_per_edge",
    "scroll_edge_threshold_px",
    "proxy_port",
}
_BOOL_KEYS = {"log_exchanges"}
_UNLIMITED_VALUES = {"", "none", "null", "unlimited", "inf"}


def get_config_path(path: Path | None = None) -> Path:
    candidate = path or Path(os.getenv("CONVCACHE_CONFIG", DEFAULT_CONFIG_PATH))
    return candidate.expanduser()


def read_config_file(path: Path | None = None) -> dict[str, Any]:
    config_path = get_config_path(path)
    if not config_path.exists():
        return {}
    raw = config_path.read_text()
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError("invalid config json") from exc
    if not isinstance(data, dict):
        raise ValueError("config must be an object")
    return data


def write_config_file(data: dict[str, Any], path: Path | None = None) -> Path:
    config_path = get_config_path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(json.dumps(data, ensure_ascii=False, indent=2) + "\n")
    return config_path


def get_env_overrides() -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, env_var in CONFIG_ENV_OVERRIDES.items():
        value = os.getenv(env_var)
        if value is not None:
            overrides[key] = value
    return overrides


@dataclass
class ConvcacheConfig:
    # Windowing
    keep_last: int = DEFAULT_KEEP_LAST
    max_retained_per_conversation: int | None = 500
    restore_batch_size: int = 8
    max_restore_batches_per_edge: int = 2
    scroll_edge_threshold_px: int = 12

    # Storage
    db_path: str = str(DEFAULT_DB_PATH)

    # Proxy and tracked endpoints
    upstream: str = "https://chatgpt.com"
    proxy_host: str = "127.0.0.1"
    proxy_port: int = 38977
    list_path: str = "/backend-api/conversations"
    pins_path: str = "/backend-api/pins"
    item_prefix: str = "/backend-api/conversation/"
    pinned_field: str = "is_starred"
    pinned_at_field: str = "pinned_time"
    detail_timeout_s: float = 10.0
    log_exchanges: bool = False

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def clamp_count(value: object, default: int = 0) -> int:
    """Coerce a caller-provided count to a non-negative integer."""
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return max(0, default)
    if not math.isfinite(number):
        return max(0, default)
    return max(0, math.floor(number))


def sanitize_keep_last(value: object) -> int:
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return DEFAULT_KEEP_LAST
    if not math.isfinite(number):
        return DEFAULT_KEEP_LAST
    return min(KEEP_LAST_MAX, max(KEEP_LAST_MIN, math.floor(number)))


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    if value.lower() in {"1", "true", "yes", "on"}:
        return True
    if value.lower() in {"0", "false", "off", "no"}:
        return False
    return default


def _parse_int(value: object, default: int, *, key: str) -> int:
    if value is None:
        return default
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _parse_float(value: object, default: float, *, key: str) -> float:
    if value is None:
        return default
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid float for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default


def _coerce_bool(value: object, default: bool, *, key: str) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        return _parse_bool(value, default)
    warnings.warn(f"Invalid bool for {key}: {value!r}", RuntimeWarning, stacklevel=2)
    return default


def _parse_retention(value: object, default: int | None, *, key: str) -> int | None:
    """Parse a retention cap where null, "unlimited" and non-positive values mean no cap."""
    if value is None:
        return None
    if isinstance(value, str) and value.strip().lower() in _UNLIMITED_VALUES:
        return None
    try:
        parsed = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        warnings.warn(f"Invalid int for {key}: {value!r}", RuntimeWarning, stacklevel=2)
        return default
    if parsed <= 0:
        return None
    return parsed


def _normalize(cfg: ConvcacheConfig) -> ConvcacheConfig:
    cfg.keep_last = sanitize_keep_last(cfg.keep_last)
    cfg.restore_batch_size = max(1, cfg.restore_batch_size)
    cfg.max_restore_batches_per_edge = max(1, cfg.max_restore_batches_per_edge)
    cfg.scroll_edge_threshold_px = max(0, cfg.scroll_edge_threshold_px)
    if not cfg.item_prefix.endswith("/"):
        cfg.item_prefix = f"{cfg.item_prefix}/"
    return cfg


def load_config(path: Path | None = None) -> ConvcacheConfig:
    cfg = ConvcacheConfig()
    config_path = get_config_path(path)
    if config_path.exists():
        try:
            data = json.loads(config_path.read_text())
        except json.JSONDecodeError:
            data = {}
        if isinstance(data, dict):
            cfg = _apply_dict(cfg, data)
    cfg = _apply_env(cfg)
    return _normalize(cfg)


def _apply_dict(cfg: ConvcacheConfig, data: dict[str, Any]) -> ConvcacheConfig:
    for key, value in data.items():
        if not hasattr(cfg, key):
            continue
        if key in _INT_KEYS:
            setattr(cfg, key, _parse_int(value, getattr(cfg, key), key=key))
            continue
        if key in _BOOL_KEYS:
            setattr(cfg, key, _coerce_bool(value, getattr(cfg, key), key=key))
            continue
        if key == "max_retained_per_conversation":
            cfg.max_retained_per_conversation = _parse_retention(
                value, cfg.max_retained_per_conversation, key=key
            )
            continue
        if key == "detail_timeout_s":
            cfg.detail_timeout_s = _parse_float(value, cfg.detail_timeout_s, key=key)
            continue
        if value is None:
            continue
        setattr(cfg, key, str(value))
    return cfg


def _apply_env(cfg: ConvcacheConfig) -> ConvcacheConfig:
    cfg.keep_last = _parse_int(os.getenv("CONVCACHE_KEEP_LAST"), cfg.keep_last, key="keep_last")
    retained = os.getenv("CONVCACHE_MAX_RETAINED")
    if retained is not None:
        cfg.max_retained_per_conversation = _parse_retention(
            retained,
            cfg.max_retained_per_conversation,
            key="max_retained_per_conversation",
        )
    cfg.restore_batch_size = _parse_int(
        os.getenv("CONVCACHE_RESTORE_BATCH_SIZE"),
        cfg.restore_batch_size,
        key="restore_batch_size",
    )
    cfg.max_restore_batches_per_edge = _parse_int(
        os.getenv("CONVCACHE_RESTORE_MAX_BATCHES"),
        cfg.max_restore_batches_per_edge,
        key="max_restore_batches_per_edge",
    )
    cfg.scroll_edge_threshold_px = _parse_int(
        os.getenv("CONVCACHE_SCROLL_EDGE_PX"),
        cfg.scroll_edge_threshold_px,
        key="scroll_edge_threshold_px",
    )
    cfg.db_path = os.getenv("CONVCACHE_DB", cfg.db_path)
    cfg.upstream = os.getenv("CONVCACHE_UPSTREAM", cfg.upstream)
    cfg.proxy_host = os.getenv("CONVCACHE_PROXY_HOST", cfg.proxy_host)
    cfg.proxy_port = _parse_int(
        os.getenv("CONVCACHE_PROXY_PORT"), cfg.proxy_port, key="proxy_port"
    )
    cfg.list_path = os.getenv("CONVCACHE_LIST_PATH", cfg.list_path)
    cfg.pins_path = os.getenv("CONVCACHE_PINS_PATH", cfg.pins_path)
    cfg.item_prefix = os.getenv("CONVCACHE_ITEM_PREFIX", cfg.item_prefix)
    cfg.pinned_field = os.getenv("CONVCACHE_PINNED_FIELD", cfg.pinned_field)
    cfg.pinned_at_field = os.getenv("CONVCACHE_PINNED_AT_FIELD", cfg.pinned_at_field)
    cfg.detail_timeout_s = _parse_float(
        os.getenv("CONVCACHE_DETAIL_TIMEOUT_S"), cfg.detail_timeout_s, key="detail_timeout_s"
    )
    cfg.log_exchanges = _parse_bool(os.getenv("CONVCACHE_LOG_EXCHANGES"), cfg.log_exchanges)
    return cfg
