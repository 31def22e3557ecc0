from __future__ import annotations

import re
from dataclasses import dataclass
from urllib.parse import urlparse

from .config import ConvcacheConfig

_ITEM_ID_PATTERN = r"([A-Za-z0-9_-]+)/?"


def url_path(url: str) -> str:
    try:
        return urlparse(url).path or "/"
    except ValueError:
        return ""


@dataclass(frozen=True)
class Endpoints:
    """Path shapes of the tracked remote API and the field names it uses."""

    list_path: str = "/backend-api/conversations"
    pins_path: str = "/backend-api/pins"
    item_prefix: str = "/backend-api/conversation/"
    pinned_field: str = "is_starred"
    pinned_at_field: str = "pinned_time"

    @classmethod
    def from_config(cls, cfg: ConvcacheConfig) -> Endpoints:
        return cls(
            list_path=cfg.list_path,
            pins_path=cfg.pins_path,
            item_prefix=cfg.item_prefix,
            pinned_field=cfg.pinned_field,
            pinned_at_field=cfg.pinned_at_field,
        )

    def _item_id(self, path: str) -> str | None:
        match = re.fullmatch(re.escape(self.item_prefix) + _ITEM_ID_PATTERN, path)
        if match is None:
            return None
        return match.group(1)

    def is_list(self, method: str, url: str) -> bool:
        return method.upper() == "GET" and url_path(url).rstrip("/") == self.list_path.rstrip("/")

    def is_pins(self, method: str, url: str) -> bool:
        return method.upper() == "GET" and url_path(url).rstrip("/") == self.pins_path.rstrip("/")

    def mutation_item_id(self, method: str, url: str) -> str | None:
        if method.upper() != "PATCH":
            return None
        return self._item_id(url_path(url))

    def detail_item_id(self, method: str, url: str) -> str | None:
        if method.upper() != "GET":
            return None
        return self._item_id(url_path(url))

    def is_tracked(self, method: str, url: str) -> bool:
        return (
            self.is_list(method, url)
            or self.is_pins(method, url)
            or self.mutation_item_id(method, url) is not None
            or self.detail_item_id(method, url) is not None
        )

    def item_url(self, base_url: str, item_id: str) -> str:
        return f"{base_url.rstrip('/')}{self.item_prefix}{item_id}"
