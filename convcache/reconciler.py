from __future__ import annotations

import datetime as dt
import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from typing import Any

import httpx

from .endpoints import Endpoints
from .events import Listeners
from .exchange import Exchange, ExchangeResponse, ExchangeTap, Forward
from .store import CacheStore, OverlayRecord

logger = logging.getLogger(__name__)

ITEM_TYPE = "conversation"
STUB_TITLE = "Loading..."

_CREDENTIAL_HEADERS = {"authorization", "cookie"}

DetailFetch = Callable[[str, Mapping[str, str]], "dict[str, Any] | None"]


def _ms_to_iso(value_ms: float) -> str:
    return dt.datetime.fromtimestamp(value_ms / 1000.0, dt.UTC).isoformat()


def _start_daemon_thread(fn: Callable[[], None]) -> None:
    threading.Thread(target=fn, name="convcache-enrich", daemon=True).start()


def item_id_of(value: Any) -> str | None:
    if not isinstance(value, dict):
        return None
    item_id = value.get("id")
    if isinstance(item_id, str) and item_id:
        return item_id
    nested = value.get("item")
    if isinstance(nested, dict):
        nested_id = nested.get("id")
        if isinstance(nested_id, str) and nested_id:
            return nested_id
    return None


def pin_key(entry: Any) -> str | None:
    if not isinstance(entry, dict):
        return None
    item = entry.get("item")
    if not isinstance(item, dict):
        return None
    item_id = item.get("id")
    if not isinstance(item_id, str) or not item_id:
        return None
    item_type = entry.get("item_type") or ITEM_TYPE
    return f"{item_type}:{item_id}"


def merge_pin_lists(*lists: Iterable[Any]) -> list[Any]:
    """Union of pinned-list entries, de-duplicated by ``(item_type, id)``.

    The first occurrence of a key wins, so earlier lists take precedence.
    Entries that are not ``{"item": {"id": ...}}`` shaped are dropped.
    """
    merged: list[Any] = []
    seen: set[str] = set()
    for entries in lists:
        for entry in entries:
            key = pin_key(entry)
            if key is None or key in seen:
                continue
            seen.add(key)
            merged.append(entry)
    return merged


def _list_items(data: Any) -> list[Any] | None:
    if isinstance(data, list):
        return data
    if isinstance(data, dict) and isinstance(data.get("items"), list):
        return data["items"]
    return None


class DetailFetcher:
    """Best-effort ``GET`` of a single item straight from the upstream API."""

    def __init__(
        self,
        base_url: str,
        endpoints: Endpoints,
        *,
        timeout_s: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url
        self.endpoints = endpoints
        self.timeout_s = timeout_s
        self._transport = transport

    def __call__(self, item_id: str, headers: Mapping[str, str]) -> dict[str, Any] | None:
        url = self.endpoints.item_url(self.base_url, item_id)
        forwarded = {k: v for k, v in headers.items() if k.lower() in _CREDENTIAL_HEADERS}
        try:
            with httpx.Client(timeout=self.timeout_s, transport=self._transport) as client:
                response = client.get(url, headers=forwarded)
        except httpx.HTTPError as exc:
            logger.warning("detail fetch for %s failed", item_id, exc_info=exc)
            return None
        if response.status_code >= 400:
            logger.warning("detail fetch for %s returned %s", item_id, response.status_code)
            return None
        try:
            data = response.json()
        except ValueError:
            logger.warning("detail fetch for %s returned non-json body", item_id)
            return None
        return data if isinstance(data, dict) else None


class OverlayReconciler:
    """Keeps a local pinned overlay on top of the conversation-list API.

    Three exchange shapes are handled independently:

    - a flag mutation (``PATCH`` of one item with the pinned flag in the body)
      writes the ledger before anything is forwarded; a server error is
      answered with a synthetic success;
    - a list response has every locally pinned item removed and its total
      adjusted, and its unfiltered body becomes the cached snapshot;
    - a pinned-list response is extended with every ledger record that the
      server did not report.
    """

    def __init__(
        self,
        store: CacheStore,
        *,
        endpoints: Endpoints | None = None,
        fetch_detail: DetailFetch | None = None,
        clock: Callable[[], float] | None = None,
        run_detached: Callable[[Callable[[], None]], None] | None = None,
    ) -> None:
        self.store = store
        self.endpoints = endpoints or Endpoints()
        self._fetch_detail = fetch_detail
        self._clock = clock or (lambda: time.time() * 1000.0)
        self._run_detached = run_detached or _start_daemon_thread
        self._lock = threading.Lock()
        self._snapshot: Any = None
        self._snapshot_loaded = False
        self._last_detail: dict[str, Any] | None = None
        self.pinned_changed = Listeners("pinned changed")

    def register(self, tap: ExchangeTap) -> None:
        tap.on_exchange(self.is_flag_mutation, self.handle_mutation)
        tap.observe_completed_exchange(self._is_list, self.rewrite_list)
        tap.observe_completed_exchange(self._is_pins, self.rewrite_pins)
        tap.observe_completed_exchange(self._is_detail, self.observe_detail)

    def on_pinned_changed(self, callback: Callable[[str, bool], None]) -> Callable[[], None]:
        return self.pinned_changed.subscribe(callback)

    # Matchers

    def _flag_value(self, exchange: Exchange) -> bool | None:
        payload = exchange.json()
        if not isinstance(payload, dict):
            return None
        value = payload.get(self.endpoints.pinned_field)
        return value if isinstance(value, bool) else None

    def is_flag_mutation(self, exchange: Exchange) -> bool:
        if self.endpoints.mutation_item_id(exchange.method, exchange.url) is None:
            return False
        return self._flag_value(exchange) is not None

    def _is_list(self, exchange: Exchange) -> bool:
        return self.endpoints.is_list(exchange.method, exchange.url)

    def _is_pins(self, exchange: Exchange) -> bool:
        return self.endpoints.is_pins(exchange.method, exchange.url)

    def _is_detail(self, exchange: Exchange) -> bool:
        return self.endpoints.detail_item_id(exchange.method, exchange.url) is not None

    # Snapshot

    def _list_snapshot(self) -> Any:
        with self._lock:
            if self._snapshot_loaded:
                return self._snapshot
        snapshot = self.store.load_list_snapshot()
        with self._lock:
            if not self._snapshot_loaded:
                self._snapshot = snapshot
                self._snapshot_loaded = True
            return self._snapshot

    def _remember_snapshot(self, data: Any) -> None:
        with self._lock:
            self._snapshot = data
            self._snapshot_loaded = True
        self.store.save_list_snapshot(data)

    def find_item(self, item_id: str) -> dict[str, Any] | None:
        items = _list_items(self._list_snapshot())
        if not items:
            return None
        for item in items:
            if item_id_of(item) == item_id:
                if isinstance(item.get("item"), dict):
                    return dict(item["item"])
                return dict(item)
        return None

    # Flag mutation

    def apply_flag(
        self, item_id: str, pinned: bool, *, headers: Mapping[str, str] | None = None
    ) -> None:
        if pinned:
            self.store.set_pinned(item_id, self._clock())
            if self.find_item(item_id) is None:
                self._schedule_enrichment(item_id, dict(headers or {}))
        else:
            self.store.clear_pinned(item_id)
            with self._lock:
                if item_id_of(self._last_detail) == item_id:
                    self._last_detail = None
        logger.info("pin %s %s", "add" if pinned else "remove", item_id)
        self.pinned_changed.emit(item_id, pinned)

    def handle_mutation(self, exchange: Exchange, forward: Forward) -> ExchangeResponse | None:
        item_id = self.endpoints.mutation_item_id(exchange.method, exchange.url)
        pinned = self._flag_value(exchange)
        if item_id is None or pinned is None:
            return None
        self.apply_flag(item_id, pinned, headers=exchange.headers)
        response = forward()
        if response.ok:
            return response
        logger.info(
            "server answered %s to flag mutation for %s; acknowledging locally",
            response.status,
            item_id,
        )
        return ExchangeResponse.synthetic_success()

    def _schedule_enrichment(self, item_id: str, headers: dict[str, str]) -> None:
        fetch = self._fetch_detail
        if fetch is None:
            return

        def _enrich() -> None:
            try:
                item = fetch(item_id, headers)
            except Exception as exc:
                logger.warning("detail enrichment for %s failed", item_id, exc_info=exc)
                return
            if not isinstance(item, dict):
                logger.warning("detail enrichment for %s returned no item", item_id)
                return
            if not self.store.update_pinned_item(item_id, item):
                logger.debug("item %s was unpinned before enrichment finished", item_id)

        try:
            self._run_detached(_enrich)
        except Exception as exc:
            logger.warning("could not start detail enrichment for %s", item_id, exc_info=exc)

    # List response

    def rewrite_list(
        self, exchange: Exchange, response: ExchangeResponse
    ) -> ExchangeResponse | None:
        if not response.ok:
            return None
        data = response.json()
        items = _list_items(data)
        if items is None:
            logger.warning("list response for %s has an unexpected shape", exchange.path)
            return None
        self._remember_snapshot(data)

        pinned_ids = self.pinned_ids()
        if not pinned_ids:
            return None
        kept = [item for item in items if item_id_of(item) not in pinned_ids]
        removed = len(items) - len(kept)
        if removed == 0:
            return None
        if isinstance(data, list):
            return response.with_json(kept)
        filtered = {**data, "items": kept}
        total = data.get("total")
        if isinstance(total, int) and not isinstance(total, bool):
            filtered["total"] = max(0, total - removed)
        return response.with_json(filtered)

    # Pinned-list response

    def _mark_pinned(self, item: Mapping[str, Any], pinned_at: float) -> dict[str, Any]:
        marked = dict(item)
        marked[self.endpoints.pinned_field] = True
        if not marked.get(self.endpoints.pinned_at_field):
            marked[self.endpoints.pinned_at_field] = _ms_to_iso(pinned_at)
        return marked

    def _stub(self, record: OverlayRecord) -> dict[str, Any]:
        stamp = _ms_to_iso(record.pinned_at)
        return {
            "id": record.id,
            "title": STUB_TITLE,
            "create_time": stamp,
            "update_time": stamp,
        }

    def _ledger_entry(
        self, record: OverlayRecord, baseline: Mapping[str, dict[str, Any]]
    ) -> dict[str, Any]:
        item = self.find_item(record.id) or record.item or baseline.get(record.id)
        if item is None:
            item = self._stub(record)
        return {"item": self._mark_pinned(item, record.pinned_at), "item_type": ITEM_TYPE}

    def _is_pinned_item(self, item: Mapping[str, Any]) -> bool:
        return item.get(self.endpoints.pinned_field) is True or bool(
            item.get(self.endpoints.pinned_at_field)
        )

    def merge_pins(self, server_entries: list[Any]) -> list[Any]:
        records = self.store.list_pinned()
        by_id = {record.id: record for record in records}

        baseline: dict[str, dict[str, Any]] = {}
        for entry in self.store.load_pins_baseline():
            entry_id = item_id_of(entry)
            if entry_id in by_id and isinstance(entry.get("item"), dict):
                baseline.setdefault(entry_id, entry["item"])

        reported: list[Any] = []
        for entry in server_entries:
            entry_id = item_id_of(entry)
            record = by_id.get(entry_id) if entry_id else None
            if record is not None and isinstance(entry.get("item"), dict):
                entry = {**entry, "item": self._mark_pinned(entry["item"], record.pinned_at)}
            reported.append(entry)

        derived = [self._ledger_entry(record, baseline) for record in records]

        known: list[dict[str, Any]] = []
        with self._lock:
            last_detail = self._last_detail
        if last_detail is not None and self._is_pinned_item(last_detail):
            known.append({"item": dict(last_detail), "item_type": ITEM_TYPE})

        return merge_pin_lists(reported, derived, known)

    def rewrite_pins(
        self, exchange: Exchange, response: ExchangeResponse
    ) -> ExchangeResponse | None:
        if not response.ok:
            return None
        data = response.json()
        if not isinstance(data, list):
            logger.warning("pinned-list response for %s has an unexpected shape", exchange.path)
            return None
        merged = self.merge_pins(data)
        self.store.save_pins_baseline(merged)
        if merged == data:
            return None
        return response.with_json(merged)

    # Detail response

    def observe_detail(
        self, exchange: Exchange, response: ExchangeResponse
    ) -> ExchangeResponse | None:
        if not response.ok:
            return None
        data = response.json()
        if isinstance(data, dict) and item_id_of(data) is not None:
            with self._lock:
                self._last_detail = data
        return None

    # Operator helpers

    def pinned_ids(self) -> set[str]:
        return {record.id for record in self.store.list_pinned()}

    def clear_all_pinned(self) -> int:
        removed = self.store.clear_all_pinned()
        logger.info("cleared %s pinned items", removed)
        return removed
