from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import httpx
import pytest

from convcache.endpoints import Endpoints
from convcache.exchange import Exchange, ExchangeResponse, ExchangeTap
from convcache.reconciler import (
    STUB_TITLE,
    DetailFetcher,
    OverlayReconciler,
    merge_pin_lists,
)
from convcache.store import CacheStore

LIST_URL = "https://chatgpt.test/backend-api/conversations?offset=0&limit=28"
PINS_URL = "https://chatgpt.test/backend-api/pins"


def _item_url(item_id: str) -> str:
    return f"https://chatgpt.test/backend-api/conversation/{item_id}"


def _json_response(payload: Any, status: int = 200) -> ExchangeResponse:
    return ExchangeResponse(
        status=status,
        headers={"content-type": "application/json"},
        body=json.dumps(payload).encode("utf-8"),
    )


def _patch(item_id: str, pinned: bool) -> Exchange:
    return Exchange(
        method="PATCH",
        url=_item_url(item_id),
        headers={"authorization": "Bearer token", "content-type": "application/json"},
        body=json.dumps({"is_starred": pinned}).encode("utf-8"),
    )


def _setup(
    tmp_path: Path, fetch_detail=None, now: float = 1_700_000_000_000.0
) -> tuple[OverlayReconciler, ExchangeTap, CacheStore]:
    store = CacheStore(tmp_path / "cache.sqlite")
    reconciler = OverlayReconciler(
        store,
        fetch_detail=fetch_detail,
        clock=lambda: now,
        run_detached=lambda fn: fn(),
    )
    tap = ExchangeTap()
    reconciler.register(tap)
    return reconciler, tap, store


def _list_body(*ids: str) -> dict[str, Any]:
    return {
        "items": [{"id": item_id, "title": f"Title {item_id}"} for item_id in ids],
        "total": len(ids),
        "limit": 28,
        "offset": 0,
    }


def test_pin_then_list_then_pins(tmp_path: Path) -> None:
    reconciler, tap, store = _setup(tmp_path)
    tap.dispatch(Exchange("GET", LIST_URL), lambda: _json_response(_list_body("X", "Y", "Z")))

    ack = tap.dispatch(_patch("X", True), lambda: _json_response({"success": True}))
    assert ack.ok

    listed = tap.dispatch(
        Exchange("GET", LIST_URL), lambda: _json_response(_list_body("X", "Y", "Z"))
    ).json()
    assert [item["id"] for item in listed["items"]] == ["Y", "Z"]
    assert listed["total"] == 2

    pins = tap.dispatch(Exchange("GET", PINS_URL), lambda: _json_response([])).json()
    assert [entry["item"]["id"] for entry in pins] == ["X"]
    assert pins[0]["item"]["title"] == "Title X"
    assert pins[0]["item"]["is_starred"] is True
    assert pins[0]["item"]["pinned_time"]
    assert pins[0]["item_type"] == "conversation"
    assert reconciler.pinned_ids() == {"X"}
    assert store.get_pinned("X") is not None


def test_unpin_restores_list_and_drops_from_pins(tmp_path: Path) -> None:
    _, tap, _ = _setup(tmp_path)
    tap.dispatch(_patch("X", True), lambda: _json_response({"success": True}))
    tap.dispatch(_patch("X", False), lambda: _json_response({"success": True}))

    listed = tap.dispatch(
        Exchange("GET", LIST_URL), lambda: _json_response(_list_body("X", "Y"))
    ).json()
    pins = tap.dispatch(Exchange("GET", PINS_URL), lambda: _json_response([])).json()

    assert [item["id"] for item in listed["items"]] == ["X", "Y"]
    assert pins == []


def test_server_error_on_mutation_gets_synthetic_success(tmp_path: Path) -> None:
    reconciler, tap, _ = _setup(tmp_path)

    response = tap.dispatch(
        _patch("X", True), lambda: _json_response({"detail": "not found"}, status=404)
    )

    assert response.status == 200
    assert response.synthetic is True
    assert response.json() == {"success": True}
    assert reconciler.pinned_ids() == {"X"}


def test_successful_mutation_response_passes_through(tmp_path: Path) -> None:
    _, tap, _ = _setup(tmp_path)
    upstream = _json_response({"success": True, "extra": 1})

    response = tap.dispatch(_patch("X", True), lambda: upstream)

    assert response is upstream


def test_transport_error_on_mutation_propagates_after_ledger_write(tmp_path: Path) -> None:
    reconciler, tap, _ = _setup(tmp_path)

    def _fail() -> ExchangeResponse:
        raise httpx.ConnectError("offline")

    with pytest.raises(httpx.ConnectError):
        tap.dispatch(_patch("X", True), _fail)
    assert reconciler.pinned_ids() == {"X"}


def test_patch_without_flag_is_not_intercepted(tmp_path: Path) -> None:
    reconciler, tap, _ = _setup(tmp_path)
    exchange = Exchange(
        method="PATCH",
        url=_item_url("X"),
        body=json.dumps({"title": "Renamed"}).encode("utf-8"),
    )

    response = tap.dispatch(exchange, lambda: _json_response({"detail": "nope"}, status=500))

    assert response.status == 500
    assert reconciler.pinned_ids() == set()


def test_non_boolean_flag_is_not_a_mutation(tmp_path: Path) -> None:
    reconciler, _, _ = _setup(tmp_path)
    exchange = Exchange(
        method="PATCH",
        url=_item_url("X"),
        body=json.dumps({"is_starred": "yes"}).encode("utf-8"),
    )
    assert reconciler.is_flag_mutation(exchange) is False


def test_malformed_list_body_passes_through(tmp_path: Path) -> None:
    _, tap, store = _setup(tmp_path)
    store.set_pinned("X", 1.0)
    raw = ExchangeResponse(status=200, headers={}, body=b"<html>oops</html>")

    response = tap.dispatch(Exchange("GET", LIST_URL), lambda: raw)

    assert response.body == b"<html>oops</html>"
    assert store.load_list_snapshot() is None


def test_list_total_is_never_negative_and_other_fields_survive(tmp_path: Path) -> None:
    _, tap, store = _setup(tmp_path)
    store.set_pinned("X", 1.0)
    body = {"items": [{"id": "X"}], "total": 0, "has_missing_conversations": False}

    listed = tap.dispatch(Exchange("GET", LIST_URL), lambda: _json_response(body)).json()

    assert listed == {"items": [], "total": 0, "has_missing_conversations": False}


def test_list_without_pinned_items_is_untouched(tmp_path: Path) -> None:
    _, tap, store = _setup(tmp_path)
    store.set_pinned("Q", 1.0)
    upstream = _json_response(_list_body("X", "Y"))

    response = tap.dispatch(Exchange("GET", LIST_URL), lambda: upstream)

    assert response is upstream


def test_bare_list_body_is_filtered(tmp_path: Path) -> None:
    _, tap, store = _setup(tmp_path)
    store.set_pinned("X", 1.0)

    listed = tap.dispatch(
        Exchange("GET", LIST_URL), lambda: _json_response([{"id": "X"}, {"id": "Y"}])
    ).json()

    assert listed == [{"id": "Y"}]


def test_failed_list_response_is_untouched(tmp_path: Path) -> None:
    _, tap, store = _setup(tmp_path)
    store.set_pinned("X", 1.0)
    upstream = _json_response(_list_body("X"), status=500)

    assert tap.dispatch(Exchange("GET", LIST_URL), lambda: upstream) is upstream


def test_pins_union_keeps_server_entries_first(tmp_path: Path) -> None:
    _, tap, store = _setup(tmp_path)
    store.set_pinned("L1", 1000.0)
    store.set_pinned("L2", 2000.0)
    server = [
        {
            "item": {"id": "S1", "title": "Server one", "is_starred": True},
            "item_type": "conversation",
        },
        {"item": {"id": "L1", "title": "Server copy"}, "item_type": "conversation"},
    ]

    pins = tap.dispatch(Exchange("GET", PINS_URL), lambda: _json_response(server)).json()

    assert [entry["item"]["id"] for entry in pins] == ["S1", "L1", "L2"]
    assert pins[1]["item"]["title"] == "Server copy"
    assert pins[1]["item"]["is_starred"] is True
    assert pins[2]["item"]["title"] == STUB_TITLE


def test_ledger_entries_are_newest_first(tmp_path: Path) -> None:
    reconciler, _, store = _setup(tmp_path)
    store.set_pinned("old", 1000.0)
    store.set_pinned("new", 3000.0)
    store.set_pinned("mid", 2000.0)

    merged = reconciler.merge_pins([])

    assert [entry["item"]["id"] for entry in merged] == ["new", "mid", "old"]


def test_pins_union_is_idempotent(tmp_path: Path) -> None:
    reconciler, tap, store = _setup(tmp_path)
    store.set_pinned("L1", 1000.0)
    server = [{"item": {"id": "S1", "title": "One"}, "item_type": "conversation"}]

    first = tap.dispatch(Exchange("GET", PINS_URL), lambda: _json_response(server)).json()
    second = tap.dispatch(Exchange("GET", PINS_URL), lambda: _json_response(first)).json()

    assert second == first
    assert reconciler.merge_pins(first) == first


def test_unchanged_pins_response_is_not_rewritten(tmp_path: Path) -> None:
    _, tap, _ = _setup(tmp_path)
    upstream = _json_response([{"item": {"id": "S1"}, "item_type": "conversation"}])

    assert tap.dispatch(Exchange("GET", PINS_URL), lambda: upstream) is upstream


def test_malformed_pins_body_passes_through(tmp_path: Path) -> None:
    _, tap, store = _setup(tmp_path)
    store.set_pinned("X", 1.0)
    upstream = _json_response({"unexpected": True})

    assert tap.dispatch(Exchange("GET", PINS_URL), lambda: upstream) is upstream


def test_baseline_enriches_ledger_entries_but_never_resurrects(tmp_path: Path) -> None:
    reconciler, _, store = _setup(tmp_path)
    store.save_pins_baseline(
        [
            {"item": {"id": "L1", "title": "Remembered"}, "item_type": "conversation"},
            {"item": {"id": "gone", "title": "Old server pin"}, "item_type": "conversation"},
        ]
    )
    store.set_pinned("L1", 1000.0)

    merged = reconciler.merge_pins([])

    assert [entry["item"]["id"] for entry in merged] == ["L1"]
    assert merged[0]["item"]["title"] == "Remembered"


def test_enrichment_fills_unknown_items(tmp_path: Path) -> None:
    calls: list[tuple[str, dict[str, str]]] = []

    def _fetch(item_id: str, headers: dict[str, str]) -> dict[str, Any]:
        calls.append((item_id, dict(headers)))
        return {"id": item_id, "title": "Fetched title"}

    reconciler, tap, store = _setup(tmp_path, fetch_detail=_fetch)
    tap.dispatch(_patch("X", True), lambda: _json_response({"success": True}))

    assert calls and calls[0][0] == "X"
    assert calls[0][1]["authorization"] == "Bearer token"
    merged = reconciler.merge_pins([])
    assert merged[0]["item"]["title"] == "Fetched title"
    record = store.get_pinned("X")
    assert record is not None and record.item is not None


def test_enrichment_skipped_for_items_in_snapshot(tmp_path: Path) -> None:
    calls: list[str] = []
    _, tap, _ = _setup(tmp_path, fetch_detail=lambda item_id, headers: calls.append(item_id))
    tap.dispatch(Exchange("GET", LIST_URL), lambda: _json_response(_list_body("X")))

    tap.dispatch(_patch("X", True), lambda: _json_response({"success": True}))

    assert calls == []


def test_enrichment_does_not_undo_an_unpin(tmp_path: Path) -> None:
    store = CacheStore(tmp_path / "cache.sqlite")
    pending: list = []
    reconciler = OverlayReconciler(
        store,
        fetch_detail=lambda item_id, headers: {"id": item_id, "title": "Late"},
        run_detached=pending.append,
    )

    reconciler.apply_flag("X", True)
    reconciler.apply_flag("X", False)
    pending[0]()

    assert store.get_pinned("X") is None
    assert reconciler.pinned_ids() == set()


def test_failed_enrichment_keeps_stub(tmp_path: Path) -> None:
    def _fetch(item_id: str, headers: dict[str, str]) -> dict[str, Any]:
        raise RuntimeError("network down")

    reconciler, _, _ = _setup(tmp_path, fetch_detail=_fetch)
    reconciler.apply_flag("X", True)

    merged = reconciler.merge_pins([])

    assert merged[0]["item"]["title"] == STUB_TITLE


def test_detail_response_joins_the_union_when_pinned(tmp_path: Path) -> None:
    _, tap, _ = _setup(tmp_path)
    detail = {"id": "D1", "title": "Seen", "is_starred": True}
    tap.dispatch(Exchange("GET", _item_url("D1")), lambda: _json_response(detail))

    pins = tap.dispatch(Exchange("GET", PINS_URL), lambda: _json_response([])).json()

    assert [entry["item"]["id"] for entry in pins] == ["D1"]


def test_unpin_after_detail_view_stays_unpinned(tmp_path: Path) -> None:
    _, tap, store = _setup(tmp_path)
    detail = {"id": "D1", "title": "Seen", "is_starred": True}
    tap.dispatch(Exchange("GET", _item_url("D1")), lambda: _json_response(detail))
    tap.dispatch(_patch("D1", True), lambda: _json_response({"success": True}))
    tap.dispatch(_patch("D1", False), lambda: _json_response({"success": True}))

    pins = tap.dispatch(Exchange("GET", PINS_URL), lambda: _json_response([])).json()

    assert store.list_pinned() == []
    assert pins == []
    assert store.load_pins_baseline() == []


def test_unpin_of_another_item_keeps_detail(tmp_path: Path) -> None:
    _, tap, _ = _setup(tmp_path)
    detail = {"id": "D1", "title": "Seen", "is_starred": True}
    tap.dispatch(Exchange("GET", _item_url("D1")), lambda: _json_response(detail))
    tap.dispatch(_patch("X", False), lambda: _json_response({"success": True}))

    pins = tap.dispatch(Exchange("GET", PINS_URL), lambda: _json_response([])).json()

    assert [entry["item"]["id"] for entry in pins] == ["D1"]


def test_malformed_server_pins_entries_are_dropped(tmp_path: Path) -> None:
    _, tap, _ = _setup(tmp_path)
    server = [
        {"item": {"id": "S1"}, "item_type": "conversation"},
        {"item": {"title": "no id"}, "item_type": "conversation"},
        {"item": {"title": "no id"}, "item_type": "conversation"},
        "junk",
    ]

    pins = tap.dispatch(Exchange("GET", PINS_URL), lambda: _json_response(server)).json()

    assert pins == [{"item": {"id": "S1"}, "item_type": "conversation"}]


def test_unpinned_detail_response_is_ignored(tmp_path: Path) -> None:
    _, tap, _ = _setup(tmp_path)
    detail = {"id": "D1", "title": "Seen", "is_starred": False}
    tap.dispatch(Exchange("GET", _item_url("D1")), lambda: _json_response(detail))

    pins = tap.dispatch(Exchange("GET", PINS_URL), lambda: _json_response([])).json()

    assert pins == []


def test_pinned_changed_event(tmp_path: Path) -> None:
    reconciler, tap, _ = _setup(tmp_path)
    events: list[tuple[str, bool]] = []
    reconciler.on_pinned_changed(lambda item_id, pinned: events.append((item_id, pinned)))

    tap.dispatch(_patch("X", True), lambda: _json_response({"success": True}))
    tap.dispatch(_patch("X", False), lambda: _json_response({"success": True}))

    assert events == [("X", True), ("X", False)]


def test_snapshot_survives_restart(tmp_path: Path) -> None:
    _, tap, store = _setup(tmp_path)
    tap.dispatch(Exchange("GET", LIST_URL), lambda: _json_response(_list_body("X")))
    store.close()

    reopened = CacheStore(tmp_path / "cache.sqlite")
    reconciler = OverlayReconciler(reopened, run_detached=lambda fn: fn())
    reconciler.apply_flag("X", True)

    assert reconciler.merge_pins([])[0]["item"]["title"] == "Title X"


def test_clear_all_pinned(tmp_path: Path) -> None:
    reconciler, _, store = _setup(tmp_path)
    store.set_pinned("a", 1.0)
    store.set_pinned("b", 2.0)

    assert reconciler.clear_all_pinned() == 2
    assert reconciler.pinned_ids() == set()


def test_degraded_store_still_answers(tmp_path: Path) -> None:
    reconciler, tap, store = _setup(tmp_path)
    store.close()

    ack = tap.dispatch(_patch("X", True), lambda: _json_response({}, status=500))
    upstream = _json_response(_list_body("X"))
    listed = tap.dispatch(Exchange("GET", LIST_URL), lambda: upstream)

    assert ack.synthetic is True
    assert listed is upstream
    assert reconciler.pinned_ids() == set()


def test_merge_pin_lists_first_occurrence_wins() -> None:
    a = [{"item": {"id": "1", "title": "first"}, "item_type": "conversation"}]
    b = [
        {"item": {"id": "1", "title": "second"}, "item_type": "conversation"},
        {"item": {"id": "1", "title": "other type"}, "item_type": "project"},
        {"no_item": True},
    ]

    merged = merge_pin_lists(a, b)

    assert [entry["item"]["title"] for entry in merged] == ["first", "other type"]


def test_custom_endpoints(tmp_path: Path) -> None:
    store = CacheStore(tmp_path / "cache.sqlite")
    endpoints = Endpoints(
        list_path="/api/threads",
        pins_path="/api/threads/starred",
        item_prefix="/api/thread/",
        pinned_field="starred",
        pinned_at_field="starred_at",
    )
    reconciler = OverlayReconciler(store, endpoints=endpoints, run_detached=lambda fn: fn())
    tap = ExchangeTap()
    reconciler.register(tap)
    exchange = Exchange(
        "PATCH", "http://x.test/api/thread/t1", body=json.dumps({"starred": True}).encode()
    )

    tap.dispatch(exchange, lambda: _json_response({"success": True}))
    pins = tap.dispatch(
        Exchange("GET", "http://x.test/api/threads/starred"), lambda: _json_response([])
    ).json()

    assert pins[0]["item"]["starred"] is True
    assert pins[0]["item"]["starred_at"]


def test_detail_fetcher_forwards_credentials_only() -> None:
    seen: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "X", "title": "Detail"})

    fetch = DetailFetcher(
        "https://chatgpt.test", Endpoints(), transport=httpx.MockTransport(_handler)
    )

    item = fetch("X", {"Authorization": "Bearer t", "Cookie": "a=b", "X-Other": "1"})

    assert item == {"id": "X", "title": "Detail"}
    assert str(seen[0].url) == "https://chatgpt.test/backend-api/conversation/X"
    assert seen[0].headers["authorization"] == "Bearer t"
    assert seen[0].headers["cookie"] == "a=b"
    assert "x-other" not in seen[0].headers


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(404, json={"detail": "missing"}),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json=["not", "an", "object"]),
    ],
)
def test_detail_fetcher_failures_return_none(response: httpx.Response) -> None:
    fetch = DetailFetcher(
        "https://chatgpt.test",
        Endpoints(),
        transport=httpx.MockTransport(lambda request: response),
    )
    assert fetch("X", {}) is None


def test_detail_fetcher_transport_error_returns_none() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("offline", request=request)

    fetch = DetailFetcher(
        "https://chatgpt.test", Endpoints(), transport=httpx.MockTransport(_handler)
    )
    assert fetch("X", {}) is None
