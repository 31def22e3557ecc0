from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .config import ConvcacheConfig, clamp_count, sanitize_keep_last
from .events import Listeners
from .store import CacheStore, WindowEntry
from .surface import LiveItem, RenderSurface

logger = logging.getLogger(__name__)

STATE_STABLE = "stable"
STATE_EVICTING = "evicting"
STATE_RESTORING = "restoring"

EDGE_TOP = "top"
EDGE_BOTTOM = "bottom"


@dataclass(frozen=True)
class EvictResult:
    total: int
    removed: int
    kept: int


@dataclass(frozen=True)
class RestoreResult:
    restored: int
    batches: int
    exhausted: bool
    dropped: bool = False


class EdgeTracker:
    """Turns viewport positions into top/bottom edge arrivals.

    An edge fires once on arrival and stays latched until the viewport leaves
    the band of ``threshold_px`` around both edges. Positions are ignored
    until the user has scrolled since the last reset.
    """

    def __init__(self, threshold_px: int = 12) -> None:
        self.threshold_px = max(0, threshold_px)
        self.last_edge: str | None = None
        self.user_scrolled = False

    def note_user_scroll(self) -> None:
        self.user_scrolled = True

    def reset(self) -> None:
        self.last_edge = None
        self.user_scrolled = False

    def rearm(self) -> None:
        self.last_edge = None

    def update(self, scroll_top: float, scroll_height: float, client_height: float) -> str | None:
        if not self.user_scrolled:
            return None
        distance_to_bottom = scroll_height - scroll_top - client_height
        at_top = scroll_top <= self.threshold_px
        at_bottom = distance_to_bottom <= self.threshold_px
        if at_top and self.last_edge != EDGE_TOP:
            self.last_edge = EDGE_TOP
            return EDGE_TOP
        if at_bottom and self.last_edge != EDGE_BOTTOM:
            self.last_edge = EDGE_BOTTOM
            return EDGE_BOTTOM
        if not at_top and not at_bottom:
            self.last_edge = None
        return None


class WindowingController:
    """Keeps the newest ``keep_last`` items of a conversation rendered.

    Older items are serialized, removed from the surface and appended to the
    conversation's partition of the window log. Reaching the top edge takes
    them back newest-first, a batch at a time, and reinserts them above the
    rendered items in reading order.

    Per conversation the controller is either stable, evicting or restoring;
    a trigger that arrives while the conversation is not stable is dropped.
    """

    def __init__(
        self,
        store: CacheStore,
        surface: RenderSurface,
        *,
        conversation_key: Callable[[], str],
        config: ConvcacheConfig | None = None,
    ) -> None:
        cfg = config or ConvcacheConfig()
        self.store = store
        self.surface = surface
        self._conversation_key = conversation_key
        self.keep_last = sanitize_keep_last(cfg.keep_last)
        self.max_retained = cfg.max_retained_per_conversation
        self.restore_batch_size = max(1, cfg.restore_batch_size)
        self.max_batches_per_edge = max(1, cfg.max_restore_batches_per_edge)
        self.edges = EdgeTracker(cfg.scroll_edge_threshold_px)
        self._lock = threading.Lock()
        self._states: dict[str, str] = {}

        self.evicted = Listeners("evicted")
        self.restored = Listeners("restored")
        self.exhausted = Listeners("restore exhausted")
        self.bottom_reached = Listeners("bottom reached")

        surface.on_reached_top_edge(self.handle_top_edge)
        surface.on_reached_bottom_edge(self.handle_bottom_edge)

    def on_evicted(self, callback: Callable[[str, EvictResult], None]) -> Callable[[], None]:
        return self.evicted.subscribe(callback)

    def on_restored(self, callback: Callable[[str, int], None]) -> Callable[[], None]:
        return self.restored.subscribe(callback)

    def on_exhausted(self, callback: Callable[[str], None]) -> Callable[[], None]:
        return self.exhausted.subscribe(callback)

    def on_bottom_reached(self, callback: Callable[[str], None]) -> Callable[[], None]:
        return self.bottom_reached.subscribe(callback)

    def set_keep_last(self, value: object) -> int:
        self.keep_last = sanitize_keep_last(value)
        return self.keep_last

    def state(self, conversation_key: str | None = None) -> str:
        key = conversation_key or self._conversation_key()
        with self._lock:
            return self._states.get(key, STATE_STABLE)

    def _enter(self, key: str, state: str) -> bool:
        with self._lock:
            if self._states.get(key, STATE_STABLE) != STATE_STABLE:
                return False
            self._states[key] = state
            return True

    def _leave(self, key: str) -> None:
        with self._lock:
            self._states.pop(key, None)

    def _visible_items(self) -> list[LiveItem] | None:
        try:
            return list(self.surface.list_visible_items())
        except Exception as exc:
            logger.exception("render surface could not list items", exc_info=exc)
            return None

    # Evict

    def evict(self, keep_last: object = None) -> EvictResult:
        key = self._conversation_key()
        keep = self.keep_last if keep_last is None else clamp_count(keep_last)
        if not self._enter(key, STATE_EVICTING):
            logger.debug("evict dropped for %s: conversation is %s", key, self.state(key))
            live = self._visible_items() or []
            return EvictResult(total=len(live), removed=0, kept=len(live))
        try:
            result = self._evict(key, keep)
        finally:
            self._leave(key)
        if result.removed:
            self.edges.reset()
            logger.info(
                "evicted %s of %s items from %s, kept %s",
                result.removed,
                result.total,
                key,
                result.kept,
            )
            self.evicted.emit(key, result)
        return result

    def _evict(self, key: str, keep: int) -> EvictResult:
        items = self._visible_items()
        if items is None:
            return EvictResult(total=0, removed=0, kept=0)
        total = len(items)
        if total <= keep:
            return EvictResult(total=total, removed=0, kept=total)

        victims = items[: total - keep]
        entries = [(item.id, item.serialized) for item in victims]
        try:
            self.surface.remove_items([item.id for item in victims])
        except Exception as exc:
            logger.exception("render surface could not remove items", exc_info=exc)
            return EvictResult(total=total, removed=0, kept=total)
        self.store.append_window_entries(key, entries)
        self.store.evict_oldest(key, self.max_retained)
        return EvictResult(total=total, removed=len(victims), kept=keep)

    def note_items_added(self) -> EvictResult | None:
        """Evict if new items pushed the live count over ``keep_last``."""
        items = self._visible_items()
        if items is None or len(items) <= self.keep_last:
            return None
        return self.evict()

    # Restore

    def restore(self) -> RestoreResult:
        key = self._conversation_key()
        if not self._enter(key, STATE_RESTORING):
            logger.debug("restore dropped for %s: conversation is %s", key, self.state(key))
            return RestoreResult(restored=0, batches=0, exhausted=False, dropped=True)
        try:
            result = self._restore(key)
        finally:
            self._leave(key)

        if result.restored:
            self.edges.rearm()
            logger.info("restored %s items into %s", result.restored, key)
            self.restored.emit(key, result.restored)
        elif result.exhausted:
            logger.info("nothing left to restore for %s", key)
            self.exhausted.emit(key)
        return result

    def _restore(self, key: str) -> RestoreResult:
        restored = 0
        batches = 0
        exhausted = False
        while batches < self.max_batches_per_edge:
            entries = self.store.take_newest(key, self.restore_batch_size)
            batches += 1
            if not entries:
                exhausted = True
                break
            if not self._insert(key, entries):
                break
            restored += len(entries)
            if len(entries) < self.restore_batch_size:
                exhausted = True
                break
        return RestoreResult(restored=restored, batches=batches, exhausted=exhausted)

    def _insert(self, key: str, entries: list[WindowEntry]) -> bool:
        try:
            self.surface.insert_items_at_top([entry.payload for entry in entries])
        except Exception as exc:
            logger.exception("render surface could not insert restored items", exc_info=exc)
            # Taken entries were the newest of the partition, so appending keeps their order.
            self.store.append_window_entries(key, [(e.item_id, e.payload) for e in entries])
            return False
        return True

    # Edge signals

    def handle_top_edge(self) -> RestoreResult | None:
        try:
            return self.restore()
        except Exception as exc:
            logger.exception("restore on top edge failed", exc_info=exc)
            return None

    def handle_bottom_edge(self) -> None:
        try:
            key = self._conversation_key()
        except Exception as exc:
            logger.exception("conversation key lookup failed", exc_info=exc)
            return
        self.bottom_reached.emit(key)

    def note_user_scroll(self) -> None:
        self.edges.note_user_scroll()

    def on_viewport(
        self, scroll_top: float, scroll_height: float, client_height: float
    ) -> RestoreResult | None:
        edge = self.edges.update(scroll_top, scroll_height, client_height)
        if edge == EDGE_TOP:
            return self.handle_top_edge()
        if edge == EDGE_BOTTOM:
            self.handle_bottom_edge()
        return None

    def window_stats(self) -> dict[str, Any]:
        key = self._conversation_key()
        live = self._visible_items() or []
        return {
            "conversation_key": key,
            "live": len(live),
            "stored": self.store.count_window_entries(key),
            "state": self.state(key),
            "keep_last": self.keep_last,
        }
