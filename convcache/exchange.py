from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from typing import Any

from .endpoints import url_path

logger = logging.getLogger(__name__)

JSON_CONTENT_TYPE = "application/json; charset=utf-8"

# Headers that describe the original encoded body and are wrong once it is replaced.
_BODY_HEADERS = {"content-length", "content-encoding", "transfer-encoding"}


def _decode_json(body: bytes | None) -> Any:
    if not body:
        return None
    try:
        return json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None


@dataclass
class Exchange:
    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes | None = None

    def __post_init__(self) -> None:
        self.method = self.method.upper()

    @property
    def path(self) -> str:
        return url_path(self.url)

    def json(self) -> Any:
        return _decode_json(self.body)


@dataclass
class ExchangeResponse:
    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    synthetic: bool = False
    rewritten: bool = False

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        return _decode_json(self.body)

    def with_json(self, payload: Any) -> ExchangeResponse:
        headers = {k: v for k, v in self.headers.items() if k.lower() not in _BODY_HEADERS}
        headers = {k: v for k, v in headers.items() if k.lower() != "content-type"}
        headers["content-type"] = JSON_CONTENT_TYPE
        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        return replace(self, headers=headers, body=body, rewritten=True)

    @classmethod
    def synthetic_success(cls) -> ExchangeResponse:
        return cls(
            status=200,
            headers={"content-type": JSON_CONTENT_TYPE},
            body=json.dumps({"success": True}).encode("utf-8"),
            synthetic=True,
        )


Matcher = Callable[[Exchange], bool]
Forward = Callable[[], ExchangeResponse]
Handler = Callable[[Exchange, Forward], "ExchangeResponse | None"]
Observer = Callable[[Exchange, ExchangeResponse], "ExchangeResponse | None"]


class _Forwarder:
    """Issues the real request at most once and remembers how it ended."""

    def __init__(self, forward: Forward) -> None:
        self._forward = forward
        self._response: ExchangeResponse | None = None
        self.error: BaseException | None = None

    def __call__(self) -> ExchangeResponse:
        if self.error is not None:
            raise self.error
        if self._response is None:
            try:
                self._response = self._forward()
            except BaseException as exc:
                self.error = exc
                raise
        return self._response


class ExchangeTap:
    """Boundary adapter between a transport and the overlay components.

    Handlers may answer an exchange themselves (optionally after calling
    ``forward``); observers see the committed response and may replace it.
    A failure inside a handler or observer leaves the data unchanged. A
    failure of the real request itself propagates to the caller.
    """

    def __init__(self, *, log_exchanges: bool = False) -> None:
        self.log_exchanges = log_exchanges
        self._lock = threading.Lock()
        self._handlers: list[tuple[Matcher, Handler]] = []
        self._observers: list[tuple[Matcher, Observer]] = []
        self._tracked: list[Matcher] = []

    def on_exchange(self, matcher: Matcher, handler: Handler) -> None:
        with self._lock:
            self._handlers.append((matcher, handler))
            self._tracked.append(matcher)

    def observe_completed_exchange(self, matcher: Matcher, callback: Observer) -> None:
        with self._lock:
            self._observers.append((matcher, callback))
            self._tracked.append(matcher)

    def track(self, matcher: Matcher) -> None:
        """Include matching exchanges in the exchange log without acting on them."""
        with self._lock:
            self._tracked.append(matcher)

    def _matches(self, matcher: Matcher, exchange: Exchange) -> bool:
        try:
            return bool(matcher(exchange))
        except Exception as exc:
            logger.exception("exchange matcher failed", exc_info=exc)
            return False

    def dispatch(self, exchange: Exchange, forward: Forward) -> ExchangeResponse:
        with self._lock:
            handlers = list(self._handlers)
            observers = list(self._observers)
            tracked = list(self._tracked)

        forwarder = _Forwarder(forward)
        response: ExchangeResponse | None = None
        for matcher, handler in handlers:
            if not self._matches(matcher, exchange):
                continue
            try:
                response = handler(exchange, forwarder)
            except Exception as exc:
                if exc is forwarder.error:
                    raise
                logger.exception(
                    "exchange handler failed for %s %s", exchange.method, exchange.path,
                    exc_info=exc,
                )
                response = None
            if response is not None:
                break

        if response is None:
            response = forwarder()

        for matcher, callback in observers:
            if not self._matches(matcher, exchange):
                continue
            try:
                replacement = callback(exchange, response)
            except Exception as exc:
                logger.exception(
                    "exchange observer failed for %s %s", exchange.method, exchange.path,
                    exc_info=exc,
                )
                continue
            if replacement is not None:
                response = replacement

        if self.log_exchanges and any(self._matches(m, exchange) for m in tracked):
            self._log(exchange, response.status, response)
        return response

    def intercepts(self, exchange: Exchange) -> bool:
        """True when some handler or observer wants to see this exchange."""
        with self._lock:
            matchers = [m for m, _ in self._handlers] + [m for m, _ in self._observers]
        return any(self._matches(m, exchange) for m in matchers)

    def log_passthrough(self, exchange: Exchange, status: int) -> None:
        """Log an exchange that was forwarded without going through :meth:`dispatch`."""
        if not self.log_exchanges:
            return
        with self._lock:
            tracked = list(self._tracked)
        if any(self._matches(m, exchange) for m in tracked):
            self._log(exchange, status, None)

    def _log(
        self, exchange: Exchange, status: int, response: ExchangeResponse | None
    ) -> None:
        logger.info(
            "%s %s -> %s%s%s",
            exchange.method,
            exchange.url,
            status,
            " (synthetic)" if response is not None and response.synthetic else "",
            " (rewritten)" if response is not None and response.rewritten else "",
        )
