from __future__ import annotations

import httpx

from .config import ConvcacheConfig
from .endpoints import Endpoints
from .exchange import Exchange, ExchangeResponse, ExchangeTap
from .reconciler import DetailFetcher, OverlayReconciler
from .store import CacheStore

# The tap hands decoded bodies around, so encoding and framing headers are recomputed.
_STALE_HEADERS = {"content-length", "content-encoding", "transfer-encoding"}


def _response_headers(headers: httpx.Headers) -> dict[str, str]:
    result: dict[str, str] = {}
    for key, value in headers.multi_items():
        if key.lower() in _STALE_HEADERS:
            continue
        if key in result:
            result[key] = f"{result[key]}, {value}"
        else:
            result[key] = value
    return result


class TappedTransport(httpx.BaseTransport):
    """httpx transport that routes every request through an :class:`ExchangeTap`."""

    def __init__(self, tap: ExchangeTap, inner: httpx.BaseTransport | None = None) -> None:
        self.tap = tap
        self._inner = inner or httpx.HTTPTransport()

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        body = request.read()
        exchange = Exchange(
            method=request.method,
            url=str(request.url),
            headers=dict(request.headers),
            body=body or None,
        )
        if not self.tap.intercepts(exchange):
            # Nobody rewrites this one, so the upstream body stays a stream.
            upstream = self._inner.handle_request(request)
            self.tap.log_passthrough(exchange, upstream.status_code)
            return upstream

        def _forward() -> ExchangeResponse:
            upstream = self._inner.handle_request(request)
            try:
                content = upstream.read()
            finally:
                upstream.close()
            return ExchangeResponse(
                status=upstream.status_code,
                headers=_response_headers(upstream.headers),
                body=content,
            )

        result = self.tap.dispatch(exchange, _forward)
        return httpx.Response(
            status_code=result.status,
            headers=result.headers,
            content=result.body,
            request=request,
        )

    def close(self) -> None:
        self._inner.close()


def build_tap(
    store: CacheStore,
    cfg: ConvcacheConfig,
    *,
    detail_transport: httpx.BaseTransport | None = None,
) -> tuple[ExchangeTap, OverlayReconciler]:
    endpoints = Endpoints.from_config(cfg)
    tap = ExchangeTap(log_exchanges=cfg.log_exchanges)
    tap.track(lambda exchange: endpoints.is_tracked(exchange.method, exchange.url))
    reconciler = OverlayReconciler(
        store,
        endpoints=endpoints,
        fetch_detail=DetailFetcher(
            cfg.upstream,
            endpoints,
            timeout_s=cfg.detail_timeout_s,
            transport=detail_transport,
        ),
    )
    reconciler.register(tap)
    return tap, reconciler


def build_client(
    tap: ExchangeTap,
    base_url: str,
    *,
    inner: httpx.BaseTransport | None = None,
    timeout_s: float = 30.0,
) -> httpx.Client:
    return httpx.Client(
        base_url=base_url,
        transport=TappedTransport(tap, inner),
        timeout=timeout_s,
    )
