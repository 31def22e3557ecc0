from __future__ import annotations

import contextlib
import logging
import os
import socket
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import urlparse

import httpx

from .config import ConvcacheConfig
from .proxy_http import (
    forwardable_headers,
    read_request_body,
    send_json_response,
    send_stream_response,
)
from .store import CacheStore
from .transport import build_client, build_tap

logger = logging.getLogger(__name__)


def _relative_target(path: str) -> str:
    # Absolute-form request targets (forward-proxy style) are reduced to path and query.
    parsed = urlparse(path)
    if not parsed.scheme:
        return path
    target = parsed.path or "/"
    if parsed.query:
        target = f"{target}?{parsed.query}"
    return target


def build_proxy_handler(client: httpx.Client) -> type[BaseHTTPRequestHandler]:
    class ProxyHandler(BaseHTTPRequestHandler):
        def log_message(self, format: str, *args: object) -> None:  # noqa: A003
            if os.environ.get("CONVCACHE_PROXY_LOGS") == "1":
                super().log_message(format, *args)

        def _proxy(self) -> None:
            body = read_request_body(self)
            headers = forwardable_headers(self.headers.items())
            request = client.build_request(
                self.command,
                _relative_target(self.path),
                headers=headers,
                content=body,
            )
            try:
                response = client.send(request, stream=True)
            except httpx.HTTPError as exc:
                logger.warning(
                    "upstream request %s %s failed", self.command, self.path, exc_info=exc
                )
                send_json_response(self, {"error": "bad_gateway"}, status=502)
                return
            try:
                send_stream_response(
                    self,
                    response.iter_bytes(),
                    status=response.status_code,
                    headers=response.headers.multi_items(),
                )
            except (httpx.HTTPError, OSError) as exc:
                logger.warning(
                    "relaying %s %s was cut short", self.command, self.path, exc_info=exc
                )
                self.close_connection = True
            finally:
                response.close()

        def do_GET(self) -> None:  # noqa: N802
            self._proxy()

        def do_POST(self) -> None:  # noqa: N802
            self._proxy()

        def do_PUT(self) -> None:  # noqa: N802
            self._proxy()

        def do_PATCH(self) -> None:  # noqa: N802
            self._proxy()

        def do_DELETE(self) -> None:  # noqa: N802
            self._proxy()

        def do_HEAD(self) -> None:  # noqa: N802
            self._proxy()

        def do_OPTIONS(self) -> None:  # noqa: N802
            self._proxy()

    return ProxyHandler


class ProxyServer(ThreadingHTTPServer):
    daemon_threads = True

    def server_bind(self) -> None:
        if self.address_family == socket.AF_INET6:
            with contextlib.suppress(OSError):
                self.socket.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
        super().server_bind()


def make_server(host: str, port: int, client: httpx.Client) -> ProxyServer:
    server_cls = ProxyServer
    if ":" in host:
        server_cls = type("ProxyServer6", (ProxyServer,), {"address_family": socket.AF_INET6})
    return server_cls((host, port), build_proxy_handler(client))


def run_proxy(
    cfg: ConvcacheConfig,
    *,
    upstream_transport: httpx.BaseTransport | None = None,
    stop_event: threading.Event | None = None,
    ready: threading.Event | None = None,
) -> None:
    store = CacheStore(cfg.db_path)
    tap, _reconciler = build_tap(store, cfg, detail_transport=upstream_transport)
    client = build_client(tap, cfg.upstream, inner=upstream_transport)
    server = make_server(cfg.proxy_host, cfg.proxy_port, client)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    logger.info(
        "overlay proxy listening on %s:%s -> %s",
        cfg.proxy_host,
        server.server_address[1],
        cfg.upstream,
    )
    if ready is not None:
        ready.set()
    stop = stop_event or threading.Event()
    try:
        stop.wait()
    finally:
        server.shutdown()
        server.server_close()
        client.close()
        store.close()
