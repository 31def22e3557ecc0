from __future__ import annotations

import json
from collections.abc import Iterable
from http.server import BaseHTTPRequestHandler

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
}


def send_json_response(
    handler: BaseHTTPRequestHandler,
    payload: dict,
    status: int = 200,
) -> None:
    body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
    handler.send_response(status)
    handler.send_header("Content-Type", "application/json; charset=utf-8")
    handler.send_header("Content-Length", str(len(body)))
    handler.end_headers()
    handler.wfile.write(body)


def send_stream_response(
    handler: BaseHTTPRequestHandler,
    chunks: Iterable[bytes],
    *,
    status: int = 200,
    headers: Iterable[tuple[str, str]] = (),
) -> None:
    """Relay ``chunks`` as they arrive.

    ``chunks`` are already decoded, so a content-encoding header and the
    length that goes with it are dropped; without a length the body ends
    when the connection closes.
    """
    pairs = list(headers)
    encoded = any(key.lower() == "content-encoding" for key, _ in pairs)
    handler.send_response(status)
    for key, value in pairs:
        lowered = key.lower()
        if lowered in HOP_BY_HOP_HEADERS or lowered == "content-encoding":
            continue
        if lowered == "content-length" and encoded:
            continue
        handler.send_header(key, value)
    handler.end_headers()
    for chunk in chunks:
        if not chunk:
            continue
        handler.wfile.write(chunk)
        handler.wfile.flush()


def read_request_body(handler: BaseHTTPRequestHandler) -> bytes | None:
    length = int(handler.headers.get("Content-Length", "0") or 0)
    if length <= 0:
        return None
    return handler.rfile.read(length)


def forwardable_headers(headers: Iterable[tuple[str, str]]) -> dict[str, str]:
    result: dict[str, str] = {}
    for key, value in headers:
        lowered = key.lower()
        if lowered in HOP_BY_HOP_HEADERS or lowered in {"host", "content-length"}:
            continue
        result[key] = value
    return result
