"""A small HTTP/1.x server answering a counter, a clock and a JSON e-mail endpoint."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import threading
import time
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Callable, Dict, Optional, Tuple

from tlvnet.protocol import ProtocolError

logger = logging.getLogger(__name__)

DEFAULT_PORT = 8080
DEADLINE_SECONDS = 60.0
HEADER_LIMIT = 8192
BODY_LIMIT = 1024 * 1024
SERVER_NAME = "Beast"
NOT_FOUND_BODY = b"not FOUND\r\n"
EMAIL_PARSE_ERROR = 1001

_HEAD_END = b"\r\n\r\n"


@dataclass
class HttpRequest:
    """A parsed request; header names are stored in lower case."""

    method: str
    target: str
    version: str = "HTTP/1.1"
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.headers.get(name.lower(), default)


@dataclass
class HttpResponse:
    """A response; ``Content-Length`` is always derived from the body."""

    status: HTTPStatus = HTTPStatus.OK
    version: str = "HTTP/1.1"
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    def to_bytes(self) -> bytes:
        status = HTTPStatus(self.status)
        headers = dict(self.headers)
        headers["Content-Length"] = str(len(self.body))
        lines = [f"{self.version} {status.value} {status.phrase}"]
        lines.extend(f"{name}: {value}" for name, value in headers.items())
        head = "\r\n".join(lines) + "\r\n\r\n"
        return head.encode("latin-1") + self.body


def _parse_head(head: bytes) -> Tuple[str, str, str, Dict[str, str]]:
    text = head.decode("latin-1")
    request_line, *header_lines = text.split("\r\n")
    parts = request_line.split(" ")
    if len(parts) != 3 or not all(parts):
        raise ProtocolError(f"malformed request line {request_line!r}")
    method, target, version = parts
    if not version.startswith("HTTP/"):
        raise ProtocolError(f"unsupported protocol {version!r}")
    headers: Dict[str, str] = {}
    for line in header_lines:
        if not line:
            continue
        name, sep, value = line.partition(":")
        if not sep or not name or name != name.strip():
            raise ProtocolError(f"malformed header line {line!r}")
        headers[name.lower()] = value.strip()
    return method, target, version, headers


def _content_length(headers: Dict[str, str]) -> int:
    raw = headers.get("content-length")
    if raw is None:
        return 0
    try:
        length = int(raw)
    except ValueError as exc:
        raise ProtocolError(f"invalid Content-Length {raw!r}") from exc
    if length < 0:
        raise ProtocolError(f"invalid Content-Length {raw!r}")
    if length > BODY_LIMIT:
        raise ProtocolError(f"body of {length} bytes exceeds limit {BODY_LIMIT}")
    return length


def parse_request(data: bytes) -> HttpRequest:
    """Parse a complete request (head and body) from ``data``."""
    data = bytes(data)
    end = data.find(_HEAD_END)
    if end < 0:
        raise ProtocolError("request head is not terminated")
    method, target, version, headers = _parse_head(data[:end])
    rest = data[end + len(_HEAD_END) :]
    length = _content_length(headers)
    if len(rest) < length:
        raise ProtocolError(f"body has {len(rest)} of {length} bytes")
    return HttpRequest(method, target, version, headers, rest[:length])


def _html_page(title: str, paragraph: str) -> bytes:
    return (
        "<html>\n"
        f"<head><title>{title}</title></head>\n"
        "<body>\n"
        f"<h1>{title}</h1>\n"
        f"<p>{paragraph}</p>\n"
        "</body>\n"
        "</html>\n"
    ).encode("utf-8")


def _styled_json(value) -> bytes:
    text = json.dumps(
        value, indent=3, sort_keys=True, separators=(",", " : "), ensure_ascii=False
    )
    return (text + "\n").encode("utf-8")


class HttpApp:
    """Builds responses and serves single-request connections."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._count = 0
        self._lock = threading.Lock()

    def _next_count(self) -> int:
        with self._lock:
            self._count += 1
            return self._count

    def handle(self, request: HttpRequest) -> HttpResponse:
        """Return the response for ``request``."""
        response = HttpResponse(version=request.version)
        if request.version == "HTTP/1.1":
            response.headers["Connection"] = "close"
        if request.method == "GET":
            response.headers["Server"] = SERVER_NAME
            self._handle_get(request, response)
        elif request.method == "POST":
            response.headers["Server"] = SERVER_NAME
            self._handle_post(request, response)
        else:
            response.status = HTTPStatus.BAD_REQUEST
            response.headers["Content-Type"] = "text/plain"
            response.body = f"Invalid request-method:{request.method}".encode("utf-8")
        return response

    def _handle_get(self, request: HttpRequest, response: HttpResponse) -> None:
        if request.target == "/count":
            response.headers["Content-Type"] = "text/html"
            response.body = _html_page(
                "Request count",
                f"There have been {self._next_count()} requests so far.",
            )
        elif request.target == "/time":
            response.headers["Content-Type"] = "text/html"
            response.body = _html_page(
                "Current time",
                f"The current time is {int(self._clock())} seconds since the epoch.",
            )
        else:
            self._not_found(response)

    def _handle_post(self, request: HttpRequest, response: HttpResponse) -> None:
        if request.target != "/email":
            self._not_found(response)
            return
        logger.info("receive body is %s", request.body.decode("utf-8", errors="replace"))
        response.headers["Content-Type"] = "text/json"
        try:
            source = json.loads(request.body)
        except ValueError:
            response.body = _styled_json({"error": EMAIL_PARSE_ERROR})
            return
        email = source.get("email") if isinstance(source, dict) else None
        response.body = _styled_json(
            {"error": 0, "email": email, "msg": "recv email post success"}
        )

    @staticmethod
    def _not_found(response: HttpResponse) -> None:
        response.status = HTTPStatus.NOT_FOUND
        response.headers["Content-Type"] = "text/plain"
        response.body = NOT_FOUND_BODY

    async def handle_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Serve one request, giving up after the deadline."""
        try:
            await asyncio.wait_for(self._serve_one(reader, writer), DEADLINE_SECONDS)
        except asyncio.TimeoutError:
            logger.info("connection timed out")
        except (
            ProtocolError,
            asyncio.IncompleteReadError,
            asyncio.LimitOverrunError,
            ConnectionError,
            OSError,
        ) as exc:
            logger.warning("request failed: %s", exc)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def _serve_one(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        head = await reader.readuntil(_HEAD_END)
        if len(head) > HEADER_LIMIT:
            raise ProtocolError(f"request head exceeds {HEADER_LIMIT} bytes")
        _, _, _, headers = _parse_head(head[: -len(_HEAD_END)])
        body = await reader.readexactly(_content_length(headers))
        response = self.handle(parse_request(head + body))
        writer.write(response.to_bytes())
        await writer.drain()
        if writer.can_write_eof():
            writer.write_eof()


async def serve(
    app: HttpApp, host: str = "0.0.0.0", port: int = DEFAULT_PORT
) -> asyncio.AbstractServer:
    """Start serving ``app`` on the running loop and return the server."""
    return await asyncio.start_server(app.handle_connection, host, port)


async def _run(host: str, port: int) -> None:
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop.set)
        except (NotImplementedError, RuntimeError):
            pass
    server = await serve(HttpApp(), host, port)
    try:
        await stop.wait()
    finally:
        server.close()
        await server.wait_closed()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="HTTP demo server")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)
    try:
        asyncio.run(_run(args.host, args.port))
    except KeyboardInterrupt:
        pass
    except OSError as exc:
        print(f"exception:{exc}")
        return 1
    return 0