"""Blocking socket helpers: endpoints, connecting, listening and exact reads/writes."""

from __future__ import annotations

import ipaddress
import logging
import socket
from typing import Tuple, Union

logger = logging.getLogger(__name__)

Endpoint = Tuple[str, int]

DEFAULT_BACKLOG = 30
ANY_ADDRESS = "0.0.0.0"


def make_endpoint(address: str, port: int) -> Endpoint:
    """Validate a numeric IP address and port and return them as an endpoint."""
    try:
        ip = ipaddress.ip_address(address)
    except ValueError as exc:
        raise ValueError(f"failed to parse {address!r} as an ip address") from exc
    if not 0 <= int(port) <= 0xFFFF:
        raise ValueError(f"port {port} out of range")
    return str(ip), int(port)


def server_endpoint(port: int) -> Endpoint:
    """An endpoint accepting connections on every local IPv4 address."""
    return make_endpoint(ANY_ADDRESS, port)


def connect_to_server(host: str, port: int) -> socket.socket:
    """Connect to a numeric IP address; host names are rejected."""
    endpoint = make_endpoint(host, port)
    family = socket.AF_INET6 if ":" in endpoint[0] else socket.AF_INET
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        sock.connect(endpoint)
    except OSError:
        sock.close()
        raise
    return sock


def dns_connect(host: str, port: Union[int, str]) -> socket.socket:
    """Resolve ``host`` and connect to the first address that accepts."""
    last_error: Union[OSError, None] = None
    for family, kind, proto, _, address in socket.getaddrinfo(
        host, port, type=socket.SOCK_STREAM
    ):
        sock = socket.socket(family, kind, proto)
        try:
            sock.connect(address)
        except OSError as exc:
            last_error = exc
            sock.close()
            continue
        return sock
    if last_error is not None:
        raise last_error
    raise OSError(f"no addresses found for {host!r}")


def write_to_socket(sock: socket.socket, data: bytes) -> int:
    """Send ``data`` piece by piece until all of it is written."""
    view = memoryview(data)
    total = 0
    while total != len(view):
        total += sock.send(view[total:])
    return total


def write_all(sock: socket.socket, data: bytes) -> int:
    """Send all of ``data`` in one call."""
    sock.sendall(data)
    return len(data)


def read_from_socket(sock: socket.socket, size: int) -> bytes:
    """Read exactly ``size`` bytes, collecting whatever each receive yields."""
    chunks = []
    total = 0
    while total != size:
        chunk = sock.recv(size - total)
        if not chunk:
            raise ConnectionError(f"peer closed after {total} of {size} bytes")
        chunks.append(chunk)
        total += len(chunk)
    return b"".join(chunks)


def read_until_all(sock: socket.socket, size: int) -> bytes:
    """Read exactly ``size`` bytes into one preallocated buffer."""
    buffer = bytearray(size)
    view = memoryview(buffer)
    filled = 0
    while filled != size:
        received = sock.recv_into(view[filled:])
        if received == 0:
            raise ConnectionError(f"peer closed after {filled} of {size} bytes")
        filled += received
    return bytes(buffer)


def create_listener(port: int, backlog: int = DEFAULT_BACKLOG) -> socket.socket:
    """Bind to every local IPv4 address on ``port`` and start listening."""
    endpoint = server_endpoint(port)
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        listener.bind(endpoint)
        listener.listen(backlog)
    except OSError:
        listener.close()
        raise
    logger.info("listen on %s", listener.getsockname()[1])
    return listener


def accept_new_connection(listener: socket.socket, size: int = 5) -> bytes:
    """Accept one connection, read ``size`` bytes from it and close it."""
    conn, peer = listener.accept()
    logger.info("get one new connection from %s", peer)
    with conn:
        return read_from_socket(conn, size)