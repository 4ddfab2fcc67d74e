"""TLV clients: a concurrent JSON request generator and a line echo client."""

from __future__ import annotations

import argparse
import json
import logging
import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional, Tuple, Union

from tlvnet.protocol import (
    HEAD_TOTAL_LENGTH,
    MAX_LENGTH,
    Message,
    MsgId,
    ProtocolError,
    decode_header,
    encode_message,
)
from tlvnet.sockutil import connect_to_server, read_until_all, write_all

logger = logging.getLogger(__name__)

TLV_PORT = 6543
ECHO_PORT = 6555
ECHO_LINE_LIMIT = 1024
_STAGGER_SECONDS = 0.01


@dataclass(frozen=True)
class RunReport:
    """Outcome of :func:`run_clients`."""

    clients: int
    replies: int
    failures: int
    elapsed: float


def build_request(msg_id: int, data: str) -> bytes:
    """Frame a JSON object ``{"id": msg_id, "data": data}`` under ``msg_id``."""
    body = json.dumps({"id": int(msg_id), "data": data}, indent=3, sort_keys=True)
    return encode_message(body + "\n", msg_id)


def _read_message(sock: socket.socket) -> Message:
    msg_id, length = decode_header(read_until_all(sock, HEAD_TOTAL_LENGTH))
    if length > MAX_LENGTH:
        raise ProtocolError(f"reply length {length} exceeds limit {MAX_LENGTH}")
    return Message(msg_id, read_until_all(sock, length))


def request(
    host: str,
    port: int,
    payload: Union[bytes, str],
    msg_id: int = MsgId.HELLO,
) -> Message:
    """Send one framed message and return the framed reply."""
    with connect_to_server(host, port) as sock:
        write_all(sock, encode_message(payload, msg_id))
        return _read_message(sock)


def _client(host: str, port: int, rounds: int) -> Tuple[int, bool]:
    replies = 0
    try:
        with connect_to_server(host, port) as sock:
            frame = build_request(MsgId.HELLO, "hello world")
            for _ in range(rounds):
                write_all(sock, frame)
                reply = _read_message(sock)
                replies += 1
                try:
                    root = json.loads(reply.body)
                except ValueError:
                    root = {}
                if isinstance(root, dict):
                    logger.debug("msg id is %s msg is %s", root.get("id"), root.get("data"))
    except (OSError, ProtocolError) as exc:
        logger.warning("client failed: %s", exc)
        return replies, False
    return replies, True


def run_clients(host: str, port: int, clients: int = 100, rounds: int = 500) -> RunReport:
    """Run ``clients`` concurrent connections, each sending ``rounds`` requests."""
    if clients < 1:
        raise ValueError("clients must be at least 1")
    start = time.perf_counter()
    futures = []
    with ThreadPoolExecutor(max_workers=clients, thread_name_prefix="tlv-client") as pool:
        for _ in range(clients):
            futures.append(pool.submit(_client, host, port, rounds))
            time.sleep(_STAGGER_SECONDS)
    results = [future.result() for future in futures]
    elapsed = time.perf_counter() - start
    return RunReport(
        clients=clients,
        replies=sum(replies for replies, _ in results),
        failures=sum(1 for _, ok in results if not ok),
        elapsed=elapsed,
    )


def _exchange(sock: socket.socket, text: str) -> str:
    data = text.encode("utf-8")
    write_all(sock, data)
    return read_until_all(sock, len(data)).decode("utf-8", errors="replace")


def echo_roundtrip(host: str, port: int, text: str) -> str:
    """Send ``text`` to an echo server and read back as many bytes."""
    with connect_to_server(host, port) as sock:
        return _exchange(sock, text)


def _interactive(host: str, port: int) -> int:
    with connect_to_server(host, port) as sock:
        lock = threading.Lock()
        while True:
            try:
                line = input("Enter msg:")
            except EOFError:
                return 0
            with lock:
                reply = _exchange(sock, line[: ECHO_LINE_LIMIT - 1])
            print(f"reply:{reply}")


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="TLV and echo clients")
    sub = parser.add_subparsers(dest="mode", required=True)

    stress = sub.add_parser("stress", help="many concurrent JSON requests")
    stress.add_argument("--host", default="127.0.0.1")
    stress.add_argument("--port", type=int, default=TLV_PORT)
    stress.add_argument("--clients", type=int, default=100)
    stress.add_argument("--rounds", type=int, default=500)

    echo = sub.add_parser("echo", help="interactive line echo")
    echo.add_argument("--host", default="127.0.0.1")
    echo.add_argument("--port", type=int, default=ECHO_PORT)

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)

    try:
        if args.mode == "stress":
            report = run_clients(args.host, args.port, args.clients, args.rounds)
            print(f"Time spent: {int(report.elapsed)} seconds.")
            return 0 if report.failures == 0 else 1
        return _interactive(args.host, args.port)
    except (OSError, ValueError) as exc:
        print(f"exception:{exc}")
        return 1