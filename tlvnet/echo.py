"""Echo servers: one coroutine per connection, or one thread per connection."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import socket
import threading
from typing import Optional, Set

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024
ASYNC_PORT = 6543
THREADED_PORT = 6555


async def echo(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    """Write back everything read until the peer closes."""
    try:
        while True:
            data = await reader.read(CHUNK_SIZE)
            if not data:
                break
            writer.write(data)
            await writer.drain()
    except (ConnectionError, OSError) as exc:
        logger.warning("echo failed: %s", exc)
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass


async def serve_async(host: str = "0.0.0.0", port: int = ASYNC_PORT) -> asyncio.AbstractServer:
    """Start an echo server on the running loop and return it."""
    return await asyncio.start_server(echo, host, port)


def handle_session(conn: socket.socket) -> None:
    """Echo on a blocking socket until the peer closes, then close it."""
    with conn:
        while True:
            data = conn.recv(CHUNK_SIZE)
            if not data:
                logger.info("peer closed")
                break
            try:
                peer = conn.getpeername()
            except OSError:
                peer = None
            logger.debug("receive from %s msg: %r", peer, data)
            conn.sendall(data)


class ThreadedEchoServer:
    """Accepts connections and serves each one on its own thread."""

    _POLL_SECONDS = 0.2

    def __init__(self, host: str = "0.0.0.0", port: int = THREADED_PORT) -> None:
        self._listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            self._listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            self._listener.bind((host, port))
            self._listener.listen()
        except OSError:
            self._listener.close()
            raise
        self._listener.settimeout(self._POLL_SECONDS)
        self.host = host
        self.port = self._listener.getsockname()[1]
        self._stopped = threading.Event()
        self._lock = threading.Lock()
        self._threads: Set[threading.Thread] = set()
        self._conns: Set[socket.socket] = set()

    def serve_forever(self) -> None:
        """Accept connections until :meth:`close` is called."""
        while not self._stopped.is_set():
            try:
                conn, _ = self._listener.accept()
            except socket.timeout:
                continue
            except OSError:
                if self._stopped.is_set():
                    break
                raise
            conn.settimeout(None)
            with self._lock:
                if self._stopped.is_set():
                    conn.close()
                    break
                thread = threading.Thread(target=self._serve, args=(conn,), daemon=True)
                self._conns.add(conn)
                self._threads.add(thread)
            thread.start()

    def close(self) -> None:
        """Stop accepting, shut down open connections and join their threads."""
        self._stopped.set()
        self._listener.close()
        with self._lock:
            conns = list(self._conns)
            threads = list(self._threads)
        for conn in conns:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
        for thread in threads:
            thread.join()

    def _serve(self, conn: socket.socket) -> None:
        try:
            handle_session(conn)
        except OSError as exc:
            logger.warning("session failed: %s", exc)
        finally:
            with self._lock:
                self._conns.discard(conn)
                self._threads.discard(threading.current_thread())


async def _run_async(host: str, port: int) -> None:
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop.set)
        except (NotImplementedError, RuntimeError):
            pass
    server = await serve_async(host, port)
    try:
        await stop.wait()
    finally:
        server.close()
        await server.wait_closed()


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="Echo server")
    parser.add_argument("--mode", choices=("async", "threaded"), default="async")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=None)
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)

    try:
        if args.mode == "async":
            port = ASYNC_PORT if args.port is None else args.port
            asyncio.run(_run_async(args.host, port))
        else:
            port = THREADED_PORT if args.port is None else args.port
            server = ThreadedEchoServer(args.host, port)
            try:
                server.serve_forever()
            finally:
                server.close()
    except KeyboardInterrupt:
        pass
    except OSError as exc:
        print(f"exception:{exc}")
        return 1
    return 0