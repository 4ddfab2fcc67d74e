"""WebSocket echo server that tracks its open connections."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import threading
import uuid as uuidlib
from typing import Dict, Optional, Union

import websockets
from websockets.exceptions import ConnectionClosed

logger = logging.getLogger(__name__)

DEFAULT_PORT = 6534

Data = Union[str, bytes]


class ConnectionManager:
    """Open connections keyed by their uuid."""

    def __init__(self) -> None:
        self._connections: Dict[str, "Connection"] = {}
        self._lock = threading.Lock()

    def add(self, connection: "Connection") -> None:
        with self._lock:
            self._connections[connection.uuid] = connection

    def remove(self, uuid: str) -> None:
        with self._lock:
            self._connections.pop(uuid, None)

    def get(self, uuid: str) -> Optional["Connection"]:
        with self._lock:
            return self._connections.get(uuid)

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)


class Connection:
    """One WebSocket peer; every message received is sent back unchanged."""

    def __init__(self, websocket) -> None:
        self.uuid = str(uuidlib.uuid4())
        self._websocket = websocket
        self._send_lock = asyncio.Lock()
        self._manager: Optional[ConnectionManager] = None

    async def send(self, message: Data) -> bool:
        """Send ``message`` after any earlier ones; return False if the peer is gone."""
        async with self._send_lock:
            try:
                await self._websocket.send(message)
            except ConnectionClosed as exc:
                logger.info("async send failed: %s", exc)
                if self._manager is not None:
                    self._manager.remove(self.uuid)
                return False
        return True

    async def run(self, manager: ConnectionManager) -> None:
        """Register with ``manager`` and echo messages until the peer closes."""
        self._manager = manager
        manager.add(self)
        try:
            async for message in self._websocket:
                logger.info("websocket recv data: %r", message)
                if not await self.send(message):
                    break
        except ConnectionClosed as exc:
            logger.info("async read failed: %s", exc)
        finally:
            manager.remove(self.uuid)


class WebSocketServer:
    """Accepts WebSocket connections and runs a :class:`Connection` for each."""

    def __init__(
        self,
        host: str = "0.0.0.0",
        port: int = DEFAULT_PORT,
        manager: Optional[ConnectionManager] = None,
    ) -> None:
        self.host = host
        self.manager = manager if manager is not None else ConnectionManager()
        self._requested_port = port
        self._server = None

    @property
    def port(self) -> int:
        """The bound port, or the requested one before :meth:`start`."""
        if self._server is None or not self._server.sockets:
            return self._requested_port
        return list(self._server.sockets)[0].getsockname()[1]

    async def handler(self, websocket) -> None:
        await Connection(websocket).run(self.manager)

    async def start(self) -> "WebSocketServer":
        if self._server is None:
            self._server = await websockets.serve(
                self.handler, self.host, self._requested_port
            )
            logger.info("server start on %s", self.port)
        return self

    async def close(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None


async def _run(host: str, port: int) -> None:
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop.set)
        except (NotImplementedError, RuntimeError):
            pass
    server = await WebSocketServer(host, port).start()
    try:
        await stop.wait()
    finally:
        await server.close()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="WebSocket echo server")
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