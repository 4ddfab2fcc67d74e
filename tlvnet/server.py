"""Asynchronous TLV server: sessions read frames and hand them to a logic system."""

from __future__ import annotations

import argparse
import asyncio
import collections
import logging
import signal
import threading
import uuid as uuidlib
from typing import Deque, Dict, Optional, Union

from tlvnet.logic import LogicNode, LogicSystem, echo_hello, json_hello
from tlvnet.protocol import (
    HEAD_TOTAL_LENGTH,
    MAX_LENGTH,
    MAX_SEND_QUEUE,
    Message,
    MsgId,
    ProtocolError,
    decode_header,
    encode_message,
)

logger = logging.getLogger(__name__)

DEFAULT_PORT = 6543


class Session:
    """One client connection.

    Reading happens in :meth:`run` on the event loop; :meth:`send` may be
    called from any thread and queues frames that are written in order.
    """

    def __init__(
        self,
        server,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        logic: LogicSystem,
    ) -> None:
        self.uuid = str(uuidlib.uuid4())
        self._server = server
        self._reader = reader
        self._writer = writer
        self._logic = logic
        self._closed = False
        self._send_lock = threading.Lock()
        self._send_queue: Deque[bytes] = collections.deque()
        self._flush_task: Optional[asyncio.Task] = None
        try:
            self._loop: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def max_length(self) -> int:
        return getattr(self._server, "max_length", MAX_LENGTH)

    async def run(self) -> None:
        """Read frames until the peer goes away or sends something invalid."""
        self._loop = asyncio.get_running_loop()
        try:
            while not self._closed:
                header = await self._reader.readexactly(HEAD_TOTAL_LENGTH)
                msg_id, length = decode_header(header)
                logger.debug("msg_id: %s, msg_len: %s", msg_id, length)
                if length > self.max_length:
                    logger.warning("session %s: msg_len %s invalid", self.uuid, length)
                    break
                body = await self._reader.readexactly(length)
                self._logic.post(LogicNode(self, Message(msg_id, body)))
        except asyncio.IncompleteReadError:
            logger.info("session %s: peer closed", self.uuid)
        except (ConnectionError, OSError, ProtocolError) as exc:
            logger.warning("session %s: read failed: %s", self.uuid, exc)
        finally:
            self._abort()

    def send(self, payload: Union[bytes, bytearray, str], msg_id: int) -> bool:
        """Queue a frame for sending; return False if it was dropped."""
        frame = encode_message(payload, msg_id)
        with self._send_lock:
            if self._closed:
                return False
            queued = len(self._send_queue)
            if queued > MAX_SEND_QUEUE:
                logger.warning(
                    "session %s send queue full, size is %s", self.uuid, MAX_SEND_QUEUE
                )
                return False
            self._send_queue.append(frame)
        if queued == 0:
            if self._loop is None:
                raise RuntimeError("session is not attached to an event loop")
            self._loop.call_soon_threadsafe(self._spawn_flush)
        return True

    def close(self) -> None:
        """Close the connection; further sends are dropped."""
        with self._send_lock:
            if self._closed:
                return
            self._closed = True
            self._send_queue.clear()
        if self._flush_task is not None and not self._flush_task.done():
            self._flush_task.cancel()
        try:
            self._writer.close()
        except (ConnectionError, OSError, RuntimeError):
            pass

    def _abort(self) -> None:
        self.close()
        self._server.clear_session(self.uuid)

    def _spawn_flush(self) -> None:
        if self._closed:
            return
        self._flush_task = asyncio.get_running_loop().create_task(self._flush())

    async def _flush(self) -> None:
        while True:
            with self._send_lock:
                if not self._send_queue:
                    return
                frame = self._send_queue[0]
            try:
                self._writer.write(frame)
                await self._writer.drain()
            except (ConnectionError, OSError) as exc:
                logger.warning("session %s: write failed: %s", self.uuid, exc)
                self._abort()
                return
            with self._send_lock:
                if self._send_queue:
                    self._send_queue.popleft()
                if not self._send_queue:
                    return


class Server:
    """Accepts connections and keeps track of their sessions."""

    def __init__(
        self,
        logic: LogicSystem,
        host: str = "0.0.0.0",
        port: int = DEFAULT_PORT,
        max_length: int = MAX_LENGTH,
    ) -> None:
        self.logic = logic
        self.host = host
        self.max_length = max_length
        self._requested_port = port
        self._server: Optional[asyncio.base_events.Server] = None
        self._sessions: Dict[str, Session] = {}
        self._lock = threading.Lock()

    @property
    def port(self) -> int:
        """The bound port, or the requested one before :meth:`start`."""
        if self._server is None or not self._server.sockets:
            return self._requested_port
        return self._server.sockets[0].getsockname()[1]

    @property
    def sessions(self) -> Dict[str, Session]:
        with self._lock:
            return dict(self._sessions)

    async def start(self) -> "Server":
        """Bind and begin accepting connections."""
        if self._server is None:
            self._server = await asyncio.start_server(
                self._handle, self.host, self._requested_port
            )
            logger.info("server start on %s", self.port)
        return self

    async def serve_forever(self) -> None:
        await self.start()
        assert self._server is not None
        try:
            await self._server.serve_forever()
        except asyncio.CancelledError:
            pass

    async def close(self) -> None:
        """Stop accepting and close every open session."""
        if self._server is not None:
            self._server.close()
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.close()
        if self._server is not None:
            await self._server.wait_closed()
            self._server = None

    def clear_session(self, uuid: str) -> None:
        with self._lock:
            self._sessions.pop(uuid, None)

    async def _handle(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        session = Session(self, reader, writer, self.logic)
        with self._lock:
            self._sessions[session.uuid] = session
        await session.run()


async def _serve(server: Server) -> None:
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop.set)
        except (NotImplementedError, RuntimeError):
            pass
    await server.start()
    try:
        await stop.wait()
    finally:
        await server.close()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="TLV message server")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    parser.add_argument("--max-length", type=int, default=MAX_LENGTH)
    parser.add_argument(
        "--reply",
        choices=("echo", "json"),
        default="echo",
        help="how HELLO messages are answered",
    )
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO)

    handler = json_hello if args.reply == "json" else echo_hello
    with LogicSystem({MsgId.HELLO: handler}) as logic:
        server = Server(logic, args.host, args.port, args.max_length)
        try:
            asyncio.run(_serve(server))
        except KeyboardInterrupt:
            pass
        except OSError as exc:
            logger.error("error: %s", exc)
            return 1
    return 0