"""Worker thread that dispatches received messages to per-id callbacks."""

from __future__ import annotations

import json
import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from tlvnet.protocol import Message, MsgId

logger = logging.getLogger(__name__)

Callback = Callable[[Any, int, bytes], None]

_STOP = object()


@dataclass(frozen=True)
class LogicNode:
    """A received message together with the session it came from."""

    session: Any
    message: Message


class LogicSystem:
    """Runs callbacks for posted messages on a single worker thread.

    Stopping processes every message already queued before the worker exits.
    """

    _instance: Optional["LogicSystem"] = None
    _instance_lock = threading.Lock()

    def __init__(self, handlers: Optional[Mapping[int, Callback]] = None) -> None:
        if handlers is None:
            handlers = {MsgId.HELLO: echo_hello}
        self._callbacks: Dict[int, Callback] = {int(k): v for k, v in handlers.items()}
        self._queue: "queue.Queue[object]" = queue.Queue()
        self._lock = threading.Lock()
        self._stopped = False
        self._worker = threading.Thread(
            target=self._run, name="logic-system", daemon=True
        )
        self._worker.start()

    def register(self, msg_id: int, callback: Callback) -> None:
        with self._lock:
            self._callbacks[int(msg_id)] = callback

    def post(self, node: LogicNode) -> bool:
        """Queue ``node``; return False if the system is already stopped."""
        with self._lock:
            if self._stopped:
                return False
            self._queue.put(node)
            return True

    def stop(self) -> None:
        """Process what is queued, then end the worker thread."""
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            self._queue.put(_STOP)
        if threading.current_thread() is not self._worker:
            self._worker.join()

    def __enter__(self) -> "LogicSystem":
        return self

    def __exit__(self, *args) -> None:
        self.stop()

    @classmethod
    def get_instance(cls) -> "LogicSystem":
        """Return the shared instance, creating it on first use."""
        if cls._instance is None:
            with cls._instance_lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    def _run(self) -> None:
        while True:
            node = self._queue.get()
            if node is _STOP:
                break
            self._dispatch(node)

    def _dispatch(self, node: LogicNode) -> None:
        msg_id = node.message.msg_id
        with self._lock:
            callback = self._callbacks.get(int(msg_id))
        if callback is None:
            logger.debug("no handler for message id %s", msg_id)
            return
        try:
            callback(node.session, msg_id, node.message.body)
        except Exception:
            logger.exception("handler for message id %s failed", msg_id)


def echo_hello(session: Any, msg_id: int, body: bytes) -> None:
    """Send the body straight back as a HELLO message."""
    logger.info("logic system receive: %r", body)
    session.send(body, MsgId.HELLO)


def json_hello(session: Any, msg_id: int, body: bytes) -> None:
    """Acknowledge a JSON body, replying with its ``id`` as the message id."""
    try:
        root = json.loads(body)
    except ValueError:
        root = {}
    if not isinstance(root, dict):
        root = {}
    raw_id = root.get("id", 0)
    reply_id = int(raw_id) if isinstance(raw_id, (int, float)) else 0
    logger.info("msg_id: %s, id: %s, data: %r", msg_id, reply_id, root.get("data"))
    root["data"] = "received, thanks"
    reply = json.dumps(root, indent=3, sort_keys=True, ensure_ascii=False) + "\n"
    session.send(reply, reply_id)