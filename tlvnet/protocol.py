"""TLV framing: a 2-byte message id, a 2-byte body length, then the body.

Both header fields are sent in network byte order.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import List, Optional, Union

HEAD_ID_LENGTH = 2
HEAD_DATA_LENGTH = 2
HEAD_TOTAL_LENGTH = HEAD_ID_LENGTH + HEAD_DATA_LENGTH
MAX_LENGTH = 2 * 1024
MAX_SEND_QUEUE = 1000
MAX_RECV_QUEUE = 10000

_HEADER = struct.Struct(">hH")
_MAX_BODY = 0xFFFF


class MsgId(IntEnum):
    """Known message identifiers."""

    HELLO = 1001


class ProtocolError(ValueError):
    """Raised when a frame or header is malformed or too large."""


@dataclass(frozen=True)
class Message:
    """A complete message taken off the wire."""

    msg_id: int
    body: bytes

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


class MsgNode:
    """A fixed-size buffer that is filled incrementally."""

    def __init__(self, total_len: int) -> None:
        if total_len < 0:
            raise ValueError("total_len must not be negative")
        self.total_len = total_len
        self.cur_len = 0
        self._buffer = bytearray(total_len)

    @property
    def data(self) -> bytes:
        """The bytes stored so far."""
        return bytes(self._buffer[: self.cur_len])

    @property
    def remaining(self) -> int:
        return self.total_len - self.cur_len

    def append(self, data) -> int:
        """Copy as much of ``data`` as fits; return the number of bytes taken."""
        chunk = memoryview(data).cast("B")[: self.remaining]
        taken = len(chunk)
        self._buffer[self.cur_len : self.cur_len + taken] = chunk
        self.cur_len += taken
        return taken

    def clear(self) -> None:
        """Reset the buffer so it can be reused."""
        self._buffer[:] = bytes(self.total_len)
        self.cur_len = 0

    def is_full(self) -> bool:
        return self.cur_len == self.total_len


class RecvNode(MsgNode):
    """A body buffer tagged with the message id from its header."""

    def __init__(self, total_len: int, msg_id: int) -> None:
        super().__init__(total_len)
        self.msg_id = msg_id

    def to_message(self) -> Message:
        return Message(self.msg_id, self.data)


def encode_message(payload: Union[bytes, bytearray, str], msg_id: int) -> bytes:
    """Build a complete frame for ``payload``."""
    body = payload.encode("utf-8") if isinstance(payload, str) else bytes(payload)
    if len(body) > _MAX_BODY:
        raise ProtocolError(f"payload of {len(body)} bytes does not fit a frame")
    try:
        header = _HEADER.pack(int(msg_id), len(body))
    except struct.error as exc:
        raise ProtocolError(f"invalid message id {msg_id!r}") from exc
    return header + body


def decode_header(header: bytes) -> "tuple[int, int]":
    """Return ``(msg_id, body_length)`` from a 4-byte header."""
    if len(header) != HEAD_TOTAL_LENGTH:
        raise ProtocolError(
            f"header must be {HEAD_TOTAL_LENGTH} bytes, got {len(header)}"
        )
    msg_id, length = _HEADER.unpack(bytes(header))
    return msg_id, length


class FrameParser:
    """Reassembles messages from an arbitrarily split byte stream."""

    def __init__(self, max_length: int = MAX_LENGTH) -> None:
        self.max_length = max_length
        self._head = MsgNode(HEAD_TOTAL_LENGTH)
        self._body: Optional[RecvNode] = None

    def feed(self, data) -> List[Message]:
        """Consume ``data`` and return every message it completes."""
        view = memoryview(bytes(data))
        messages: List[Message] = []
        while view or (self._body is not None and self._body.is_full()):
            if self._body is None:
                view = view[self._head.append(view) :]
                if not self._head.is_full():
                    break
                msg_id, length = decode_header(self._head.data)
                if length > self.max_length:
                    raise ProtocolError(
                        f"body length {length} exceeds limit {self.max_length}"
                    )
                self._body = RecvNode(length, msg_id)
            view = view[self._body.append(view) :]
            if not self._body.is_full():
                break
            messages.append(self._body.to_message())
            self._body = None
            self._head.clear()
        return messages