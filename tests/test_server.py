import asyncio
import json

import pytest

from tlvnet.logic import LogicSystem, json_hello
from tlvnet.protocol import MAX_SEND_QUEUE, MsgId, decode_header, encode_message
from tlvnet.server import Server, Session


async def _read_frame(reader):
    header = await asyncio.wait_for(reader.readexactly(4), timeout=5)
    msg_id, length = decode_header(header)
    body = await asyncio.wait_for(reader.readexactly(length), timeout=5)
    return msg_id, body


async def _wait_until(predicate, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            return False
        await asyncio.sleep(0.01)
    return True


@pytest.fixture
def logic():
    system = LogicSystem()
    yield system
    system.stop()


@pytest.mark.asyncio
async def test_echo_roundtrip(logic):
    server = await Server(logic, "127.0.0.1", 0).start()
    try:
        reader, writer = await asyncio.open_connection("127.0.0.1", server.port)
        writer.write(encode_message(b"hello world", MsgId.HELLO))
        await writer.drain()
        msg_id, body = await _read_frame(reader)
        assert msg_id == MsgId.HELLO
        assert body == b"hello world"
        writer.close()
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_split_frames_are_reassembled(logic):
    server = await Server(logic, "127.0.0.1", 0).start()
    try:
        reader, writer = await asyncio.open_connection("127.0.0.1", server.port)
        data = encode_message(b"first", MsgId.HELLO) + encode_message(b"second", MsgId.HELLO)
        for index in range(len(data)):
            writer.write(data[index : index + 1])
            await writer.drain()
        assert await _read_frame(reader) == (MsgId.HELLO, b"first")
        assert await _read_frame(reader) == (MsgId.HELLO, b"second")
        writer.close()
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_wire_bytes_of_reply(logic):
    server = await Server(logic, "127.0.0.1", 0).start()
    try:
        reader, writer = await asyncio.open_connection("127.0.0.1", server.port)
        writer.write(encode_message(b"hi", MsgId.HELLO))
        await writer.drain()
        reply = await asyncio.wait_for(reader.readexactly(6), timeout=5)
        assert reply == b"\x03\xe9\x00\x02hi"
        writer.close()
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_json_handler_reply():
    with LogicSystem({MsgId.HELLO: json_hello}) as system:
        server = await Server(system, "127.0.0.1", 0).start()
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", server.port)
            request = json.dumps({"id": 1001, "data": "hello world"})
            writer.write(encode_message(request, MsgId.HELLO))
            await writer.drain()
            msg_id, body = await _read_frame(reader)
            assert msg_id == 1001
            root = json.loads(body)
            assert root["data"] == "received, thanks"
            assert root["id"] == 1001
            writer.close()
        finally:
            await server.close()


@pytest.mark.asyncio
async def test_oversized_body_closes_session(logic):
    server = await Server(logic, "127.0.0.1", 0, max_length=16).start()
    try:
        reader, writer = await asyncio.open_connection("127.0.0.1", server.port)
        assert await _wait_until(lambda: len(server.sessions) == 1)
        writer.write(encode_message(b"x" * 32, MsgId.HELLO))
        await writer.drain()
        rest = await asyncio.wait_for(reader.read(), timeout=5)
        assert rest == b""
        assert await _wait_until(lambda: len(server.sessions) == 0)
        writer.close()
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_session_removed_when_peer_closes(logic):
    server = await Server(logic, "127.0.0.1", 0).start()
    try:
        _, writer = await asyncio.open_connection("127.0.0.1", server.port)
        assert await _wait_until(lambda: len(server.sessions) == 1)
        (session,) = server.sessions.values()
        assert list(server.sessions) == [session.uuid]
        assert not session.closed
        writer.close()
        assert await _wait_until(lambda: len(server.sessions) == 0)
        assert server.sessions == {}
        assert session.closed
    finally:
        await server.close()


@pytest.mark.asyncio
async def test_clear_session_and_close(logic):
    server = await Server(logic, "127.0.0.1", 0).start()
    _, writer = await asyncio.open_connection("127.0.0.1", server.port)
    assert await _wait_until(lambda: len(server.sessions) == 1)
    (session,) = server.sessions.values()
    server.clear_session("missing")
    assert list(server.sessions) == [session.uuid]
    await server.close()
    assert server.sessions == {}
    assert session.closed
    writer.close()


class _StuckWriter:
    def __init__(self):
        self.written = []
        self.closed = False
        self._never = asyncio.Event()

    def write(self, data):
        self.written.append(data)

    async def drain(self):
        await self._never.wait()

    def close(self):
        self.closed = True


class _FakeServer:
    max_length = 2048

    def __init__(self):
        self.cleared = []

    def clear_session(self, uuid):
        self.cleared.append(uuid)


@pytest.mark.asyncio
async def test_send_queue_limit(logic):
    writer = _StuckWriter()
    session = Session(_FakeServer(), asyncio.StreamReader(), writer, logic)
    results = [session.send(b"x", MsgId.HELLO) for _ in range(MAX_SEND_QUEUE + 3)]
    assert results.count(True) == MAX_SEND_QUEUE + 1
    assert results[-1] is False
    await asyncio.sleep(0.05)
    assert writer.written == [encode_message(b"x", MsgId.HELLO)]
    session.close()
    assert writer.closed
    assert session.send(b"y", MsgId.HELLO) is False


@pytest.mark.asyncio
async def test_run_clears_session_on_eof(logic):
    server = _FakeServer()
    reader = asyncio.StreamReader()
    writer = _StuckWriter()
    session = Session(server, reader, writer, logic)
    reader.feed_data(b"\x03\xe9")
    reader.feed_eof()
    await asyncio.wait_for(session.run(), timeout=5)
    assert server.cleared == [session.uuid]
    assert session.closed


def test_sessions_have_distinct_ids(logic):
    first = Session(_FakeServer(), None, _StuckWriter.__new__(_StuckWriter), logic)
    second = Session(_FakeServer(), None, _StuckWriter.__new__(_StuckWriter), logic)
    assert first.uuid != second.uuid
    assert len(first.uuid) == 36


def test_main_rejects_bad_reply_option():
    from tlvnet.server import main

    with pytest.raises(SystemExit):
        main(["--reply", "nothing"])