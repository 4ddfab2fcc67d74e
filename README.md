# tlvnet

A small networking toolkit built around a length-prefixed (TLV) wire format.
It also has several servers built on `asyncio` that are ready to run.

## The wire format

Each message has a 4-byte header followed by a body:

| bytes | meaning                                   |
|-------|-------------------------------------------|
| 0–1   | message id, signed 16-bit, big-endian     |
| 2–3   | body length, unsigned 16-bit, big-endian  |
| 4–…   | body                                      |

The `tlvnet.protocol` module encodes and decodes this format:

```python
from tlvnet.protocol import FrameParser, MsgId, decode_header, encode_message

frame = encode_message(b"hello", MsgId.HELLO)
msg_id, length = decode_header(frame[:4])      # (1001, 5)

parser = FrameParser(2048)
for message in parser.feed(frame):             # feed() returns a list of Message
    print(message.msg_id, message.body, message.text)
```

- `encode_message` accepts `bytes` or `str`. A `str` is encoded as UTF-8.
- `encode_message` raises `ProtocolError` if the body is longer than 65535 bytes or the id does not fit the header.
- `FrameParser.feed` accepts the stream in chunks of any size. It returns the messages that each chunk completes.
- If a header announces a body longer than the parser's `max_length`, `feed` raises `ProtocolError`. The default `max_length` is `MAX_LENGTH`, which is 2048.
- `MsgNode` and `RecvNode` are the fixed-size buffers that the parser fills. They provide `append`, `clear` and `is_full`.

## Message handling

`tlvnet.logic.LogicSystem` takes `LogicNode(session, message)` items and runs the callback registered for each message id. The callbacks run on a single worker thread. Messages whose id has no callback are skipped.

`stop()` runs everything already queued before the worker exits. After that, `post()` returns `False`. The context manager calls `stop()` when the block ends.

```python
from tlvnet.logic import LogicSystem, json_hello
from tlvnet.protocol import MsgId

with LogicSystem({MsgId.HELLO: json_hello}) as logic:
    logic.register(2002, lambda session, msg_id, body: session.send(body, msg_id))
    ...
```

The module has two ready-made callbacks:

- **`echo_hello`** sends the body back as a `HELLO` message.
- **`json_hello`** parses the body as JSON and sets `"data"` to `"received, thanks"`. It sends the result back, using the object's `"id"` as the message id.

If no handlers are given, `LogicSystem()` uses `echo_hello`. `LogicSystem.get_instance()` returns a shared instance.

## Event-loop pools

`tlvnet.pool` has two pool classes:

- **`IOServicePool(size)`** starts one event loop per thread. `get_loop()` hands the loops out round-robin.
- **`IOThreadPool(size)`** runs a single shared loop. Its default executor has `size` worker threads. `submit(coro)` schedules a coroutine on that loop and returns a `concurrent.futures.Future`.

Both pools have a `stop()` method, which joins their threads. If `size` is omitted, both default to the CPU count.

## TLV server

`tlvnet.server.Server` accepts connections and creates a `Session` for each one. Each session reads frames and posts them to a `LogicSystem`.

- If a frame's body is longer than `max_length`, the session closes.
- `Session.send(payload, msg_id)` may be called from any thread. Frames are written in order.
- A session holds at most about `MAX_SEND_QUEUE` (1000) queued frames. Beyond that, further sends are dropped and return `False`.

```python
import asyncio
from tlvnet.logic import LogicSystem
from tlvnet.server import Server

async def run(logic):
    server = Server(logic, "127.0.0.1", 6543)
    await server.serve_forever()

with LogicSystem() as logic:
    asyncio.run(run(logic))
```

## Clients and socket helpers

`tlvnet.client` provides these functions:

- **`request(host, port, payload, msg_id)`** sends one frame and returns the reply as a `Message`.
- **`build_request(msg_id, data)`** frames the JSON object `{"id": msg_id, "data": data}`.
- **`run_clients(host, port, clients, rounds)`** opens many connections concurrently and returns a `RunReport`. The report holds `clients`, `replies`, `failures` and `elapsed`.
- **`echo_roundtrip(host, port, text)`** talks to a plain echo server.

`tlvnet.sockutil` has blocking helpers:

- Addresses: `make_endpoint` and `server_endpoint`.
- Connecting: `connect_to_server`, which accepts numeric addresses only, and `dns_connect`, which resolves names.
- Writing: `write_to_socket` and `write_all`.
- Exact-size reads: `read_from_socket` and `read_until_all`. Both raise `ConnectionError` if the peer closes early.
- Listening: `create_listener` and `accept_new_connection`.

## Other servers

**Echo.** `tlvnet.echo` has two forms:

- `echo` / `serve_async` run one coroutine per connection.
- `ThreadedEchoServer` runs one thread per connection.

**HTTP.** `tlvnet.http_server.HttpApp` serves these routes:

| request       | response                                                                 |
|---------------|--------------------------------------------------------------------------|
| `GET /count`  | HTML page with a request counter                                         |
| `GET /time`   | HTML page with the current epoch seconds                                 |
| `POST /email` | JSON: `{"error": 0, "email": ..., "msg": ...}`, or `{"error": 1001}` on bad JSON |
| other paths   | `404 not FOUND`                                                          |
| other methods | `400`                                                                    |

Each connection serves a single request and is then closed. A connection that stalls for 60 seconds is dropped. `parse_request` and `HttpResponse.to_bytes` are also available on their own.

**WebSocket.** `tlvnet.websocket_server.WebSocketServer` echoes every message back to its sender. It tracks open `Connection`s in a `ConnectionManager`.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Commands

| command         | what it runs                                                                                   | default port      |
|-----------------|------------------------------------------------------------------------------------------------|-------------------|
| `tlvnet-server` | TLV server; `--reply echo` or `--reply json` selects how `HELLO` is answered; `--max-length`     | 6543              |
| `tlvnet-client` | `tlvnet-client stress`: concurrent JSON requests (`--clients`, `--rounds`), prints the time spent | 6543              |
|                 | `tlvnet-client echo`: interactive line echo                                                    | 6555              |
| `tlvnet-echo`   | echo server; `--mode async` or `--mode threaded`                                               | 6543 / 6555       |
| `tlvnet-http`   | HTTP server described above                                                                    | 8080              |
| `tlvnet-ws`     | WebSocket echo server                                                                          | 6534              |

All commands accept `--host` and `--port`. Each server runs until it is interrupted with Ctrl-C or SIGTERM.

## What it does not do

- There is no TLS on any server or client.
- The HTTP server is not a general web server. It serves only the fixed routes above, with one request per connection and no keep-alive.
- The servers keep no state between runs.