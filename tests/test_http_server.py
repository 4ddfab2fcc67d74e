import asyncio
import json
from http import HTTPStatus

import pytest

from tlvnet.http_server import (
    HttpApp,
    HttpRequest,
    HttpResponse,
    parse_request,
    serve,
)
from tlvnet.protocol import ProtocolError


def _get(target):
    return HttpRequest("GET", target)


def test_parse_request_reads_line_headers_and_body():
    data = (
        b"POST /email HTTP/1.1\r\nHost: localhost\r\nContent-Length: 4\r\n\r\nabcdEXTRA"
    )
    request = parse_request(data)
    assert request.method == "POST"
    assert request.target == "/email"
    assert request.version == "HTTP/1.1"
    assert request.header("HOST") == "localhost"
    assert request.body == b"abcd"


def test_parse_request_without_body():
    request = parse_request(b"GET /count HTTP/1.0\r\n\r\n")
    assert (request.method, request.target, request.version) == ("GET", "/count", "HTTP/1.0")
    assert request.body == b""


@pytest.mark.parametrize(
    "data",
    [
        b"GET /count HTTP/1.1\r\n",
        b"GET /count\r\n\r\n",
        b"GET /count FTP/1.0\r\n\r\n",
        b"GET / HTTP/1.1\r\nbad header\r\n\r\n",
        b"POST / HTTP/1.1\r\nContent-Length: 10\r\n\r\nshort",
        b"POST / HTTP/1.1\r\nContent-Length: x\r\n\r\n",
    ],
)
def test_parse_request_rejects_malformed(data):
    with pytest.raises(ProtocolError):
        parse_request(data)


def test_count_increments_per_request():
    app = HttpApp()
    first = app.handle(_get("/count"))
    second = app.handle(_get("/count"))
    assert first.status == HTTPStatus.OK
    assert first.headers["Server"] == "Beast"
    assert first.headers["Content-Type"] == "text/html"
    assert b"There have been 1 requests so far." in first.body
    assert b"There have been 2 requests so far." in second.body


def test_time_uses_clock():
    app = HttpApp(clock=lambda: 1234567890.7)
    response = app.handle(_get("/time"))
    assert response.status == HTTPStatus.OK
    assert b"The current time is 1234567890 seconds since the epoch." in response.body
    assert response.body.startswith(b"<html>\n<head><title>Current time</title></head>\n")


def test_unknown_get_target_is_not_found():
    response = HttpApp().handle(_get("/missing"))
    assert response.status == HTTPStatus.NOT_FOUND
    assert response.headers["Content-Type"] == "text/plain"
    assert response.body == b"not FOUND\r\n"


def test_unknown_post_target_is_not_found():
    response = HttpApp().handle(HttpRequest("POST", "/other", body=b"{}"))
    assert response.status == HTTPStatus.NOT_FOUND
    assert response.body == b"not FOUND\r\n"


def test_other_method_is_bad_request():
    response = HttpApp().handle(HttpRequest("PUT", "/count"))
    assert response.status == HTTPStatus.BAD_REQUEST
    assert response.body == b"Invalid request-method:PUT"
    assert "Server" not in response.headers


def test_email_echoes_address():
    body = json.dumps({"email": "someone@example.com"}).encode()
    response = HttpApp().handle(HttpRequest("POST", "/email", body=body))
    assert response.status == HTTPStatus.OK
    assert response.headers["Content-Type"] == "text/json"
    assert json.loads(response.body) == {
        "error": 0,
        "email": "someone@example.com",
        "msg": "recv email post success",
    }


def test_email_invalid_json_reports_error():
    response = HttpApp().handle(HttpRequest("POST", "/email", body=b"not json"))
    assert response.body == b'{\n   "error" : 1001\n}\n'


def test_email_missing_field_is_null():
    response = HttpApp().handle(HttpRequest("POST", "/email", body=b"{}"))
    assert json.loads(response.body)["email"] is None


def test_response_to_bytes_round_trip():
    response = HttpResponse(headers={"Content-Type": "text/plain"}, body=b"hello")
    raw = response.to_bytes()
    assert raw.startswith(b"HTTP/1.1 200 OK\r\n")
    head, _, body = raw.partition(b"\r\n\r\n")
    assert body == b"hello"
    assert b"Content-Length: 5" in head.split(b"\r\n")


def test_keep_alive_disabled_for_http11():
    response = HttpApp().handle(_get("/count"))
    assert response.headers["Connection"] == "close"


@pytest.mark.asyncio
async def test_served_over_tcp():
    app = HttpApp()
    server = await serve(app, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        writer.write(b"GET /count HTTP/1.1\r\nHost: localhost\r\n\r\n")
        await writer.drain()
        raw = await asyncio.wait_for(reader.read(), 5)
        writer.close()
    finally:
        server.close()
        await server.wait_closed()
    assert raw.startswith(b"HTTP/1.1 200 OK\r\n")
    assert b"There have been 1 requests so far." in raw


@pytest.mark.asyncio
async def test_served_post_over_tcp():
    server = await serve(HttpApp(), "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    body = json.dumps({"email": "someone@example.com"}).encode()
    try:
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        writer.write(
            b"POST /email HTTP/1.1\r\nContent-Length: "
            + str(len(body)).encode()
            + b"\r\n\r\n"
            + body
        )
        await writer.drain()
        raw = await asyncio.wait_for(reader.read(), 5)
        writer.close()
    finally:
        server.close()
        await server.wait_closed()
    _, _, reply = raw.partition(b"\r\n\r\n")
    assert json.loads(reply)["email"] == "someone@example.com"