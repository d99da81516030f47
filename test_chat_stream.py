#!/usr/bin/env python3
"""Tests for the streaming chat client.

Tests: line framing across reads, payload normalization, error lines,
       JSON bodies, HTTP status mapping, watchdog, abort, transport errors,
       on_error delivery, clear_history.

Run: python3 test_chat_stream.py
"""

import asyncio
import json
import sys
from pathlib import Path

import httpx

sys.path.insert(0, str(Path(__file__).parent))

PASSED = 0
FAILED = 0
ERRORS = []


def test(name):
    def decorator(fn):
        if asyncio.iscoroutinefunction(fn):
            coro_fn = fn

            def fn():
                asyncio.run(coro_fn())
            fn.__name__ = coro_fn.__name__
        fn._test_name = name
        return fn
    return decorator


test.__test__ = False


def run_test(fn):
    global PASSED, FAILED
    name = getattr(fn, '_test_name', fn.__name__)
    try:
        fn()
        PASSED += 1
        print(f"  PASS: {name}")
    except AssertionError as e:
        FAILED += 1
        ERRORS.append((name, str(e)))
        print(f"  FAIL: {name} -- {e}")
    except Exception as e:
        FAILED += 1
        ERRORS.append((name, f"{type(e).__name__}: {e}"))
        print(f"  ERROR: {name} -- {type(e).__name__}: {e}")


class ChunkedStream(httpx.AsyncByteStream):
    """Response body delivered as the given reads, optionally stalling afterwards."""

    def __init__(self, chunks, stall=False):
        self.chunks = chunks
        self.stall = stall

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk.encode() if isinstance(chunk, str) else chunk
        if self.stall:
            await asyncio.sleep(3600)


def stream_response(chunks, content_type="text/event-stream", stall=False):
    return httpx.Response(200, headers={"content-type": content_type},
                          stream=ChunkedStream(chunks, stall))


def make_client(handler, **kwargs):
    from chat_stream import ChatStreamClient
    return ChatStreamClient("https://api.test/", lambda: "tok-1",
                            transport=httpx.MockTransport(handler), **kwargs)


async def collect(client, text="hi", **kwargs):
    chunks = []
    await client.send_chat_message(text, "device-1", chunks.append, **kwargs)
    return chunks


async def expect_error(client, **kwargs):
    from friendly_errors import ChatStreamError
    try:
        await collect(client, **kwargs)
    except ChatStreamError as e:
        return e
    raise AssertionError("Expected ChatStreamError")


# ======================================================================
# Test Group 1: Request
# ======================================================================

@test("POSTs {message, device_id} to <endpoint>/chat with bearer auth")
async def test_request_shape():
    seen = {}

    def handler(request):
        seen["method"] = request.method
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return stream_response(["data: ok\n"])

    client = make_client(handler)
    await collect(client, "hello there")
    assert seen["method"] == "POST"
    assert seen["url"] == "https://api.test/chat"
    assert seen["auth"] == "Bearer tok-1"
    assert seen["body"] == {"message": "hello there", "device_id": "device-1"}
    await client.aclose()


@test("Async token providers are awaited")
async def test_async_token_provider():
    from chat_stream import ChatStreamClient
    seen = {}

    async def token():
        return "async-tok"

    def handler(request):
        seen["auth"] = request.headers.get("authorization")
        return stream_response(["data: ok\n"])

    client = ChatStreamClient("https://api.test", token, transport=httpx.MockTransport(handler))
    await collect(client)
    assert seen["auth"] == "Bearer async-tok"
    await client.aclose()


# ======================================================================
# Test Group 2: Stream framing
# ======================================================================

@test("Lines split across reads deliver 'Hello' without duplication or loss")
async def test_split_reads():
    client = make_client(lambda request: stream_response(["data: He", "l\ndata: l", "o\n"]))
    chunks = await collect(client)
    assert chunks == ["Hel", "lo"], f"Got {chunks}"
    assert "".join(chunks) == "Hello"
    await client.aclose()


@test("Comments and blank lines are skipped")
async def test_comments_skipped():
    client = make_client(lambda request: stream_response([": keepalive\n\ndata: a\n:x\ndata: b\n"]))
    assert await collect(client) == ["a", "b"]
    await client.aclose()


@test("JSON payloads deliver content, text or chunk fields in order")
async def test_json_payloads():
    body = (
        'data: {"content": "one"}\n'
        'data: {"text": "two"}\n'
        'data: {"chunk": "three"}\n'
        'data: {"other": 1}\n'
        'data: {"broken\n'
    )
    client = make_client(lambda request: stream_response([body]))
    assert await collect(client) == ["one", "two", "three", '{"broken'], "Unparseable JSON is delivered raw"
    await client.aclose()


@test("Error objects inside data lines are delivered as friendly text")
async def test_data_error_object():
    from friendly_errors import SERVICE_UNAVAILABLE
    client = make_client(lambda request: stream_response(['data: {"error": "503 Service Unavailable"}\n']))
    assert await collect(client) == [SERVICE_UNAVAILABLE]
    await client.aclose()


@test("error: line ends the stream with the mapped message")
async def test_error_line():
    from friendly_errors import ServiceError, SERVER_ERROR
    client = make_client(lambda request: stream_response(["data: partial\n", "error: 500 Internal Server Error\n",
                                                          "data: never\n"]))
    chunks = []
    try:
        await client.send_chat_message("hi", "device-1", chunks.append)
        raise AssertionError("Expected ServiceError")
    except ServiceError as e:
        assert e.message == SERVER_ERROR
    assert chunks == ["partial"]
    await client.aclose()


@test("Trailing partial line is flushed at stream end")
async def test_trailing_flush():
    client = make_client(lambda request: stream_response(["data: first\ndata: last"]))
    assert await collect(client) == ["first", "last"]
    client2 = make_client(lambda request: stream_response(["plain tail"], content_type="text/plain"))
    assert await collect(client2) == ["plain tail"]
    await client.aclose()
    await client2.aclose()


@test("Multi-byte characters split across reads decode intact")
async def test_utf8_split():
    encoded = "data: café\n".encode()
    assert encoded[9:11] == "é".encode()
    client = make_client(lambda request: stream_response([encoded[:10], encoded[10:]]))
    assert await collect(client) == ["café"]
    await client.aclose()


# ======================================================================
# Test Group 3: JSON bodies and HTTP errors
# ======================================================================

@test("JSON success body delivers its response as one chunk")
async def test_json_success():
    client = make_client(lambda request: httpx.Response(200, json={"success": True, "response": "Hi!"}))
    assert await collect(client) == ["Hi!"]
    await client.aclose()


@test("JSON body with an unexpected shape is reported")
async def test_json_unexpected():
    from friendly_errors import UNEXPECTED_FORMAT
    client = make_client(lambda request: httpx.Response(200, json={"foo": "bar"}))
    error = await expect_error(client)
    assert error.message == UNEXPECTED_FORMAT
    await client.aclose()


@test("JSON error body is mapped through the friendly table")
async def test_json_error_body():
    from friendly_errors import AuthError, SESSION_EXPIRED
    client = make_client(lambda request: httpx.Response(200, json={"error": "401 Unauthorized"}))
    error = await expect_error(client)
    assert isinstance(error, AuthError)
    assert error.message == SESSION_EXPIRED
    await client.aclose()


@test("HTTP 504 and 'Gateway Time-out' map to the same message")
async def test_gateway_timeout_equivalence():
    from friendly_errors import SERVER_TOO_SLOW, chat_error, message_for_stream_error
    client = make_client(lambda request: httpx.Response(504, text="<html>upstream</html>"))
    error = await expect_error(client)
    assert error.message == SERVER_TOO_SLOW

    client2 = make_client(lambda request: stream_response(["error: 504 Gateway Time-out\n"]))
    error2 = await expect_error(client2)
    assert error2.message == SERVER_TOO_SLOW

    assert chat_error(message_for_stream_error("nginx: Gateway Time-out")).message == SERVER_TOO_SLOW
    assert chat_error("Gateway Time-out").message == SERVER_TOO_SLOW
    await client.aclose()
    await client2.aclose()


@test("HTTP status table: 503, 500, 401, 403, other 4xx")
async def test_status_table():
    from friendly_errors import (CHECK_CONNECTION, PERMISSION_DENIED, SERVER_ERROR,
                                 SERVICE_UNAVAILABLE, SESSION_EXPIRED)
    expected = {503: SERVICE_UNAVAILABLE, 500: SERVER_ERROR, 502: SERVER_ERROR,
                401: SESSION_EXPIRED, 403: PERMISSION_DENIED, 404: CHECK_CONNECTION}
    for status, message in expected.items():
        client = make_client(lambda request, status=status: httpx.Response(status, text="nope"))
        error = await expect_error(client)
        assert error.message == message, f"{status}: {error.message}"
        await client.aclose()


@test("HTTP error with a JSON error field uses that field")
async def test_http_json_error():
    client = make_client(lambda request: httpx.Response(422, json={"error": "Message too long"}))
    error = await expect_error(client)
    assert error.message == "Message too long"
    await client.aclose()


# ======================================================================
# Test Group 4: Watchdog, abort, transport errors
# ======================================================================

@test("Watchdog abandons a stalled stream with the interrupted message")
async def test_watchdog():
    from friendly_errors import CONNECTION_INTERRUPTED, ConnectivityError
    client = make_client(lambda request: stream_response(["data: partial\n"], stall=True),
                         stream_timeout=0.05)
    chunks = []
    try:
        await client.send_chat_message("hi", "device-1", chunks.append)
        raise AssertionError("Expected ConnectivityError")
    except ConnectivityError as e:
        assert e.message == CONNECTION_INTERRUPTED
    assert chunks == ["partial"]
    await client.aclose()


@test("Abort handle cancels the read and maps to the connection message")
async def test_abort():
    from chat_stream import AbortHandle
    from friendly_errors import CHECK_CONNECTION, ConnectivityError
    client = make_client(lambda request: stream_response(["data: partial\n"], stall=True))
    handle = AbortHandle()
    asyncio.get_running_loop().call_later(0.02, handle.abort)
    try:
        await collect(client, abort=handle)
        raise AssertionError("Expected ConnectivityError")
    except ConnectivityError as e:
        assert e.message == CHECK_CONNECTION
    assert handle.aborted
    await client.aclose()


@test("An already-aborted handle fails without sending")
async def test_pre_aborted():
    from chat_stream import AbortHandle
    calls = []

    def handler(request):
        calls.append(request)
        return stream_response(["data: x\n"])

    client = make_client(handler)
    handle = AbortHandle()
    handle.abort()
    errors = []
    await client.send_chat_message("hi", "device-1", lambda c: None, on_error=errors.append, abort=handle)
    assert calls == []
    assert len(errors) == 1
    await client.aclose()


@test("Connection failures map to the check-your-connection message")
async def test_connect_error():
    from friendly_errors import CHECK_CONNECTION, ConnectivityError

    def handler(request):
        raise httpx.ConnectError("connection refused")

    client = make_client(handler)
    error = await expect_error(client)
    assert isinstance(error, ConnectivityError)
    assert error.message == CHECK_CONNECTION
    await client.aclose()


@test("with on_error the mapped error is delivered and the call returns")
async def test_on_error_delivery():
    from friendly_errors import SERVICE_UNAVAILABLE
    client = make_client(lambda request: httpx.Response(503, text="down"))
    errors = []
    result = await client.send_chat_message("hi", "device-1", lambda c: None, on_error=errors.append)
    assert result is None
    assert [e.message for e in errors] == [SERVICE_UNAVAILABLE]
    await client.aclose()


# ======================================================================
# Test Group 5: clear_history
# ======================================================================

@test("clear_history sends DELETE and accepts success")
async def test_clear_history():
    seen = {}

    def handler(request):
        seen["method"] = request.method
        seen["url"] = str(request.url)
        return httpx.Response(200, json={"success": True})

    client = make_client(handler)
    await client.clear_history()
    assert seen == {"method": "DELETE", "url": "https://api.test/clear-history"}
    await client.aclose()


@test("clear_history raises the server's error text")
async def test_clear_history_error():
    from friendly_errors import ChatStreamError
    client = make_client(lambda request: httpx.Response(500, json={"error": "db offline"}))
    try:
        await client.clear_history()
        raise AssertionError("Expected ChatStreamError")
    except ChatStreamError as e:
        assert e.message == "db offline"
    await client.aclose()


if __name__ == "__main__":
    print("=" * 60)
    print("Chat Stream Tests")
    print("=" * 60)

    tests = [
        obj for name, obj in sorted(globals().items())
        if callable(obj) and hasattr(obj, '_test_name')
    ]

    print(f"\nRunning {len(tests)} tests...\n")

    for fn in tests:
        run_test(fn)

    print(f"\n{'=' * 60}")
    print(f"Results: {PASSED} passed, {FAILED} failed out of {PASSED + FAILED}")

    if ERRORS:
        print(f"\nFailures:")
        for name, err in ERRORS:
            print(f"  - {name}: {err}")

    print("=" * 60)
    sys.exit(0 if FAILED == 0 else 1)
