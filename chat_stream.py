"""Streaming chat client for the dialogue backend.

The backend answers ``POST /chat`` either with a single JSON object or with
a line-oriented stream:

    data: <text or JSON object>
    error: <message>
    : comment

Every payload is normalized to plain text and handed to ``on_chunk`` in
arrival order. Failures of any kind reach the caller as one user-facing
sentence (see friendly_errors.py).
"""

import asyncio
import contextlib
import inspect
import json
import logging
import time
from typing import Callable

import httpx

from friendly_errors import (
    CHECK_CONNECTION, CONNECTION_INTERRUPTED, UNEXPECTED_FORMAT,
    ChatStreamError, ConnectivityError, chat_error, describe,
    message_for_status, message_for_stream_error,
)

logger = logging.getLogger(__name__)

STREAM_TIMEOUT = 60.0  # seconds without data before the stream is abandoned
STREAMING_CONTENT_TYPES = ("text/event-stream", "text/plain")


class AbortHandle:
    """Cancels an in-flight chat call. Owned by the caller."""

    def __init__(self):
        self._event = asyncio.Event()

    def abort(self):
        self._event.set()

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    async def wait(self):
        await self._event.wait()


class _Aborted(Exception):
    pass


class _Stalled(Exception):
    pass


async def _next_text(iterator):
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


async def _guarded(awaitable, abort: AbortHandle | None, timeout: float | None):
    """Await ``awaitable`` unless the abort handle fires or ``timeout`` passes first."""
    if abort is not None and abort.aborted:
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        raise _Aborted()

    task = asyncio.ensure_future(awaitable)
    waiters = {task}
    abort_task = None
    if abort is not None:
        abort_task = asyncio.ensure_future(abort.wait())
        waiters.add(abort_task)

    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        if abort_task is not None:
            abort_task.cancel()

    if task in done:
        return task.result()

    task.cancel()
    with contextlib.suppress(asyncio.CancelledError, Exception):
        await task
    if abort_task is not None and abort_task in done:
        raise _Aborted()
    raise _Stalled()


def _emit(on_chunk: Callable[[str], None], text) -> None:
    if text is None:
        return
    on_chunk(text if isinstance(text, str) else str(text))


def handle_stream_line(line: str, on_chunk: Callable[[str], None]) -> None:
    """Process one complete stream line. Raises ChatStreamError on ``error:`` lines."""
    line = line.strip()
    if not line or line.startswith(":"):
        return

    if line.startswith("data: "):
        data = line[6:]
        if not (data.startswith("{") or data.startswith("[")):
            _emit(on_chunk, data)
            return
        try:
            parsed = json.loads(data)
        except ValueError:
            _emit(on_chunk, data)
            return
        if isinstance(parsed, dict):
            if parsed.get("error"):
                _emit(on_chunk, message_for_stream_error(describe(parsed["error"])))
            elif parsed.get("content") or parsed.get("text") or parsed.get("chunk"):
                _emit(on_chunk, parsed.get("content") or parsed.get("text") or parsed.get("chunk"))
        elif isinstance(parsed, str):
            _emit(on_chunk, parsed)
        return

    if line.startswith("error: "):
        raise ChatStreamError(message_for_stream_error(line[7:]))


def flush_trailing(buffer: str, on_chunk: Callable[[str], None]) -> None:
    """Deliver whatever is left once the stream has ended."""
    trimmed = buffer.strip()
    if not trimmed:
        return
    if trimmed.startswith("data: "):
        _emit(on_chunk, trimmed[6:])
    elif not trimmed.startswith(":"):
        _emit(on_chunk, trimmed)


class ChatStreamClient:
    """Authenticated streaming client for ``<api_endpoint>/chat``.

    Args:
        api_endpoint: Base URL of the dialogue backend.
        token_provider: Callable (sync or async) returning the bearer token.
        stream_timeout: Allowed silence between reads before giving up.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    def __init__(self, api_endpoint: str, token_provider=None, *,
                 stream_timeout: float = STREAM_TIMEOUT,
                 transport: httpx.AsyncBaseTransport | None = None):
        self.api_endpoint = (api_endpoint or "").rstrip("/")
        self._token_provider = token_provider
        self.stream_timeout = stream_timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                transport=self._transport,
                timeout=httpx.Timeout(connect=10.0, read=None, write=30.0, pool=10.0),
            )
        return self._client

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self._token_provider is not None:
            token = self._token_provider()
            if inspect.isawaitable(token):
                token = await token
            if token:
                headers["Authorization"] = f"Bearer {token}"
        return headers

    async def send_chat_message(self, text: str, device_id: str,
                                on_chunk: Callable[[str], None],
                                on_error: Callable[[ChatStreamError], None] | None = None,
                                abort: AbortHandle | None = None) -> None:
        """Send ``text`` and deliver the reply incrementally via ``on_chunk``.

        On failure the translated error goes to ``on_error`` when given
        (and the call returns normally), otherwise it is raised.
        """
        try:
            await self._stream_chat(text, device_id, on_chunk, abort)
            return
        except _Aborted:
            logger.info("Chat: request aborted")
            error = ConnectivityError(CHECK_CONNECTION)
        except _Stalled:
            logger.warning("Chat: no data for %.0fs, abandoning stream", self.stream_timeout)
            error = chat_error(CONNECTION_INTERRUPTED)
        except ChatStreamError as e:
            error = chat_error(e.message)
        except httpx.TimeoutException as e:
            logger.warning("Chat: request timed out: %s", e)
            error = chat_error("Request timeout")
        except httpx.TransportError as e:
            logger.warning("Chat: network error: %s", e)
            error = chat_error("Failed to fetch")
        except Exception as e:
            logger.error("Chat: unexpected failure: %s", e)
            error = chat_error(describe(e))

        if on_error is not None:
            on_error(error)
            return
        raise error

    async def _stream_chat(self, text, device_id, on_chunk, abort):
        client = self._get_client()
        request = client.build_request(
            "POST", f"{self.api_endpoint}/chat",
            json={"message": text, "device_id": device_id},
            headers=await self._headers(),
        )
        started = time.time()
        response = await _guarded(client.send(request, stream=True), abort, None)
        try:
            if response.is_error:
                body = await response.aread()
                raise ChatStreamError(self._http_error_message(response, body))

            content_type = response.headers.get("content-type", "")
            if not any(kind in content_type for kind in STREAMING_CONTENT_TYPES):
                body = await response.aread()
                self._deliver_json_body(body, on_chunk)
                return

            await self._consume_stream(response, on_chunk, abort)
            logger.info("Chat: stream complete in %.2fs", time.time() - started)
        finally:
            await response.aclose()

    @staticmethod
    def _http_error_message(response: httpx.Response, body: bytes) -> str:
        message = response.reason_phrase or f"HTTP error! status: {response.status_code}"
        try:
            data = json.loads(body)
        except ValueError:
            data = None
        if isinstance(data, dict) and data.get("error"):
            return describe(data["error"])
        return message_for_status(response.status_code, message)

    @staticmethod
    def _deliver_json_body(body: bytes, on_chunk):
        try:
            data = json.loads(body)
        except ValueError:
            raise ChatStreamError(UNEXPECTED_FORMAT)
        if isinstance(data, dict):
            if "error" in data:
                raise ChatStreamError(describe(data["error"]))
            if data.get("success") is True and data.get("response"):
                _emit(on_chunk, data["response"])
                return
        raise ChatStreamError(UNEXPECTED_FORMAT)

    async def _consume_stream(self, response: httpx.Response, on_chunk, abort):
        iterator = response.aiter_text()
        buffer = ""
        while True:
            piece = await _guarded(_next_text(iterator), abort, self.stream_timeout)
            if piece is None:
                break
            buffer += piece
            lines = buffer.split("\n")
            buffer = lines.pop()
            for line in lines:
                handle_stream_line(line, on_chunk)
        flush_trailing(buffer, on_chunk)

    async def clear_history(self) -> None:
        """Delete the server-side chat history and memory for this user."""
        client = self._get_client()
        try:
            response = await client.delete(f"{self.api_endpoint}/clear-history",
                                           headers=await self._headers())
        except httpx.HTTPError as e:
            raise ChatStreamError(describe(e) or "Failed to clear chat history") from e

        try:
            data = response.json()
        except ValueError:
            data = None

        if isinstance(data, dict):
            if data.get("success") is True and not response.is_error:
                return
            if data.get("error"):
                raise ChatStreamError(describe(data["error"]))
        if response.is_error:
            raise ChatStreamError(f"HTTP error! status: {response.status_code}")
        raise ChatStreamError("Unexpected response format from clear-history API")
