"""In-memory stand-ins for WebSocket connections, used by the test modules."""

import asyncio
import json
from types import SimpleNamespace

_CLOSE = object()


class FakeSocket:
    """Async-iterable socket. ``push()`` delivers a frame, ``drop()`` closes from the far end."""

    def __init__(self, url: str = ""):
        self.url = url
        self.sent = []
        self.closed = False
        self.close_code = None
        self.close_reason = None
        self._inbox = asyncio.Queue()

    async def send(self, message):
        if self.closed:
            raise ConnectionError("socket closed")
        self.sent.append(message)

    def sent_json(self) -> list:
        return [json.loads(m) for m in self.sent if isinstance(m, str)]

    def push(self, message):
        if isinstance(message, dict):
            message = json.dumps(message)
        self._inbox.put_nowait(message)

    def drop(self, code: int = 1006, reason: str = ""):
        self.closed = True
        self.close_code = code
        self.close_reason = reason
        self._inbox.put_nowait(_CLOSE)

    async def close(self, code: int = 1000, reason: str = ""):
        if not self.closed:
            self.closed = True
            self.close_code = code
            self.close_reason = reason
            self._inbox.put_nowait(_CLOSE)

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self._inbox.get()
        if message is _CLOSE:
            raise StopAsyncIteration
        return message


class HandshakeRejected(Exception):
    """Mimics a rejected opening handshake: carries ``response.status_code``."""

    def __init__(self, status: int):
        super().__init__(f"server rejected WebSocket connection: HTTP {status}")
        self.response = SimpleNamespace(status_code=status)


class FakeConnector:
    """Callable used in place of ``websockets.connect``.

    Queued failures (``fail_next``) are raised before any socket is created.
    """

    def __init__(self):
        self.calls = []
        self.sockets = []
        self._failures = []
        self.gate: asyncio.Event | None = None

    def hold(self) -> asyncio.Event:
        """Keep handshakes pending until the returned event is set."""
        self.gate = asyncio.Event()
        return self.gate

    def fail_next(self, error: BaseException, times: int = 1):
        self._failures.extend([error] * times)

    def fail_always(self, error: BaseException):
        self._failures = _Forever(error)

    async def __call__(self, url, **kwargs):
        self.calls.append(url)
        if self.gate is not None:
            await self.gate.wait()
        if self._failures:
            raise self._failures.pop(0)
        ws = FakeSocket(url)
        self.sockets.append(ws)
        return ws

    @property
    def last(self) -> FakeSocket:
        return self.sockets[-1]

    def for_url(self, fragment: str) -> list:
        return [ws for ws in self.sockets if fragment in ws.url]


class _Forever(list):
    def __init__(self, error):
        super().__init__([error])
        self.error = error

    def pop(self, index=-1):
        return self.error


class SleepRecorder:
    """Backoff sleep that records the requested delay and yields once."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)
        await asyncio.sleep(0)


async def settle(rounds: int = 50):
    """Let pending callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)
