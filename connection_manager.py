"""Reconnecting WebSocket connection engine.

One ConnectionManager owns one logical channel (the relay socket, the
realtime speech socket or the synthesis socket). Socket activity is fed
through a single transition function, ``_handle()``, as typed events:

    Opened        -> Connected, attempts reset, keepalive started, on_open()
    FrameReceived -> on_frame()
    Failed        -> Error, error fanned out
    Closed        -> Disconnected, then (unless manual / normal / fatal)
                     a reconnect is scheduled according to the retry policy

The transport is injected (``connector``) so tests drive the engine with
fake sockets, and the backoff wait is injected (``backoff_sleep``) so delay
sequences can be asserted without waiting.
"""

import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

import websockets

from event_bus import EventBus, EventType
from friendly_errors import ConnectivityError, describe

logger = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000
GOING_AWAY = 1001
ABNORMAL_CLOSURE = 1006


class ConnectionStatus(str, Enum):
    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    ERROR = "Error"


class ExponentialBackoff:
    """``base_delay * 2**attempt`` until ``max_attempts`` reconnects have failed."""

    def __init__(self, base_delay: float = 1.0, max_attempts: int = 5):
        self.base_delay = base_delay
        self.max_attempts = max_attempts

    def delay_for(self, attempt: int) -> float | None:
        if attempt >= self.max_attempts:
            return None
        return self.base_delay * (2 ** attempt)


class FixedDelay:
    """Same delay every time, never gives up."""

    def __init__(self, delay: float = 2.0):
        self.delay = delay

    def delay_for(self, attempt: int) -> float | None:
        return self.delay


@dataclass
class Connection:
    url: str
    ws: Any = None
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    reconnect_attempts: int = 0
    last_activity: float = 0.0


# ── Events ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Opened:
    ws: Any


@dataclass(frozen=True)
class FrameReceived:
    data: Any


@dataclass(frozen=True)
class Closed:
    code: int
    reason: str = ""


@dataclass(frozen=True)
class Failed:
    error: BaseException


def handshake_status(exc: BaseException) -> int | None:
    """HTTP status of a rejected WebSocket handshake, if that is what failed."""
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    if status is None:
        status = getattr(exc, "status_code", None)
    return status if isinstance(status, int) else None


def _close_info(ws, exc: BaseException | None = None) -> tuple[int, str]:
    rcvd = getattr(exc, "rcvd", None) if exc is not None else None
    if rcvd is not None:
        return rcvd.code, rcvd.reason or ""
    code = getattr(ws, "close_code", None)
    reason = getattr(ws, "close_reason", None) or ""
    if code is None:
        code = ABNORMAL_CLOSURE if exc is not None else NORMAL_CLOSURE
    return code, reason


async def _maybe_await(result):
    if inspect.isawaitable(result):
        return await result
    return result


class ConnectionManager:
    """Keeps one WebSocket alive with policy-driven reconnection.

    Args:
        name: Channel name used in logs and as the bus source.
        url: Endpoint URL, or a (sync or async) callable resolving it.
            Resolved once and cached.
        policy: Object with ``delay_for(attempt) -> seconds | None``;
            None means give up and enter Error.
        connector: ``async (url, **kwargs) -> socket``; defaults to
            ``websockets.connect``.
        on_open: Called with the manager after every successful open.
        on_frame: Called with every inbound message (text or bytes).
        on_terminal: Called with (message, code) when the channel enters
            Error for good: a fatal close or an exhausted retry policy.
        ping_interval / ping_message: Application-level keepalive.
        normal_close_codes: Close codes that end the channel quietly.
        fatal_close_codes: Close (or handshake status) codes that surface
            an error immediately and are never retried.
        open_timeout: Seconds allowed for the opening handshake.
    """

    def __init__(self, name: str, url, *, policy=None, connector=None,
                 bus: EventBus | None = None,
                 on_open: Callable[["ConnectionManager"], Awaitable | None] | None = None,
                 on_frame: Callable[[Any], Awaitable | None] | None = None,
                 on_terminal: Callable[[str, int | None], Any] | None = None,
                 ping_interval: float | None = None, ping_message=None,
                 normal_close_codes=(NORMAL_CLOSURE,), fatal_close_codes=(),
                 open_timeout: float | None = None, connect_kwargs: dict | None = None,
                 backoff_sleep=asyncio.sleep):
        self.name = name
        self._url_source = url
        self._policy = policy or ExponentialBackoff()
        self._connector = connector or websockets.connect
        self.bus = bus or EventBus(name)
        self._on_open = on_open
        self._on_frame = on_frame
        self._on_terminal = on_terminal
        self._ping_interval = ping_interval
        self._ping_message = ping_message
        self._normal_codes = frozenset(normal_close_codes)
        self._fatal_codes = frozenset(fatal_close_codes)
        self._open_timeout = open_timeout
        self._connect_kwargs = connect_kwargs or {}
        self._backoff_sleep = backoff_sleep

        self.connection = Connection(url="")
        self._url_resolved = False
        self._manual = False
        self._send_lock = asyncio.Lock()
        self._reader_task: asyncio.Task | None = None
        self._ping_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None

    # ── State ─────────────────────────────────────────────────────

    @property
    def status(self) -> ConnectionStatus:
        return self.connection.status

    @property
    def reconnect_attempts(self) -> int:
        return self.connection.reconnect_attempts

    def is_connected(self) -> bool:
        return self.connection.status == ConnectionStatus.CONNECTED and self.connection.ws is not None

    def _set_status(self, status: ConnectionStatus):
        if self.connection.status == status:
            return
        self.connection.status = status
        logger.info("%s: %s", self.name, status.value)
        self.bus.emit(EventType.STATUS, status=status.value)

    def _emit_error(self, message: str, code: int | None = None):
        self.bus.emit(EventType.ERROR, error=message, code=code)

    async def _resolve_url(self) -> str:
        if not self._url_resolved:
            source = self._url_source
            url = await _maybe_await(source()) if callable(source) else source
            self.connection.url = url or ""
            self._url_resolved = bool(url)
        return self.connection.url

    # ── Public lifecycle ──────────────────────────────────────────

    async def connect(self, raise_on_failure: bool = False) -> bool:
        """Open the channel. No-op while Connected or Connecting.

        With ``raise_on_failure`` a failed first open raises
        ConnectivityError instead of entering the retry cycle.
        """
        if self.status in (ConnectionStatus.CONNECTED, ConnectionStatus.CONNECTING):
            return self.is_connected()
        self._manual = False
        self.connection.reconnect_attempts = 0
        self._cancel_task(self._reconnect_task)
        self._reconnect_task = None
        return await self._open(raise_on_failure)

    async def disconnect(self, code: int = NORMAL_CLOSURE, reason: str = "Manual disconnect"):
        """Close the channel for good; no reconnection follows."""
        self._manual = True
        self._cancel_task(self._reconnect_task)
        self._reconnect_task = None
        self._stop_ping()

        ws = self.connection.ws
        self.connection.ws = None
        if ws is not None:
            try:
                await ws.close(code=code, reason=reason)
            except Exception as e:
                logger.debug("%s: close failed: %s", self.name, e)
        self._cancel_task(self._reader_task)
        self._reader_task = None
        self._set_status(ConnectionStatus.DISCONNECTED)

    async def send(self, message) -> bool:
        """Send a dict (as JSON), str or bytes frame. Never raises."""
        if not self.is_connected():
            return False
        if isinstance(message, dict):
            message = json.dumps(message)
        async with self._send_lock:
            ws = self.connection.ws
            if ws is None:
                return False
            try:
                await ws.send(message)
            except Exception as e:
                logger.debug("%s: send failed: %s", self.name, e)
                return False
        return True

    # ── Transition function ───────────────────────────────────────

    async def _handle(self, event):
        conn = self.connection

        if isinstance(event, Opened):
            conn.ws = event.ws
            conn.reconnect_attempts = 0
            conn.last_activity = time.time()
            self._set_status(ConnectionStatus.CONNECTED)
            self._start_ping()
            if self._on_open:
                try:
                    await _maybe_await(self._on_open(self))
                except Exception as e:
                    logger.error("%s: on_open handler failed: %s", self.name, e)

        elif isinstance(event, FrameReceived):
            conn.last_activity = time.time()
            if self._on_frame:
                try:
                    await _maybe_await(self._on_frame(event.data))
                except Exception as e:
                    logger.error("%s: frame handler failed: %s", self.name, e)

        elif isinstance(event, Failed):
            self._set_status(ConnectionStatus.ERROR)
            self._emit_error(describe(event.error), handshake_status(event.error))

        elif isinstance(event, Closed):
            self._stop_ping()
            conn.ws = None
            self._set_status(ConnectionStatus.DISCONNECTED)

            if self._manual:
                return
            if event.code in self._normal_codes:
                logger.info("%s: closed normally (%s)", self.name, event.code)
                return
            if event.code in self._fatal_codes:
                logger.warning("%s: closed with %s %s, not retrying", self.name, event.code, event.reason)
                message = event.reason or f"Connection closed ({event.code})"
                self._set_status(ConnectionStatus.ERROR)
                self._emit_error(message, event.code)
                await self._terminal(message, event.code)
                return

            delay = self._policy.delay_for(conn.reconnect_attempts)
            if delay is None:
                logger.warning("%s: giving up after %d reconnect attempts",
                               self.name, conn.reconnect_attempts)
                message = f"Connection lost after {conn.reconnect_attempts} reconnect attempts"
                self._set_status(ConnectionStatus.ERROR)
                self._emit_error(message, event.code)
                await self._terminal(message, event.code)
                return

            conn.reconnect_attempts += 1
            logger.info("%s: closed (%s), retry %d in %.1fs",
                        self.name, event.code, conn.reconnect_attempts, delay)
            self.bus.emit(EventType.RECONNECT_SCHEDULED,
                          attempt=conn.reconnect_attempts, delay=delay, code=event.code)
            self._reconnect_task = asyncio.create_task(
                self._reconnect_after(delay), name=f"{self.name}-reconnect")

    # ── Internals ─────────────────────────────────────────────────

    async def _terminal(self, message: str, code: int | None):
        if self._on_terminal is None:
            return
        try:
            await _maybe_await(self._on_terminal(message, code))
        except Exception as e:
            logger.error("%s: on_terminal handler failed: %s", self.name, e)

    async def _open(self, raise_on_failure: bool) -> bool:
        self._set_status(ConnectionStatus.CONNECTING)

        url = await self._resolve_url()
        if not url:
            logger.error("%s: no endpoint URL configured", self.name)
            self._set_status(ConnectionStatus.ERROR)
            self._emit_error("Missing endpoint URL")
            if raise_on_failure:
                raise ConnectivityError(f"{self.name}: missing endpoint URL")
            return False

        try:
            opening = self._connector(url, **self._connect_kwargs)
            if self._open_timeout:
                ws = await asyncio.wait_for(_maybe_await(opening), timeout=self._open_timeout)
            else:
                ws = await _maybe_await(opening)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            status = handshake_status(e)
            logger.warning("%s: open failed: %s", self.name, describe(e))
            if raise_on_failure:
                self._set_status(ConnectionStatus.ERROR)
                self._emit_error(describe(e), status)
                raise ConnectivityError(f"{self.name}: {describe(e)}") from e
            await self._handle(Failed(e))
            await self._handle(Closed(status if status in self._fatal_codes else ABNORMAL_CLOSURE,
                                      describe(e)))
            return False

        if self._manual:
            # disconnect() arrived during the handshake
            logger.info("%s: disconnected while opening, closing new socket", self.name)
            try:
                await ws.close(code=NORMAL_CLOSURE, reason="Manual disconnect")
            except Exception as e:
                logger.debug("%s: close failed: %s", self.name, e)
            self._set_status(ConnectionStatus.DISCONNECTED)
            return False

        await self._handle(Opened(ws))
        self._reader_task = asyncio.create_task(self._read_loop(ws), name=f"{self.name}-reader")
        return True

    async def _read_loop(self, ws):
        try:
            async for message in ws:
                await self._handle(FrameReceived(message))
            code, reason = _close_info(ws)
        except asyncio.CancelledError:
            raise
        except websockets.exceptions.ConnectionClosed as e:
            code, reason = _close_info(ws, e)
        except Exception as e:
            await self._handle(Failed(e))
            code, reason = ABNORMAL_CLOSURE, describe(e)

        if self.connection.ws is ws:
            await self._handle(Closed(code, reason))

    async def _reconnect_after(self, delay: float):
        await self._backoff_sleep(delay)
        if self._manual or self.status in (ConnectionStatus.CONNECTED, ConnectionStatus.CONNECTING):
            return
        await self._open(raise_on_failure=False)

    def _start_ping(self):
        self._stop_ping()
        if self._ping_interval:
            self._ping_task = asyncio.create_task(self._ping_loop(), name=f"{self.name}-ping")

    def _stop_ping(self):
        self._cancel_task(self._ping_task)
        self._ping_task = None

    async def _ping_loop(self):
        while True:
            await asyncio.sleep(self._ping_interval)
            if not self.is_connected():
                continue
            message = self._ping_message() if callable(self._ping_message) else self._ping_message
            await self.send(message if message is not None else {"action": "ping"})

    @staticmethod
    def _cancel_task(task: asyncio.Task | None):
        if task is None or task.done():
            return
        if task is asyncio.current_task():
            return
        task.cancel()
