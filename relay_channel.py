"""Persistent relay channel between this device and the remote dispatcher.

Authenticates on every open, keeps the socket alive with an application
ping, routes intent frames addressed to this device to the tool invoker and
broadcasts every other frame to subscribers.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable

from connection_manager import ConnectionManager, ConnectionStatus, ExponentialBackoff, NORMAL_CLOSURE
from event_bus import EventBus, EventType
from relay_frames import FrameKind, RelayFrame, parse_relay_frame

logger = logging.getLogger(__name__)

RELAY_PING_INTERVAL = 30.0
RELAY_MAX_RECONNECT_ATTEMPTS = 5
RELAY_BASE_DELAY = 1.0


class RelayChannel:
    """Relay socket with handshake, keepalive, intent routing and fan-out.

    Args:
        url: Relay endpoint, or a callable resolving it (resolved once).
        intent_handler: ``async (RelayFrame) -> None`` run in the background
            for each in-scope intent. Usually ``ToolInvoker.process``.
        connector / backoff_sleep: Transport and wait injection for tests.
    """

    def __init__(self, url, intent_handler: Callable[[RelayFrame], Awaitable[None]] | None = None,
                 *, bus: EventBus | None = None, connector=None,
                 ping_interval: float = RELAY_PING_INTERVAL,
                 max_reconnect_attempts: int = RELAY_MAX_RECONNECT_ATTEMPTS,
                 base_delay: float = RELAY_BASE_DELAY, backoff_sleep=asyncio.sleep):
        self.bus = bus or EventBus("relay")
        self.intent_handler = intent_handler
        self.device_id: str | None = None
        self._auth_token: str | None = None
        self._intent_tasks: set[asyncio.Task] = set()

        self._manager = ConnectionManager(
            "relay", url,
            policy=ExponentialBackoff(base_delay, max_reconnect_attempts),
            connector=connector,
            bus=self.bus,
            on_open=self._on_open,
            on_frame=self._on_frame,
            ping_interval=ping_interval,
            ping_message=lambda: {"action": "ping", "device_id": self.device_id},
            normal_close_codes=(NORMAL_CLOSURE,),
            backoff_sleep=backoff_sleep,
        )

    # ── Lifecycle ─────────────────────────────────────────────────

    def set_auth(self, device_id: str, auth_token: str):
        self.device_id = device_id
        self._auth_token = auth_token

    async def connect(self, device_id: str | None = None, auth_token: str | None = None):
        """Connect and authenticate. No-op while Connected/Connecting or without credentials."""
        if device_id:
            self.device_id = device_id
        if auth_token:
            self._auth_token = auth_token
        if not self.device_id or not self._auth_token:
            logger.warning("Relay: connect skipped, device id or auth token missing")
            return
        await self._manager.connect()

    async def disconnect(self):
        await self._manager.disconnect(NORMAL_CLOSURE, "Manual disconnect")

    async def wait_for_intents(self):
        """Wait for background intent tasks that are still running."""
        if self._intent_tasks:
            await asyncio.gather(*list(self._intent_tasks), return_exceptions=True)

    # ── Sending ───────────────────────────────────────────────────

    async def send_message(self, message: dict) -> bool:
        """Send one JSON frame. False when not connected; never raises."""
        return await self._manager.send(message)

    async def send_action(self, action: str, id: str | None = None, extra: dict | None = None) -> bool:
        message = {"action": action, "id": id or str(int(time.time() * 1000))}
        if extra:
            message.update(extra)
        return await self.send_message(message)

    # ── Subscriptions ─────────────────────────────────────────────

    def on_message(self, handler: Callable[[dict], None]) -> Callable[[], None]:
        return self.bus.on(EventType.MESSAGE, lambda evt: handler(evt.payload["frame"]))

    def on_status_change(self, handler: Callable[[ConnectionStatus], None]) -> Callable[[], None]:
        return self.bus.on(EventType.STATUS, lambda evt: handler(ConnectionStatus(evt.payload["status"])))

    def on_error(self, handler: Callable[[str], None]) -> Callable[[], None]:
        return self.bus.on(EventType.ERROR, lambda evt: handler(evt.payload.get("error")))

    def get_status(self) -> ConnectionStatus:
        return self._manager.status

    def is_connected(self) -> bool:
        return self._manager.is_connected()

    @property
    def reconnect_attempts(self) -> int:
        return self._manager.reconnect_attempts

    # ── Socket callbacks ──────────────────────────────────────────

    async def _on_open(self, manager: ConnectionManager):
        await manager.send({"device_id": self.device_id, "auth_token": self._auth_token})

    def _on_frame(self, message):
        frame = parse_relay_frame(message, self.device_id)
        if frame is None:
            return

        if frame.kind == FrameKind.INTENT:
            self.bus.emit(EventType.INTENT, request_id=frame.request_id, tool_id=frame.tool_id)
            if self.intent_handler is None:
                logger.warning("Relay: intent %s received but no tool invoker is attached",
                               frame.request_id)
                return
            task = asyncio.create_task(self._run_intent(frame), name=f"intent-{frame.request_id}")
            self._intent_tasks.add(task)
            task.add_done_callback(self._intent_tasks.discard)
            return

        if frame.kind == FrameKind.FOREIGN_INTENT:
            logger.debug("Relay: ignoring intent for %s", frame.target_id)
            return

        self.bus.emit(EventType.MESSAGE, frame=frame.raw)

    async def _run_intent(self, frame: RelayFrame):
        try:
            await self.intent_handler(frame)
            logger.info("Relay: tool call %s completed", frame.request_id)
        except Exception as e:
            logger.error("Relay: tool call %s failed: %s", frame.request_id, e)
