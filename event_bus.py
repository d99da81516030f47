"""
Event bus shared by the relay channel and the voice session.

Every status transition, error and broadcast frame is fanned out to
in-process subscribers. When opened with a session directory the bus also
appends each event to a JSONL diagnostics log that can be read back later.

Writer atomicity: POSIX O_APPEND guarantees atomic writes under PIPE_BUF (4096 bytes).
Each JSON line + newline stays under that limit.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable

logger = logging.getLogger(__name__)

# POSIX PIPE_BUF: lines must stay under this for atomic multi-writer appends
_PIPE_BUF = 4096


class EventType(str, Enum):
    """All event types in the bus catalog."""
    STATUS = "status"
    ERROR = "error"
    MESSAGE = "message"
    INTENT = "intent"
    TOOL_REPLY = "tool_reply"
    RECONNECT_SCHEDULED = "reconnect_scheduled"
    TRANSCRIPT = "transcript"
    CHAT_CHUNK = "chat_chunk"
    AUDIO_LEVEL = "audio_level"
    PLAYBACK = "playback"


# Core fields that are not part of the payload
_CORE_FIELDS = {"ts", "src", "type"}


@dataclass
class BusEvent:
    """A single event on the bus."""
    ts: float
    src: str
    type: str
    payload: dict = field(default_factory=dict)

    def __init__(self, ts: float, src: str, type: str, **kwargs):
        self.ts = ts
        self.src = src
        self.type = type
        self.payload = kwargs

    def to_json_line(self) -> str:
        """Serialize to a single JSON line with trailing newline.

        Truncates payload if the line would exceed PIPE_BUF.
        """
        data = {"ts": self.ts, "src": self.src, "type": self.type, **self.payload}
        line = json.dumps(data, separators=(',', ':'), default=str) + "\n"

        if len(line.encode()) > _PIPE_BUF:
            truncated = dict(data)
            for key, val in list(truncated.items()):
                if key in _CORE_FIELDS:
                    continue
                if isinstance(val, str) and len(val) > 200:
                    truncated[key] = val[:200] + "...[truncated]"
            line = json.dumps(truncated, separators=(',', ':'), default=str) + "\n"

            if len(line.encode()) > _PIPE_BUF:
                minimal = {k: data[k] for k in _CORE_FIELDS}
                minimal["_truncated"] = True
                line = json.dumps(minimal, separators=(',', ':')) + "\n"

        return line

    @classmethod
    def from_json_line(cls, line: str) -> "BusEvent":
        """Deserialize from a JSON line."""
        data = json.loads(line.strip())
        core = {k: data.pop(k) for k in list(_CORE_FIELDS) if k in data}
        return cls(**core, **data)


class EventBus:
    """In-process fan-out with an optional JSONL diagnostics log.

    Usage:
        bus = EventBus("relay")
        unsubscribe = bus.on(EventType.STATUS, my_callback)
        bus.emit(EventType.STATUS, status="Connected")    # log + callbacks
        bus.emit_ephemeral(EventType.AUDIO_LEVEL, level=12.5)  # callbacks only
        unsubscribe()
    """

    def __init__(self, src: str, log_dir: Path | None = None):
        self._src = src
        self._log_path = log_dir / "events.jsonl" if log_dir else None
        self._file = None
        self._callbacks: dict[str, list[Callable]] = {}  # type -> [callback]

    @property
    def log_path(self) -> Path | None:
        return self._log_path

    def open(self):
        """Open the JSONL log for appending (O_APPEND for atomicity)."""
        if self._log_path is None or self._file is not None:
            return
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self._log_path, "a")

    def close(self):
        """Close the log file handle."""
        if self._file:
            self._file.close()
            self._file = None

    def on(self, event_type: str, callback: Callable) -> Callable[[], None]:
        """Register an in-process callback.

        Args:
            event_type: Event type to listen for, or "*" for all events.
            callback: Called with BusEvent as argument.

        Returns:
            A callable that removes the registration.
        """
        key = _type_key(event_type)
        self._callbacks.setdefault(key, []).append(callback)

        def unsubscribe():
            handlers = self._callbacks.get(key, [])
            if callback in handlers:
                handlers.remove(callback)

        return unsubscribe

    def subscriber_count(self, event_type: str) -> int:
        return len(self._callbacks.get(_type_key(event_type), []))

    def _fire_callbacks(self, evt: BusEvent):
        """Fire registered callbacks for an event."""
        for cb_type in (evt.type, "*"):
            for cb in list(self._callbacks.get(cb_type, [])):
                try:
                    cb(evt)
                except Exception as e:
                    logger.error("Bus callback error for %s: %s", evt.type, e)

    def emit(self, event_type: str, **payload) -> BusEvent:
        """Write event to the JSONL log (if open) and fire in-process callbacks."""
        evt = BusEvent(ts=time.time(), src=self._src, type=_type_key(event_type), **payload)

        if self._file:
            self._file.write(evt.to_json_line())
            self._file.flush()

        self._fire_callbacks(evt)
        return evt

    def emit_ephemeral(self, event_type: str, **payload) -> BusEvent:
        """Fire callbacks only, skip disk write. For high-frequency events."""
        evt = BusEvent(ts=time.time(), src=self._src, type=_type_key(event_type), **payload)
        self._fire_callbacks(evt)
        return evt

    def read_recent(self, last_n: int = 50, event_type: str | None = None,
                    since_ts: float | None = None) -> list[BusEvent]:
        """Read recent events from the JSONL log.

        Args:
            last_n: Maximum number of events to return.
            event_type: Filter to only this event type.
            since_ts: Only events after this timestamp.
        """
        if self._log_path is None or not self._log_path.exists():
            return []

        wanted = _type_key(event_type) if event_type else None
        events = []
        try:
            with open(self._log_path, "r") as f:
                for line in f:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        evt = BusEvent.from_json_line(line)
                    except (json.JSONDecodeError, KeyError, TypeError):
                        continue
                    if wanted and evt.type != wanted:
                        continue
                    if since_ts and evt.ts < since_ts:
                        continue
                    events.append(evt)
        except OSError:
            return []

        if last_n:
            events = events[-last_n:]
        return events


def _type_key(event_type) -> str:
    if isinstance(event_type, EventType):
        return event_type.value
    return str(event_type)
