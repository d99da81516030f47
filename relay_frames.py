"""Typed frames for the relay wire protocol, validated at the socket boundary."""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum, auto

logger = logging.getLogger(__name__)

# Reply frames are always addressed to the remote dispatcher
SYSTEM_SINK_ID = "system_sender"


class FrameKind(Enum):
    INTENT = auto()          # Tool invocation addressed to this device (or unaddressed)
    FOREIGN_INTENT = auto()  # Tool invocation addressed to another device
    GENERIC = auto()         # Everything else, broadcast to subscribers


@dataclass(frozen=True)
class RelayFrame:
    kind: FrameKind
    raw: dict = field(repr=False)
    type: str | None = None
    action: str | None = None
    request_id: str | None = None
    target_id: str | None = None
    error: str | None = None
    tool_id: str | None = None
    user_intent: str | None = None


def _opt_str(value):
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


def parse_relay_frame(message, device_id: str | None) -> RelayFrame | None:
    """Parse one inbound text frame. Returns None for malformed input."""
    if isinstance(message, (bytes, bytearray)):
        try:
            message = message.decode("utf-8")
        except UnicodeDecodeError:
            logger.debug("Relay: dropping undecodable binary frame")
            return None
    try:
        data = json.loads(message)
    except (TypeError, ValueError):
        logger.debug("Relay: dropping malformed frame %r", str(message)[:120])
        return None
    if not isinstance(data, dict):
        logger.debug("Relay: dropping non-object frame")
        return None

    payload = data.get("data")
    if not isinstance(payload, dict):
        payload = {}
    tool_id = _opt_str(payload.get("tool_id"))
    user_intent = _opt_str(payload.get("user_intent"))
    target_id = _opt_str(data.get("target_id"))

    is_intent = data.get("type") == "intent" or bool(tool_id) or bool(user_intent)
    if not is_intent:
        kind = FrameKind.GENERIC
    elif not target_id or target_id == device_id:
        kind = FrameKind.INTENT
    else:
        kind = FrameKind.FOREIGN_INTENT

    return RelayFrame(
        kind=kind,
        raw=data,
        type=_opt_str(data.get("type")),
        action=_opt_str(data.get("action")),
        request_id=_opt_str(data.get("request_id")),
        target_id=target_id,
        error=_opt_str(data.get("error")),
        tool_id=tool_id,
        user_intent=user_intent,
    )


def build_reply(request_id: str | None, device_id: str, text: str | None) -> dict:
    """Reply frame for one processed intent."""
    return {
        "type": "response",
        "request_id": request_id,
        "device_id": device_id,
        "target_id": SYSTEM_SINK_ID,
        "data": text or "Tool execution completed",
    }
