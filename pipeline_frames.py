"""Typed dataclass frames produced by the voice sockets and consumed by VoiceSession."""

import base64
import binascii
import json
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any


class FrameType(Enum):
    TRANSCRIPT_DELTA = auto()  # Incremental transcript fragment
    TRANSCRIPT_DONE = auto()   # Speech service finished the utterance
    SPEECH_ERROR = auto()      # Error event from the speech socket
    TTS_TEXT = auto()          # Chat chunk on its way to the synthesis socket
    TTS_FLUSH = auto()         # Chat reply finished, synthesis should flush
    TTS_AUDIO = auto()         # PCM segment from the synthesis socket
    TTS_DONE = auto()          # Synthesis reported audio_complete / flush
    TTS_ERROR = auto()         # Error object from the synthesis socket
    IGNORED = auto()           # Known or unknown event with no effect


@dataclass
class PipelineFrame:
    type: FrameType
    generation_id: int = 0
    data: Any = None
    metadata: dict = field(default_factory=dict)


def _error_text(error, fallback: str) -> str:
    if isinstance(error, dict):
        return error.get("message") or fallback
    if isinstance(error, str) and error:
        return error
    return fallback


def parse_speech_event(message, generation_id: int = 0) -> PipelineFrame | None:
    """Map one realtime speech socket message to a frame. None if unparseable."""
    try:
        event = json.loads(message)
    except (TypeError, ValueError):
        return None
    if not isinstance(event, dict):
        return None

    event_type = event.get("type")
    if event_type == "response.audio_transcript.delta":
        return PipelineFrame(FrameType.TRANSCRIPT_DELTA, generation_id, event.get("delta") or "")
    if event_type == "response.audio_transcript.done":
        return PipelineFrame(FrameType.TRANSCRIPT_DONE, generation_id, event.get("transcript"))
    if event_type == "error":
        return PipelineFrame(FrameType.SPEECH_ERROR, generation_id,
                             _error_text(event.get("error"), "Azure error"))
    return PipelineFrame(FrameType.IGNORED, generation_id, metadata={"event_type": event_type})


def parse_synthesis_message(message, generation_id: int = 0) -> PipelineFrame | None:
    """Binary frames are audio; text frames are JSON status or error objects."""
    if isinstance(message, (bytes, bytearray, memoryview)):
        return PipelineFrame(FrameType.TTS_AUDIO, generation_id, bytes(message))

    try:
        data = json.loads(message)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None

    if data.get("error"):
        return PipelineFrame(FrameType.TTS_ERROR, generation_id,
                             _error_text(data["error"], "Eleven Labs error"))
    # Some synthesis endpoints send audio base64-encoded inside JSON
    if isinstance(data.get("audio"), str) and data["audio"]:
        try:
            audio = base64.b64decode(data["audio"])
        except (binascii.Error, ValueError):
            return None
        return PipelineFrame(FrameType.TTS_AUDIO, generation_id, audio)
    if data.get("audio_complete") or data.get("flush") or data.get("isFinal"):
        return PipelineFrame(FrameType.TTS_DONE, generation_id)
    return PipelineFrame(FrameType.IGNORED, generation_id)
