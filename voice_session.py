"""Duplex voice session.

    mic ──► realtime speech socket ──► transcript ──► ChatStreamClient
                                                          │ chunks
    speaker ◄── AudioPlaybackQueue ◄── synthesis socket ◄─┘

Status machine: idle → listening → processing → speaking → listening, with
error reachable from anywhere and ``stop()`` as the only way back to idle.

Both sockets are ConnectionManagers with a fixed 2s retry delay and no
attempt cap. Close codes 1000/1001 end a socket quietly; a 403/404 on the
synthesis socket is an auth-class failure and is surfaced instead of retried.
"""

import asyncio
import base64
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

from audio_io import MicrophoneCapture, SpeakerSink, audio_level, float_to_pcm16
from audio_playback import AudioPlaybackQueue
from chat_stream import AbortHandle
from connection_manager import (
    ABNORMAL_CLOSURE, GOING_AWAY, NORMAL_CLOSURE,
    ConnectionManager, FixedDelay, handshake_status,
)
from event_bus import EventBus, EventType
from friendly_errors import ConnectivityError, LinkError, describe
from pipeline_frames import FrameType, PipelineFrame, parse_speech_event, parse_synthesis_message

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = "2024-02-15-preview"
SYNTHESIS_URL = "wss://api.elevenlabs.io/v1/text-to-speech/{voice_id}/stream"
SPEECH_CONNECT_TIMEOUT = 10.0
RECONNECT_DELAY = 2.0
IDLE_GRACE = 0.5       # quiet time after the last segment before listening again
LEVEL_INTERVAL = 0.1
SYNTHESIS_FATAL_CODES = (403, 404)

SESSION_UPDATE = {
    "type": "session.update",
    "session": {
        "modalities": ["audio", "text"],
        "instructions": "You are a helpful AI assistant.",
        "voice": "alloy",
        "input_audio_format": "pcm16",
        "output_audio_format": "pcm16",
        "input_audio_transcription": {"model": "whisper-1"},
        "turn_detection": {
            "type": "server_vad",
            "threshold": 0.5,
            "prefix_padding_ms": 300,
            "silence_duration_ms": 700,
        },
    },
}

SYNTHESIS_INIT = {
    "text": "",
    "voice_settings": {"stability": 0.5, "similarity_boost": 0.75},
}

_SECRET_PARAM_RE = re.compile(r'((?:xi-)?api-key=)[^&]*')


class VoiceStatus(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    PROCESSING = "processing"
    SPEAKING = "speaking"
    ERROR = "error"


class VoiceConfigError(LinkError):
    """Voice endpoints or credentials are missing or malformed."""


@dataclass
class VoiceConfig:
    azure_endpoint: str
    azure_api_key: str
    eleven_labs_api_key: str
    eleven_labs_voice_id: str
    device_id: str
    api_version: str = DEFAULT_API_VERSION

    @classmethod
    def from_config(cls, config: dict, device_id: str) -> "VoiceConfig":
        return cls(
            azure_endpoint=config.get("azure_endpoint") or "",
            azure_api_key=config.get("azure_api_key") or "",
            eleven_labs_api_key=config.get("eleven_labs_api_key") or "",
            eleven_labs_voice_id=config.get("eleven_labs_voice_id") or "",
            device_id=device_id,
            api_version=config.get("azure_api_version") or DEFAULT_API_VERSION,
        )


# ── Endpoint preparation ──────────────────────────────────────────

def mask_secrets(url: str) -> str:
    return _SECRET_PARAM_RE.sub(r'\1***', url)


def build_speech_url(endpoint: str, api_key: str, api_version: str = DEFAULT_API_VERSION) -> str:
    """Normalize the speech endpoint to ws(s)://, set api-key, default api-version."""
    endpoint = (endpoint or "").strip()
    if endpoint.startswith("https://"):
        endpoint = "wss://" + endpoint[len("https://"):]
    elif endpoint.startswith("http://"):
        endpoint = "ws://" + endpoint[len("http://"):]
    elif not endpoint.startswith(("wss://", "ws://")):
        endpoint = f"wss://{endpoint}"

    parts = urlsplit(endpoint)
    if not parts.netloc:
        raise VoiceConfigError(f"Invalid Azure endpoint URL: {endpoint}")

    api_key = (api_key or "").strip()
    if not api_key:
        raise VoiceConfigError("Azure API key is empty")

    params = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != "api-key"]
    params.append(("api-key", api_key))
    if not any(k == "api-version" for k, _ in params):
        params.append(("api-version", api_version))
    return urlunsplit(parts._replace(query=urlencode(params)))


def validate_voice_id(voice_id: str) -> str:
    voice_id = (voice_id or "").strip()
    if not voice_id:
        raise VoiceConfigError("Eleven Labs voice ID is required")
    # Voice ids are short identifiers; API keys start with sk_
    if voice_id.startswith("sk_") or len(voice_id) > 50:
        raise VoiceConfigError(
            "Invalid Eleven Labs voice ID. The voice ID should be a voice identifier "
            "(e.g., '21m00Tcm4TlvDq8ikWAM'), not an API key. Current value looks like an API key.")
    return voice_id


def build_synthesis_url(voice_id: str, api_key: str) -> str:
    voice_id = validate_voice_id(voice_id)
    api_key = (api_key or "").strip()
    if not api_key:
        raise VoiceConfigError("Eleven Labs API key is empty")
    return (SYNTHESIS_URL.format(voice_id=quote(voice_id, safe=""))
            + "?optimize_streaming_latency=3&output_format=pcm_16000"
            + f"&xi-api-key={quote(api_key, safe='')}")


def speech_close_message(code: int, reason: str = "") -> str:
    if code == ABNORMAL_CLOSURE:
        message = ("Connection closed abnormally (1006). Check your AZURE_OPENAI_API_KEY and that "
                   "AZURE_OPENAI_ENDPOINT includes the deployment name.")
    elif code == 1002:
        message = "Protocol error (1002). Invalid endpoint URL format."
    elif code == 1003:
        message = "Invalid data (1003). Check your API key format."
    elif code == 1008:
        message = "Policy violation (1008). Check your API key permissions and endpoint access."
    elif code >= 4000:
        message = f"Server error ({code}): {reason or 'Check your Azure configuration'}"
    else:
        message = "WebSocket connection failed"
    if reason and code < 4000:
        message += f"\nServer reason: {reason}"
    return message


def synthesis_close_message(code: int | None, reason: str = "") -> str:
    if code == 403:
        message = "Authentication failed (403). Check your Eleven Labs API key."
    elif code == 404:
        message = "Voice ID not found (404). Check your ELEVEN_LABS_VOICE_ID."
    elif code == ABNORMAL_CLOSURE:
        message = "Connection closed abnormally. Check your API key and voice ID."
    else:
        message = "Eleven Labs WebSocket connection failed"
    if reason:
        message += f" - {reason}"
    return message


# ── Session ───────────────────────────────────────────────────────

class VoiceSession:
    """One microphone-to-speaker conversation loop.

    Args:
        config: Endpoints and credentials (see VoiceConfig).
        chat: Object with ``send_chat_message`` (a ChatStreamClient).
        player: Segment player for the playback queue; SpeakerSink by default.
        microphone_factory: ``(device_index) -> MicrophoneCapture``-like.
        connector / backoff_sleep: Socket and wait injection for tests.
        on_status_change / on_transcript / on_audio_level / on_error:
            Optional callbacks mirroring the bus events.
    """

    def __init__(self, config: VoiceConfig, chat, *, player=None,
                 microphone_factory: Callable = MicrophoneCapture,
                 device_index: int | None = None,
                 bus: EventBus | None = None, connector=None, backoff_sleep=asyncio.sleep,
                 speech_connect_timeout: float = SPEECH_CONNECT_TIMEOUT,
                 reconnect_delay: float = RECONNECT_DELAY,
                 idle_grace: float = IDLE_GRACE,
                 level_interval: float = LEVEL_INTERVAL,
                 on_status_change: Callable[[VoiceStatus], None] | None = None,
                 on_transcript: Callable[[str], None] | None = None,
                 on_audio_level: Callable[[int], None] | None = None,
                 on_error: Callable[[LinkError], None] | None = None):
        self.config = config
        self.chat = chat
        self.bus = bus or EventBus("voice")
        self.device_index = device_index
        self._microphone_factory = microphone_factory
        self._connector = connector
        self._backoff_sleep = backoff_sleep
        self.speech_connect_timeout = speech_connect_timeout
        self.reconnect_delay = reconnect_delay
        self.idle_grace = idle_grace
        self.level_interval = level_interval

        self.on_status_change = on_status_change
        self.on_transcript = on_transcript
        self.on_audio_level = on_audio_level
        self.on_error = on_error

        self.status = VoiceStatus.IDLE
        self.transcript = ""
        self.playback = AudioPlaybackQueue(
            player or SpeakerSink(),
            on_segment_start=self._on_segment_start,
            on_drained=self._on_drained,
        )

        self._active = False
        self._generation = 0
        self._mic = None
        self._speech: ConnectionManager | None = None
        self._synthesis: ConnectionManager | None = None
        self._outbox: asyncio.Queue | None = None
        self._abort: AbortHandle | None = None
        self._tasks: set[asyncio.Task] = set()
        self._chat_task: asyncio.Task | None = None
        self._idle_task: asyncio.Task | None = None
        self._level = 0

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def speech(self) -> ConnectionManager | None:
        return self._speech

    @property
    def synthesis(self) -> ConnectionManager | None:
        return self._synthesis

    # ── Status / callbacks ────────────────────────────────────────

    def _notify(self, callback, *args):
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error("Voice: callback %s failed: %s", getattr(callback, "__name__", callback), e)

    def _set_status(self, status: VoiceStatus):
        if self.status == status:
            return
        self.status = status
        logger.info("Voice: %s", status.value)
        self.bus.emit(EventType.STATUS, status=status.value)
        self._notify(self.on_status_change, status)

    def _fail(self, error):
        """Enter Error and report. Ignored once the session has been stopped."""
        if not self._active:
            logger.debug("Voice: ignoring error after stop: %s", describe(error))
            return
        if not isinstance(error, LinkError):
            error = LinkError(describe(error))
        logger.error("Voice: %s", error.message)
        self._set_status(VoiceStatus.ERROR)
        self.bus.emit(EventType.ERROR, error=error.message)
        self._notify(self.on_error, error)

    # ── Lifecycle ─────────────────────────────────────────────────

    async def start(self):
        """Acquire the mic, open both sockets and start listening. No-op if active."""
        if self._active:
            return
        self._active = True
        self._generation += 1
        generation = self._generation

        try:
            speech_url = build_speech_url(self.config.azure_endpoint, self.config.azure_api_key,
                                          self.config.api_version)
            synthesis_url = build_synthesis_url(self.config.eleven_labs_voice_id,
                                                self.config.eleven_labs_api_key)

            self._mic = self._microphone_factory(self.device_index)
            self._mic.open()

            logger.info("Voice: connecting speech socket %s", mask_secrets(speech_url))
            self._speech = self._make_manager(
                "speech", speech_url,
                on_open=self._on_speech_open,
                on_frame=self._on_speech_message,
                open_timeout=self.speech_connect_timeout,
            )
            await self._connect(self._speech)
            if self._superseded(generation):
                return

            logger.info("Voice: connecting synthesis socket %s", mask_secrets(synthesis_url))
            self._synthesis = self._make_manager(
                "synthesis", synthesis_url,
                on_open=self._on_synthesis_open,
                on_frame=self._on_synthesis_message,
                fatal_close_codes=SYNTHESIS_FATAL_CODES,
                on_terminal=self._on_synthesis_terminal,
            )
            await self._connect(self._synthesis)
            if self._superseded(generation):
                return
        except Exception as e:
            if self._superseded(generation):
                logger.debug("Voice: start failed after stop: %s", describe(e))
                return
            self._fail(e)
            await self._teardown(VoiceStatus.ERROR)
            raise

        self._outbox = asyncio.Queue()
        self._spawn(self._capture_loop(), "voice-capture")
        self._spawn(self._level_loop(), "voice-level")
        self._spawn(self._synthesis_sender(), "voice-synthesis-sender")
        self._set_status(VoiceStatus.LISTENING)

    def _superseded(self, generation: int) -> bool:
        """True once stop() (or a restart) has run since this start() began."""
        if generation == self._generation and self._active:
            return False
        logger.info("Voice: start abandoned, session was stopped while connecting")
        return True

    async def stop(self):
        """Tear everything down and return to idle. Safe from any state, any number of times."""
        if self._active:
            logger.info("Voice: stopping session")
        await self._teardown(VoiceStatus.IDLE)

    async def set_device(self, device_index: int | None):
        """Select the input device; an active session restarts on it."""
        self.device_index = device_index
        if self._active:
            await self.stop()
            await self.start()

    async def _teardown(self, final_status: VoiceStatus):
        self._active = False
        self._generation += 1

        if self._abort is not None:
            self._abort.abort()
            self._abort = None

        for task in [*self._tasks, self._chat_task, self._idle_task]:
            self._cancel(task)
        self._tasks.clear()
        self._chat_task = None
        self._idle_task = None

        mic, self._mic = self._mic, None
        if mic is not None:
            mic.close()

        for manager in (self._speech, self._synthesis):
            if manager is not None:
                await manager.disconnect()
        self._speech = self._synthesis = None

        self.transcript = ""
        self.playback.clear()
        self._outbox = None
        self._level = 0
        self._set_status(final_status)

    def _make_manager(self, name, url, *, on_open, on_frame, fatal_close_codes=(),
                      open_timeout=None, on_terminal=None) -> ConnectionManager:
        return ConnectionManager(
            name, url,
            policy=FixedDelay(self.reconnect_delay),
            connector=self._connector,
            bus=EventBus(name),
            on_open=on_open,
            on_frame=on_frame,
            on_terminal=on_terminal,
            normal_close_codes=(NORMAL_CLOSURE, GOING_AWAY),
            fatal_close_codes=fatal_close_codes,
            open_timeout=open_timeout,
            connect_kwargs={"max_size": None},
            backoff_sleep=self._backoff_sleep,
        )

    async def _connect(self, manager: ConnectionManager):
        try:
            await manager.connect(raise_on_failure=True)
        except ConnectivityError as e:
            raise LinkError(self._open_failure_message(manager.name, e.__cause__)) from e

    @staticmethod
    def _open_failure_message(name: str, cause: BaseException | None) -> str:
        if isinstance(cause, asyncio.TimeoutError):
            return "Azure WebSocket connection timeout. Check your endpoint URL and network connection."
        status = handshake_status(cause) if cause is not None else None
        reason = describe(cause) if cause is not None else ""
        if name == "synthesis":
            return synthesis_close_message(status or ABNORMAL_CLOSURE, reason)
        return f"Azure WebSocket error: {speech_close_message(ABNORMAL_CLOSURE, reason)}"

    def _spawn(self, coro, name: str):
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    def _cancel(task: asyncio.Task | None):
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()

    # ── Speech socket ─────────────────────────────────────────────

    async def _on_speech_open(self, manager: ConnectionManager):
        await manager.send(SESSION_UPDATE)
        logger.info("Voice: session configuration sent")

    def _on_speech_message(self, message):
        frame = parse_speech_event(message, self._generation)
        if frame is None:
            logger.debug("Voice: unparseable speech event dropped")
            return

        if frame.type == FrameType.TRANSCRIPT_DELTA:
            if frame.data and self.status == VoiceStatus.LISTENING:
                self.transcript += frame.data
                self.bus.emit_ephemeral(EventType.TRANSCRIPT, delta=frame.data)
                self._notify(self.on_transcript, frame.data)

        elif frame.type == FrameType.TRANSCRIPT_DONE:
            text = self.transcript.strip()
            if text:
                self.transcript = ""
                self._set_status(VoiceStatus.PROCESSING)
                self.bus.emit(EventType.TRANSCRIPT, text=text, final=True)
                self._submit(text)

        elif frame.type == FrameType.SPEECH_ERROR:
            self._fail(frame.data)

    # ── Chat ──────────────────────────────────────────────────────

    def _submit(self, text: str):
        if self._abort is not None:
            self._abort.abort()
        self._abort = abort = AbortHandle()
        self._chat_task = asyncio.create_task(self._chat_turn(text, abort), name="voice-chat")

    async def _chat_turn(self, text: str, abort: AbortHandle):
        generation = self._generation
        outbox = self._outbox
        errors = []
        chunks = 0

        def on_chunk(chunk: str):
            nonlocal chunks
            if abort is not self._abort or outbox is None:
                return
            chunks += 1
            self.bus.emit_ephemeral(EventType.CHAT_CHUNK, size=len(chunk))
            outbox.put_nowait(PipelineFrame(FrameType.TTS_TEXT, generation, chunk))

        await self.chat.send_chat_message(text, self.config.device_id, on_chunk,
                                          on_error=errors.append, abort=abort)

        # Superseded by a newer utterance, or stopped
        if abort is not self._abort or not self._active:
            return
        self._abort = None

        if errors:
            self._fail(errors[0])
            return
        if chunks == 0:
            logger.info("Voice: empty reply, back to listening")
            if self.status == VoiceStatus.PROCESSING:
                self._set_status(VoiceStatus.LISTENING)
            return
        outbox.put_nowait(PipelineFrame(FrameType.TTS_FLUSH, generation))

    # ── Synthesis socket ──────────────────────────────────────────

    async def _on_synthesis_open(self, manager: ConnectionManager):
        await manager.send(SYNTHESIS_INIT)

    def _on_synthesis_terminal(self, message: str, code: int | None):
        self._fail(synthesis_close_message(code, message))

    async def _synthesis_sender(self):
        """Forward chat text to the synthesis socket in arrival order."""
        outbox = self._outbox
        while True:
            frame = await outbox.get()
            if frame.generation_id != self._generation or self._synthesis is None:
                continue
            if frame.type == FrameType.TTS_TEXT and frame.data:
                await self._synthesis.send({"text": frame.data})
            elif frame.type == FrameType.TTS_FLUSH:
                await self._synthesis.send({"text": "", "flush": True})

    def _on_synthesis_message(self, message):
        frame = parse_synthesis_message(message, self._generation)
        if frame is None:
            logger.debug("Voice: unparseable synthesis message dropped")
            return

        if frame.type == FrameType.TTS_AUDIO:
            if not self._active:
                return
            self._cancel(self._idle_task)
            self.playback.enqueue(frame.data)
        elif frame.type == FrameType.TTS_ERROR:
            self._fail(frame.data)
        elif frame.type == FrameType.TTS_DONE:
            if self.status == VoiceStatus.SPEAKING and not self.playback.is_playing:
                self._schedule_idle()

    # ── Playback ──────────────────────────────────────────────────

    def _on_segment_start(self, size: int):
        self._cancel(self._idle_task)
        if self._active and self.status == VoiceStatus.PROCESSING:
            self._set_status(VoiceStatus.SPEAKING)
        self.bus.emit_ephemeral(EventType.PLAYBACK, bytes=size)

    def _on_drained(self):
        if self._active and self.status == VoiceStatus.SPEAKING:
            self._schedule_idle()

    def _schedule_idle(self):
        self._cancel(self._idle_task)
        self._idle_task = asyncio.create_task(self._return_to_listening(), name="voice-idle")

    async def _return_to_listening(self):
        await asyncio.sleep(self.idle_grace)
        if (self._active and self.status == VoiceStatus.SPEAKING
                and not self.playback.is_playing and len(self.playback) == 0):
            self._set_status(VoiceStatus.LISTENING)

    # ── Microphone ────────────────────────────────────────────────

    async def _capture_loop(self):
        mic = self._mic
        while self._active and mic is not None:
            try:
                samples = await mic.read()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._fail(f"Microphone read failed: {describe(e)}")
                return
            if len(samples) == 0:
                await asyncio.sleep(0.01)
                continue

            self._level = audio_level(samples)
            speech = self._speech
            if speech is not None and speech.is_connected():
                await speech.send({
                    "type": "input_audio_buffer.append",
                    "audio": base64.b64encode(float_to_pcm16(samples)).decode("ascii"),
                })

    async def _level_loop(self):
        while True:
            await asyncio.sleep(self.level_interval)
            level = self._level
            self.bus.emit_ephemeral(EventType.AUDIO_LEVEL, level=level)
            self._notify(self.on_audio_level, level)
