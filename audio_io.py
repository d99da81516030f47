"""Microphone capture, speaker output and PCM16 conversion.

PyAudio calls block, so reads and writes run in the default executor the
same way the playback stage of a live session does.
"""

import asyncio
import functools
import logging

import numpy as np

logger = logging.getLogger(__name__)

CAPTURE_RATE = 24000   # Speech service input: 24kHz mono PCM16
PLAYBACK_RATE = 16000  # Synthesis output: 16kHz mono PCM16
CHANNELS = 1
CAPTURE_CHUNK = 2048   # frames per mic read (~85ms at 24kHz)
LEVEL_GAIN = 3.0       # RMS of normal speech sits well under 0.3


def float_to_pcm16(samples) -> bytes:
    """Float samples in [-1, 1] to little-endian int16 bytes.

    Values are clamped first; negatives scale by 32768 and positives by 32767
    so both ends of the int16 range are reachable without overflow.
    """
    clipped = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 32768.0, clipped * 32767.0)
    return scaled.astype('<i2').tobytes()


def pcm16_to_float(data: bytes) -> np.ndarray:
    """Little-endian int16 bytes to float32 samples (divided by 32768)."""
    usable = len(data) - (len(data) % 2)
    if usable != len(data):
        logger.debug("Dropping trailing odd byte from %d-byte PCM segment", len(data))
    return np.frombuffer(data[:usable], dtype='<i2').astype(np.float32) / 32768.0


def audio_level(samples) -> int:
    """Input level on a 0-100 scale from the RMS of float samples."""
    samples = np.asarray(samples, dtype=np.float32)
    if samples.size == 0:
        return 0
    rms = float(np.sqrt(np.mean(np.square(samples))))
    return int(round(min(1.0, rms * LEVEL_GAIN) * 100))


class MicrophoneCapture:
    """Float32 mono capture at 24kHz from an optional PyAudio device index."""

    def __init__(self, device_index: int | None = None, rate: int = CAPTURE_RATE,
                 chunk: int = CAPTURE_CHUNK):
        self.device_index = device_index
        self.rate = rate
        self.chunk = chunk
        self._pa = None
        self._stream = None

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    def open(self):
        import pyaudio

        pa = pyaudio.PyAudio()
        try:
            self._stream = pa.open(
                format=pyaudio.paFloat32,
                channels=CHANNELS,
                rate=self.rate,
                input=True,
                frames_per_buffer=self.chunk,
                input_device_index=self.device_index,
            )
        except Exception:
            pa.terminate()
            raise
        self._pa = pa
        logger.info("Microphone opened (device=%s, %dHz)", self.device_index, self.rate)

    async def read(self) -> np.ndarray:
        stream = self._stream
        if stream is None:
            return np.zeros(0, dtype=np.float32)
        loop = asyncio.get_running_loop()
        data = await loop.run_in_executor(
            None, functools.partial(stream.read, self.chunk, exception_on_overflow=False))
        return np.frombuffer(data, dtype=np.float32)

    def close(self):
        stream, pa = self._stream, self._pa
        self._stream = self._pa = None
        if stream is not None:
            try:
                stream.stop_stream()
                stream.close()
            except OSError as e:
                logger.debug("Microphone close failed: %s", e)
        if pa is not None:
            pa.terminate()
            logger.info("Microphone released")


class SpeakerSink:
    """Plays PCM16 segments at 16kHz. ``play()`` returns once the write completes."""

    def __init__(self, rate: int = PLAYBACK_RATE):
        self.rate = rate
        self._pa = None
        self._stream = None

    def _ensure_stream(self):
        if self._stream is not None:
            return self._stream
        import pyaudio

        self._pa = pyaudio.PyAudio()
        self._stream = self._pa.open(
            format=pyaudio.paFloat32,
            channels=CHANNELS,
            rate=self.rate,
            output=True,
            frames_per_buffer=1024,
        )
        return self._stream

    async def play(self, segment: bytes):
        samples = pcm16_to_float(segment)
        if samples.size == 0:
            return
        stream = self._ensure_stream()
        await asyncio.get_running_loop().run_in_executor(None, stream.write, samples.tobytes())

    def close(self):
        stream, pa = self._stream, self._pa
        self._stream = self._pa = None
        if stream is not None:
            stream.stop_stream()
            stream.close()
        if pa is not None:
            pa.terminate()
