"""Strict FIFO playback of synthesized audio segments."""

import asyncio
import logging
from collections import deque
from typing import Callable, Protocol

logger = logging.getLogger(__name__)


class SegmentPlayer(Protocol):
    async def play(self, segment: bytes) -> None: ...


class AudioPlaybackQueue:
    """Single-consumer drain loop over a deque of segments.

    ``_busy`` is set synchronously in ``enqueue()`` before the drain task is
    created, so at most one drain loop exists and segment N+1 never starts
    before ``player.play(N)`` has returned.
    """

    def __init__(self, player: SegmentPlayer,
                 on_segment_start: Callable[[int], None] | None = None,
                 on_drained: Callable[[], None] | None = None):
        self.player = player
        self.on_segment_start = on_segment_start
        self.on_drained = on_drained
        self._queue: deque[bytes] = deque()
        self._busy = False
        self._drain_task: asyncio.Task | None = None
        self.segments_played = 0

    @property
    def is_playing(self) -> bool:
        return self._busy

    def __len__(self):
        return len(self._queue)

    def enqueue(self, segment: bytes):
        self._queue.append(segment)
        if not self._busy:
            self._busy = True
            self._drain_task = asyncio.create_task(self._drain(), name="audio-playback")

    def clear(self):
        """Drop queued segments. A segment already playing finishes."""
        dropped = len(self._queue)
        self._queue.clear()
        if dropped:
            logger.debug("Playback: dropped %d queued segments", dropped)

    async def wait_idle(self):
        task = self._drain_task
        if task is not None and not task.done():
            await asyncio.shield(task)

    def _notify(self, callback, *args):
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            logger.error("Playback callback failed: %s", e)

    async def _drain(self):
        try:
            while self._queue:
                segment = self._queue.popleft()
                self._notify(self.on_segment_start, len(segment))
                try:
                    await self.player.play(segment)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error("Playback: segment of %d bytes failed: %s", len(segment), e)
                    continue
                self.segments_played += 1
        finally:
            self._busy = False
        self._notify(self.on_drained)
