#!/usr/bin/env python3
"""Tests for PCM conversion, level metering and the playback queue.

Run: python3 test_audio_playback.py
"""

import asyncio
import random
import sys
from pathlib import Path

import numpy as np

sys.path.insert(0, str(Path(__file__).parent))

PASSED = 0
FAILED = 0
ERRORS = []


def test(name):
    def decorator(fn):
        if asyncio.iscoroutinefunction(fn):
            coro_fn = fn

            def fn():
                asyncio.run(coro_fn())
            fn.__name__ = coro_fn.__name__
        fn._test_name = name
        return fn
    return decorator


test.__test__ = False


def run_test(fn):
    global PASSED, FAILED
    name = getattr(fn, '_test_name', fn.__name__)
    try:
        fn()
        PASSED += 1
        print(f"  PASS: {name}")
    except AssertionError as e:
        FAILED += 1
        ERRORS.append((name, str(e)))
        print(f"  FAIL: {name} -- {e}")
    except Exception as e:
        FAILED += 1
        ERRORS.append((name, f"{type(e).__name__}: {e}"))
        print(f"  ERROR: {name} -- {type(e).__name__}: {e}")


class RecordingPlayer:
    """Records start/end of each segment; ``delays`` maps segment -> play time."""

    def __init__(self, delays=None, fail_on=()):
        self.log = []
        self.delays = delays or {}
        self.fail_on = set(fail_on)
        self.playing = 0
        self.max_playing = 0

    async def play(self, segment):
        self.playing += 1
        self.max_playing = max(self.max_playing, self.playing)
        self.log.append(("start", segment))
        try:
            await asyncio.sleep(self.delays.get(segment, 0))
            if segment in self.fail_on:
                raise RuntimeError(f"device error on {segment!r}")
        finally:
            self.log.append(("end", segment))
            self.playing -= 1


# ======================================================================
# Test Group 1: PCM conversion and level
# ======================================================================

@test("float_to_pcm16 clamps and scales negatives by 32768, positives by 32767")
def test_float_to_pcm16():
    from audio_io import float_to_pcm16
    data = float_to_pcm16([-1.0, 1.0, 0.5, -0.5, 2.0, -2.0, 0.0])
    values = np.frombuffer(data, dtype='<i2').tolist()
    assert values == [-32768, 32767, 16383, -16384, 32767, -32768, 0], f"Got {values}"


@test("pcm16_to_float divides by 32768")
def test_pcm16_to_float():
    from audio_io import pcm16_to_float
    data = np.array([-32768, 16384, 0], dtype='<i2').tobytes()
    assert pcm16_to_float(data).tolist() == [-1.0, 0.5, 0.0]


@test("pcm16_to_float ignores a trailing odd byte")
def test_pcm16_odd_length():
    from audio_io import pcm16_to_float
    data = np.array([16384], dtype='<i2').tobytes() + b"\x01"
    assert pcm16_to_float(data).tolist() == [0.5]


@test("audio_level maps RMS to 0-100")
def test_audio_level():
    from audio_io import audio_level
    assert audio_level([]) == 0
    assert audio_level(np.zeros(256)) == 0
    assert audio_level(np.ones(256)) == 100
    assert audio_level(np.full(256, 0.1)) == 30
    assert 0 <= audio_level(np.random.uniform(-1, 1, 1024)) <= 100


# ======================================================================
# Test Group 2: Playback queue
# ======================================================================

@test("Segments play strictly in order, never overlapping")
async def test_fifo_no_overlap():
    from audio_playback import AudioPlaybackQueue
    rng = random.Random(7)
    segments = [f"seg{i}".encode() for i in range(12)]
    player = RecordingPlayer(delays={s: rng.uniform(0, 0.004) for s in segments})
    queue = AudioPlaybackQueue(player)

    for segment in segments:
        queue.enqueue(segment)
        await asyncio.sleep(rng.uniform(0, 0.003))
    await queue.wait_idle()

    assert player.max_playing == 1, "Two segments overlapped"
    expected = []
    for segment in segments:
        expected += [("start", segment), ("end", segment)]
    assert player.log == expected
    assert queue.segments_played == 12


@test("Enqueue while playing does not start a second drain loop")
async def test_single_drain_loop():
    from audio_playback import AudioPlaybackQueue
    player = RecordingPlayer(delays={b"a": 0.01})
    queue = AudioPlaybackQueue(player)
    queue.enqueue(b"a")
    await asyncio.sleep(0)
    assert queue.is_playing
    first_task = queue._drain_task
    queue.enqueue(b"b")
    queue.enqueue(b"c")
    assert queue._drain_task is first_task
    await queue.wait_idle()
    assert [s for kind, s in player.log if kind == "start"] == [b"a", b"b", b"c"]
    assert not queue.is_playing


@test("clear() drops queued segments but lets the current one finish")
async def test_clear_mid_playback():
    from audio_playback import AudioPlaybackQueue
    player = RecordingPlayer(delays={b"a": 0.01})
    queue = AudioPlaybackQueue(player)
    for segment in (b"a", b"b", b"c"):
        queue.enqueue(segment)
    await asyncio.sleep(0)
    queue.clear()
    await queue.wait_idle()
    assert player.log == [("start", b"a"), ("end", b"a")]
    assert len(queue) == 0


@test("A failing segment is logged and the queue continues")
async def test_failure_continues():
    from audio_playback import AudioPlaybackQueue
    player = RecordingPlayer(fail_on={b"b"})
    queue = AudioPlaybackQueue(player)
    for segment in (b"a", b"b", b"c"):
        queue.enqueue(segment)
    await queue.wait_idle()
    assert [s for kind, s in player.log if kind == "end"] == [b"a", b"b", b"c"]
    assert queue.segments_played == 2


@test("on_segment_start fires per segment and on_drained once the queue empties")
async def test_callbacks():
    from audio_playback import AudioPlaybackQueue
    starts, drained = [], []
    queue = AudioPlaybackQueue(RecordingPlayer(), on_segment_start=starts.append,
                               on_drained=lambda: drained.append(True))
    queue.enqueue(b"12")
    queue.enqueue(b"3456")
    await queue.wait_idle()
    assert starts == [2, 4]
    assert drained == [True]


@test("A new segment after draining starts a fresh loop")
async def test_restart_after_drain():
    from audio_playback import AudioPlaybackQueue
    player = RecordingPlayer()
    queue = AudioPlaybackQueue(player)
    queue.enqueue(b"a")
    await queue.wait_idle()
    queue.enqueue(b"b")
    await queue.wait_idle()
    assert [s for kind, s in player.log if kind == "start"] == [b"a", b"b"]


if __name__ == "__main__":
    print("=" * 60)
    print("Audio Playback Tests")
    print("=" * 60)

    tests = [
        obj for name, obj in sorted(globals().items())
        if callable(obj) and hasattr(obj, '_test_name')
    ]

    print(f"\nRunning {len(tests)} tests...\n")

    for fn in tests:
        run_test(fn)

    print(f"\n{'=' * 60}")
    print(f"Results: {PASSED} passed, {FAILED} failed out of {PASSED + FAILED}")

    if ERRORS:
        print(f"\nFailures:")
        for name, err in ERRORS:
            print(f"  - {name}: {err}")

    print("=" * 60)
    sys.exit(0 if FAILED == 0 else 1)
