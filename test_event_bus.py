#!/usr/bin/env python3
"""Tests for the event bus.

Tests: JSONL writing, BusEvent round-trip, truncation, read_recent filtering,
       in-process callbacks, wildcard and ephemeral events, unsubscribe.

Run: python3 test_event_bus.py
"""

import asyncio
import json
import sys
import tempfile
import time
from pathlib import Path
from unittest.mock import MagicMock

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


# ======================================================================
# Test Group 1: BusEvent
# ======================================================================

@test("BusEvent to_json_line produces valid JSON with newline")
def test_bus_event_to_json():
    from event_bus import BusEvent
    evt = BusEvent(ts=1708444800.0, src="relay", type="status", status="Connected")
    line = evt.to_json_line()
    assert line.endswith("\n"), "Line must end with newline"
    parsed = json.loads(line)
    assert parsed == {"ts": 1708444800.0, "src": "relay", "type": "status", "status": "Connected"}


@test("BusEvent round-trips through JSON")
def test_bus_event_roundtrip():
    from event_bus import BusEvent
    original = BusEvent(ts=1708444800.5, src="synthesis", type="error", error="boom", code=403)
    restored = BusEvent.from_json_line(original.to_json_line())
    assert restored.ts == original.ts
    assert restored.src == "synthesis"
    assert restored.type == "error"
    assert restored.payload == {"error": "boom", "code": 403}


@test("Oversized string payloads are truncated under PIPE_BUF")
def test_bus_event_truncation():
    from event_bus import BusEvent
    evt = BusEvent(ts=1.0, src="relay", type="message", body="x" * 8000)
    line = evt.to_json_line()
    assert len(line.encode()) <= 4096
    assert json.loads(line)["body"].endswith("...[truncated]")


@test("Payloads that cannot be truncated fall back to core fields")
def test_bus_event_minimal():
    from event_bus import BusEvent
    evt = BusEvent(ts=1.0, src="relay", type="message", items=["y" * 100] * 100)
    parsed = json.loads(evt.to_json_line())
    assert parsed["_truncated"] is True
    assert "items" not in parsed
    assert parsed["type"] == "message"


# ======================================================================
# Test Group 2: JSONL log
# ======================================================================

@test("emit() appends one JSON line per event when the log is open")
def test_emit_writes_jsonl():
    from event_bus import EventBus, EventType
    with tempfile.TemporaryDirectory() as tmpdir:
        bus = EventBus("relay", Path(tmpdir) / "session")
        bus.open()
        bus.emit(EventType.STATUS, status="Connecting")
        bus.emit(EventType.STATUS, status="Connected")
        bus.close()

        lines = bus.log_path.read_text().splitlines()
        assert len(lines) == 2
        assert json.loads(lines[1])["status"] == "Connected"
        assert json.loads(lines[0])["src"] == "relay"


@test("emit_ephemeral() fires callbacks but skips the log")
def test_ephemeral_not_written():
    from event_bus import EventBus, EventType
    with tempfile.TemporaryDirectory() as tmpdir:
        bus = EventBus("voice", Path(tmpdir))
        bus.open()
        seen = []
        bus.on(EventType.AUDIO_LEVEL, seen.append)
        bus.emit_ephemeral(EventType.AUDIO_LEVEL, level=42)
        bus.close()
        assert [e.payload["level"] for e in seen] == [42]
        assert bus.log_path.read_text() == ""


@test("A bus without a log directory still delivers callbacks")
def test_no_log_dir():
    from event_bus import EventBus
    bus = EventBus("relay")
    bus.open()
    callback = MagicMock()
    bus.on("status", callback)
    bus.emit("status", status="Connected")
    callback.assert_called_once()
    assert bus.log_path is None
    assert bus.read_recent() == []


@test("read_recent filters by type and timestamp and honours last_n")
def test_read_recent():
    from event_bus import EventBus, EventType
    with tempfile.TemporaryDirectory() as tmpdir:
        bus = EventBus("relay", Path(tmpdir))
        bus.open()
        for i in range(5):
            bus.emit(EventType.STATUS, n=i)
        bus.emit(EventType.ERROR, error="x")
        time.sleep(0.01)
        cutoff = time.time()
        time.sleep(0.01)
        bus.emit(EventType.STATUS, n=5)
        bus.close()

        assert [e.payload["n"] for e in bus.read_recent(last_n=3, event_type="status")] == [3, 4, 5]
        assert [e.type for e in bus.read_recent(event_type=EventType.ERROR)] == ["error"]
        recent = bus.read_recent(since_ts=cutoff)
        assert [e.payload.get("n") for e in recent] == [5]


@test("read_recent skips corrupt lines")
def test_read_recent_corrupt():
    from event_bus import EventBus
    with tempfile.TemporaryDirectory() as tmpdir:
        bus = EventBus("relay", Path(tmpdir))
        bus.open()
        bus.emit("status", status="Connected")
        bus.close()
        with open(bus.log_path, "a") as f:
            f.write("{not json\n\n")
        assert len(bus.read_recent()) == 1


# ======================================================================
# Test Group 3: Callbacks
# ======================================================================

@test("Callbacks fire for their type and for the wildcard")
def test_callbacks_and_wildcard():
    from event_bus import EventBus, EventType
    bus = EventBus("relay")
    status_seen, all_seen = [], []
    bus.on(EventType.STATUS, status_seen.append)
    bus.on("*", all_seen.append)
    bus.emit(EventType.STATUS, status="Connected")
    bus.emit(EventType.MESSAGE, type_="ping")
    assert len(status_seen) == 1
    assert [e.type for e in all_seen] == ["status", "message"]


@test("Unsubscribe stops delivery and is idempotent")
def test_unsubscribe():
    from event_bus import EventBus
    bus = EventBus("relay")
    seen = []
    unsubscribe = bus.on("error", seen.append)
    assert bus.subscriber_count("error") == 1
    bus.emit("error", error="first")
    unsubscribe()
    unsubscribe()
    bus.emit("error", error="second")
    assert [e.payload["error"] for e in seen] == ["first"]
    assert bus.subscriber_count("error") == 0


@test("A failing callback does not stop the others")
def test_callback_isolation():
    from event_bus import EventBus
    bus = EventBus("relay")
    broken = MagicMock(side_effect=RuntimeError("boom"))
    healthy = MagicMock()
    bus.on("status", broken)
    bus.on("status", healthy)
    bus.emit("status", status="Error")
    broken.assert_called_once()
    healthy.assert_called_once()


@test("A callback may unsubscribe itself during delivery")
def test_unsubscribe_during_delivery():
    from event_bus import EventBus
    bus = EventBus("relay")
    calls = []
    holder = {}

    def once(evt):
        calls.append(evt)
        holder["off"]()

    holder["off"] = bus.on("status", once)
    bus.emit("status", status="a")
    bus.emit("status", status="b")
    assert len(calls) == 1


if __name__ == "__main__":
    print("=" * 60)
    print("Event Bus Tests")
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
