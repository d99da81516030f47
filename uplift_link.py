#!/usr/bin/env python3
"""Uplift Link command line.

    uplift-link relay                 keep the relay channel up and run tool intents
    uplift-link voice [--device N]    run a voice session (and the relay, if configured)
    uplift-link chat "message"        stream one chat reply to stdout
    uplift-link clear-history         delete the server-side chat history
    uplift-link parse-tool "[Tool:id]: text"
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from agent_registry import DesktopNotifier, LocalAgentRegistry, LogNotifier
from audio_io import MicrophoneCapture
from chat_stream import ChatStreamClient
from event_bus import EventBus
from friendly_errors import LinkError
from link_config import get_or_create_device_id, load_config
from relay_channel import RelayChannel
from tool_invoker import ToolInvoker, parse_tool_message
from voice_session import VoiceConfig, VoiceSession

log = logging.getLogger("uplift_link")


def _open_bus(config: dict, src: str) -> EventBus:
    log_dir = config.get("log_dir")
    bus = EventBus(src, Path(log_dir).expanduser() if log_dir else None)
    bus.open()
    return bus


def build_relay(config: dict, device_id: str, bus: EventBus, connector=None) -> RelayChannel:
    """Relay channel wired to a ToolInvoker over the local agent registry."""
    relay = RelayChannel(
        config.get("relay_ws_url"),
        bus=bus,
        connector=connector,
        ping_interval=float(config["relay_ping_interval"]),
        max_reconnect_attempts=int(config["relay_max_reconnect_attempts"]),
        base_delay=float(config["relay_base_delay"]),
    )
    registry = LocalAgentRegistry(Path(config["agents_dir"]))
    notifier = DesktopNotifier() if config.get("desktop_notifications", True) else LogNotifier()
    invoker = ToolInvoker(relay, registry, registry, registry, notifier)
    relay.intent_handler = invoker.process
    relay.set_auth(device_id, config.get("auth_token"))
    return relay


def build_chat(config: dict) -> ChatStreamClient:
    return ChatStreamClient(
        config.get("api_endpoint"),
        lambda: config.get("auth_token"),
        stream_timeout=float(config["chat_stream_timeout"]),
    )


async def _wait_until(stop: asyncio.Event | None = None):
    await (stop or asyncio.Event()).wait()


async def run_relay(config: dict) -> int:
    device_id = get_or_create_device_id()
    bus = _open_bus(config, "relay")
    relay = build_relay(config, device_id, bus)
    relay.on_status_change(lambda status: log.info("Relay status: %s", status.value))
    try:
        await relay.connect()
        await _wait_until()
    finally:
        await relay.disconnect()
        await relay.wait_for_intents()
        bus.close()
    return 0


async def run_voice(config: dict, device_index: int | None, *, connector=None,
                    microphone_factory=MicrophoneCapture, player=None,
                    stop: asyncio.Event | None = None) -> int:
    """Run a voice session until interrupted or until ``stop`` is set."""
    device_id = get_or_create_device_id()
    bus = _open_bus(config, "voice")
    chat = build_chat(config)
    relay = (build_relay(config, device_id, EventBus("relay"), connector=connector)
             if config.get("relay_ws_url") else None)

    session = VoiceSession(
        VoiceConfig.from_config(config, device_id),
        chat,
        bus=bus,
        connector=connector,
        player=player,
        microphone_factory=microphone_factory,
        device_index=device_index if device_index is not None else config.get("input_device_index"),
        speech_connect_timeout=float(config["speech_connect_timeout"]),
        reconnect_delay=float(config["voice_reconnect_delay"]),
        idle_grace=float(config["playback_idle_grace"]),
        level_interval=float(config["level_interval"]),
        on_transcript=lambda delta: print(delta, end="", flush=True),
    )
    try:
        if relay is not None:
            await relay.connect()
        try:
            await session.start()
        except LinkError as e:
            print(f"Voice session failed: {e.message}", file=sys.stderr)
            return 1
        except OSError as e:
            print(f"Microphone unavailable: {e}", file=sys.stderr)
            return 1
        await _wait_until(stop)
    finally:
        await session.stop()
        if relay is not None:
            await relay.disconnect()
        await chat.aclose()
        bus.close()
    return 0


async def run_chat(config: dict, message: str) -> int:
    chat = build_chat(config)
    try:
        await chat.send_chat_message(message, get_or_create_device_id(),
                                     lambda chunk: print(chunk, end="", flush=True))
        print()
    except LinkError as e:
        print(e.message, file=sys.stderr)
        return 1
    finally:
        await chat.aclose()
    return 0


async def run_clear_history(config: dict) -> int:
    chat = build_chat(config)
    try:
        await chat.clear_history()
    except LinkError as e:
        print(e.message, file=sys.stderr)
        return 1
    finally:
        await chat.aclose()
    print("Chat history cleared")
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Relay channel and duplex voice pipeline")
    parser.add_argument("--config", type=Path, help="Config file (default: ~/.config/uplift-link/config.json)")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("relay", help="Connect the relay channel and execute tool intents")
    voice = sub.add_parser("voice", help="Run a voice session until interrupted")
    voice.add_argument("--device", type=int, default=None, help="PyAudio input device index")
    chat = sub.add_parser("chat", help="Send one chat message and stream the reply")
    chat.add_argument("message")
    sub.add_parser("clear-history", help="Delete the server-side chat history")
    parse = sub.add_parser("parse-tool", help="Split a [Tool:<id>]: <text> message")
    parse.add_argument("message")

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    if args.command == "parse-tool":
        print(json.dumps(parse_tool_message(args.message)))
        return

    config = load_config(args.config)
    if args.command == "relay":
        runner = run_relay(config)
    elif args.command == "voice":
        runner = run_voice(config, args.device)
    elif args.command == "chat":
        runner = run_chat(config, args.message)
    else:
        runner = run_clear_history(config)

    try:
        code = asyncio.run(runner)
    except KeyboardInterrupt:
        log.info("Interrupted")
        code = 0
    sys.exit(code)


if __name__ == "__main__":
    main()
