"""Turns relay intents into local agent runs and exactly one reply each.

Every outcome, including lookup and execution failures, is reported back to
the dispatcher as plain reply text. Nothing here raises to the caller.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Protocol

from event_bus import EventType
from friendly_errors import ExecutionError, describe
from relay_frames import FrameKind, RelayFrame, build_reply

logger = logging.getLogger(__name__)

# Convention used in chat transcripts for tool-addressed messages
TOOL_MESSAGE_RE = re.compile(r'\[Tool:([^\]]+)\]:\s*(.*)', re.DOTALL)


# ── Collaborators ─────────────────────────────────────────────────

class AgentLookup(Protocol):
    async def get_by_id(self, agent_id: str) -> dict | None: ...


class InstallationCheck(Protocol):
    async def is_installed(self, agent_id: str) -> bool: ...


class CommandExecutor(Protocol):
    async def run(self, token: str, text: str) -> dict: ...


class CommandLoader(Protocol):
    async def read_commands(self, agent_id: str) -> dict[str, CommandExecutor]: ...


class Notifier(Protocol):
    def notify(self, title: str, body: str) -> None: ...


@dataclass
class ToolCallResult:
    """Outcome of one intent. Discarded once the reply has been attempted."""
    request_id: str | None
    text: str
    ok: bool = True
    delivered: bool = False


def parse_tool_message(message: str) -> dict:
    """Split ``[Tool:<id>]: <text>`` into its parts.

    >>> parse_tool_message("[Tool:abc]: hello")
    {'tool_id': 'abc', 'text': 'hello'}
    >>> parse_tool_message("hello")
    {'tool_id': None, 'text': 'hello'}
    """
    match = TOOL_MESSAGE_RE.search(message)
    if not match:
        return {"tool_id": None, "text": message.strip()}
    return {"tool_id": match.group(1), "text": match.group(2).strip()}


def normalize_run_result(result: Any, query: str) -> str:
    """Collapse a run command's result dict into reply text."""
    result = result or {}
    stdout = result.get("stdout") if isinstance(result, dict) else None
    if stdout:
        out = str(stdout).strip()
        stderr = result.get("stderr")
        warnings = f"\n\nWarnings: {str(stderr).strip()}" if stderr else ""
        return out + warnings
    if isinstance(result, dict) and result.get("error"):
        return describe(result["error"]).strip()
    return f'Command executed successfully with query: "{query}"'


class ToolInvoker:
    """Resolves, runs and answers relay intents.

    Args:
        relay: The RelayChannel replies are sent through.
        agents / installs / commands: Agent lookup, installation check and
            command loader collaborators (see agent_registry.py).
        notifier: Receives a title/body for every user-visible event.
    """

    def __init__(self, relay, agents: AgentLookup, installs: InstallationCheck,
                 commands: CommandLoader, notifier: Notifier):
        self.relay = relay
        self.agents = agents
        self.installs = installs
        self.commands = commands
        self.notifier = notifier

    def _notify(self, title: str, body: str):
        try:
            self.notifier.notify(title, body)
        except Exception as e:
            logger.warning("Notifier failed (%s: %s): %s", title, body, e)

    async def process(self, frame: RelayFrame) -> ToolCallResult:
        """Handle one inbound frame and send its single reply."""
        try:
            if frame.error:
                return await self._reply(frame, frame.error, ok=False)

            if frame.kind == FrameKind.INTENT:
                return await self._run_intent(frame)

            if frame.action:
                return await self._reply(frame, "Action completed")
            return await self._reply(frame, "Tool call processed")

        except Exception as e:
            message = describe(e)
            logger.error("Tool call %s failed: %s", frame.request_id, message)
            self._notify("Tool Call Error", f"Error: {message}")
            return await self._reply(frame, message, ok=False)

    async def _run_intent(self, frame: RelayFrame) -> ToolCallResult:
        agent_id, query = frame.tool_id, frame.user_intent
        if not agent_id or not query:
            logger.warning("Tool call %s: missing tool_id or user_intent", frame.request_id)
            self._notify("Invalid Tool Call", "Missing tool_id or user_intent")
            return await self._reply(frame, "Tool call processed", ok=False)

        logger.info("Tool call %s: resolving agent %s", frame.request_id, agent_id)
        agent = await self.agents.get_by_id(agent_id)
        if not agent:
            return await self._reply(frame, "Invalid Agent Call", ok=False)
        name = agent.get("name") or agent_id

        if not await self.installs.is_installed(agent_id):
            self._notify("Agent Not Installed", f"Agent {name} is not installed")
            return await self._reply(frame, f"Agent {name} is not installed", ok=False)

        self._notify("Executing Agent Command", f"Running {name}...")

        commands = await self.commands.read_commands(agent_id) or {}
        run = commands.get("run")
        if run is None:
            self._notify("Command Not Configured", f"{name} has no run command")
            return await self._reply(frame, f"{name} has no run command", ok=False)

        try:
            result = await run.run("", query)
        except Exception as e:
            raise ExecutionError(f"Command execution failed: {describe(e)}") from e

        text = normalize_run_result(result, query)
        self._notify("Extracted", f"{name} completed successfully")
        return await self._reply(frame, text)

    async def _reply(self, frame: RelayFrame, text: str, ok: bool = True) -> ToolCallResult:
        outcome = ToolCallResult(request_id=frame.request_id, text=text, ok=ok)
        try:
            if not self.relay.is_connected():
                logger.warning("Tool call %s: relay not connected, reply dropped", frame.request_id)
                self._notify("Response Failed", "WebSocket connection lost")
                return outcome

            reply = build_reply(frame.request_id, self.relay.device_id, text)
            outcome.delivered = await self.relay.send_message(reply)
            if outcome.delivered:
                self.relay.bus.emit(EventType.TOOL_REPLY, request_id=frame.request_id, ok=ok)
            else:
                self._notify("Response Failed", "Failed to send via WebSocket")
        except Exception as e:
            self._notify("Response Error", f"Error sending response: {describe(e)}")
        return outcome
