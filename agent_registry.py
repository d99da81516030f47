"""Filesystem-backed agent collaborators for the tool invoker.

Each installed agent lives in ``<agents_dir>/<agent_id>/`` with a
``data.json`` describing it:

    {
      "name": "File Lister",
      "port": 8123,
      "commands": {"run": {"endpoint": "/run", "method": "POST"}}
    }

A run command is either an HTTP call to the agent's local service (``port``
plus optional ``endpoint``/``method``) or a local process (``exec`` argv, the
query is appended as the last argument).
"""

import asyncio
import json
import logging
import os
import subprocess
from pathlib import Path

import httpx

from friendly_errors import ExecutionError

logger = logging.getLogger(__name__)

DEFAULT_RUN_ENDPOINT = "/run"
DEFAULT_PROCESS_TIMEOUT = 120
HTTP_RUN_TIMEOUT = 300.0


class HttpRunCommand:
    """Runs an agent through its local HTTP service."""

    def __init__(self, port: int, endpoint: str = DEFAULT_RUN_ENDPOINT, method: str = "POST",
                 transport: httpx.AsyncBaseTransport | None = None):
        self.port = port
        self.endpoint = endpoint
        self.method = method.upper()
        self._transport = transport

    @property
    def url(self) -> str:
        return f"http://localhost:{self.port}{self.endpoint}"

    async def run(self, token: str, text: str) -> dict:
        body = {}
        if token:
            body["accessToken"] = token
        if text:
            body["query"] = text

        async with httpx.AsyncClient(transport=self._transport, timeout=HTTP_RUN_TIMEOUT) as client:
            response = await client.request(self.method, self.url, json=body)
            if response.is_error:
                raise ExecutionError(f"API call failed: {response.status_code} {response.reason_phrase}")
            result = response.json().get("result")

        return {
            "success": True,
            "stdout": result if isinstance(result, str) else json.dumps(result),
            "data": result,
        }


class ProcessRunCommand:
    """Runs an agent as a local subprocess and captures its output."""

    def __init__(self, argv: list[str], cwd: Path | None = None,
                 timeout: float = DEFAULT_PROCESS_TIMEOUT):
        self.argv = list(argv)
        self.cwd = cwd
        self.timeout = timeout

    async def run(self, token: str, text: str) -> dict:
        env = dict(os.environ)
        if token:
            env["UPLIFT_ACCESS_TOKEN"] = token

        process = await asyncio.create_subprocess_exec(
            *self.argv, text,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(self.cwd) if self.cwd else None,
            env=env,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return {"error": "Command timed out"}

        out = stdout.decode(errors="replace")
        err = stderr.decode(errors="replace")
        if process.returncode != 0 and not out.strip():
            return {"error": err.strip() or f"Command exited with status {process.returncode}"}
        return {"stdout": out, "stderr": err, "success": process.returncode == 0}


class LocalAgentRegistry:
    """Agent lookup, installation check and command loading from disk."""

    def __init__(self, agents_dir: Path, http_transport: httpx.AsyncBaseTransport | None = None):
        self.agents_dir = Path(agents_dir).expanduser()
        self._http_transport = http_transport

    def agent_path(self, agent_id: str) -> Path:
        return self.agents_dir / agent_id

    def _read_data_json(self, agent_id: str) -> dict | None:
        if "/" in agent_id or agent_id in ("", ".", ".."):
            return None
        path = self.agent_path(agent_id) / "data.json"
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Error reading data.json for agent %s: %s", agent_id, e)
            return None
        return data if isinstance(data, dict) else None

    async def get_by_id(self, agent_id: str) -> dict | None:
        data = self._read_data_json(agent_id)
        if data is None:
            return None
        return {"id": agent_id, "name": data.get("name") or agent_id, **data}

    async def is_installed(self, agent_id: str) -> bool:
        data = self._read_data_json(agent_id)
        return data is not None and data.get("installed", True) is not False

    async def read_commands(self, agent_id: str) -> dict:
        data = self._read_data_json(agent_id) or {}
        defs = data.get("commands") or {}
        spec = defs.get("run")
        if not spec:
            return {}
        command = self._build_command(agent_id, data, spec)
        return {"run": command} if command is not None else {}

    def _build_command(self, agent_id: str, data: dict, spec):
        if isinstance(spec, dict) and spec.get("exec"):
            argv = spec["exec"]
            if isinstance(argv, str):
                argv = [argv]
            return ProcessRunCommand(argv, cwd=self.agent_path(agent_id),
                                     timeout=spec.get("timeout", DEFAULT_PROCESS_TIMEOUT))

        port = data.get("port")
        if not port:
            logger.warning("No port found in agent data.json for agent %s", agent_id)
            return None
        spec = spec if isinstance(spec, dict) else {}
        return HttpRunCommand(
            int(port),
            endpoint=spec.get("endpoint") or "/run",
            method=spec.get("method") or "POST",
            transport=self._http_transport,
        )


class DesktopNotifier:
    """Desktop notifications via notify-send."""

    def __init__(self, urgency: str = "normal"):
        self.urgency = urgency

    def notify(self, title: str, body: str):
        logger.info("Notification: %s: %s", title, body)
        try:
            subprocess.Popen(['notify-send', '-u', self.urgency, title, body],
                             stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        except OSError as e:
            logger.debug("notify-send unavailable: %s", e)


class LogNotifier:
    """Notifications written to the log only."""

    def notify(self, title: str, body: str):
        logger.info("Notification: %s: %s", title, body)
