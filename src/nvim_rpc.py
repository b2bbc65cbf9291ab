"""Neovim RPC client for the ccremote.lua plugin.

Requires neovim running with `--listen <socket>`, the ccremote plugin
loaded, and the Claude terminal registered via `:CCRegister <name>`.

Requests and replies are base64-encoded JSON so neither has to survive
Lua/Vimscript quoting.
"""

import asyncio
import base64
import binascii
import json
import logging
from pathlib import Path
from typing import Optional

from .errors import TransportTimeout, TransportUnreachable

logger = logging.getLogger(__name__)


class NvimRpcError(RuntimeError):
    """nvim answered, but not with a valid dispatch reply."""


def encode_payload(payload: dict) -> str:
    return base64.b64encode(json.dumps(payload).encode()).decode()


def decode_reply(raw: str) -> dict:
    try:
        return json.loads(base64.b64decode(raw.strip()).decode())
    except (binascii.Error, ValueError) as e:
        raise NvimRpcError(f"Invalid reply from nvim: {e}")


async def _kill(proc: asyncio.subprocess.Process) -> None:
    """Kill a subprocess and reap it."""
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    await proc.wait()


class NvimRpcClient:
    """Calls `require("ccremote").dispatch()` in a running neovim."""

    def __init__(self, socket_path: str, config: Optional[dict] = None):
        self.socket_path = socket_path
        self.config = config or {}

        timeouts = self.config.get("timeouts", {})
        self.rpc_timeout_seconds = timeouts.get("nvim", {}).get("rpc_timeout_seconds", 5)

    def _socket_missing(self) -> bool:
        # host:port addresses can't be checked up front
        return "/" in self.socket_path and not Path(self.socket_path).exists()

    async def dispatch(self, payload: dict) -> dict:
        """
        Send one request to the plugin and return its decoded reply.

        Raises:
            TransportUnreachable: socket missing or nvim refused the connection
            TransportTimeout: nvim did not answer in time
            NvimRpcError: the reply could not be decoded
        """
        if self._socket_missing():
            raise TransportUnreachable(f"nvim socket not found: {self.socket_path}")

        lua_expr = f"luaeval('require(\"ccremote\").dispatch(_A)', '{encode_payload(payload)}')"
        try:
            proc = await asyncio.create_subprocess_exec(
                "nvim", "--server", self.socket_path, "--remote-expr", lua_expr,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise TransportUnreachable("nvim is not installed")

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self.rpc_timeout_seconds
            )
        except asyncio.TimeoutError:
            await _kill(proc)
            raise TransportTimeout(f"nvim RPC timed out after {self.rpc_timeout_seconds}s")
        except asyncio.CancelledError:
            await _kill(proc)
            raise

        if proc.returncode != 0:
            raise TransportUnreachable(stderr.decode(errors="replace").strip() or "nvim command failed")

        return decode_reply(stdout.decode())

    async def send(self, instance_name: str, command: str) -> dict:
        return await self.dispatch({"type": "send", "name": instance_name, "command": command})

    async def tail(self, instance_name: str, lines: int = 50) -> dict:
        return await self.dispatch({"type": "tail", "name": instance_name, "lines": lines})
