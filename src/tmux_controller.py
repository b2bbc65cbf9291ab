"""tmux operations for delivering input into Claude Code panes."""

import asyncio
import logging
from typing import Optional

from .errors import TransportTimeout, TransportUnreachable

logger = logging.getLogger(__name__)


class TmuxError(RuntimeError):
    """A tmux command exited non-zero."""


async def _kill(proc: asyncio.subprocess.Process) -> None:
    """Kill a subprocess and reap it."""
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    await proc.wait()


class TmuxController:
    """Async tmux client addressing a pane id (%47) or a session[:window.pane] name."""

    def __init__(self, config: Optional[dict] = None):
        self.config = config or {}

        # Load timeout configuration with fallbacks
        timeouts = self.config.get("timeouts", {})
        tmux_timeouts = timeouts.get("tmux", {})

        self.command_timeout_seconds = tmux_timeouts.get("command_timeout_seconds", 5)
        self.keystroke_settle_seconds = tmux_timeouts.get("keystroke_settle_seconds", 0.1)

    async def _run_tmux(self, *args: str) -> tuple[int, str, str]:
        """
        Run a tmux command without blocking the event loop.

        Returns:
            (returncode, stdout, stderr)

        Raises:
            TransportTimeout: if tmux does not exit within the command timeout
            TransportUnreachable: if the tmux binary is missing
        """
        cmd = ["tmux", *args]
        logger.debug(f"Running tmux command: {' '.join(cmd[:4])}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise TransportUnreachable("tmux is not installed")

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self.command_timeout_seconds
            )
        except asyncio.TimeoutError:
            await _kill(proc)
            raise TransportTimeout(f"tmux {args[0]} timed out after {self.command_timeout_seconds}s")
        except asyncio.CancelledError:
            # Cancelled by the caller's timeout: a surviving send-keys would still type into the pane
            await _kill(proc)
            raise

        return proc.returncode, stdout.decode(errors="replace"), stderr.decode(errors="replace")

    @property
    def send_command_budget_seconds(self) -> float:
        """Worst-case duration of send_command: four tmux calls and two settle delays."""
        return 4 * self.command_timeout_seconds + 2 * self.keystroke_settle_seconds

    async def target_exists(self, target: str) -> bool:
        """Check if a tmux pane or session exists."""
        returncode, _, _ = await self._run_tmux("has-session", "-t", target)
        return returncode == 0

    async def _send_keys(self, target: str, *keys: str) -> None:
        returncode, _, stderr = await self._run_tmux("send-keys", "-t", target, *keys)
        if returncode != 0:
            raise TmuxError(stderr.strip() or f"send-keys to {target} failed")

    async def send_command(self, target: str, text: str) -> None:
        """
        Type a command into a pane and submit it.

        Sends: C-u (clear current input) -> text -> Enter, with a settle
        delay between steps. Claude Code (Node.js TUI in raw mode) treats a
        rapid character burst as pasted text, in which \\r is a literal byte
        rather than a submit; the gap lets paste mode end before Enter
        arrives as a separate event.

        The target is checked first so an unreachable pane receives nothing.

        Raises:
            TransportUnreachable: if the target pane/session does not exist
            TransportTimeout: if any tmux call exceeds its timeout
            TmuxError: if tmux rejects a keystroke
        """
        if not await self.target_exists(target):
            raise TransportUnreachable(f"tmux target '{target}' not found")

        await self._send_keys(target, "C-u")
        await asyncio.sleep(self.keystroke_settle_seconds)

        # -l: literal text, not key names; "--" guards text starting with "-"
        await self._send_keys(target, "-l", "--", text)
        await asyncio.sleep(self.keystroke_settle_seconds)

        await self._send_keys(target, "Enter")
        logger.info(f"Sent input to tmux target {target}: {text[:50]}")

    async def capture_pane(self, target: str, lines: int = 50) -> Optional[str]:
        """
        Capture recent output from a pane.

        Returns:
            Captured text or None if the target is gone or tmux fails
        """
        if not await self.target_exists(target):
            return None

        returncode, stdout, stderr = await self._run_tmux(
            "capture-pane",
            "-t", target,
            "-p",  # Print to stdout
            "-S", f"-{lines}",  # Start from N lines back
        )
        if returncode != 0:
            logger.error(f"Failed to capture pane {target}: {stderr.strip()}")
            return None
        return stdout
