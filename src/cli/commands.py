"""Hook and operator command implementations."""

import json
import os
import subprocess
import sys
from pathlib import Path
from typing import Optional, TextIO

from .client import RelayClient

SUMMARY_MAX_CHARS = 1500


def read_hook_payload(stream: Optional[TextIO] = None) -> dict:
    """Parse the JSON payload Claude Code writes to a hook's stdin."""
    raw = (stream or sys.stdin).read()
    if not raw.strip():
        return {}
    payload = json.loads(raw)
    if not isinstance(payload, dict):
        raise ValueError("hook payload must be a JSON object")
    return payload


def tmux_session_name(pane: Optional[str]) -> Optional[str]:
    """Name of the tmux session containing `pane`, or None outside tmux."""
    if not pane:
        return None
    try:
        result = subprocess.run(
            ["tmux", "display-message", "-p", "-t", pane, "#S"],
            capture_output=True,
            text=True,
            timeout=3,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def last_assistant_message(transcript_path: Optional[str]) -> Optional[str]:
    """Text of the last assistant message in a Claude Code JSONL transcript."""
    if not transcript_path:
        return None
    path = Path(transcript_path).expanduser()
    if not path.exists():
        return None

    last = None
    with open(path, errors="replace") as f:
        for line in f:
            try:
                entry = json.loads(line)
            except ValueError:
                continue
            if not isinstance(entry, dict) or entry.get("type") != "assistant":
                continue
            message = entry.get("message")
            if not isinstance(message, dict):
                continue
            content = message.get("content")
            if isinstance(content, str):
                text = content
            elif isinstance(content, list):
                text = "\n".join(
                    block.get("text", "") for block in content
                    if isinstance(block, dict) and block.get("type") == "text"
                )
            else:
                continue
            if text.strip():
                last = text.strip()
    return last


def _report(data: Optional[dict], success: bool, unavailable: bool) -> int:
    if success:
        return 0
    if unavailable:
        print("Error: claude-relay server unavailable", file=sys.stderr)
        return 2
    detail = (data or {}).get("detail") or (data or {}).get("error") or "request failed"
    print(f"Error: {detail}", file=sys.stderr)
    return 1


def cmd_session_start(client: RelayClient, stream: Optional[TextIO] = None) -> int:
    """
    Register the current Claude Code session (SessionStart hook).

    Exit codes:
        0: Success
        1: Bad payload or rejected by the server
        2: Relay unavailable
    """
    try:
        payload = read_hook_payload(stream)
    except ValueError as e:
        print(f"Error: Failed to parse hook payload: {e}", file=sys.stderr)
        return 1

    session_id = payload.get("session_id")
    if not session_id:
        print("Error: Missing session_id in hook payload", file=sys.stderr)
        return 1

    pane = os.environ.get("TMUX_PANE")
    body = {
        "session_id": session_id,
        "ppid": os.getppid(),
        "cwd": payload.get("cwd") or os.getcwd(),
        "tmux_pane_id": pane,
        "tmux_session": tmux_session_name(pane),
        "nvim_socket": os.environ.get("NVIM"),
    }
    body = {k: v for k, v in body.items() if v is not None}

    return _report(*client.session_start(body))


def cmd_stop(client: RelayClient, event: Optional[str] = None, stream: Optional[TextIO] = None) -> int:
    """
    Report a Stop/SubagentStop/Notification event.

    Exit codes:
        0: Success (whether or not a notification was sent)
        1: Bad payload or rejected by the server
        2: Relay unavailable
    """
    try:
        payload = read_hook_payload(stream)
    except ValueError as e:
        print(f"Error: Failed to parse hook payload: {e}", file=sys.stderr)
        return 1

    session_id = payload.get("session_id")
    if not session_id:
        print("Error: Missing session_id in hook payload", file=sys.stderr)
        return 1

    event = event or payload.get("hook_event_name") or "Stop"
    summary = payload.get("message") or last_assistant_message(payload.get("transcript_path"))
    if summary and len(summary) > SUMMARY_MAX_CHARS:
        summary = summary[-SUMMARY_MAX_CHARS:]

    return _report(*client.stop(session_id, event=event, summary=summary))


def cmd_notify(client: RelayClient, session_id: str, label: Optional[str] = None) -> int:
    """Enable notifications for a session."""
    data, success, unavailable = client.enable_notify(
        session_id, label=label, nvim_socket=os.environ.get("NVIM")
    )
    if success:
        print(f"Notifications enabled: {label or session_id}")
    return _report(data, success, unavailable)


def cmd_sessions(client: RelayClient, active: bool = False, notify: bool = False) -> int:
    """List sessions known to the relay."""
    sessions = client.list_sessions(active=active, notify=notify)
    if sessions is None:
        print("Error: claude-relay server unavailable", file=sys.stderr)
        return 2

    if not sessions:
        print("No sessions")
        return 0

    for s in sessions:
        label = s.get("label") or s["session_id"][:8]
        transports = ",".join(t.get("kind", "?") for t in s.get("transports", [])) or "none"
        flags = "notify" if s.get("notify") else "-"
        print(f"{label} [{s['session_id'][:8]}] {s.get('state', '?')} {flags} {transports} {s.get('cwd') or ''}")
    return 0


def cmd_cleanup(client: RelayClient) -> int:
    """Trigger cleanup of expired sessions and tokens."""
    data, success, unavailable = client.cleanup()
    if success:
        cleaned = data.get("cleaned", {})
        print(f"Cleaned {cleaned.get('sessions', 0)} sessions, {cleaned.get('tokens', 0)} tokens")
    return _report(data, success, unavailable)
