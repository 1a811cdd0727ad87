"""Conversation history across invocations.

persist: one JSON file under the user's state directory, shared by runs.
temp:    a per-process file in the temp directory.
none:    entries live in memory for the current run only.
"""

import json
import os
import sys
import tempfile
from pathlib import Path

from . import fmt

CONTEXT_ENTRIES = 10
HISTORY_FILENAME = "conversation_history.json"


def state_dir(environ=os.environ) -> Path:
    """Return the aido state directory, respecting XDG_STATE_HOME."""
    xdg = environ.get("XDG_STATE_HOME")
    if xdg:
        return Path(xdg) / "aido"
    return Path.home() / ".local" / "state" / "aido"


def history_path(mode: str, environ=os.environ) -> Path | None:
    """Return the history file for *mode*, or None when history is disabled."""
    if mode == "persist":
        return state_dir(environ) / HISTORY_FILENAME
    if mode == "temp":
        uid = os.geteuid() if hasattr(os, "geteuid") else 0
        return Path(tempfile.gettempdir()) / f"aido_history_{uid}_{os.getpid()}.json"
    return None


class HistoryStore:
    """Ordered {role, content} log, loaded once and saved on finalize."""

    def __init__(self, path: Path | None):
        self.path = path
        self.entries: list[dict] = []

    @property
    def enabled(self) -> bool:
        return self.path is not None

    def load(self) -> None:
        self.entries = []
        if self.path is None or not self.path.is_file():
            return
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError):
            fmt.warning(f"ignoring unreadable history file {self.path}")
            return
        if isinstance(data, list):
            self.entries = [
                {"role": e["role"], "content": e["content"]}
                for e in data
                if isinstance(e, dict)
                and isinstance(e.get("role"), str)
                and isinstance(e.get("content"), str)
            ]

    def append(self, role: str, content: str) -> None:
        self.entries.append({"role": role, "content": content})

    def recent(self, n: int = CONTEXT_ENTRIES) -> list[dict]:
        """Copies of the last *n* entries, for conversation replay."""
        if n <= 0:
            return []
        return [dict(e) for e in self.entries[-n:]]

    def save(self) -> None:
        """Write all entries back. Concurrent writers race; last one wins."""
        if self.path is None:
            return
        try:
            self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            payload = json.dumps(self.entries, indent=2, ensure_ascii=False)
            with open(self.path, "a+", encoding="utf-8") as f:
                _lock(f)
                f.seek(0)
                f.truncate()
                f.write(payload)
                f.flush()
        except OSError as e:
            fmt.warning(f"failed to write history to {self.path}: {e}")

    def discard(self) -> None:
        """Remove the backing file (used for temp mode at process exit)."""
        if self.path is None:
            return
        try:
            self.path.unlink(missing_ok=True)
        except OSError:
            pass  # best-effort


def _lock(f) -> None:
    if sys.platform == "win32":
        return
    import fcntl

    fcntl.flock(f.fileno(), fcntl.LOCK_EX)
