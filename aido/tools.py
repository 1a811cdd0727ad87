"""Tool definitions and implementations for the agent loop.

Every tool returns a ToolResult. Failures are results, not exceptions, so the
model can read them and adapt.
"""

import hashlib
import json
import os
import shutil
import signal
import subprocess
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path

from . import fmt
from .recursion import DEFAULT_SELF_COMMANDS, decorate

TOOLS = [
    {
        "type": "function",
        "function": {
            "name": "run_command",
            "description": (
                "Execute a shell command and return its combined stdout/stderr. "
                "Running aido itself is allowed up to the configured recursion depth."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "command": {
                        "type": "string",
                        "description": "The shell command to execute.",
                    },
                },
                "required": ["command"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "write_file",
            "description": (
                "Write content to a file atomically (temp file + rename). "
                "Creates parent directories by default."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Path of the file to write.",
                    },
                    "content": {
                        "type": "string",
                        "description": "The full content to write.",
                    },
                    "mkdirp": {
                        "type": "boolean",
                        "description": "Create missing parent directories.",
                        "default": True,
                    },
                    "overwrite": {
                        "type": "boolean",
                        "description": "Replace the file if it already exists.",
                        "default": True,
                    },
                },
                "required": ["path", "content"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "read_file",
            "description": (
                "Read a text file. Content beyond max_bytes is cut off with a notice."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Path of the file to read.",
                    },
                    "max_bytes": {
                        "type": "integer",
                        "description": "Maximum number of bytes to return. Defaults to 200000.",
                        "default": 200000,
                    },
                },
                "required": ["path"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "file_info",
            "description": (
                "Report whether a file exists, its size, SHA-256 and leading bytes. "
                "Use it to verify writes."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Path of the file to inspect.",
                    },
                    "head_bytes": {
                        "type": "integer",
                        "description": "Number of leading bytes to include. Defaults to 16.",
                        "default": 16,
                    },
                },
                "required": ["path"],
            },
        },
    },
]

NO_OUTPUT = "Command executed, but returned no output."
DEFAULT_READ_BYTES = 200_000
DEFAULT_HEAD_BYTES = 16
MAX_HEAD_BYTES = 4096
MAX_COMMAND_OUTPUT = 1 * 1024 * 1024  # 1MB
DEFAULT_COMMAND_TIMEOUT = 600


@dataclass(frozen=True)
class ToolResult:
    kind: str  # "ok" or "error"
    message: str

    @classmethod
    def ok(cls, message: str) -> "ToolResult":
        return cls("ok", message)

    @classmethod
    def error(cls, message: str) -> "ToolResult":
        return cls("error", message)

    @property
    def succeeded(self) -> bool:
        return self.kind == "ok"

    def render(self) -> str:
        if self.succeeded:
            return self.message
        return f"error: {self.message}"


@dataclass(frozen=True)
class ToolContext:
    """Invocation-wide values the tools need."""

    depth: int = 0
    max_depth: int = 0
    self_commands: tuple[str, ...] = DEFAULT_SELF_COMMANDS
    command_timeout: int = DEFAULT_COMMAND_TIMEOUT
    cwd: str | None = None
    env: dict[str, str] | None = field(default=None, hash=False)
    verbose: bool = False


# --- run_command ---


_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit."""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except OSError:
        pass  # already exited
    try:
        proc.kill()
    except OSError:
        pass  # already dead
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass  # unkillable


def _capture_process(proc: subprocess.Popen, timeout: int) -> ToolResult:
    """Capture combined output from a running subprocess with timeout enforcement."""
    output_chunks: list[bytes] = []
    output_total = 0
    output_truncated = False

    def _reader():
        nonlocal output_total, output_truncated
        try:
            while True:
                chunk = proc.stdout.read(4096)
                if not chunk:
                    break
                if output_truncated:
                    continue  # keep draining to prevent pipe backpressure
                remaining = MAX_COMMAND_OUTPUT - output_total
                output_chunks.append(chunk[:remaining])
                output_total += len(output_chunks[-1])
                if output_total >= MAX_COMMAND_OUTPUT:
                    output_truncated = True
        except (OSError, ValueError):
            pass  # pipe closed after kill

    reader_thread = threading.Thread(target=_reader, daemon=True)
    reader_thread.start()

    timed_out = False
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        _kill_process_tree(proc)

    reader_thread.join(timeout=2)
    proc.stdout.close()

    raw_output = b"".join(output_chunks).decode("utf-8", errors="replace")
    parts: list[str] = []
    if proc.returncode not in (0, None) and not timed_out:
        parts.append(f"Exit code: {proc.returncode}")
    if raw_output:
        parts.append(raw_output)
    if output_truncated:
        parts.append("[output truncated at 1MB]")

    if timed_out:
        body = "\n".join(parts)
        message = f"command timed out after {timeout}s"
        return ToolResult.error(f"{message}\n{body}" if body else message)
    if not raw_output:
        parts.append(NO_OUTPUT)
    return ToolResult.ok("\n".join(parts))


def _run_command(command: str, ctx: ToolContext) -> ToolResult:
    """Run *command* through /bin/sh after the recursion guard has rewritten it."""
    if not isinstance(command, str) or not command.strip():
        return ToolResult.error("command must be a non-empty string")

    command = decorate(command, ctx.depth, ctx.max_depth, ctx.self_commands)
    if ctx.verbose:
        fmt.executing(command)

    try:
        proc = subprocess.Popen(
            ["/bin/sh", "-c", command],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            cwd=ctx.cwd,
            env=ctx.env,
            start_new_session=True,
        )
    except OSError as e:
        return ToolResult.error(f"failed to start shell command: {e}")

    return _capture_process(proc, max(1, ctx.command_timeout))


# --- File tools ---


def _resolve(path: str, ctx: ToolContext) -> Path:
    p = Path(path).expanduser()
    if not p.is_absolute() and ctx.cwd:
        p = Path(ctx.cwd) / p
    return p


def _write_file(
    path: str,
    content: str,
    ctx: ToolContext,
    mkdirp: bool = True,
    overwrite: bool = True,
) -> ToolResult:
    """Write *content* to a temp sibling, then rename it over the target."""
    if not path:
        return ToolResult.error("path must not be empty")
    if not isinstance(content, str):
        return ToolResult.error("content must be a string")
    target = _resolve(path, ctx)

    parent = target.parent
    try:
        if target.is_dir():
            return ToolResult.error(f"path is a directory: {path}")
        if target.exists() and not overwrite:
            return ToolResult.error(f"file exists and overwrite=false: {path}")
        parent_exists = parent.is_dir()
    except OSError as e:
        return ToolResult.error(f"cannot access {path}: {e}")

    if not parent_exists:
        if not mkdirp:
            return ToolResult.error(f"parent directory does not exist: {parent}")
        try:
            parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            return ToolResult.error(f"cannot create {parent}: {e}")

    data = content.encode("utf-8")
    try:
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{target.name}.", suffix=".tmp", dir=parent
        )
    except OSError as e:
        return ToolResult.error(f"cannot create temp file in {parent}: {e}")

    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        if target.exists():
            shutil.copymode(target, tmp_name)
        else:
            os.chmod(tmp_name, 0o644)
        os.replace(tmp_name, target)
    except OSError as e:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass  # already renamed or gone
        return ToolResult.error(f"failed to write {path}: {e}")

    return ToolResult.ok(f"Wrote {len(data)} bytes to {path}")


def _read_file(path: str, ctx: ToolContext, max_bytes: int = DEFAULT_READ_BYTES) -> ToolResult:
    """Read a file, truncating past *max_bytes*."""
    if not path:
        return ToolResult.error("path must not be empty")
    target = _resolve(path, ctx)
    max_bytes = max(1, int(max_bytes))

    try:
        if not target.exists():
            return ToolResult.error(f"file does not exist: {path}")
        if target.is_dir():
            return ToolResult.error(f"path is a directory: {path}")
        size = target.stat().st_size
        with open(target, "rb") as f:
            data = f.read(max_bytes)
    except OSError as e:
        return ToolResult.error(f"cannot read {path}: {e}")

    text = data.decode("utf-8", errors="replace")
    if size > max_bytes:
        text += f"\n[truncated: showing first {max_bytes} of {size} bytes]"
    return ToolResult.ok(text)


def _file_info(path: str, ctx: ToolContext, head_bytes: int = DEFAULT_HEAD_BYTES) -> ToolResult:
    """Return a JSON report: existence, size, sha256 and leading bytes."""
    target = _resolve(path or "", ctx)
    head_bytes = min(max(0, int(head_bytes)), MAX_HEAD_BYTES)
    report: dict = {"path": path, "exists": False}

    try:
        report["exists"] = target.exists()
        is_dir = report["exists"] and target.is_dir()
    except OSError as e:
        report["error"] = str(e)
        return ToolResult.ok(json.dumps(report))

    if not report["exists"]:
        return ToolResult.ok(json.dumps(report))
    if is_dir:
        report["type"] = "directory"
        return ToolResult.ok(json.dumps(report))

    report["type"] = "file"
    try:
        report["size"] = target.stat().st_size
        digest = hashlib.sha256()
        with open(target, "rb") as f:
            head = f.read(head_bytes)
            digest.update(head)
            for chunk in iter(lambda: f.read(65536), b""):
                digest.update(chunk)
    except OSError as e:
        report["error"] = str(e)
        return ToolResult.ok(json.dumps(report))

    report["sha256"] = digest.hexdigest()
    report["head_hex"] = head.hex()
    report["head_text"] = head.decode("utf-8", errors="replace")
    return ToolResult.ok(json.dumps(report))


def dispatch(name: str, args: dict, ctx: ToolContext) -> ToolResult:
    """Route a tool call to the appropriate implementation.

    Unknown tools, missing arguments and filesystem failures come back as
    error results; nothing raised by a tool reaches the agent loop.
    """
    try:
        if name == "run_command":
            return _run_command(args["command"], ctx)
        elif name == "write_file":
            return _write_file(
                path=args["path"],
                content=args["content"],
                ctx=ctx,
                mkdirp=args.get("mkdirp", True),
                overwrite=args.get("overwrite", True),
            )
        elif name == "read_file":
            return _read_file(
                path=args["path"],
                ctx=ctx,
                max_bytes=args.get("max_bytes", DEFAULT_READ_BYTES),
            )
        elif name == "file_info":
            return _file_info(
                path=args["path"],
                ctx=ctx,
                head_bytes=args.get("head_bytes", DEFAULT_HEAD_BYTES),
            )
    except KeyError as e:
        return ToolResult.error(f"missing argument {e.args[0]!r} for {name}")
    except (TypeError, ValueError) as e:
        return ToolResult.error(f"invalid arguments for {name}: {e}")
    except (OSError, RuntimeError) as e:
        return ToolResult.error(f"{name} failed: {e}")
    return ToolResult.error(f"unknown tool: {name!r}")
