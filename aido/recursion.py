"""Self-invocation detection for shell commands proposed by the model.

When the model asks to run aido itself, the command is rewritten to carry
the next depth in the AIDO_DEPTH environment marker, or replaced by an
informational echo once the configured depth limit is reached.

Detection is a heuristic over the command head only: a self-invocation hidden
inside quotes, a pipeline, ``sh -c`` or ``env`` is not recognized.
"""

import re
import shlex
from collections.abc import Iterable, Mapping

DEPTH_ENV_VAR = "AIDO_DEPTH"
PROGRAM_NAME = "aido"
INSTALL_PATH = "/usr/local/bin/aido"

DEFAULT_SELF_COMMANDS = (PROGRAM_NAME, INSTALL_PATH)

# One leading NAME=value token, value may be quoted.
_ASSIGNMENT_RE = re.compile(
    r"""[A-Za-z_][A-Za-z0-9_]*=(?:"[^"]*"|'[^']*'|[^\s"'])*\s+"""
)
_DEPTH_ASSIGNMENT_RE = re.compile(rf"^{DEPTH_ENV_VAR}=")
_DEPTH_VALUE_RE = re.compile(r"^-?\d+$")


def read_depth(environ: Mapping[str, str]) -> int:
    """Parse the incoming depth marker. Absent or non-numeric means 0."""
    raw = environ.get(DEPTH_ENV_VAR, "")
    raw = raw.strip() if isinstance(raw, str) else ""
    if not _DEPTH_VALUE_RE.match(raw):
        return 0
    return max(0, int(raw))


def split_assignments(command: str) -> tuple[list[str], str]:
    """Split leading NAME=value tokens off *command*.

    Returns (assignment_tokens, remainder). The remainder keeps its original text.
    """
    rest = command.lstrip()
    assignments = []
    while True:
        m = _ASSIGNMENT_RE.match(rest)
        if not m:
            break
        assignments.append(m.group(0).rstrip())
        rest = rest[m.end():]
    return assignments, rest


def is_self_call(command: str, self_commands: Iterable[str] = DEFAULT_SELF_COMMANDS) -> bool:
    """True when the command head is aido, bare or followed by arguments."""
    _, head = split_assignments(command)
    for name in self_commands:
        if head == name or head.startswith(name + " "):
            return True
    return False


def depth_limit_command(depth: int, max_depth: int) -> str:
    message = f"Error: recursion depth limit reached (depth={depth}, max_depth={max_depth})"
    return f"echo {shlex.quote(message)}"


def decorate(
    command: str,
    depth: int,
    max_depth: int,
    self_commands: Iterable[str] = DEFAULT_SELF_COMMANDS,
) -> str:
    """Rewrite a self-invocation so the child runs at depth + 1.

    Commands that are not self-invocations are returned unchanged. At or above
    *max_depth* the whole command becomes an echo of the depth-limit message.
    """
    self_commands = tuple(self_commands)
    if not is_self_call(command, self_commands):
        return command

    if depth >= max_depth:
        return depth_limit_command(depth, max_depth)

    assignments, head = split_assignments(command)
    kept = [a for a in assignments if not _DEPTH_ASSIGNMENT_RE.match(a)]
    return " ".join([f"{DEPTH_ENV_VAR}={depth + 1}", *kept, head])
