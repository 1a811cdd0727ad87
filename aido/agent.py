import argparse
import atexit
import json
import os
import platform
import shutil
import socket
import sys
import textwrap
import time
from datetime import datetime
from importlib import metadata
from pathlib import Path

import tiktoken

from . import fmt
from .config import describe, load_prompt, load_settings, resolve_files
from .errors import AgentError
from .history import CONTEXT_ENTRIES, HistoryStore, history_path
from .policy import EffectiveConfig, Overrides, load_policy, resolve
from .recursion import DEFAULT_SELF_COMMANDS, PROGRAM_NAME, read_depth
from .tools import TOOLS, ToolContext, dispatch
from .transport import TransportSettings, call_llm

MAX_ARG_LOG = 1000
WRAP_WIDTH = 100
MAX_ITERATIONS_MESSAGE = "Error: Maximum tool call iterations reached."

_encoder = None


def _get_encoder():
    global _encoder
    if _encoder is None:
        _encoder = tiktoken.get_encoding("cl100k_base")
    return _encoder


def estimate_tokens(messages: list, tools: list | None = None) -> int:
    """Count tokens across all messages using tiktoken."""
    encoder = _get_encoder()
    total = 0
    for m in messages:
        if isinstance(m, dict):
            content = m.get("content", "") or ""
            tool_calls = m.get("tool_calls", None)
        else:
            content = getattr(m, "content", "") or ""
            tool_calls = getattr(m, "tool_calls", None)
        if tool_calls:
            for tc in tool_calls:
                if hasattr(tc, "function"):
                    content += tc.function.name + (tc.function.arguments or "")
                elif isinstance(tc, dict):
                    fn = tc.get("function", {})
                    content += fn.get("name", "") + (fn.get("arguments", "") or "")
        total += len(encoder.encode(content))
    if tools:
        total += len(encoder.encode(json.dumps(tools)))
    # Per-message overhead (role, separators), ~4 tokens each
    total += 4 * len(messages)
    return total


def wrap_output(text: str, width: int = WRAP_WIDTH) -> str:
    """Reflow *text* for display. Words are never split; newlines are kept."""
    wrapped = []
    for line in text.split("\n"):
        if len(line) <= width:
            wrapped.append(line)
            continue
        wrapped.append(
            textwrap.fill(
                line,
                width=width,
                break_long_words=False,
                break_on_hyphens=False,
            )
        )
    return "\n".join(wrapped)


def build_runtime_context(
    config: EffectiveConfig,
    depth: int,
    max_depth: int,
    *,
    now: datetime | None = None,
    cwd: str | None = None,
) -> str:
    """Header prepended to the base system prompt."""
    now = now or datetime.now().astimezone()
    cwd = cwd or os.getcwd()
    return (
        "RUNTIME CONTEXT\n"
        f"- Current time: {now.isoformat(timespec='seconds')}\n"
        f"- Working directory: {cwd}\n"
        f"- Hostname: {socket.gethostname()}\n"
        f"- OS: {platform.system()} {platform.release()}\n"
        f"- Depth: {depth}\n"
        f"- Max depth: {max_depth}\n"
        f"- Model: {config.model}\n"
        f"- Max tokens: {config.max_tokens}\n"
        f"- Tool loops: {config.tool_loops}\n"
        f"- History: {config.history}\n\n"
    )


def handle_tool_call(tool_call, ctx: ToolContext, verbose: bool):
    """Execute a single tool call and return (tool_msg, metadata).

    tool_msg is the message dict for the LLM conversation.
    metadata has stable keys: name, arguments, elapsed, succeeded.
    """
    name = tool_call.function.name
    raw_args = tool_call.function.arguments

    try:
        parsed_args = json.loads(raw_args or "{}")
    except (json.JSONDecodeError, TypeError) as e:
        parsed_args = None
        error_content = f"error: invalid JSON in tool arguments: {e}"
    else:
        if not isinstance(parsed_args, dict):
            error_content = "error: tool arguments must be a JSON object"
            parsed_args = None

    if parsed_args is None:
        if verbose:
            fmt.tool_error(name, error_content)
        return (
            {
                "role": "tool",
                "tool_call_id": tool_call.id,
                "name": name,
                "content": error_content,
            },
            {"name": name, "arguments": None, "elapsed": 0.0, "succeeded": False},
        )

    if verbose:
        pretty = json.dumps(parsed_args, indent=2)
        if len(pretty) > MAX_ARG_LOG:
            pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
        fmt.tool_call(name, pretty)

    t0 = time.monotonic()
    result = dispatch(name, parsed_args, ctx)
    elapsed = time.monotonic() - t0

    content = result.render()
    if verbose:
        if result.succeeded:
            fmt.tool_result(name, elapsed, content[:500])
        else:
            fmt.tool_error(name, content)

    return (
        {
            "role": "tool",
            "tool_call_id": tool_call.id,
            "name": name,
            "content": content,
        },
        {
            "name": name,
            "arguments": parsed_args,
            "elapsed": elapsed,
            "succeeded": result.succeeded,
        },
    )


def run_agent_loop(
    messages: list,
    tools: list,
    *,
    model_id: str,
    max_output_tokens: int,
    max_turns: int,
    tool_context: ToolContext,
    settings: TransportSettings,
    verbose: bool,
) -> tuple[str | None, bool]:
    """Run the tool-calling loop until a final answer or max turns.

    Mutates `messages` in place (appends assistant and tool messages).
    Returns (final_answer, exhausted). Transport failures propagate as AgentError.
    """
    turns = 0
    while turns < max_turns:
        turns += 1
        if verbose:
            fmt.turn_header(turns, max_turns, estimate_tokens(messages, tools))

        t0 = time.monotonic()
        msg, finish_reason = call_llm(
            messages, model_id, max_output_tokens, tools, settings, verbose
        )
        if verbose:
            fmt.llm_timing(time.monotonic() - t0, finish_reason)

        messages.append(msg)

        tool_calls = getattr(msg, "tool_calls", None)
        content = getattr(msg, "content", None)

        if tool_calls:
            if content and verbose:
                fmt.assistant_text(content)
            for tool_call in tool_calls:
                tool_msg, _ = handle_tool_call(tool_call, tool_context, verbose)
                messages.append(tool_msg)
            continue

        if content is not None:
            if verbose:
                fmt.completion(turns, "ok")
            return content, False

        if verbose:
            fmt.info("Empty response from model, asking again.")

    if verbose:
        fmt.completion(turns, "max turns reached")
    return None, True


def process_query(
    query: str,
    *,
    system_content: str,
    config: EffectiveConfig,
    history: HistoryStore,
    tool_context: ToolContext,
    settings: TransportSettings,
    verbose: bool,
) -> tuple[str, bool]:
    """Answer one query. Returns (display_text, exhausted).

    The query and the unwrapped answer reach the history file only when
    the model produces a final answer.
    """
    history.append("user", query)
    messages = [{"role": "system", "content": system_content}]
    messages.extend(history.recent(CONTEXT_ENTRIES))

    answer, exhausted = run_agent_loop(
        messages,
        TOOLS,
        model_id=config.model,
        max_output_tokens=config.max_tokens,
        max_turns=config.tool_loops,
        tool_context=tool_context,
        settings=settings,
        verbose=verbose,
    )
    if exhausted:
        return MAX_ITERATIONS_MESSAGE, True

    history.append("assistant", answer)
    history.save()
    return wrap_output(answer), False


def format_config(
    config: EffectiveConfig, history_file: Path | None, depth: int, max_depth: int
) -> str:
    """Text for --print-config."""
    return "\n".join(
        [
            f"depth: {depth}",
            f"max_depth: {max_depth}",
            f"model: {config.model}",
            f"max_tokens: {config.max_tokens}",
            f"tool_loops: {config.tool_loops}",
            f"history: {config.history}",
            f"override_policy: {config.override_permission}",
            f"history_file: {history_file if history_file is not None else '(none)'}",
        ]
    )


def self_command_names() -> tuple[str, ...]:
    """Command heads that count as running aido itself."""
    names = list(DEFAULT_SELF_COMMANDS)
    installed = shutil.which(PROGRAM_NAME)
    if installed:
        for candidate in (installed, str(Path(installed).resolve())):
            if candidate not in names:
                names.append(candidate)
    return tuple(names)


def read_query(args, stdin=None) -> str | None:
    """Question from the argument, else from STDIN (interactive or piped)."""
    if args.question and args.question.strip():
        return args.question
    stdin = stdin or sys.stdin
    if not getattr(args, "stdin", False) and stdin.isatty():
        print("Enter your prompt. Finish with Ctrl-D.\n", file=sys.stderr)
    text = stdin.read().strip()
    return text or None


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog=PROGRAM_NAME,
        usage="%(prog)s [options] <question>\n       echo <question> | %(prog)s [options]",
        description="Ask a model to do things on this machine through shell and file tools.",
        epilog=(
            "examples:\n"
            '  aido "what changed in this repo?"\n'
            '  echo "hello" | aido\n'
            "  aido --print-config\n"
            '  aido --tool-loops 15 "do a longer task"'
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "question", nargs="?", default=None, help="The question or task for the model."
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "--print-paths",
        action="store_true",
        help="Show the resolved config, prompt and policy file paths and exit.",
    )
    parser.add_argument(
        "--print-config",
        action="store_true",
        help="Show the effective configuration for the current depth and exit.",
    )
    parser.add_argument(
        "--tool-loops",
        type=int,
        default=None,
        metavar="N",
        help="Override the tool loop limit (subject to policy).",
    )
    parser.add_argument(
        "--max-tokens",
        type=int,
        default=None,
        metavar="N",
        help="Override max output tokens (subject to policy).",
    )
    parser.add_argument(
        "--history",
        choices=["persist", "temp", "none"],
        default=None,
        metavar="MODE",
        help="History mode: persist, temp or none (subject to policy).",
    )
    parser.add_argument(
        "--stdin",
        action="store_true",
        help="Read the prompt from STDIN when no question argument is given.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Suppress all diagnostics; only print the final result.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        help="Disable ANSI color even when stderr is a TTY.",
    )

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("aido")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(f"aido {version}")
        sys.exit(0)

    args.verbose = not args.quiet
    fmt.init(color=args.color, no_color=args.no_color)

    # Ambient inputs are read once here and passed down explicitly.
    depth = read_depth(os.environ)
    files = resolve_files(os.environ)

    if args.print_paths:
        print(describe(files, depth))
        sys.exit(0)

    try:
        exit_code = _run_main(args, files, depth, parser)
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)
    sys.exit(exit_code)


def _run_main(args, files, depth, parser) -> int:
    if files.policy is None and args.verbose:
        fmt.warning("policy.toml not found, using built-in defaults")
    policy = load_policy(files.policy)
    max_depth = policy.max_depth

    overrides = Overrides(
        tool_loops=args.tool_loops,
        max_tokens=args.max_tokens,
        history=args.history,
    )
    config = resolve(policy, depth, overrides)
    history_file = history_path(config.history, os.environ)

    if args.print_config:
        print(format_config(config, history_file, depth, max_depth))
        return 0

    settings = load_settings(files.config, os.environ)
    base_prompt = load_prompt(files.sysprompt)

    query = read_query(args)
    if query is None:
        parser.print_help()
        return 1

    history = HistoryStore(history_file)
    history.load()
    if config.history == "temp":
        atexit.register(history.discard)

    tool_context = ToolContext(
        depth=depth,
        max_depth=max_depth,
        self_commands=self_command_names(),
        command_timeout=settings.command_timeout,
        verbose=args.verbose,
    )
    system_content = build_runtime_context(config, depth, max_depth) + base_prompt

    if args.verbose:
        fmt.user_query(query)

    text, exhausted = process_query(
        query,
        system_content=system_content,
        config=config,
        history=history,
        tool_context=tool_context,
        settings=settings.transport,
        verbose=args.verbose,
    )
    print(text)
    if exhausted:
        fmt.warning("max tool loops reached, agent stopped.")
        return 2
    return 0
