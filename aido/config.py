"""Configuration file discovery and loading for aido.

Three files are looked up, each independently, in this order:
$AIDO_HOME, the current directory, the package directory, and
~/.config/aido (respecting XDG_CONFIG_HOME). The first existing file wins.

- config.toml:   credential and transport settings
- sysprompt.txt: base system prompt
- policy.toml:   per-depth limits (see aido.policy)
"""

import os
import sys
import tomllib
from dataclasses import dataclass
from pathlib import Path

from .errors import ConfigError
from .transport import MIN_WAIT_MS, RetryPolicy, TransportSettings

CONFIG_FILENAME = "config.toml"
PROMPT_FILENAME = "sysprompt.txt"
POLICY_FILENAME = "policy.toml"

PACKAGE_DIR = Path(__file__).parent

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "openai_api_key": str,
    "api_base": str,
    "pacing_ms": int,
    "max_retries": int,
    "backoff_base_ms": int,
    "max_wait_ms": int,
    "request_timeout": (int, float),
    "command_timeout": int,
}

_NON_NEGATIVE_KEYS = {"pacing_ms", "max_retries", "backoff_base_ms"}
_POSITIVE_KEYS = {"max_wait_ms", "request_timeout", "command_timeout"}


@dataclass(frozen=True)
class ResolvedFiles:
    config: Path | None
    sysprompt: Path | None
    policy: Path | None


@dataclass(frozen=True)
class Settings:
    transport: TransportSettings
    command_timeout: int = 600


# --- Discovery ---


def global_config_dir(environ=os.environ) -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "aido"
    return Path.home() / ".config" / "aido"


def candidate_dirs(environ=os.environ, cwd: Path | None = None) -> list[Path]:
    """Directories searched for aido files, in priority order, without duplicates."""
    candidates: list[Path] = []
    home = environ.get("AIDO_HOME")
    if home:
        candidates.append(Path(home))
    candidates.append(cwd if cwd is not None else Path.cwd())
    candidates.append(PACKAGE_DIR)
    candidates.append(global_config_dir(environ))

    seen = set()
    unique = []
    for c in candidates:
        key = str(c)
        if key not in seen:
            seen.add(key)
            unique.append(c)
    return unique


def find_first(filename: str, dirs: list[Path]) -> Path | None:
    for d in dirs:
        path = d / filename
        if path.is_file():
            return path
    return None


def resolve_files(environ=os.environ, cwd: Path | None = None) -> ResolvedFiles:
    dirs = candidate_dirs(environ, cwd)
    return ResolvedFiles(
        config=find_first(CONFIG_FILENAME, dirs),
        sysprompt=find_first(PROMPT_FILENAME, dirs),
        policy=find_first(POLICY_FILENAME, dirs),
    )


# --- Loading ---


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> dict:
    """Type-check known keys, warn about unknown ones, return the known subset."""
    known = {}
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int; reject it for numeric fields.
        if isinstance(value, bool) or not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )
        if key in _NON_NEGATIVE_KEYS and value < 0:
            raise ConfigError(f"{source}: {key!r} must be >= 0, got {value}")
        if key in _POSITIVE_KEYS and value <= 0:
            raise ConfigError(f"{source}: {key!r} must be > 0, got {value}")
        known[key] = value
    return known


def load_config_file(path: Path | None) -> dict:
    """Load and validate config.toml. Returns an empty dict if missing."""
    if path is None or not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{path}: invalid TOML: {e}") from e
    except OSError as e:
        raise ConfigError(f"{path}: cannot read file: {e}") from e
    return _validate_config(config, str(path))


def load_settings(path: Path | None, environ=os.environ) -> Settings:
    """Build transport settings; the credential falls back to $OPENAI_API_KEY."""
    config = load_config_file(path)

    api_key = config.get("openai_api_key") or environ.get("OPENAI_API_KEY", "")
    if not api_key:
        where = path if path is not None else CONFIG_FILENAME
        raise ConfigError(
            f"OpenAI API key not found: set 'openai_api_key' in {where} "
            "or the OPENAI_API_KEY environment variable"
        )

    retry = RetryPolicy(
        max_retries=config.get("max_retries", RetryPolicy.max_retries),
        base_ms=config.get("backoff_base_ms", RetryPolicy.base_ms),
        max_wait_ms=max(MIN_WAIT_MS, config.get("max_wait_ms", RetryPolicy.max_wait_ms)),
        pacing_ms=config.get("pacing_ms", RetryPolicy.pacing_ms),
    )
    transport = TransportSettings(
        api_key=api_key,
        api_base=config.get("api_base"),
        request_timeout=float(config.get("request_timeout", 120)),
        retry=retry,
    )
    return Settings(transport=transport, command_timeout=config.get("command_timeout", 600))


def load_prompt(path: Path | None) -> str:
    """Read the base system prompt. Missing prompt is a configuration error."""
    if path is None:
        raise ConfigError(
            f"{PROMPT_FILENAME} missing. Looked in: $AIDO_HOME, cwd, "
            "package dir, ~/.config/aido"
        )
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigError(f"{path}: cannot read prompt: {e}") from e


def describe(files: ResolvedFiles, depth: int) -> str:
    """Text for --print-paths."""
    lines = [f"depth: {depth}"]
    for label, path in [
        (CONFIG_FILENAME, files.config),
        (PROMPT_FILENAME, files.sysprompt),
        (POLICY_FILENAME, files.policy),
    ]:
        lines.append(f"{label}: {path if path is not None else '(not found)'}")
    return "\n".join(lines)
