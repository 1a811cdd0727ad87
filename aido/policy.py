"""Policy records and the per-depth resolver.

A policy file looks like::

    [defaults]
    model = "gpt-4o-mini"
    max_tokens = 800
    tool_loops = 5
    history = "persist"          # persist | temp | none
    override_policy = "all"      # all | safe | none

    [profiles.1]
    history = "temp"
    override_policy = "safe"

    [caps.1]
    max_tokens = 600
    tool_loops = 8
    history = ["temp", "none"]

    [recursion]
    max_depth = 1

Resolution order for a depth: defaults, then the depth's profile, then its
caps, then caller overrides, then the caps again. Caps always win.
"""

import copy
import logging
import math
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from .errors import ConfigError

logger = logging.getLogger(__name__)

HISTORY_MODES = ("persist", "temp", "none")
OVERRIDE_PERMISSIONS = ("all", "safe", "none")

# persist < temp < none, by decreasing durability
_HISTORY_RANK = {mode: rank for rank, mode in enumerate(HISTORY_MODES)}

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_MAX_TOKENS = 800
DEFAULT_TOOL_LOOPS = 5

DEFAULT_POLICY: dict[str, Any] = {
    "defaults": {
        "model": DEFAULT_MODEL,
        "max_tokens": DEFAULT_MAX_TOKENS,
        "tool_loops": DEFAULT_TOOL_LOOPS,
        "history": "persist",
        "override_policy": "all",
    },
    "profiles": {},
    "caps": {},
    "recursion": {"max_depth": 0},
}


def history_rank(mode: str) -> int:
    """Rank a history mode; unknown modes rank as the most restrictive."""
    return _HISTORY_RANK.get(mode, _HISTORY_RANK["none"])


@dataclass(frozen=True)
class Profile:
    """A partial configuration; unset fields are None."""

    model: str | None = None
    max_tokens: int | None = None
    tool_loops: int | None = None
    history: str | None = None
    override_permission: str | None = None

    def merged(self, over: "Profile") -> "Profile":
        """Return a copy with every field set in *over* taking precedence."""
        changes = {
            name: getattr(over, name)
            for name in self.__dataclass_fields__
            if getattr(over, name) is not None
        }
        return replace(self, **changes)


@dataclass(frozen=True)
class Caps:
    """Hard ceilings for one depth. None means uncapped."""

    max_tokens: int | None = None
    tool_loops: int | None = None
    history: tuple[str, ...] | None = None


@dataclass(frozen=True)
class Policy:
    defaults: Profile = field(default_factory=Profile)
    profiles: dict[int, Profile] = field(default_factory=dict)
    caps: dict[int, Caps] = field(default_factory=dict)
    max_depth: int = 0


@dataclass(frozen=True)
class EffectiveConfig:
    model: str
    max_tokens: int
    tool_loops: int
    history: str
    override_permission: str


@dataclass(frozen=True)
class Overrides:
    """Caller-requested adjustments, e.g. from --tool-loops / --max-tokens / --history."""

    tool_loops: int | None = None
    max_tokens: int | None = None
    history: str | None = None


# --- Raw structure handling ---


def deep_merge(base: dict, over: dict) -> dict:
    """Merge *over* into a copy of *base*, recursing into nested dicts."""
    merged = copy.deepcopy(base)
    for key, value in over.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _coerce_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if text.lstrip("-").isdigit():
            return int(text)
    return None


def _canonical_keys(raw: Any) -> Any:
    """Rename the override_permission alias to override_policy before merging.

    An explicit override_policy in the same section wins over the alias.
    """
    if not isinstance(raw, dict):
        return raw

    def _rename(section: Any) -> Any:
        if isinstance(section, dict) and "override_permission" in section:
            section = dict(section)
            alias = section.pop("override_permission")
            section.setdefault("override_policy", alias)
        return section

    raw = dict(raw)
    if "defaults" in raw:
        raw["defaults"] = _rename(raw["defaults"])
    profiles = raw.get("profiles")
    if isinstance(profiles, dict):
        raw["profiles"] = {key: _rename(value) for key, value in profiles.items()}
    return raw


def _depth_key(key: Any) -> int | None:
    depth = _coerce_int(key)
    if depth is None or depth < 0:
        return None
    return depth


def _profile_from_mapping(raw: Any, label: str) -> Profile | None:
    if not isinstance(raw, dict):
        logger.debug("ignoring malformed policy entry %s: %r", label, raw)
        return None

    model = raw.get("model")
    history = raw.get("history")
    permission = raw.get("override_policy", raw.get("override_permission"))
    return Profile(
        model=str(model) if model is not None else None,
        max_tokens=_coerce_int(raw.get("max_tokens")),
        tool_loops=_coerce_int(raw.get("tool_loops")),
        history=str(history) if history is not None else None,
        override_permission=str(permission) if permission is not None else None,
    )


def _caps_from_mapping(raw: Any, label: str) -> Caps | None:
    if not isinstance(raw, dict):
        logger.debug("ignoring malformed policy entry %s: %r", label, raw)
        return None

    allowed = raw.get("history")
    history = None
    if isinstance(allowed, (list, tuple)):
        history = tuple(m for m in allowed if isinstance(m, str) and m in HISTORY_MODES)
    elif allowed is not None:
        logger.debug("ignoring non-list %s.history: %r", label, allowed)

    def _cap(key: str) -> int | None:
        value = raw.get(key)
        if isinstance(value, bool) or not isinstance(value, int):
            return None
        return value

    return Caps(max_tokens=_cap("max_tokens"), tool_loops=_cap("tool_loops"), history=history)


def _per_depth(raw: Any, section: str, parse) -> dict:
    result = {}
    if not isinstance(raw, dict):
        if raw is not None:
            logger.debug("ignoring malformed policy section %s: %r", section, raw)
        return result
    for key, value in raw.items():
        depth = _depth_key(key)
        if depth is None:
            logger.debug("ignoring %s entry with non-depth key %r", section, key)
            continue
        parsed = parse(value, f"{section}.{key}")
        if parsed is not None:
            result[depth] = parsed
    return result


def policy_from_mapping(raw: Any) -> Policy:
    """Build a typed Policy from a raw mapping, layered over DEFAULT_POLICY.

    Malformed sections are treated as absent. Unknown keys are ignored.
    """
    if not isinstance(raw, dict):
        raw = {}
    merged = deep_merge(DEFAULT_POLICY, _canonical_keys(raw))

    defaults = _profile_from_mapping(merged.get("defaults"), "defaults")
    if defaults is None:
        defaults = _profile_from_mapping(DEFAULT_POLICY["defaults"], "defaults")

    recursion = merged.get("recursion")
    max_depth = None
    if isinstance(recursion, dict):
        max_depth = _coerce_int(recursion.get("max_depth"))

    return Policy(
        defaults=defaults,
        profiles=_per_depth(merged.get("profiles"), "profiles", _profile_from_mapping),
        caps=_per_depth(merged.get("caps"), "caps", _caps_from_mapping),
        max_depth=max(0, max_depth) if max_depth is not None else 0,
    )


def load_policy(path: Path | None) -> Policy:
    """Load a policy TOML file. A missing file yields the built-in default."""
    if path is None or not path.is_file():
        return policy_from_mapping({})
    try:
        with open(path, "rb") as f:
            raw = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{path}: invalid TOML: {e}") from e
    return policy_from_mapping(raw)


# --- Resolution ---


def _normalize(profile: Profile) -> EffectiveConfig:
    history = profile.history if profile.history in HISTORY_MODES else "none"
    permission = (
        profile.override_permission
        if profile.override_permission in OVERRIDE_PERMISSIONS
        else "none"
    )
    return EffectiveConfig(
        model=profile.model or DEFAULT_MODEL,
        max_tokens=max(1, profile.max_tokens if profile.max_tokens is not None else DEFAULT_MAX_TOKENS),
        tool_loops=max(1, profile.tool_loops if profile.tool_loops is not None else DEFAULT_TOOL_LOOPS),
        history=history,
        override_permission=permission,
    )


def apply_caps(config: EffectiveConfig, caps: Caps | None) -> EffectiveConfig:
    """Clamp *config* to *caps*. Idempotent."""
    if caps is None:
        return config

    max_tokens = config.max_tokens
    tool_loops = config.tool_loops
    history = config.history

    if caps.max_tokens is not None:
        max_tokens = min(max_tokens, caps.max_tokens)
    if caps.tool_loops is not None:
        tool_loops = min(tool_loops, caps.tool_loops)
    if caps.history is not None and history not in caps.history:
        # Fall back to the most restrictive allowed mode
        history = max(caps.history, key=history_rank, default="none")

    return replace(
        config,
        max_tokens=max(1, max_tokens),
        tool_loops=max(1, tool_loops),
        history=history,
    )


def apply_overrides(config: EffectiveConfig, overrides: Overrides | None) -> EffectiveConfig:
    """Apply caller overrides as permitted by config.override_permission.

    all:  any positive numeric override or valid history mode replaces the value.
    safe: only tightening is accepted (smaller numbers, less persistent history).
    none: overrides are ignored.
    """
    permission = config.override_permission
    if overrides is None or permission == "none":
        return config

    changes: dict[str, Any] = {}
    for key in ("tool_loops", "max_tokens"):
        requested = getattr(overrides, key)
        if requested is None or requested <= 0:
            continue
        if permission == "safe" and requested >= getattr(config, key):
            logger.debug("safe override rejected: %s=%d", key, requested)
            continue
        changes[key] = requested

    requested_history = overrides.history
    if requested_history in HISTORY_MODES:
        if permission == "all":
            changes["history"] = requested_history
        elif history_rank(requested_history) >= history_rank(config.history):
            changes["history"] = requested_history
        else:
            logger.debug("safe override rejected: history=%s", requested_history)

    return replace(config, **changes) if changes else config


def resolve(policy: Policy, depth: int, overrides: Overrides | None = None) -> EffectiveConfig:
    """Compute the effective configuration for *depth*."""
    profile = policy.defaults
    if depth in policy.profiles:
        profile = profile.merged(policy.profiles[depth])

    caps = policy.caps.get(depth)
    config = apply_caps(_normalize(profile), caps)
    config = apply_overrides(config, overrides)
    return apply_caps(config, caps)
