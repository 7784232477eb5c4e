"""Configuration file loading and merging for marl.

Reads TOML config from ~/.config/marl/config.toml (global) and
<base_dir>/marl.toml (project). Precedence: CLI > project > global >
environment > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .errors import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"

DEFAULT_PROVIDER = "gemini"
DEFAULT_MODEL = "gemini-2.0-flash"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "instructions": str,
    "max_turns": int,
    "max_output_tokens": int,
    "temperature": (int, float),
    "skills_dir": list,
    "no_skills": bool,
    "no_persist": bool,
    "no_history": bool,
    "allow_introspect": bool,
    "color": bool,
    "quiet": bool,
    "prices": dict,
}

_LIST_OF_STR_KEYS = {"skills_dir"}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": DEFAULT_PROVIDER,
    "model": DEFAULT_MODEL,
    "api_key": None,
    "base_url": None,
    "instructions": None,
    "max_turns": 50,
    "max_output_tokens": None,
    "temperature": None,
    "skills_dir": [],
    "no_skills": False,
    "no_persist": False,
    "no_history": False,
    "allow_introspect": False,
    "color": False,
    "no_color": False,
    "quiet": False,
    "prices": {},
}

# Argparse dest -> environment variable consulted before the hardcoded default
_ENV_DEFAULTS: dict[str, str] = {
    "provider": "MARL_PROVIDER",
    "model": "MARL_MODEL",
    "no_persist": "MARL_NO_PERSIST",
}

_FALSEY = {"", "0", "false", "no", "off"}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "marl"
    return Path.home() / ".config" / "marl"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_prices(prices: dict, source: str) -> None:
    for model, pair in prices.items():
        if (
            not isinstance(pair, list)
            or len(pair) != 2
            or any(isinstance(p, bool) or not isinstance(p, (int, float)) for p in pair)
        ):
            raise ConfigError(
                f"{source}: prices.{model}: expected [input_per_million, output_per_million]"
            )
        if pair[0] < 0 or pair[1] < 0:
            raise ConfigError(f"{source}: prices.{model}: prices must be non-negative")


def _validate_config(config: dict, source: str) -> None:
    """Validate value types in a parsed config dict.

    Raises ConfigError for type mismatches. Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int; reject bools for non-bool fields explicitly.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

        if key in _LIST_OF_STR_KEYS:
            for i, elem in enumerate(value):
                if not isinstance(elem, str):
                    raise ConfigError(
                        f"{source}: {key}[{i}]: expected string, got {type(elem).__name__}"
                    )

    if "max_turns" in config and config["max_turns"] < 1:
        raise ConfigError(f"{source}: 'max_turns' must be at least 1")
    if "prices" in config:
        _validate_prices(config["prices"], source)


def _resolve_paths(config: dict, config_dir: Path) -> None:
    """Resolve relative skills_dir entries against the config file's directory."""
    if "skills_dir" in config:
        resolved = []
        for p in config["skills_dir"]:
            expanded = Path(p).expanduser()
            if expanded.is_absolute():
                resolved.append(str(expanded))
            else:
                resolved.append(str(config_dir / p))
        config["skills_dir"] = resolved


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e
    except OSError as e:
        raise ConfigError(f"{label}: cannot read file: {e}") from e

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def load_config(base_dir: str | Path) -> dict:
    """Load and merge global + project config.

    Only keys actually set in config files are included. Prices tables are
    merged by model name, project entries winning.
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))
    if global_config:
        _resolve_paths(global_config, global_path.parent)

    project_path = Path(base_dir).resolve() / "marl.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _resolve_paths(project_config, project_path.parent)

    global_prices = global_config.pop("prices", None)
    project_prices = project_config.pop("prices", None)
    merged = {**global_config, **project_config}
    if global_prices or project_prices:
        merged["prices"] = {**(global_prices or {}), **(project_prices or {})}
    return merged


def _env_default(dest: str) -> Any:
    var = _ENV_DEFAULTS.get(dest)
    if var is None:
        return _UNSET
    value = os.environ.get(var)
    if value is None:
        return _UNSET
    if isinstance(_ARGPARSE_DEFAULTS[dest], bool):
        return value.strip().lower() not in _FALSEY
    return value or _UNSET


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Fill argparse values the CLI left unset from config, environment, then defaults."""

    def _is_unset(dest: str) -> bool:
        val = getattr(args, dest, _UNSET)
        if dest == "skills_dir":
            return val is None
        return val is _UNSET

    # A single config key controls the mutually exclusive color pair
    if "color" in config:
        if _is_unset("color") and _is_unset("no_color"):
            args.color = config["color"]
            args.no_color = not config["color"]

    for key, value in config.items():
        if key == "color":
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            env_value = _env_default(dest)
            setattr(args, dest, default if env_value is _UNSET else env_value)


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# marl configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/marl.toml' if project else '~/.config/marl/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        f'# provider = "{DEFAULT_PROVIDER}"      # any LiteLLM provider prefix',
        f'# model = "{DEFAULT_MODEL}"',
        '# api_key = "..."                 # prefer env vars; this is a fallback',
        '# base_url = "https://..."',
        "",
        "# --- Generation parameters ---",
        "# max_output_tokens = 8192",
        "# temperature = 0.7",
        "",
        "# --- Session behaviour ---",
        "# max_turns = 50",
        '# instructions = "You are a helpful assistant."',
        "# no_persist = false",
        "# no_history = false",
        "# allow_introspect = false   # full-trust Python evaluation tool",
        "",
        "# --- Skills ---",
        "# no_skills = false",
        '# skills_dir = ["../my-skills"]',
        "",
        "# --- Cost estimation (USD per million tokens: [input, output]) ---",
        "# [prices]",
        '# "gemini-2.0-flash" = [0.10, 0.40]',
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
