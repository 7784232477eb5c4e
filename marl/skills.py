"""Skill, prompt and helper script resolution: search, frontmatter, interpolation, expansion.

A skill lives at ``<root>/skills/<name>/SKILL.md``; a prompt at
``<root>/prompts/<name>.txt``. Roots are searched project-local first
(``<base_dir>/.marl``), then any extra skills directories, then the global
``~/.marl``. The first match wins.

Executable helper scripts live in ``<root>/scripts/``, local before global.
"""

import logging
import os
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from . import fmt
from .errors import InvalidFormatError, NotFoundError

logger = logging.getLogger(__name__)

MAX_SKILL_DESCRIPTION_CHARS = 1024
EXPANSION_TIMEOUT = 30
SCRIPT_HELP_TIMEOUT = 5
LOCAL_DIR_NAME = ".marl"
SYSTEM_SKILL = "system"

_DELIMITER_RE = re.compile(r"^-{3,}\s*$")
_PLACEHOLDER_RE = re.compile(r"\$ARGUMENTS|\{\{ARGS\}\}|\$(\d+)")
_EXPANSION_RE = re.compile(r"!`([^`\n]+)`")


@dataclass
class Frontmatter:
    """Tagged parse result: kind is "ok", "none" (no frontmatter block) or "malformed"."""

    kind: str
    metadata: dict = field(default_factory=dict)
    body: str = ""
    error: str | None = None


@dataclass
class Skill:
    name: str
    description: str
    trigger: str
    kind: str  # "type" in frontmatter; defaults to "prompt"
    body: str
    path: Path


@dataclass
class Script:
    """An executable helper under a ``scripts/`` directory."""

    name: str
    description: str
    path: Path


def _parse_value(key: str, raw_value: str, continuation: list[str]) -> str:
    """Decode one frontmatter scalar. Raises ValueError on malformed quoting."""
    if raw_value == "|":
        return "\n".join(line.strip() for line in continuation)

    if raw_value and raw_value[0] in ('"', "'"):
        quote_char = raw_value[0]
        inner = raw_value[1:]
        pos = 0
        close_idx = -1
        while pos < len(inner):
            if inner[pos] == "\\" and pos + 1 < len(inner):
                pos += 2
                continue
            if inner[pos] == quote_char:
                close_idx = pos
                break
            pos += 1
        if close_idx < 0:
            raise ValueError(f"missing closing {quote_char} for {key}")
        if close_idx != len(inner) - 1:
            raise ValueError(f"trailing content after closing {quote_char} for {key}")
        return inner[:close_idx].replace(f"\\{quote_char}", quote_char)

    # Plain scalar, folded with any indented continuation lines
    return " ".join([raw_value] + [line.strip() for line in continuation]).strip()


def parse_frontmatter(text: str) -> Frontmatter:
    """Split skill file content into metadata and body.

    Supports plain, quoted, folded (indented continuation) and literal
    (``key: |``) scalar values. A file that does not open with a dash line
    has no frontmatter; the whole content is the body.
    """
    lines = text.split("\n")

    if not lines or not _DELIMITER_RE.match(lines[0]):
        return Frontmatter("none", {}, text.strip())

    end_idx = None
    for i in range(1, len(lines)):
        if _DELIMITER_RE.match(lines[i]):
            end_idx = i
            break
    if end_idx is None:
        return Frontmatter("malformed", error="missing closing '---' delimiter")

    fm_lines = lines[1:end_idx]
    body = "\n".join(lines[end_idx + 1 :]).strip()
    if not body:
        return Frontmatter("malformed", error="no body follows the frontmatter block")

    metadata: dict[str, str] = {}
    i = 0
    while i < len(fm_lines):
        line = fm_lines[i]
        if not line.strip() or line.lstrip().startswith("#"):
            i += 1
            continue
        if line[0] in (" ", "\t"):
            # Indented line outside a key context
            i += 1
            continue

        colon_idx = line.find(":")
        if colon_idx < 0:
            return Frontmatter("malformed", error=f"expected 'key: value', got {line!r}")

        key = line[:colon_idx].strip()
        raw_value = line[colon_idx + 1 :].strip()
        i += 1
        continuation = []
        while i < len(fm_lines) and fm_lines[i] and fm_lines[i][0] in (" ", "\t"):
            continuation.append(fm_lines[i])
            i += 1

        try:
            metadata[key] = _parse_value(key, raw_value, continuation)
        except ValueError as e:
            return Frontmatter("malformed", error=str(e))

    return Frontmatter("ok", metadata, body)


def interpolate(body: str, arguments: str = "") -> str:
    """Substitute $ARGUMENTS (alias {{ARGS}}) and positional $1..$N.

    Positional placeholders without a matching argument are left as-is.
    """
    arguments = arguments or ""
    positional = arguments.split()

    def _sub(m: re.Match) -> str:
        if m.group(1) is None:
            return arguments
        idx = int(m.group(1))
        if 1 <= idx <= len(positional):
            return positional[idx - 1]
        return m.group(0)

    return _PLACEHOLDER_RE.sub(_sub, body)


def _run_expansion(command: str, cwd: str) -> str:
    try:
        proc = subprocess.run(
            command,
            shell=True,
            capture_output=True,
            text=True,
            stdin=subprocess.DEVNULL,
            timeout=EXPANSION_TIMEOUT,
            cwd=cwd,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("expansion %r failed: %s", command, e)
        return ""
    if proc.returncode != 0:
        logger.debug("expansion %r exited with %d", command, proc.returncode)
        return ""
    return proc.stdout.rstrip("\n")


def expand_commands(body: str, cwd: str = ".") -> str:
    """Replace each !`command` marker with the command's standard output.

    A command that fails or exits non-zero expands to an empty string.
    """
    return _EXPANSION_RE.sub(lambda m: _run_expansion(m.group(1), cwd), body)


def script_description(path: Path, cwd: str = ".") -> str:
    """First non-empty line of ``<script> --help``, or "" when it gives none."""
    try:
        proc = subprocess.run(
            [str(path), "--help"],
            capture_output=True,
            text=True,
            stdin=subprocess.DEVNULL,
            timeout=SCRIPT_HELP_TIMEOUT,
            cwd=cwd,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("%s --help failed: %s", path, e)
        return ""
    for line in proc.stdout.splitlines():
        if line.strip():
            return line.strip()[:MAX_SKILL_DESCRIPTION_CHARS]
    return ""


def _valid_name(name: str) -> bool:
    return bool(name) and "/" not in name and "\\" not in name and not name.startswith(".")


class SkillResolver:
    """Locates and renders skills and prompts across the search roots."""

    def __init__(
        self,
        base_dir: str = ".",
        extra_dirs: list[str] | None = None,
        global_dir: str | Path | None = None,
        verbose: bool = False,
    ):
        self.base_dir = base_dir
        self.extra_dirs = [Path(d).expanduser() for d in extra_dirs or []]
        self.global_dir = (
            Path(global_dir).expanduser()
            if global_dir is not None
            else Path.home() / LOCAL_DIR_NAME
        )
        self.verbose = verbose

    @property
    def local_dir(self) -> Path:
        return Path(self.base_dir).resolve() / LOCAL_DIR_NAME

    def search_dirs(self) -> list[tuple[str, Path]]:
        """(kind, directory) pairs in precedence order; kind is "skills" or "prompts"."""
        dirs: list[tuple[str, Path]] = [
            ("skills", self.local_dir / "skills"),
            ("prompts", self.local_dir / "prompts"),
        ]
        for extra in self.extra_dirs:
            dirs.append(("skills", extra))
        dirs.append(("skills", self.global_dir / "skills"))
        dirs.append(("prompts", self.global_dir / "prompts"))
        return dirs

    def find(self, name: str) -> Path | None:
        """Return the file backing the named skill or prompt, or None."""
        if not _valid_name(name):
            return None
        stem = name.removesuffix(".txt")
        for kind, directory in self.search_dirs():
            if kind == "skills":
                candidate = directory / stem / "SKILL.md"
            else:
                candidate = directory / f"{stem}.txt"
            if candidate.is_file():
                return candidate
        return None

    def load(self, name: str) -> Skill:
        """Read and parse a skill without rendering its body."""
        path = self.find(name)
        if path is None:
            raise NotFoundError(f"skill or prompt not found: {name}")

        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise NotFoundError(f"failed to read {path}: {e}") from e

        parsed = parse_frontmatter(content)
        if parsed.kind == "malformed":
            raise InvalidFormatError(f"{path}: {parsed.error}")

        meta = parsed.metadata
        is_prompt = path.name != "SKILL.md"
        description = meta.get("description", "")
        if not description and is_prompt:
            description = parsed.body.split("\n", 1)[0].strip()
        return Skill(
            name=meta.get("name") or name.removesuffix(".txt"),
            description=description,
            trigger=meta.get("trigger", ""),
            kind=meta.get("type") or "prompt",
            body=parsed.body,
            path=path,
        )

    def resolve(self, name: str, arguments: str = "") -> Skill:
        """Load a skill and render its body with arguments and command expansion."""
        skill = self.load(name)
        body = interpolate(skill.body, arguments)
        skill.body = expand_commands(body, cwd=self.base_dir)
        return skill

    def list_skills(self) -> dict[str, Skill]:
        """Every resolvable entry keyed by file name; earlier roots shadow later ones."""
        catalog: dict[str, Skill] = {}
        for kind, directory in self.search_dirs():
            if not directory.is_dir():
                continue
            try:
                entries = sorted(directory.iterdir())
            except OSError:
                continue
            for entry in entries:
                if kind == "skills":
                    if not (entry / "SKILL.md").is_file():
                        continue
                    key = entry.name
                else:
                    if entry.suffix != ".txt" or not entry.is_file():
                        continue
                    key = entry.stem
                if key in catalog:
                    if self.verbose:
                        logger.debug("%s in %s shadowed by %s", key, entry, catalog[key].path)
                    continue
                try:
                    skill = self.load(key)
                except (NotFoundError, InvalidFormatError) as e:
                    if self.verbose:
                        fmt.warning(f"skipping {entry}: {e}")
                    continue
                if len(skill.description) > MAX_SKILL_DESCRIPTION_CHARS:
                    skill.description = skill.description[:MAX_SKILL_DESCRIPTION_CHARS]
                catalog[key] = skill
        return catalog

    def script_paths(self) -> dict[str, Path]:
        """Executable files under the local then global ``scripts/`` directory.

        Keyed by file name; a local script shadows a global one of the same name.
        """
        found: dict[str, Path] = {}
        for directory in (self.local_dir / "scripts", self.global_dir / "scripts"):
            if not directory.is_dir():
                continue
            try:
                entries = sorted(directory.iterdir())
            except OSError:
                continue
            for entry in entries:
                if entry.name.startswith(".") or entry.name in found:
                    continue
                if entry.is_file() and os.access(entry, os.X_OK):
                    found[entry.name] = entry
        return found

    def list_scripts(self) -> dict[str, Script]:
        """Discovered scripts with the first line of their --help output."""
        return {
            name: Script(name, script_description(path, self.base_dir), path)
            for name, path in self.script_paths().items()
        }


def format_skill_catalog(catalog: dict[str, Skill]) -> str:
    """Format the catalog for inclusion in the instructions."""
    names = [n for n in sorted(catalog) if n != SYSTEM_SKILL]
    if not names:
        return ""

    lines = [
        "<available-skills>",
        "The following skills are available. To load one, call the `load_skill` tool with its name.",
        "",
    ]
    for name in names:
        description = catalog[name].description
        lines.append(f"- {name}: {description}" if description else f"- {name}")
    lines.append("</available-skills>")
    return "\n".join(lines)


def format_script_catalog(scripts: dict[str, Script]) -> str:
    """Format helper scripts for inclusion in the instructions."""
    if not scripts:
        return ""

    lines = [
        "<available-scripts>",
        "The following helper scripts can be run with the `run_shell` tool by path.",
        "",
    ]
    for name in sorted(scripts):
        script = scripts[name]
        entry = f"- {name} ({script.path})"
        lines.append(f"{entry}: {script.description}" if script.description else entry)
    lines.append("</available-scripts>")
    return "\n".join(lines)
