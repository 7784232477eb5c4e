"""Tools exposed to the model: schemas, parameter checks and implementations.

Every tool is invoked by name with a parameter mapping and returns either a
plain value or ``{"error": "..."}``. Nothing raised inside a tool escapes
Tool.__call__.
"""

import json
import os
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from . import fmt
from .errors import AgentError, ExecutionError, MissingParameterError
from .skills import SkillResolver

DEFAULT_TIMEOUT = 120
MAX_TIMEOUT = 600
MAX_OUTPUT = 1024 * 1024  # 1MB
MAX_ARG_LOG = 1000
_KILL_WAIT_TIMEOUT = 5


@dataclass
class ToolContext:
    """What tools need from the live shell."""

    base_dir: str = "."
    resolver: SkillResolver | None = None
    current_session: Callable[[], Any] | None = None
    llm_kwargs: dict = field(default_factory=dict)
    max_turns: int = 50
    namespace: dict = field(default_factory=dict)
    verbose: bool = True
    prices: dict | None = None


class Tool:
    """Base capability. Subclasses set the schema attributes and implement execute()."""

    name: str = ""
    description: str = ""
    parameters: dict = {}
    required: tuple[str, ...] = ()
    allow_empty: tuple[str, ...] = ()

    def __init__(self, ctx: ToolContext):
        self.ctx = ctx

    def schema(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": self.parameters,
                    "required": list(self.required),
                },
            },
        }

    def missing(self, args: dict) -> list[str]:
        absent = []
        for key in self.required:
            value = args.get(key)
            if value is None:
                absent.append(key)
            elif isinstance(value, str) and not value.strip() and key not in self.allow_empty:
                absent.append(key)
        return absent

    def __call__(self, args: dict) -> Any:
        if not isinstance(args, dict):
            return {"error": "tool arguments must be a JSON object"}
        absent = self.missing(args)
        if absent:
            return {"error": str(MissingParameterError(absent))}
        known = {k: v for k, v in args.items() if k in self.parameters}
        try:
            return self.execute(**known)
        except AgentError as e:
            return {"error": str(e)}
        except Exception as e:
            return {"error": f"{type(e).__name__} - {e}"}

    def execute(self, **kwargs) -> Any:
        raise NotImplementedError


def _resolve_path(path: str, base_dir: str) -> Path:
    p = Path(path).expanduser()
    if not p.is_absolute():
        p = Path(base_dir) / p
    return p


class EditFile(Tool):
    name = "edit_file"
    description = (
        "Edit a file by replacing the first occurrence of `old` with `new`. "
        "`old` must match exactly; include surrounding lines for context. "
        "Set `create` to create the file (empty) before editing; an empty "
        "`old` is accepted only when the file is empty."
    )
    parameters = {
        "path": {"type": "string", "description": "Path of the file to edit."},
        "old": {
            "type": "string",
            "description": "Exact text to find.",
        },
        "new": {"type": "string", "description": "Replacement text."},
        "create": {
            "type": "boolean",
            "description": "Create the file if it doesn't exist.",
            "default": False,
        },
    }
    required = ("path", "old", "new")
    allow_empty = ("old", "new")

    def execute(self, path, old, new, create=False):
        target = _resolve_path(path, self.ctx.base_dir)
        if create and not target.exists():
            target.parent.mkdir(parents=True, exist_ok=True)
            target.touch()

        if not target.is_file():
            return {"error": f"file not found: {path}"}

        content = target.read_text(encoding="utf-8")
        if old == "":
            if content:
                return {"error": "`old` must not be empty unless the file is empty"}
            updated = new
        elif old not in content:
            return {"error": f"{old!r} text not found in {path}"}
        else:
            updated = content.replace(old, new, 1)

        target.write_text(updated, encoding="utf-8")
        return "ok"


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit."""
    if sys.platform != "win32":
        import signal

        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    try:
        proc.kill()
    except OSError:
        pass
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass


def _capture_process(proc: subprocess.Popen, timeout: int) -> str:
    """Collect combined output from a running subprocess with timeout enforcement."""
    chunks: list[bytes] = []
    total = 0
    truncated = False

    def _reader():
        nonlocal total, truncated
        try:
            while True:
                chunk = proc.stdout.read(4096)
                if not chunk:
                    break
                if truncated:
                    continue  # keep draining
                chunks.append(chunk[: MAX_OUTPUT - total])
                total += len(chunks[-1])
                if total >= MAX_OUTPUT:
                    truncated = True
        except (OSError, ValueError):
            pass

    reader_thread = threading.Thread(target=_reader, daemon=True)
    reader_thread.start()

    timed_out = False
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        _kill_process_tree(proc)
    except BaseException:
        _kill_process_tree(proc)
        raise

    reader_thread.join(timeout=2)
    proc.stdout.close()

    raw_output = b"".join(chunks).decode("utf-8", errors="replace")
    parts: list[str] = []
    if timed_out:
        parts.append(f"error: command timed out after {timeout}s")
    elif proc.returncode != 0:
        parts.append(f"Exit code: {proc.returncode}")
    if raw_output:
        parts.append(raw_output)
    if truncated:
        parts.append("[output truncated at 1MB]")
    return "\n".join(parts)


def run_shell(command: str, base_dir: str = ".", timeout: int = DEFAULT_TIMEOUT) -> str:
    """Run a shell string and return stdout and stderr combined.

    Raises ExecutionError when the shell cannot be started.
    """
    timeout = max(1, min(int(timeout), MAX_TIMEOUT))
    if sys.platform == "win32":
        shell_cmd = ["cmd.exe", "/c", command]
    else:
        shell_cmd = ["/bin/sh", "-c", command]

    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        cwd=base_dir,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True
    try:
        proc = subprocess.Popen(shell_cmd, **popen_kwargs)
    except OSError as e:
        raise ExecutionError(f"failed to start shell command: {e}") from e
    return _capture_process(proc, timeout)


class RunShell(Tool):
    name = "run_shell"
    description = (
        "Run a shell command (via /bin/sh -c) in the project directory and "
        "return its combined stdout and stderr. Not sandboxed."
    )
    parameters = {
        "command": {"type": "string", "description": "The shell command to run."},
        "timeout": {
            "type": "integer",
            "description": f"Timeout in seconds (1-{MAX_TIMEOUT}). Defaults to {DEFAULT_TIMEOUT}.",
            "default": DEFAULT_TIMEOUT,
        },
    }
    required = ("command",)

    def execute(self, command, timeout=DEFAULT_TIMEOUT):
        output = run_shell(command, self.ctx.base_dir, timeout)
        if self.ctx.verbose and output:
            fmt.tool_output(output)
        return output


class LoadSkill(Tool):
    name = "load_skill"
    description = (
        "Load a skill or prompt by name and return its rendered instructions. "
        "`arguments` fills $ARGUMENTS and $1..$N in the template."
    )
    parameters = {
        "name": {"type": "string", "description": "Skill or prompt name."},
        "arguments": {
            "type": "string",
            "description": "Argument string passed to the template.",
            "default": "",
        },
    }
    required = ("name",)

    def execute(self, name, arguments=""):
        if self.ctx.resolver is None:
            return {"error": "skills are disabled"}
        skill = self.ctx.resolver.resolve(name, arguments or "")
        return skill.body


class Introspect(Tool):
    """Evaluates Python inside the running marl process with full privileges.

    This is a deliberate full-trust capability with no sandbox. It is only
    registered when introspection is explicitly allowed.
    """

    name = "introspect"
    description = (
        "Evaluate Python code inside the running agent process and return the "
        "repr() of the result. The namespace exposes `shell` (the live command "
        "shell, with `shell.session`). Statements are executed; expressions are "
        "evaluated."
    )
    parameters = {
        "code": {"type": "string", "description": "Python expression or statements."},
    }
    required = ("code",)

    def execute(self, code):
        namespace = self.ctx.namespace
        try:
            compiled = compile(code, "<introspect>", "eval")
        except SyntaxError:
            exec(compile(code, "<introspect>", "exec"), namespace)
            return repr(None)
        return repr(eval(compiled, namespace))


class WebSearch(Tool):
    name = "web_search"
    description = "Search the web and return a summarized answer with sources."
    parameters = {
        "query": {"type": "string", "description": "The search query."},
    }
    required = ("query",)

    def execute(self, query):
        from .llm import web_search

        session = self.ctx.current_session() if self.ctx.current_session else None
        if session is None:
            return {"error": "no live session to search with"}
        return web_search(
            query, provider=session.provider, model=session.model, **self.ctx.llm_kwargs
        )


class SubAgent(Tool):
    name = "sub_agent"
    description = (
        "Delegate a self-contained task to an independent helper conversation "
        "with file editing, shell and web search tools. Returns its final answer. "
        "Optionally seed it with a named prompt via `use_prompt`."
    )
    parameters = {
        "task": {"type": "string", "description": "The task to perform."},
        "use_prompt": {
            "type": "string",
            "description": "Name of a skill or prompt whose body becomes the helper's instructions.",
        },
    }
    required = ("task",)

    def execute(self, task, use_prompt=None):
        from .agent import run_agent_loop
        from .session import Session

        parent = self.ctx.current_session() if self.ctx.current_session else None
        if parent is None:
            return {"error": "no live session to derive a sub-agent from"}

        instructions = None
        if use_prompt:
            if self.ctx.resolver is None:
                return {"error": "skills are disabled"}
            body = self.ctx.resolver.resolve(use_prompt).body
            instructions = body.split("\n", 1)[1].strip() if "\n" in body else ""

        child = Session.create(
            model=parent.model,
            provider=parent.provider,
            instructions=instructions or None,
            persist=False,
        )
        child_ctx = ToolContext(
            base_dir=self.ctx.base_dir,
            resolver=self.ctx.resolver,
            current_session=lambda: child,
            llm_kwargs=self.ctx.llm_kwargs,
            max_turns=self.ctx.max_turns,
            verbose=self.ctx.verbose,
            prices=self.ctx.prices,
        )
        registry = ToolRegistry([EditFile(child_ctx), RunShell(child_ctx), WebSearch(child_ctx)])
        answer = run_agent_loop(
            child,
            registry,
            task,
            llm_kwargs=self.ctx.llm_kwargs,
            max_turns=self.ctx.max_turns,
            verbose=self.ctx.verbose,
            prices=self.ctx.prices,
            stream=False,
        )
        return answer or ""


class ToolRegistry:
    """Name-indexed set of tools offered to the model for one session."""

    def __init__(self, tools: list[Tool]):
        self._tools = {t.name: t for t in tools}

    def names(self) -> list[str]:
        return list(self._tools)

    def schemas(self) -> list[dict]:
        return [t.schema() for t in self._tools.values()]

    def invoke(self, name: str, args: dict) -> Any:
        tool = self._tools.get(name)
        if tool is None:
            return {"error": f"unknown tool: {name}"}
        return tool(args)


def build_registry(
    ctx: ToolContext, *, introspect: bool = False, sub_agent: bool = True
) -> ToolRegistry:
    tools: list[Tool] = [EditFile(ctx), RunShell(ctx), WebSearch(ctx)]
    if ctx.resolver is not None:
        tools.append(LoadSkill(ctx))
    if introspect:
        tools.append(Introspect(ctx))
    if sub_agent:
        tools.append(SubAgent(ctx))
    return ToolRegistry(tools)


def result_text(result: Any) -> str:
    """Serialize a tool result for a tool-role message."""
    if isinstance(result, str):
        return result
    try:
        return json.dumps(result, ensure_ascii=False)
    except (TypeError, ValueError):
        return str(result)


def handle_tool_call(tool_call: dict, registry: ToolRegistry, verbose: bool) -> dict:
    """Execute one model-requested tool call and return the tool-role message dict."""
    fn = tool_call.get("function") or {}
    name = fn.get("name", "")
    raw_args = fn.get("arguments") or "{}"

    try:
        parsed_args = json.loads(raw_args) if isinstance(raw_args, str) else raw_args
    except (json.JSONDecodeError, TypeError) as e:
        if verbose:
            fmt.tool_error(name, f"invalid JSON: {e}")
        return {
            "role": "tool",
            "tool_call_id": tool_call.get("id"),
            "name": name,
            "content": result_text({"error": f"invalid JSON in tool arguments: {e}"}),
        }

    if verbose:
        pretty = json.dumps(parsed_args, indent=2)
        if len(pretty) > MAX_ARG_LOG:
            pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
        fmt.tool_call(name, pretty)

    t0 = time.monotonic()
    result = registry.invoke(name, parsed_args)
    elapsed = time.monotonic() - t0

    content = result_text(result)
    if verbose:
        if isinstance(result, dict) and "error" in result:
            fmt.tool_error(name, str(result["error"]))
        else:
            fmt.tool_result(name, elapsed, content[:500])

    return {
        "role": "tool",
        "tool_call_id": tool_call.get("id"),
        "name": name,
        "content": content,
    }
