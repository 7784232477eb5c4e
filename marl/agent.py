"""Command shell: turn loop, line dispatcher, REPL and CLI entry point."""

import argparse
import os
import sys
from dataclasses import asdict
from datetime import datetime
from importlib import metadata
from pathlib import Path

from . import fmt, persistence
from .config import _UNSET, apply_config_to_args, generate_config, load_config
from .errors import AgentError, ExecutionError, InvalidFormatError, NotFoundError
from .llm import Completion, call_llm
from .metrics import price_for, show_status, status_line, track
from .session import Session
from .skills import (
    SYSTEM_SKILL,
    SkillResolver,
    format_script_catalog,
    format_skill_catalog,
)
from .tools import (
    ToolContext,
    ToolRegistry,
    build_registry,
    handle_tool_call,
    result_text,
    run_shell,
)
from .transcript import Message, Transcript

DATA_DIR = ".marl"
MAX_HISTORY_SIZE = 5 * 1024 * 1024  # 5MB

DEFAULT_INSTRUCTIONS = (
    "You are a helpful command-line assistant working alongside a human operator. "
    "Use the available tools to inspect and change the project when needed, and "
    "answer concisely."
)

COMMANDS_HELP = (
    "Available commands:\n"
    "  /help                      Show this help message\n"
    "  /status                    Show session metrics\n"
    "  /skills                    List available skills and prompts\n"
    "  /new, /clear               Start a fresh session\n"
    "  /resume [id]               Resume a saved session, or list saved ids\n"
    "  /model <provider>/<model>  Switch model, keeping the conversation\n"
    "  /<name> [args]             Run a skill or prompt\n"
    "  !<command>                 Run a shell command and add its output to the conversation\n"
    "  /exit, /quit               Exit"
)


def append_history(base_dir: str, line: str) -> None:
    """Append one raw input line to .marl/history."""
    history_path = Path(base_dir).resolve() / DATA_DIR / "history"
    try:
        history_path.parent.mkdir(parents=True, exist_ok=True)
        current_size = history_path.stat().st_size if history_path.exists() else 0
        if current_size >= MAX_HISTORY_SIZE:
            fmt.warning("history file at capacity, skipping write")
            return
        with history_path.open("a", encoding="utf-8") as f:
            f.write(line.replace("\n", "\\n") + "\n")
    except OSError:
        fmt.warning("failed to write history entry")


def build_instructions(
    base_dir: str,
    resolver: SkillResolver | None,
    configured: str | None = None,
    verbose: bool = False,
) -> str:
    """Assemble the system message text.

    Configured instructions win, then a `system` skill, then the built-in
    default. The working directory and date follow, then the skill and
    helper script catalogs.
    """
    text = configured
    catalog: dict = {}
    scripts: dict = {}
    if resolver is not None:
        if text is None:
            try:
                text = resolver.resolve(SYSTEM_SKILL).body
                if verbose:
                    fmt.info(f"instructions loaded from {SYSTEM_SKILL} skill")
            except NotFoundError:
                pass
            except InvalidFormatError as e:
                fmt.warning(str(e))
        catalog = resolver.list_skills()
        scripts = resolver.list_scripts()

    parts = [text or DEFAULT_INSTRUCTIONS]
    parts.append(
        f"Current directory: {Path(base_dir).resolve()}\n"
        f"Current date and time: {datetime.now().strftime('%Y-%m-%d %H:%M')}"
    )
    skills_text = format_skill_catalog(catalog)
    if skills_text:
        parts.append(skills_text)
    scripts_text = format_script_catalog(scripts)
    if scripts_text:
        parts.append(scripts_text)
    return "\n\n".join(parts)


def _close_tool_calls(transcript: Transcript, tool_calls: list[dict]) -> None:
    """Answer unanswered tool calls with an error so the transcript stays replayable."""
    for tool_call in tool_calls:
        transcript.append(
            Message(
                "tool",
                result_text({"error": "interrupted"}),
                tool_call_id=tool_call.get("id"),
                name=(tool_call.get("function") or {}).get("name", ""),
            )
        )


def run_agent_loop(
    session: Session,
    registry: ToolRegistry,
    user_content: str | None,
    *,
    llm_kwargs: dict,
    max_turns: int,
    verbose: bool,
    prices: dict | None = None,
    stream: bool = True,
) -> str | None:
    """Run model calls and tool calls until a final answer or max turns.

    Appends the user message, then every assistant and tool message, to the
    session transcript. Streamed text goes to stdout as it arrives. Returns
    the final assistant text (the last one seen when turns run out).
    """
    transcript = session.transcript
    if user_content is not None:
        transcript.append(Message("user", user_content))

    price = price_for(session.model, session.provider, prices)
    tools = registry.schemas()

    for _ in range(max_turns):
        completion = None
        printed = False
        for item in call_llm(
            session.provider,
            session.model,
            transcript.to_api(),
            tools or None,
            stream=stream,
            **llm_kwargs,
        ):
            if isinstance(item, Completion):
                completion = item
            elif stream:
                sys.stdout.write(item)
                sys.stdout.flush()
                printed = True
        if printed:
            sys.stdout.write("\n")
            sys.stdout.flush()
        if completion is None:
            raise AgentError("LLM call failed: no completion returned")

        track(session.metrics, completion.usage, price)
        transcript.append(
            Message(
                "assistant",
                completion.content,
                tool_calls=completion.tool_calls or None,
                usage={
                    k: v for k, v in asdict(completion.usage).items() if k != "tool_call"
                },
            )
        )

        if not completion.tool_calls:
            return completion.content

        for i, tool_call in enumerate(completion.tool_calls):
            try:
                tool_msg = handle_tool_call(tool_call, registry, verbose)
            except KeyboardInterrupt:
                _close_tool_calls(transcript, completion.tool_calls[i:])
                raise
            transcript.append(
                Message(
                    "tool",
                    tool_msg["content"],
                    tool_call_id=tool_msg["tool_call_id"],
                    name=tool_msg["name"],
                )
            )

    fmt.warning("max turns reached for this question.")
    return transcript.last_assistant_text()


class Shell:
    """Routes each input line to a built-in command, the shell, a skill or the model.

    Holds the one live Session. Commands that replace it assign a new Session
    to ``self.session`` in a single step.
    """

    def __init__(
        self,
        session: Session,
        *,
        base_dir: str = ".",
        resolver: SkillResolver | None = None,
        llm_kwargs: dict | None = None,
        max_turns: int = 50,
        verbose: bool = True,
        prices: dict | None = None,
        no_history: bool = False,
        allow_introspect: bool = False,
        stream: bool = True,
    ):
        self.session = session
        self.base_dir = base_dir
        self.resolver = resolver
        self.llm_kwargs = llm_kwargs or {}
        self.max_turns = max_turns
        self.verbose = verbose
        self.prices = prices
        self.no_history = no_history
        self.stream = stream
        self.namespace: dict = {"shell": self}
        self.ctx = ToolContext(
            base_dir=base_dir,
            resolver=resolver,
            current_session=lambda: self.session,
            llm_kwargs=self.llm_kwargs,
            max_turns=max_turns,
            namespace=self.namespace,
            verbose=verbose,
            prices=prices,
        )
        self.registry = build_registry(self.ctx, introspect=allow_introspect)

    # -- Dispatch ------------------------------------------------------------

    def handle_line(self, line: str) -> bool:
        """Dispatch one input line. Returns False when the shell should exit."""
        line = line.strip()
        if not line:
            return True

        if not self.no_history:
            append_history(self.base_dir, line)

        if line in ("/exit", "/quit"):
            return False

        if line.startswith("!"):
            self.shell_passthrough(line[1:].strip())
            return True

        if not line.startswith("/"):
            self.ask(line)
            return True

        cmd, _, arg = line.partition(" ")
        arg = arg.strip()

        if cmd in ("/new", "/clear"):
            self.new_session()
        elif cmd == "/help":
            fmt.info(COMMANDS_HELP)
        elif cmd == "/status":
            show_status(
                self.session.id,
                self.session.provider,
                self.session.model,
                self.session.metrics,
            )
        elif cmd == "/skills":
            self.show_skills()
        elif cmd == "/resume":
            if arg:
                self.resume(arg)
            else:
                self.list_saved()
        elif cmd == "/model":
            self.switch_model(arg)
        else:
            self.run_skill(cmd[1:], arg)
        return True

    # -- Handlers ------------------------------------------------------------

    def new_session(self) -> None:
        self.session = self.session.renewed()
        fmt.success("context cleared")

    def resume(self, session_id: str) -> bool:
        """Swap in a saved session. On failure the live session is kept."""
        try:
            loaded = persistence.load(
                session_id, self.base_dir, persist=self.session.persist
            )
        except AgentError as e:
            fmt.error(f"failed to load chat {session_id}: {e}")
            return False
        self.session = loaded
        fmt.success(f"Chat loaded ({len(loaded.transcript)} messages)")
        return True

    def list_saved(self) -> None:
        ids = persistence.list_sessions(self.base_dir)
        if not ids:
            fmt.info("no saved sessions")
            return
        for session_id in ids:
            print(session_id)

    def switch_model(self, arg: str) -> None:
        if not arg:
            fmt.info(f"current model: {self.session.model_string}")
            fmt.info("usage: /model <provider>/<model>")
            return
        if "/" in arg:
            provider, model = arg.split("/", 1)
        else:
            provider, model = self.session.provider, arg
        if not provider or not model:
            fmt.error(f"invalid model: {arg!r}")
            return
        self.session = self.session.with_model(provider, model)
        fmt.success(f"Switched to {provider}/{model}")

    def shell_passthrough(self, command: str) -> None:
        """Run command, show its output and record both as one user message."""
        if not command:
            fmt.error("no command given")
            return
        try:
            output = run_shell(command, self.base_dir)
        except ExecutionError as e:
            fmt.error(str(e))
            return
        if output:
            print(output.rstrip("\n"))
        self.session.transcript.append(Message("user", f"{command}\n\n{output}"))
        self.save()

    def run_skill(self, name: str, arguments: str) -> None:
        if self.resolver is None:
            fmt.error("skills are disabled")
            return
        try:
            skill = self.resolver.resolve(name, arguments)
        except NotFoundError:
            fmt.error(f"skill or prompt not found: {name}")
            return
        except InvalidFormatError as e:
            fmt.error(str(e))
            return
        if self.verbose:
            fmt.skill_loaded(skill.name)
        self.ask(skill.body)

    def show_skills(self) -> None:
        if self.resolver is None:
            fmt.info("skills are disabled")
            return
        catalog = self.resolver.list_skills()
        if not catalog:
            fmt.info("no skills or prompts found")
            return
        rows = [(name, catalog[name].description) for name in sorted(catalog)]
        fmt.status_box("Skills", rows, f"{len(rows)} available")

    def ask(self, text: str) -> str | None:
        """Forward text to the model as a new user turn."""
        try:
            answer = run_agent_loop(
                self.session,
                self.registry,
                text,
                llm_kwargs=self.llm_kwargs,
                max_turns=self.max_turns,
                verbose=self.verbose,
                prices=self.prices,
                stream=self.stream,
            )
        finally:
            self.save()
        if self.verbose:
            fmt.status_line(
                status_line(
                    self.session.provider, self.session.model, self.session.metrics
                )
            )
        return answer

    def save(self) -> None:
        if not self.session.persist:
            return
        try:
            persistence.save(self.session, self.base_dir)
        except AgentError as e:
            fmt.warning(f"failed to save session {self.session.id}: {e}")


def repl_loop(shell: Shell) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = os.path.join(shell.base_dir, DATA_DIR, "repl_history")
    os.makedirs(os.path.dirname(history_path), exist_ok=True)
    prompt_session = PromptSession(
        history=FileHistory(history_path),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "marl> ")])

    if shell.verbose:
        scripts = len(shell.resolver.script_paths()) if shell.resolver else 0
        fmt.repl_banner(shell.session.provider, shell.session.model, scripts)

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = prompt_session.prompt(prompt_text)
        except KeyboardInterrupt:
            continue
        except EOFError:
            print(file=sys.stderr)
            break

        try:
            if not shell.handle_line(line):
                break
        except KeyboardInterrupt:
            fmt.warning("interrupted, question aborted.")
        except AgentError as e:
            fmt.error(str(e))


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="marl",
        usage="%(prog)s [options] [input ...]",
        description=(
            "Interactive command shell for a language model with file editing, "
            "shell, skill and web search tools. With input words, runs them as "
            "one line and exits."
        ),
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "words",
        nargs="*",
        help="Run these words as a single input line, then exit.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented configuration template and exit.",
    )
    parser.add_argument(
        "--provider",
        default=_UNSET,
        help="LiteLLM provider prefix (default: $MARL_PROVIDER or gemini).",
    )
    parser.add_argument(
        "--model",
        default=_UNSET,
        help="Model identifier (default: $MARL_MODEL or gemini-2.0-flash).",
    )
    parser.add_argument(
        "--api-key",
        default=_UNSET,
        help="API key for the provider (overrides env var).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Custom API base URL.",
    )
    parser.add_argument(
        "--max-output-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens per response (default: provider default).",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: provider default).",
    )
    parser.add_argument(
        "--max-turns",
        type=int,
        default=_UNSET,
        help="Maximum model calls per input line (default: 50).",
    )
    parser.add_argument(
        "--instructions",
        default=_UNSET,
        help="System instructions (default: the `system` skill, else built-in text).",
    )
    parser.add_argument(
        "--resume",
        metavar="ID",
        default=None,
        help="Resume a saved session at startup.",
    )
    parser.add_argument(
        "--no-persist",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Don't save the session under .marl/chats/ (also $MARL_NO_PERSIST).",
    )
    parser.add_argument(
        "--no-history",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Don't append input lines to .marl/history.",
    )
    parser.add_argument(
        "--skills-dir",
        action="append",
        default=None,
        help="Additional directory to scan for skills (can be repeated).",
    )
    parser.add_argument(
        "--no-skills",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Don't load or discover any skills or prompts.",
    )
    parser.add_argument(
        "--allow-introspect",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Offer the unsandboxed Python introspection tool to the model.",
    )
    parser.add_argument(
        "--base-dir",
        default=".",
        help="Project directory for tools, skills and session data (default: .).",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Suppress diagnostics; only print answers.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("marl")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=False))
        sys.exit(0)

    try:
        config = load_config(args.base_dir)
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)
    apply_config_to_args(args, config)

    args.verbose = not args.quiet
    fmt.init(color=args.color, no_color=args.no_color)

    if args.max_turns < 1:
        parser.error("--max-turns must be at least 1")
    if not Path(args.base_dir).is_dir():
        parser.error(f"--base-dir is not a directory: {args.base_dir}")

    try:
        _run_main(args)
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)


def _run_main(args):
    base_dir = args.base_dir

    resolver = None
    if not args.no_skills:
        resolver = SkillResolver(base_dir, args.skills_dir, verbose=args.verbose)

    instructions = build_instructions(
        base_dir, resolver, args.instructions, verbose=args.verbose
    )
    session = Session.create(
        model=args.model,
        provider=args.provider,
        instructions=instructions,
        persist=not args.no_persist,
    )
    llm_kwargs = {
        "api_key": args.api_key,
        "base_url": args.base_url,
        "max_output_tokens": args.max_output_tokens,
        "temperature": args.temperature,
    }
    shell = Shell(
        session,
        base_dir=base_dir,
        resolver=resolver,
        llm_kwargs=llm_kwargs,
        max_turns=args.max_turns,
        verbose=args.verbose,
        prices=args.prices,
        no_history=args.no_history,
        allow_introspect=args.allow_introspect,
    )

    if args.resume:
        shell.resume(args.resume)

    if args.words:
        shell.handle_line(" ".join(args.words))
        return

    repl_loop(shell)


if __name__ == "__main__":
    main()
