"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

_console = Console(stderr=True)

MAX_TOOL_OUTPUT_LINES = 50
TOOL_OUTPUT_TAIL = 40
MAX_PREVIEW_CHARS = 100


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


def _preview(text: str, limit: int = MAX_PREVIEW_CHARS) -> str:
    text = text.replace("\n", " ")
    if len(text) > limit:
        return text[:limit] + "..."
    return text


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, detail: str) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    if detail:
        header.append(f" {_preview(detail)}", style="dim")
    _console.print(header)


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  ✓ {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {_preview(preview, 500)}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def tool_output(output: str) -> None:
    """Show command output to the operator, keeping only the tail of long output."""
    lines = output.splitlines()
    if len(lines) > MAX_TOOL_OUTPUT_LINES:
        hidden = len(lines) - TOOL_OUTPUT_TAIL
        _console.print(Text(f"    ... ({hidden} lines hidden)", style="dim"))
        lines = lines[-TOOL_OUTPUT_TAIL:]
    for line in lines:
        _console.print(Text(f"    {line}", style="dim"))


# -- Session -----------------------------------------------------------------


def skill_loaded(name: str) -> None:
    _console.print(Text(f"  ✓ Loaded '{name}' prompt", style="green"))


def success(msg: str) -> None:
    _console.print(Text(f"  ✓ {msg}", style="green"))


def status_box(title: str, rows: list[tuple[str, str]], footer: str) -> None:
    table = Table.grid(padding=(0, 2))
    table.add_column(style="dim")
    table.add_column()
    for label, value in rows:
        table.add_row(label, escape(value))
    _console.print(
        Panel(table, title=escape(title), subtitle=escape(footer), expand=False)
    )


def status_line(line: str) -> None:
    _console.print(Text(f"  {line}", style="dim cyan"))


# -- Diagnostics -------------------------------------------------------------


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner(provider: str, model: str, scripts: int = 0) -> None:
    _console.print(Text(f"marl {provider}/{model}", style="bold"))
    if scripts:
        noun = "script" if scripts == 1 else "scripts"
        _console.print(Text(f"{scripts} helper {noun} available", style="dim"))
    _console.print(
        Text(
            "Type /exit to quit, /new for fresh context, /help for commands.",
            style="dim",
        )
    )
