"""
tether.agent.renderer — Rich terminal rendering for the tether CLI.

Streaming replies, REPL input, token usage and error panels.
"""

from __future__ import annotations

import sys

from prompt_toolkit import PromptSession
from prompt_toolkit.completion import WordCompleter
from prompt_toolkit.styles import Style as PTStyle
from rich.console import Console
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.table import Table
from rich.text import Text
from rich import box

from tether.core.errors import AIError

THEME = {
    "primary": "#1F6F8B",       # Teal: borders, accents
    "primary_dim": "#174E61",   # Muted teal: secondary borders
    "primary_bright": "#3FA7C9",  # Bright teal: titles
    "accent": "#F2A541",        # Amber: user prompt
    "text": "#DDE7EA",
    "text_dim": "#7F9399",
    "success": "#55AA55",
    "warning": "#CCAA33",
    "error": "#FF3333",
    "tool_name": "#66B2CC",
}

console = Console(force_terminal=sys.stdout.isatty())


def render_banner(version: str, provider: str, model: str) -> None:
    """Print the chat startup banner."""
    content = Text()
    content.append("tether", style=f"bold {THEME['primary_bright']}")
    content.append(f"  v{version}\n", style=THEME["text_dim"])
    content.append(f"{provider}", style=THEME["tool_name"])
    content.append(" / ", style=THEME["text_dim"])
    content.append(model, style=THEME["text"])
    content.append("\n\n/undo  /clear  /usage  /exit", style=THEME["text_dim"])
    console.print(Panel(content, border_style=THEME["primary"], padding=(0, 2)))


SLASH_COMMANDS = ["/undo", "/clear", "/usage", "/exit", "/quit"]


async def get_input_with_completion(turn: int) -> str:
    """
    Read one line of user input with tab completion for slash commands.
    Uses prompt_async() so the REPL's event loop keeps running.
    Ctrl+C / Ctrl+D at the prompt are reported as ``/exit``.
    """
    completer = WordCompleter(SLASH_COMMANDS, sentence=True)
    style = PTStyle.from_dict({"prompt": THEME["accent"]})
    session: PromptSession[str] = PromptSession(
        completer=completer,
        style=style,
        complete_while_typing=True,
    )

    console.print(
        f"[bold {THEME['accent']}]you[/bold {THEME['accent']}]"
        f"[{THEME['text_dim']}] (turn {turn})[/{THEME['text_dim']}]"
    )
    try:
        line = await session.prompt_async([("class:prompt", "› ")])
    except (EOFError, KeyboardInterrupt):
        return "/exit"
    return line.strip()


def render_error(msg: str) -> None:
    """Show an error message."""
    console.print(f"  [{THEME['error']}]✗[/{THEME['error']}] {msg}")


def render_success(msg: str) -> None:
    """Show a success message."""
    console.print(f"  [{THEME['success']}]✓[/{THEME['success']}] {msg}")


def render_info(msg: str) -> None:
    """Show an info message."""
    console.print(f"  [{THEME['text_dim']}]→[/{THEME['text_dim']}] {msg}")


def render_ai_error(error: AIError) -> None:
    """Show a typed error with its category and recovery hint."""
    render_error(f"[{THEME['text_dim']}]{error.category.display_name}:[/{THEME['text_dim']}] {error.description}")
    hint = error.recovery_suggestion
    if hint:
        render_info(hint)


def render_token_usage(
    prompt_tokens: int,
    completion_tokens: int,
    cached: int = 0,
    turn_cost: float = 0.0,
    session_cost: float = 0.0,
) -> None:
    """Show token usage and cost after a response."""
    parts = [f"[{THEME['text_dim']}]tokens: {prompt_tokens} in"]
    if cached > 0:
        pct = (cached / max(prompt_tokens, 1)) * 100
        parts.append(f" ({cached} cached, {pct:.0f}%)")
    parts.append(f" → {completion_tokens} out")
    if session_cost > 0:
        parts.append(f"  │  turn: ${turn_cost:.4f}  │  session: ${session_cost:.4f}")
    parts.append(f"[/{THEME['text_dim']}]")
    console.print(f"  {''.join(parts)}")


def render_usage_summary(summary: str) -> None:
    """Display the session usage summary."""
    console.print(
        Panel(
            summary,
            border_style=THEME["primary_dim"],
            title=f"[bold {THEME['primary_bright']}]Usage[/bold {THEME['primary_bright']}]",
            padding=(0, 2),
        )
    )


def render_providers(rows: list[tuple[str, str, str, bool]]) -> None:
    """Table of (provider, default model, key env var, available)."""
    table = Table(box=box.SIMPLE_HEAVY, border_style=THEME["primary_dim"])
    table.add_column("Provider", style=THEME["tool_name"])
    table.add_column("Default model", style=THEME["text"])
    table.add_column("API key", style=THEME["text_dim"])
    table.add_column("Ready")
    for name, model, env_key, available in rows:
        mark = (
            f"[{THEME['success']}]✓[/{THEME['success']}]"
            if available else f"[{THEME['error']}]✗[/{THEME['error']}]"
        )
        table.add_row(name, model, env_key or "—", mark)
    console.print(table)


def render_markdown_response(text: str) -> None:
    """Render a complete (non-streamed) reply."""
    if not text.strip():
        return
    console.print(
        Panel(
            Markdown(text),
            border_style=THEME["primary_dim"],
            title=f"[bold {THEME['primary_bright']}]Assistant[/bold {THEME['primary_bright']}]",
            title_align="left",
            padding=(1, 2),
        )
    )


# ---------------------------------------------------------------------------
# Streaming Response Renderer
# ---------------------------------------------------------------------------

class StreamingRenderer:
    """
    Renders a streamed reply token-by-token using a Rich Live display,
    then replaces it with a Markdown panel.

    Usage:
        renderer = StreamingRenderer()
        renderer.start()
        renderer.add_text("Hello ")
        renderer.add_text("world!")
        response_text = renderer.finish()
    """

    # Characters to accumulate before switching from raw text to markdown
    _MD_THRESHOLD = 80

    def __init__(self) -> None:
        self._buffer = ""
        self._live: Live | None = None
        self._started = False

    def start(self) -> None:
        console.print()
        self._buffer = ""
        self._live = Live(
            Text("", style=THEME["text_dim"]),
            console=console,
            refresh_per_second=12,
            transient=True,
            vertical_overflow="visible",
        )
        self._live.start()
        self._started = True

    def add_text(self, text: str) -> None:
        if not self._started or self._live is None:
            return
        self._buffer += text
        if len(self._buffer) < self._MD_THRESHOLD:
            self._live.update(Text(self._buffer + "▌"))
        else:
            self._live.update(Markdown(self._buffer + "▌"))

    def finish(self) -> str:
        """Stop the live display and render the final reply.  Returns the full text."""
        if self._live is not None:
            self._live.stop()
            self._live = None
        self._started = False
        render_markdown_response(self._buffer)
        result = self._buffer
        self._buffer = ""
        return result

    def abort(self) -> None:
        """Stop the live display without rendering anything."""
        if self._live is not None:
            self._live.stop()
            self._live = None
        self._started = False
        self._buffer = ""
