"""
tether.cli — Command-line interface.

Usage:
    tether ask "prompt"        One-shot question (add --stream to stream tokens)
    tether chat                Interactive conversation
    tether providers           List providers and whether they are ready
    tether setup               Save the default provider/model
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys

import click
from rich.console import Console

console = Console()


def _setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s — %(message)s",
        datefmt="%H:%M:%S",
    )


def _load_config(provider: str | None, model: str | None):
    from tether.core.config import TetherConfig
    return TetherConfig.load(provider=provider, model=model)


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def main(verbose: bool) -> None:
    """tether — one client for cloud and local language models."""
    _setup_logging(verbose)


# ---------------------------------------------------------------------------
# ask
# ---------------------------------------------------------------------------

@main.command()
@click.argument("prompt")
@click.option("--provider", default=None, help="Provider name (anthropic, openai, ollama, lmstudio).")
@click.option("--model", default=None, help="Model override (uses provider default if empty).")
@click.option("--system", "system_prompt", default=None, help="System prompt.")
@click.option("--stream/--no-stream", default=False, help="Stream tokens as they arrive.")
def ask(prompt: str, provider: str | None, model: str | None, system_prompt: str | None, stream: bool) -> None:
    """Ask a single question and print the reply."""
    try:
        config = _load_config(provider, model)
    except ValueError as exc:
        console.print(f"[red]✗[/red] {exc}")
        sys.exit(1)
    code = asyncio.run(_ask(config, prompt, system_prompt, stream))
    sys.exit(code)


async def _ask(config, prompt: str, system_prompt: str | None, stream: bool) -> int:
    from tether.agent.chat import ChatSession
    from tether.agent.renderer import (
        StreamingRenderer,
        render_ai_error,
        render_markdown_response,
        render_token_usage,
    )
    from tether.core.errors import AIError

    async with config.create_provider() as provider:
        session = ChatSession(provider, config.model, max_tool_call_rounds=config.max_tool_call_rounds)
        if system_prompt:
            session.set_system_prompt(system_prompt)

        try:
            if stream:
                renderer = StreamingRenderer()
                renderer.start()
                try:
                    async for piece in session.stream(prompt):
                        renderer.add_text(piece)
                except BaseException:
                    renderer.abort()
                    raise
                renderer.finish()
            else:
                reply = await session.send(prompt)
                render_markdown_response(reply)
        except AIError as exc:
            render_ai_error(exc)
            return 1

        usage = session.usage
        render_token_usage(
            usage.total_input_tokens,
            usage.total_output_tokens,
            usage.total_cache_read_tokens,
            usage.turn_costs[-1] if usage.turn_costs else 0.0,
            usage.total_cost_usd,
        )
    return 0


# ---------------------------------------------------------------------------
# chat
# ---------------------------------------------------------------------------

@main.command()
@click.option("--provider", default=None, help="Provider name.")
@click.option("--model", default=None, help="Model override.")
@click.option("--system", "system_prompt", default=None, help="System prompt.")
def chat(provider: str | None, model: str | None, system_prompt: str | None) -> None:
    """Start an interactive conversation."""
    try:
        config = _load_config(provider, model)
    except ValueError as exc:
        console.print(f"[red]✗[/red] {exc}")
        sys.exit(1)
    asyncio.run(_chat(config, system_prompt))


async def _chat(config, system_prompt: str | None) -> None:
    from tether import __version__
    from tether.agent.chat import ChatSession
    from tether.agent.renderer import (
        StreamingRenderer,
        get_input_with_completion,
        render_ai_error,
        render_banner,
        render_info,
        render_success,
        render_token_usage,
        render_usage_summary,
    )
    from tether.core.errors import AIError

    async with config.create_provider() as provider:
        await provider.warm_up(config.model)
        session = ChatSession(provider, config.model, max_tool_call_rounds=config.max_tool_call_rounds)
        if system_prompt:
            session.set_system_prompt(system_prompt)
        render_banner(__version__, config.provider, config.model)

        while True:
            text = await get_input_with_completion(session.user_message_count + 1)
            if not text:
                continue

            if text.startswith("/"):
                command = text.lower()
                if command in ("/exit", "/quit"):
                    break
                if command == "/undo":
                    session.undo_last_exchange()
                    render_success("Removed the last exchange")
                elif command == "/clear":
                    session.clear_history()
                    render_success("History cleared")
                elif command == "/usage":
                    render_usage_summary(session.usage.format_summary())
                else:
                    render_info(f"Unknown command: {text}")
                continue

            renderer = StreamingRenderer()
            renderer.start()
            try:
                async for piece in session.stream(text):
                    renderer.add_text(piece)
            except AIError as exc:
                renderer.abort()
                render_ai_error(exc)
                continue
            except asyncio.CancelledError:
                # asyncio.run turns the first Ctrl+C into a cancel of this task;
                # absorb it so only the reply stops (the stream has rolled back)
                current = asyncio.current_task()
                if current is None or current.uncancel() > 0:
                    raise
                renderer.abort()
                render_info("Cancelled")
                continue
            renderer.finish()

            usage = session.usage
            render_token_usage(
                usage.total_input_tokens,
                usage.total_output_tokens,
                usage.total_cache_read_tokens,
                usage.turn_costs[-1] if usage.turn_costs else 0.0,
                usage.total_cost_usd,
            )

        render_usage_summary(session.usage.format_summary())


# ---------------------------------------------------------------------------
# providers
# ---------------------------------------------------------------------------

@main.command()
def providers() -> None:
    """List supported providers and whether they are ready to use."""
    from tether.adapters import PROVIDER_DEFAULTS, create_provider
    from tether.agent.renderer import render_providers
    from tether.core.config import GlobalConfig

    gc = GlobalConfig.load()
    rows = []
    for name, defaults in PROVIDER_DEFAULTS.items():
        env_key = defaults["env_key"]
        key = (os.environ.get(env_key, "") if env_key else "") or gc.api_keys.get(name, "")
        provider = create_provider(name, api_key=key, base_url=gc.base_urls.get(name, ""))
        rows.append((name, defaults["model"], env_key, provider.is_available))
        asyncio.run(provider.close())
    render_providers(rows)


# ---------------------------------------------------------------------------
# setup
# ---------------------------------------------------------------------------

@main.command()
@click.option(
    "--provider",
    type=click.Choice(["anthropic", "openai", "ollama", "lmstudio"], case_sensitive=False),
    prompt="Provider",
    help="Which provider to use by default.",
)
@click.option("--model", default="", help="Model override (uses provider default if empty).")
def setup(provider: str, model: str) -> None:
    """Save the default provider and model to the global config."""
    from tether.adapters import PROVIDER_DEFAULTS
    from tether.core.config import GlobalConfig

    provider = provider.lower()
    defaults = PROVIDER_DEFAULTS[provider]
    chosen_model = model or defaults["model"]

    gc = GlobalConfig.load()
    gc.provider = provider
    gc.model = chosen_model
    path = gc.save()

    env_key = defaults["env_key"]
    if env_key:
        if os.environ.get(env_key) or gc.api_keys.get(provider):
            console.print(f"[green]✓[/green] {env_key} is set")
        else:
            console.print(f"[yellow]![/yellow] Set [bold]{env_key}[/bold] before running [cyan]tether chat[/cyan]")

    console.print(f"\n[green]✓[/green] Saved to [bold]{path}[/bold]")
    console.print(f"  Provider:  [cyan]{provider}[/cyan]")
    console.print(f"  Model:     [cyan]{chosen_model}[/cyan]")


if __name__ == "__main__":
    main()
