"""CLI for trying endpoint profiles from a terminal."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

import click
from rich.console import Console
from rich.table import Table

from open_completions.cancellation import CancelSignal
from open_completions.config import ProfilesConfig, load_profiles
from open_completions.errors import CompletionError
from open_completions.llm import send
from open_completions.types import CompletionOptions, CompletionSummary
from open_completions.utils.http_helpers import redact_headers

console = Console()


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


def _summary_table(summary: CompletionSummary, latency_ms: float) -> Table:
    table = Table(title="Summary", show_header=False)
    table.add_row("finish_reason", str(summary.finish_reason or "-"))
    for key, value in (summary.usage or {}).items():
        table.add_row(key, str(value))
    table.add_row("latency", f"{latency_ms:.0f} ms")
    return table


async def _run_send(
    config: ProfilesConfig,
    profile_name: str | None,
    prompt: str,
    system: str | None,
    options: CompletionOptions,
) -> int:
    profile = config.profiles.get(profile_name) if profile_name else config.active_profile
    if profile is None:
        console.print(f"[red]Unknown profile: {profile_name}[/red]")
        return 2

    messages = []
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": prompt})

    cancel = CancelSignal()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel.cancel, "interrupted")
    except (NotImplementedError, RuntimeError):
        pass  # Windows

    stream = send(messages, options, profile, cancel)
    try:
        async for chunk in stream:
            if chunk.delta:
                console.print(chunk.delta, end="", markup=False, highlight=False)
    except CompletionError as e:
        console.print()
        status = f" (HTTP {e.status})" if e.is_upstream else ""
        console.print(f"[red]{e.code}[/red]{status}: {e.message}")
        if e.is_transport:
            console.print("[dim](transport failure)[/dim]")
        return 1
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass

    console.print()
    console.print(_summary_table(stream.summary, stream.latency_ms))
    return 0


@click.group()
@click.option("--config", "-c", "config_path", default=None,
              help="Path to profiles YAML")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """Open Completions - stream completions from configured endpoints."""
    _setup_logging(verbose)
    ctx.obj = load_profiles(config_path)


@main.command("send")
@click.argument("prompt")
@click.option("--profile", "-p", "profile_name", default=None, help="Profile name")
@click.option("--model", "-m", default=None, help="Override the profile's model")
@click.option("--system", "-s", default=None, help="System message")
@click.option("--temperature", type=float, default=None)
@click.option("--max-tokens", type=int, default=None)
@click.option("--no-stream", is_flag=True, help="Ask for a buffered response")
@click.pass_obj
def send_command(
    config: ProfilesConfig,
    prompt: str,
    profile_name: str | None,
    model: str | None,
    system: str | None,
    temperature: float | None,
    max_tokens: int | None,
    no_stream: bool,
) -> None:
    """Send PROMPT and stream the answer."""
    options = CompletionOptions(
        model=model,
        temperature=temperature,
        max_tokens=max_tokens,
        stream=False if no_stream else None,
    )
    code = asyncio.run(_run_send(config, profile_name, prompt, system, options))
    sys.exit(code)


@main.command("profiles")
@click.pass_obj
def profiles_command(config: ProfilesConfig) -> None:
    """List configured profiles."""
    table = Table(title="Profiles")
    table.add_column("", width=1)
    table.add_column("Name")
    table.add_column("Driver")
    table.add_column("Base URL")
    table.add_column("Model")
    table.add_column("Headers")
    for name, profile in config.profiles.items():
        marker = "*" if name == config.active else ""
        headers = dict(profile.headers)
        if profile.auth.token:
            headers["Authorization"] = profile.auth.token
        table.add_row(
            marker, name, profile.driver, profile.base_url, profile.default_model,
            ", ".join(f"{k}: {v}" for k, v in redact_headers(headers).items()),
        )
    console.print(table)


if __name__ == "__main__":
    main()
