"""CLI entrypoint for polychat."""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Sequence
from importlib import metadata
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .config import ProviderSettings, ensure_config_dir, load_config
from .exceptions import PolychatError
from .logging_utils import configure_logging
from .models import Provider, Role
from .orchestrator import ChatOrchestrator
from .prober import ConnectionProber
from .selector import ProviderSelector
from .session_store import SessionStore, StoreEvent
from .stream_controller import StreamState

EXIT_INTERRUPTED = 130


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="polychat",
        description="polychat - streaming chat across local and cloud LLM providers",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit",
    )
    parser.add_argument("--config", help="Path to an alternate config.toml")
    parser.add_argument(
        "--provider",
        choices=[provider.value for provider in Provider],
        help="Override the configured active provider",
    )
    subcommands = parser.add_subparsers(dest="command")

    probe = subcommands.add_parser("probe", help="Check that the provider endpoint answers")
    probe.add_argument("--url", help="Endpoint to check instead of the configured one")
    probe.add_argument(
        "--discover",
        action="store_true",
        help="Scan conventional local ports for an OpenAI-compatible server",
    )

    subcommands.add_parser("models", help="List models offered by the active provider")

    chat = subcommands.add_parser("chat", help="Send prompts and stream the replies")
    chat.add_argument("prompt", nargs="*", help="Prompt text; omit for an interactive session")
    chat.add_argument("--model", help="Model id to use for this session")
    return parser


def _settings_from(config: dict[str, Any], provider: str | None) -> ProviderSettings:
    settings = ProviderSettings.from_config(config)
    if provider is None:
        return settings
    selected = Provider(provider)
    return settings.model_copy(
        update={
            "active_provider": selected,
            "use_gemini_direct": selected is Provider.GEMINI,
        }
    )


async def _run_probe(
    settings: ProviderSettings,
    probe_config: dict[str, Any],
    console: Console,
    url: str | None,
    discover: bool,
) -> int:
    prober = ConnectionProber(api_key=settings.api_key)
    if discover:
        endpoint = await prober.discover(
            probe_config["discovery_hosts"],
            probe_config["discovery_ports"],
            probe_config["discovery_timeout_seconds"],
        )
        if endpoint is None:
            console.print("[red]No local server found.[/red]")
            return 1
        console.print(f"[green]Found[/green] {endpoint}")
        return 0

    timeout = probe_config["timeout_seconds"]
    provider = ProviderSelector.resolve_provider(settings)
    if provider is Provider.GEMINI and url is None:
        console.print("Gemini is a cloud provider; nothing to probe.")
        return 0
    if provider is Provider.OLLAMA:
        target = url or settings.ollama_url
        endpoint = await prober.probe_ollama(target, timeout)
        status = "online" if endpoint else "offline"
    else:
        target = url or settings.foundry_url
        result = await prober.check(target, timeout)
        endpoint, status = result.endpoint, result.status.value
    style = "green" if endpoint else "red"
    console.print(f"{target}: [{style}]{status}[/{style}]")
    return 0 if endpoint else 1


async def _run_models(settings: ProviderSettings, console: Console) -> int:
    orchestrator = ChatOrchestrator(SessionStore(), lambda: settings)
    models = await orchestrator.refresh_models()
    if not models:
        console.print("[yellow]No models available.[/yellow]")
        return 1
    table = Table("Model", "Provider", "Description")
    for model in models:
        table.add_row(model.id, model.provider.value, model.description or "")
    console.print(table)
    return 0


def _stream_printer(store: SessionStore, console: Console) -> Any:
    """Store listener that echoes model output as it grows."""
    printed: dict[str, int] = {}

    def _listener(event: StoreEvent) -> None:
        if event.kind not in ("message.updated", "message.finalized"):
            return
        session = store.get_session(event.session_id)
        message = session.find_message(event.message_id or "") if session else None
        if message is None or message.role is not Role.MODEL:
            return
        offset = printed.get(message.id, 0)
        if len(message.content) < offset:
            console.print()
            offset = 0
        console.print(
            message.content[offset:], end="", markup=False, highlight=False, soft_wrap=True
        )
        printed[message.id] = len(message.content)
        if event.kind == "message.finalized":
            console.print()

    return _listener


async def _run_chat(
    settings: ProviderSettings,
    probe_config: dict[str, Any],
    console: Console,
    prompts: list[str],
    model: str | None,
) -> int:
    store = SessionStore()
    store.subscribe(_stream_printer(store, console))
    orchestrator = ChatOrchestrator(
        store,
        lambda: settings,
        prober=ConnectionProber(api_key=settings.api_key),
        probe_timeout=probe_config["timeout_seconds"],
    )
    if model:
        orchestrator.select_model(model)
    else:
        await orchestrator.refresh_models()

    interactive = not prompts
    exit_code = 0
    try:
        while True:
            if interactive:
                try:
                    prompt = await asyncio.to_thread(console.input, "[bold cyan]> [/bold cyan]")
                except EOFError:
                    break
                if prompt.strip() in {"/exit", "/quit"}:
                    break
                if not prompt.strip():
                    continue
            elif prompts:
                prompt = prompts.pop(0)
            else:
                break
            controller = orchestrator.send_message(prompt)
            state = await controller.wait()
            if state is StreamState.FAILED:
                exit_code = 1
    finally:
        await orchestrator.aclose()
    return exit_code


def main(argv: Sequence[str] | None = None) -> int:
    """Load configuration, set up logging and dispatch the chosen command."""

    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.version:
        try:
            version = metadata.version("polychat")
        except metadata.PackageNotFoundError:
            version = "0.0.0"
        print(f"polychat {version}")
        return 0

    ensure_config_dir()
    config = load_config(Path(args.config).expanduser() if args.config else None)
    configure_logging(config["logging"])
    settings = _settings_from(config, args.provider)
    console = Console()

    try:
        if args.command == "probe":
            return asyncio.run(
                _run_probe(settings, config["probe"], console, args.url, args.discover)
            )
        if args.command == "models":
            return asyncio.run(_run_models(settings, console))
        return asyncio.run(
            _run_chat(
                settings,
                config["probe"],
                console,
                list(getattr(args, "prompt", []) or []),
                getattr(args, "model", None),
            )
        )
    except PolychatError as exc:
        console.print(f"[red]{escape(str(exc))}[/red]", highlight=False)
        return 1
    except KeyboardInterrupt:
        console.print("\n[dim]Cancelled.[/dim]")
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    raise SystemExit(main())
