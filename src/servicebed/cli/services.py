"""
CLI: service commands (``presets``, ``check``, ``up``, ``cleanup``).

Usage::

    servicebed presets                   # List preset services
    servicebed check redis               # Start redis, SET/GET, stop
    servicebed check postgres --json     # Start postgres, SELECT 1, JSON result
    servicebed up postgres               # Start postgres until Ctrl-C
    servicebed cleanup                   # Remove leftover harness containers
"""

from __future__ import annotations

import asyncio
import json

import typer
from rich.console import Console
from rich.table import Table

from servicebed.core.errors import HarnessError
from servicebed.harness.config import HarnessConfig
from servicebed.harness.results import CheckResult, OverallStatus
from servicebed.harness.specs import PRESETS, ServiceSpec, get_preset

console = Console()
err_console = Console(stderr=True)


def hello() -> None:
    """Print the greeting."""
    typer.echo("Hello, world!")


def presets(
    json_out: bool = typer.Option(False, "--json", help="Output as JSON."),
) -> None:
    """List the preset services."""
    if json_out:
        payload = [
            {
                "name": name,
                "image": spec.reference,
                "ports": list(spec.exposed_ports),
                "ready_when": spec.wait_for.describe(),
                "url_template": spec.connection_url_template,
            }
            for name, spec in sorted(PRESETS.items())
        ]
        typer.echo(json.dumps(payload, indent=2))
        return

    table = Table(title="Preset Services")
    table.add_column("Name", style="cyan")
    table.add_column("Image", style="magenta")
    table.add_column("Ports", justify="right")
    table.add_column("Ready When")
    for name, spec in sorted(PRESETS.items()):
        table.add_row(
            name,
            spec.reference,
            ", ".join(str(p) for p in spec.exposed_ports),
            spec.wait_for.describe(),
        )
    console.print(table)


def check(
    preset: str = typer.Argument(..., help="Preset service name (e.g. redis, postgres)."),
    timeout: float | None = typer.Option(None, "--timeout", "-t", min=0.1, help="Startup timeout in seconds."),
    json_out: bool = typer.Option(False, "--json", help="Output result as JSON."),
) -> None:
    """Start a preset service, run its round-trip check and stop it."""
    from servicebed.harness.checks import check_service

    spec = _resolve_preset(preset)
    if timeout is not None:
        spec = spec.with_startup_timeout(timeout)

    config = _load_config()
    if not json_out:
        console.print(f"[bold]servicebed check[/] {spec.service_name} (session {config.session_id})")

    result = asyncio.run(check_service(spec, config))

    if json_out:
        typer.echo(result.model_dump_json(indent=2))
    else:
        _print_check_result(result)

    if result.overall_status in (OverallStatus.FAILED, OverallStatus.ERROR):
        raise typer.Exit(code=1)


def up(
    preset: str = typer.Argument(..., help="Preset service name."),
    seconds: float | None = typer.Option(
        None, "--seconds", "-s", help="Stop after this many seconds instead of waiting for Ctrl-C.",
    ),
) -> None:
    """Start a preset service and keep it running until Ctrl-C."""
    from servicebed.harness.service import Harness

    spec = _resolve_preset(preset)
    config = _load_config()

    async def _hold() -> None:
        async with Harness(config).service(spec) as handle:
            host, port = handle.endpoint()
            console.print(f"[green]✓[/] {handle.name} ready in {handle.startup_ms:.0f}ms")
            console.print(f"  container: {handle.container_name}")
            console.print(f"  endpoint:  {host}:{port}")
            if spec.connection_url_template:
                console.print(f"  url:       {handle.url()}")
            if seconds is None:
                console.print("[dim]Press Ctrl-C to stop.[/]")
                await asyncio.Event().wait()
            else:
                await asyncio.sleep(seconds)

    try:
        asyncio.run(_hold())
    except KeyboardInterrupt:
        pass
    except HarnessError as exc:
        _fail(exc)
    console.print(f"[bold red]▼[/] {spec.service_name} stopped")


def cleanup() -> None:
    """Remove containers left behind by crashed harness runs."""
    from servicebed.harness.service import Harness

    harness = Harness(_load_config())
    try:
        removed = asyncio.run(harness.cleanup_orphans())
    except HarnessError as exc:
        _fail(exc)
    console.print(f"[green]✓[/] Removed {removed} container(s)")


# ── Helpers ──────────────────────────────────────────────────────────────


def _resolve_preset(name: str) -> ServiceSpec:
    try:
        return get_preset(name)
    except ValueError as exc:
        err_console.print(f"[bold red]Error:[/] {exc}")
        raise typer.Exit(code=1) from exc


def _load_config() -> HarnessConfig:
    try:
        return HarnessConfig.from_env()
    except ValueError as exc:
        err_console.print(f"[bold red]Invalid configuration:[/] {exc}")
        raise typer.Exit(code=1) from exc


def _fail(exc: HarnessError) -> None:
    err_console.print(f"[bold red]{type(exc).__name__}[/] ({exc.category.value}): {exc.message}")
    raise typer.Exit(code=1) from exc


def _print_check_result(result: CheckResult) -> None:
    status_style = {
        OverallStatus.PASSED: "bold green",
        OverallStatus.FAILED: "bold red",
        OverallStatus.ERROR: "bold red",
    }.get(result.overall_status, "yellow")

    console.print(f"\n[{status_style}]{result.overall_status.value}[/] {result.service} ({result.image})")
    if result.endpoint:
        console.print(f"  endpoint: {result.endpoint}  startup: {result.startup_ms:.0f}ms")

    if result.steps:
        table = Table()
        table.add_column("Step", style="cyan")
        table.add_column("Result")
        table.add_column("Duration", justify="right")
        table.add_column("Detail")
        for step in result.steps:
            table.add_row(
                step.name,
                "[green]✓[/]" if step.passed else "[red]✗[/]",
                f"{step.duration_ms:.0f}ms",
                step.error or step.detail,
            )
        console.print(table)

    if result.error:
        err_console.print(f"[bold red]Error[/] ({result.error_category}): {result.error}")
