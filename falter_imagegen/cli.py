"""Thin CLI wrapper for falter_imagegen.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
from pathlib import Path
from typing import Annotated

import httpx
import typer
from rich.console import Console
from rich.markup import escape

from falter_imagegen import __version__
from falter_imagegen.builds.artifacts import get_primary_artifact
from falter_imagegen.builds.runner import REQUIRED_TOOLS, check_required_tools
from falter_imagegen.builds.service import run_matrix, setup_run, validate_request
from falter_imagegen.config import get_settings, print_settings_json
from falter_imagegen.errors import ImagegenError, MissingToolsError
from falter_imagegen.log import setup_logging
from falter_imagegen.types import BuildStatus, RunSummary

app = typer.Typer(
    name="falter-imagegen",
    help="Freifunk falter firmware builder - build images with OpenWrt Image Builder",
    no_args_is_help=True,
)
console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"falter-imagegen version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Freifunk falter firmware builder."""


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings))
        return

    flash_file = settings.device_flash_file or "(none)"
    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Feeds:[/bold]")
    console.print(f"  Feed URL:            {settings.feed_base_url}")
    console.print(f"  Dev feed URL:        {settings.dev_feed_base_url}")
    console.print(f"  OpenWrt downloads:   {settings.openwrt_base_url}")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Download cache:      {settings.cache_dir}")
    console.print(f"  Build workspace:     {settings.work_dir}")
    console.print(f"  Firmware output:     {settings.output_dir}")
    console.print(f"  Packagesets:         {settings.packageset_dir}")
    console.print(f"  Patches:             {settings.patches_dir}")
    console.print(f"  Embedded files:      {settings.files_dir}")
    console.print(f"  Device flash sizes:  {flash_file}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Max packagesets:     {settings.max_packagesets}")
    console.print(f"  Log level:           {settings.log_level}")
    console.print()
    console.print("[bold]Timeouts (seconds):[/bold]")
    console.print(f"  HTTP timeout:        {settings.http_timeout}")
    console.print(f"  Download timeout:    {settings.download_timeout}")
    console.print(f"  Build timeout:       {settings.build_timeout}")


@app.command()
def check() -> None:
    """Check that the host tools needed for building are installed."""
    try:
        check_required_tools()
    except MissingToolsError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=e.exit_code) from None
    tools = ", ".join(REQUIRED_TOOLS)
    console.print(f"[green]All required tools found: {tools}[/green]")


def _print_profiles(summary: RunSummary) -> None:
    for pair, profiles in summary.profiles.items():
        console.print(f"[bold]{pair}[/bold] ({len(profiles)} profiles)")
        for profile in profiles:
            console.print(f"  {profile}")


def _print_summary(summary: RunSummary) -> None:
    console.print()
    console.print("[bold]Build Results:[/bold]")
    console.print(f"  Total units: {summary.total}")
    console.print(f"  [green]Succeeded: {summary.succeeded}[/green]")
    if summary.failed > 0:
        console.print(f"  [red]Failed: {summary.failed}[/red]")

    console.print()
    for r in summary.results:
        name = "/".join(
            part for part in (r.target, r.subtarget, r.device, r.packageset) if part
        )
        if r.status == BuildStatus.SUCCEEDED:
            console.print(f"  [green]✓ {name}[/green]")
            primary = get_primary_artifact(r.artifacts)
            if primary:
                console.print(f"      {primary.relative_path}")
        elif r.status == BuildStatus.SKIPPED:
            console.print(f"  [yellow]- {name}[/yellow]")
            if r.error_message:
                console.print(f"      {r.error_message}")
        else:
            console.print(f"  [red]✗ {name}[/red]")
            if r.error_message:
                console.print(f"      Error: {r.error_message}")
            if r.log_path:
                console.print(f"      Log: {r.log_path}")


@app.command()
def build(
    release: Annotated[
        str | None,
        typer.Option("--release", "-v", help="falter release to build (e.g. 1.2.3)"),
    ] = None,
    target: Annotated[
        str | None,
        typer.Option("--target", "-t", help="OpenWrt target, or 'all'"),
    ] = None,
    subtarget: Annotated[
        str | None,
        typer.Option("--subtarget", "-s", help="Subtarget (default: all subtargets)"),
    ] = None,
    packageset: Annotated[
        str | None,
        typer.Option("--packageset", "-p", help="Packageset file, or 'all'"),
    ] = None,
    device: Annotated[
        str | None,
        typer.Option("--device", "-d", help="Build a single device profile"),
    ] = None,
    imagebuilder: Annotated[
        Path | None,
        typer.Option(
            "--imagebuilder",
            "-i",
            help="Local Image Builder archive (needs --target, --subtarget, --device)",
        ),
    ] = None,
    dev_feed: Annotated[
        bool,
        typer.Option("--dev-feed", "-u", help="Use the development package feed"),
    ] = False,
    list_profiles: Annotated[
        bool,
        typer.Option("--list-profiles", "-l", help="List device profiles only"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build falter firmware images.

    Builds every device of the selected target(s) and subtarget(s) with the
    given packageset(s). Failed devices are reported at the end; they do
    not stop the remaining builds.
    """
    settings = get_settings()
    setup_logging(settings.log_level)

    try:
        validate_request(release, target, subtarget, device, imagebuilder)
        check_required_tools()
        with httpx.Client(
            headers={"User-Agent": f"falter-imagegen/{__version__}"}
        ) as client:
            run_config = setup_run(
                client,
                settings,
                release=release,
                target=target,
                subtarget=subtarget,
                packageset=packageset,
                device=device,
                imagebuilder_override=imagebuilder,
                dev_feed=dev_feed,
                list_profiles=list_profiles,
            )
            if not json_output:
                console.print(
                    f"[blue]Building falter {run_config.release.version} "
                    f"on OpenWrt {run_config.release.base_version}...[/blue]"
                )
            summary = run_matrix(client, run_config)
    except ImagegenError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise typer.Exit(code=e.exit_code) from None

    if json_output:
        console.print(json.dumps(summary.to_dict(), indent=2), soft_wrap=True)
    elif list_profiles:
        _print_profiles(summary)
        if summary.results:
            _print_summary(summary)
    else:
        _print_summary(summary)


if __name__ == "__main__":
    app()
