"""
WinPEForge CLI Main Entry Point.

Provides the command-line interface for building customized WinPE media and
maintaining the runtime package cache.
"""

from __future__ import annotations

import json
import sys
from contextlib import nullcontext
from pathlib import Path

import click
import humanize
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from winpeforge import __version__
from winpeforge.core.config import (
    DEFAULT_CONFIG_PATH,
    WinPEForgeConfig,
    get_default_config,
    load_config,
)
from winpeforge.core.errors import WinPEForgeError
from winpeforge.core.logging import setup_logging
from winpeforge.core.models import BuildResult
from winpeforge.pipeline import update_custom_wim_with_pwsh7
from winpeforge.platform import get_imaging_backend
from winpeforge.runtime.cache import PackageCache

console = Console()


def get_config(ctx: click.Context) -> WinPEForgeConfig:
    """Get the configuration loaded by the command group."""
    return ctx.obj["config"]


def get_cache(ctx: click.Context) -> PackageCache:
    config = get_config(ctx)
    return PackageCache(
        config.paths.cache,
        config.powershell_versions,
        lock_timeout=config.timeouts.lock,
    )


def echo_json(data: object) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
@click.version_option(version=__version__, prog_name="WinPEForge")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
)
@click.option("--json", "json_output", is_flag=True, help="Output in JSON format")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.pass_context
def cli(ctx: click.Context, config: Path | None, json_output: bool, quiet: bool) -> None:
    """
    WinPEForge - Offline WinPE customization tool.

    Injects a PowerShell 7 runtime into a WinPE image and rebuilds the
    bootable ISO.
    """
    ctx.ensure_object(dict)

    if config:
        loaded = WinPEForgeConfig.load(config)
        loaded.ensure_directories()
        ctx.obj["config"] = loaded
        ctx.obj["config_path"] = config
    else:
        ctx.obj["config"] = load_config()
        ctx.obj["config_path"] = DEFAULT_CONFIG_PATH

    setup_logging(ctx.obj["config"].logging)
    ctx.obj["json_output"] = json_output
    ctx.obj["quiet"] = quiet


@cli.command("build")
@click.argument("wim", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("output", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--version", "powershell_version", help="PowerShell 7 version to inject")
@click.option("--temp-root", type=click.Path(file_okay=False, path_type=Path), help="Workspace root")
@click.option("--instance-id", help="Reuse a workspace id (UUID) to resume a build")
@click.option("--index", "image_index", type=int, default=1, show_default=True, help="Image index")
@click.option("--label", help="ISO volume label")
@click.option("--skip-cleanup", is_flag=True, help="Keep the workspace for inspection")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def build(
    ctx: click.Context,
    wim: Path,
    output: Path,
    powershell_version: str | None,
    temp_root: Path | None,
    instance_id: str | None,
    image_index: int,
    label: str | None,
    skip_cleanup: bool,
    yes: bool,
) -> None:
    """Inject PowerShell 7 into WIM and write a bootable ISO to OUTPUT."""
    config = get_config(ctx)
    json_output = ctx.obj.get("json_output", False)
    quiet = ctx.obj.get("quiet", False)
    version = powershell_version or config.powershell_versions.default

    if not yes and not json_output:
        console.print(Panel(f"""[cyan]Image:[/cyan] {wim} (index {image_index})
[cyan]Output:[/cyan] {output}
[cyan]PowerShell:[/cyan] {version}
[cyan]Label:[/cyan] {label or config.iso.label}
[cyan]Workspace root:[/cyan] {temp_root or config.paths.temp_root}
[cyan]Cleanup:[/cyan] {"skipped" if skip_cleanup else "yes"}""", title="Build Plan"))
        if not click.confirm("Proceed with the build?", default=True):
            console.print("[yellow]Build cancelled[/yellow]")
            sys.exit(1)

    try:
        backend = get_imaging_backend(config)
    except RuntimeError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)

    status = nullcontext() if quiet or json_output else console.status("Building WinPE media...")
    try:
        with status:
            result = update_custom_wim_with_pwsh7(
                wim,
                output,
                powershell_version=version,
                temp_root=temp_root,
                instance_id=instance_id,
                skip_cleanup=skip_cleanup,
                label=label,
                image_index=image_index,
                config=config,
                backend=backend,
            )
    except WinPEForgeError as e:
        console.print(f"[red]✗ {e.category.name}: {e.message}[/red]")
        sys.exit(1)

    if json_output:
        echo_json(result.to_dict())
    elif not quiet:
        print_build_result(result)

    if not result.success:
        if quiet:
            console.print(f"[red]✗ {result.error_category}: {result.error}[/red]")
        sys.exit(1)


def print_build_result(result: BuildResult) -> None:
    table = Table(title="Customization Jobs")
    table.add_column("Job", style="cyan")
    table.add_column("Result", style="white")
    table.add_column("Duration", style="green")
    table.add_column("Message", style="white")
    for job in result.job_results:
        duration = job.duration_seconds
        table.add_row(
            job.name,
            "[green]OK[/green]" if job.success else "[red]FAILED[/red]",
            humanize.precisedelta(duration) if duration is not None else "",
            job.message,
        )
    if result.job_results:
        console.print(table)

    duration = humanize.precisedelta(result.duration_seconds or 0)
    if result.success:
        console.print(Panel(f"""[cyan]ISO:[/cyan] {result.iso_path}
[cyan]Size:[/cyan] {humanize.naturalsize(result.iso_size_bytes, binary=True)}
[cyan]Duration:[/cyan] {duration}
[cyan]Report:[/cyan] {result.report_path or "not saved"}""", title="[green]Build Complete[/green]"))
    else:
        console.print(Panel(f"""[cyan]State:[/cyan] {result.state.name}
[cyan]Category:[/cyan] {result.error_category}
[cyan]Error:[/cyan] {result.error}
[cyan]Duration:[/cyan] {duration}
[cyan]Report:[/cyan] {result.report_path or "not saved"}""", title="[red]Build Failed[/red]"))


@cli.group("cache")
def cache_group() -> None:
    """Manage the PowerShell runtime package cache."""


@cache_group.command("list")
@click.pass_context
def cache_list(ctx: click.Context) -> None:
    """List cached runtime packages."""
    cache = get_cache(ctx)
    entries = cache.list_entries()

    if ctx.obj.get("json_output", False):
        echo_json(
            [
                {
                    "version": e.version,
                    "path": str(e.archive_path),
                    "size_bytes": e.size_bytes,
                    "sha256": e.sha256,
                }
                for e in entries
            ]
        )
        return

    if not entries:
        console.print(f"[yellow]No packages cached in {cache.cache_root}[/yellow]")
        return

    table = Table(title=f"Package Cache ({cache.cache_root})")
    table.add_column("Version", style="cyan")
    table.add_column("Size", style="green")
    table.add_column("SHA-256", style="dim")
    table.add_column("Pinned", style="yellow")
    for entry in entries:
        pinned = entry.version in cache.versions.hashes
        table.add_row(
            entry.version,
            humanize.naturalsize(entry.size_bytes, binary=True),
            entry.sha256[:16] + "…" if entry.sha256 else "unverified",
            "Yes" if pinned else "No",
        )
    console.print(table)


@cache_group.command("verify")
@click.argument("version")
@click.pass_context
def cache_verify(ctx: click.Context, version: str) -> None:
    """Verify a cached package against its pinned hash."""
    cache = get_cache(ctx)
    try:
        path = cache.get(version)
    except WinPEForgeError as e:
        console.print(f"[red]✗ {e.category.name}: {e.message}[/red]")
        sys.exit(1)

    if ctx.obj.get("json_output", False):
        echo_json({"version": version, "valid": path is not None, "path": str(path) if path else None})
    elif path is not None:
        console.print(f"[green]✓ PowerShell {version} verified: {path}[/green]")
    else:
        console.print(f"[red]✗ PowerShell {version} is not cached or failed verification[/red]")

    if path is None:
        sys.exit(1)


@cache_group.command("purge")
@click.option("--keep", type=int, default=0, show_default=True, help="Newest versions to keep")
@click.pass_context
def cache_purge(ctx: click.Context, keep: int) -> None:
    """Delete cached packages."""
    cache = get_cache(ctx)
    removed = cache.prune(keep)

    if ctx.obj.get("json_output", False):
        echo_json({"removed": removed, "kept": keep})
    elif removed:
        console.print(f"[green]✓ Removed {len(removed)} package(s): {', '.join(removed)}[/green]")
    elif not ctx.obj.get("quiet", False):
        console.print("Nothing to remove")


@cli.group("config")
def config_group() -> None:
    """Show or create configuration files."""


@config_group.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Print the effective configuration."""
    data = get_config(ctx).model_dump(mode="json")
    if ctx.obj.get("json_output", False):
        echo_json(data)
    else:
        console.print(Panel(json.dumps(data, indent=2), title=str(ctx.obj.get("config_path"))))


@config_group.command("init")
@click.argument("path", required=False, type=click.Path(dir_okay=False, path_type=Path))
@click.option("--force", is_flag=True, help="Overwrite an existing file")
def config_init(path: Path | None, force: bool) -> None:
    """Write a default configuration file."""
    path = path or DEFAULT_CONFIG_PATH
    if path.exists() and not force:
        console.print(f"[red]Configuration already exists: {path} (use --force)[/red]")
        sys.exit(1)

    get_default_config().save(path)
    console.print(f"[green]✓ Configuration written to {path}[/green]")


def main() -> None:
    """Main entry point."""
    try:
        cli(obj={})
    except KeyboardInterrupt:
        console.print("\n[yellow]Operation cancelled[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
