"""Thin CLI wrapper for pim_build.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules; this is the only place
that reads the environment.
"""

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, NoReturn

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from pim_build import __version__
from pim_build.config import (
    BuildConfig,
    Settings,
    get_settings,
    load_build_config,
    print_settings_json,
)
from pim_build.errors import ConfigurationError, PimBuildError, ProvisioningError

if TYPE_CHECKING:
    from pim_build.builds.manager import BuildPlan

app = typer.Typer(
    name="pim",
    help="Build provisioned VM images from installer ISOs with QEMU",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

_REPORT_STYLES = {
    "info": "",
    "progress": "dim",
    "success": "green",
    "warning": "yellow",
    "error": "red",
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"pim-build version {__version__}")
        raise typer.Exit()


def setup_logging(level: str) -> None:
    """Route log records through rich on stderr."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


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
    """pim - build provisioned VM images from installer ISOs with QEMU."""
    setup_logging(_settings().log_level)


def _settings() -> Settings:
    try:
        return get_settings()
    except ValidationError as e:
        _fail(ConfigurationError(f"Invalid environment settings: {e}"))


def _load_config() -> tuple[Settings, BuildConfig]:
    settings = _settings()
    try:
        return settings, load_build_config(settings)
    except PimBuildError as e:
        _fail(e)


def _report(level: str, message: str) -> None:
    style = _REPORT_STYLES.get(level, "")
    if style:
        console.print(f"[{style}]{escape(message)}[/{style}]", highlight=False)
    else:
        console.print(message, highlight=False)


def _script_output(stream: str, data: str) -> None:
    console.out(data, end="", highlight=False)


def _fail(error: PimBuildError) -> NoReturn:
    console.print(f"[red]Error: {escape(error.message)}[/red]")
    if isinstance(error, ProvisioningError) and error.stderr.strip():
        console.print("[red]stderr:[/red]")
        console.out(error.stderr.strip()[-2000:], highlight=False)
    raise typer.Exit(code=1)


def human_size(size: int | None) -> str:
    """Format a byte count for display."""
    if size is None:
        return "-"
    value = float(size)
    for unit in ("B", "K", "M", "G", "T"):
        if value < 1024 or unit == "T":
            return f"{value:.0f}{unit}" if unit == "B" else f"{value:.1f}{unit}"
        value /= 1024
    return f"{size}B"


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings, build_config = _load_config()
    if json_output:
        data = json.loads(print_settings_json(settings))
        data["build"] = json.loads(build_config.model_dump_json())
        console.print_json(data=data)
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Config directory:    {settings.config_dir}")
    console.print(f"  Data directory:      {settings.data_dir}")
    console.print(f"  Project directory:   {settings.project_dir}")
    console.print(f"  Image directory:     {build_config.image_dir}")
    console.print(f"  ISO directory:       {build_config.iso_dir}")
    console.print()
    console.print("[bold]Build defaults:[/bold]")
    console.print(f"  Disk size:           {build_config.disk_size}")
    console.print(f"  Memory:              {build_config.memory} MB")
    console.print(f"  CPUs:                {build_config.cpus}")
    console.print()
    console.print("[bold]SSH:[/bold]")
    console.print(f"  User:                {build_config.ssh_user}")
    console.print(f"  Port:                {build_config.ssh_port}")
    console.print(f"  Timeout (seconds):   {build_config.ssh_timeout}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Log level:           {settings.log_level}")


builds_app = typer.Typer(help="Build and manage VM images")
app.add_typer(builds_app, name="build")


@builds_app.command("run")
def build_run(
    profile: Annotated[str, typer.Argument(help="Profile to build")],
    arch: Annotated[
        str | None,
        typer.Option("--arch", "-a", help="Target architecture (default: host)"),
    ] = None,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Rebuild even if a cached image matches"),
    ] = False,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Show what would be built without building"),
    ] = False,
    vnc: Annotated[
        int | None,
        typer.Option("--vnc", help="Expose the VM display on VNC display N"),
    ] = None,
    console_mode: Annotated[
        bool,
        typer.Option("--console", help="Attach the VM serial console to this terminal"),
    ] = False,
    console_log: Annotated[
        Path | None,
        typer.Option("--console-log", help="Write the VM serial console to a file"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output the dry-run plan as JSON"),
    ] = False,
) -> None:
    """Build an image for a profile."""
    from pim_build.arch import host_arch
    from pim_build.builds.manager import BuildManager
    from pim_build.builds.orchestrator import BuildOptions

    _, build_config = _load_config()
    manager = BuildManager.from_config(build_config, host_arch())

    if dry_run:
        plan = manager.dry_run(profile, arch)
        if json_output:
            console.print_json(data=plan.to_dict())
        else:
            _print_plan(plan)
        return

    options = BuildOptions(vnc=vnc, console=console_mode, console_log=console_log)
    try:
        outcome = manager.build(
            profile,
            arch,
            force=force,
            options=options,
            reporter=_report,
            on_output=_script_output,
        )
    except PimBuildError as e:
        _fail(e)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted, build aborted[/yellow]")
        raise typer.Exit(code=130) from None

    console.print()
    if outcome.cache_hit:
        console.print(f"[green]Using cached image:[/green] {outcome.image_path}")
        console.print("Use --force to rebuild")
    else:
        console.print(f"[green]Build complete:[/green] {outcome.image_path}")


def _print_plan(plan: "BuildPlan") -> None:
    console.print(f"[bold]Dry run: {plan.profile} for {plan.arch}[/bold]")
    console.print()
    for warning in plan.warnings:
        console.print(f"[yellow]Warning: {escape(warning)}[/yellow]")
    if plan.warnings:
        console.print()

    console.print("[bold]Configuration:[/bold]")
    console.print(f"  Profile:      {plan.profile}")
    console.print(f"  Architecture: {plan.arch} (host: {plan.host_arch})")
    console.print(f"  Builder:      {plan.builder or 'none'}")
    console.print(f"  Image dir:    {plan.image_dir}")
    console.print(f"  Disk size:    {plan.disk_size}")
    console.print(f"  Memory:       {plan.memory} MB")
    console.print(f"  CPUs:         {plan.cpus}")
    console.print()

    console.print("[bold]ISO:[/bold]")
    if plan.source is None:
        console.print("  (none)")
    else:
        exists = "yes" if plan.source.exists else "NO - will need download"
        console.print(f"  Key:      {plan.source.key}")
        console.print(f"  Path:     {plan.source.path}")
        console.print(f"  Exists:   {exists}")
        console.print(f"  Checksum: {plan.source.checksum[:40] or '(none)'}")
    console.print()

    console.print(f"[bold]Scripts ({len(plan.scripts)}):[/bold]")
    for script in plan.scripts:
        status = "OK" if script.found else "NOT FOUND"
        console.print(f"  {script.name}: {status}")
        if script.path:
            console.print(f"    {script.path}")
    console.print()

    console.print("[bold]Cache:[/bold]")
    console.print(f"  Key: {plan.cache_key or '(unavailable)'}")
    if plan.cached_path:
        console.print(f"  Status: [green]HIT[/green] - {plan.cached_path}")
        console.print("  Would skip build (use --force to override)")
    else:
        console.print("  Status: MISS - will build")
    console.print()

    console.print("[bold]Build steps:[/bold]")
    for number, step in enumerate(plan.steps, start=1):
        console.print(f"  {number}. {step}")


@builds_app.command("list")
def build_list(
    long: Annotated[
        bool,
        typer.Option("--long", "-l", help="Show a detailed table"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List built images."""
    from pim_build.builds.registry import Registry

    _, build_config = _load_config()
    entries = Registry(build_config.image_dir).list_entries()

    if json_output:
        console.print_json(data=[e.model_dump(mode="json") for e in entries])
        return

    if not entries:
        console.print("[yellow]No images built yet[/yellow]")
        return

    if not long:
        for entry in entries:
            console.print(entry.key)
        return

    table = Table(show_edge=False, box=None, header_style="bold")
    for column in ("PROFILE", "ARCH", "BUILT", "SIZE", "STATUS"):
        table.add_column(column)
    for entry in entries:
        status = "[green]OK[/green]" if entry.exists else "[red]MISSING[/red]"
        table.add_row(
            entry.profile,
            entry.arch,
            entry.build_time,
            human_size(entry.size),
            status,
        )
    console.print(table)


@builds_app.command("show")
def build_show(
    profile: Annotated[str, typer.Argument(help="Profile name")],
    arch: Annotated[
        str | None,
        typer.Option("--arch", "-a", help="Architecture (default: host)"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show details of a built image."""
    from pim_build.arch import host_arch, normalize
    from pim_build.builds.registry import Registry

    _, build_config = _load_config()
    arch_name = normalize(arch or host_arch())
    entry = Registry(build_config.image_dir).find(profile, arch_name)

    if entry is None:
        console.print(f"[red]No image found for {profile}-{arch_name}[/red]")
        raise typer.Exit(code=1)

    if json_output:
        console.print_json(data=entry.model_dump(mode="json"))
        return

    console.print(f"[bold]Image: {entry.key}[/bold]")
    console.print(f"  Path:      {entry.path}")
    console.print(f"  Filename:  {entry.filename}")
    console.print(f"  Built:     {entry.build_time}")
    console.print(f"  Size:      {human_size(entry.size)}")
    console.print(f"  Cache key: {entry.cache_key}")
    console.print(f"  ISO:       {entry.source_image or '-'}")
    console.print(f"  Exists:    {'yes' if entry.exists else '[red]NO[/red]'}")
    if entry.deployments:
        console.print()
        console.print("[bold]Deployments:[/bold]")
        for deployment in entry.deployments:
            console.print(
                f"  {deployment.deployed_at}  {deployment.target_kind}: {deployment.target}"
            )


@builds_app.command("clean")
def build_clean(
    orphaned: Annotated[
        bool,
        typer.Option("--orphaned", help="Remove entries whose image file is gone"),
    ] = False,
    all_images: Annotated[
        bool,
        typer.Option("--all", help="Delete all images and registry entries"),
    ] = False,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip confirmation prompts"),
    ] = False,
) -> None:
    """Clean up the image registry."""
    from pim_build.builds.registry import Registry

    if orphaned and all_images:
        console.print("[red]Use either --orphaned or --all, not both[/red]")
        raise typer.Exit(code=1)
    if not orphaned and not all_images:
        console.print("Specify --orphaned or --all")
        raise typer.Exit(code=1)

    _, build_config = _load_config()
    registry = Registry(build_config.image_dir)

    if orphaned:
        removed = registry.clean_orphaned()
        if removed:
            console.print(f"[green]Removed {len(removed)} orphaned entr(ies):[/green]")
            for key in removed:
                console.print(f"  {key}")
        else:
            console.print("No orphaned entries")
        return

    entries = registry.list_entries()
    if not entries:
        console.print("No images to delete")
        return

    console.print(f"[yellow]This will delete {len(entries)} image(s):[/yellow]")
    for entry in entries:
        console.print(f"  {entry.key}: {entry.path}")
    if not yes:
        confirm = typer.confirm("Are you sure you want to continue?", default=False)
        if not confirm:
            console.print("Aborted")
            raise typer.Exit(code=0)

    removed = registry.clean_all()
    console.print(f"[green]Deleted {len(removed)} image(s)[/green]")


@builds_app.command("status")
def build_status() -> None:
    """Show build environment status."""
    from pim_build.arch import ArchitectureRouter, host_arch
    from pim_build.builds.registry import Registry
    from pim_build.qemu.deps import check_dependencies
    from pim_build.types import Architecture

    _, build_config = _load_config()
    router = ArchitectureRouter(build_config, host_arch())
    images = Registry(build_config.image_dir).images()

    console.print("[bold]Build Status:[/bold]")
    console.print()
    console.print(f"  Host architecture: {router.host_arch}")
    console.print(f"  Image directory:   {build_config.image_dir}")
    console.print(f"  Disk size:         {build_config.disk_size}")
    console.print(f"  Memory:            {build_config.memory} MB")
    console.print(f"  CPUs:              {build_config.cpus}")
    console.print()

    console.print("[bold]Builders:[/bold]")
    for target in Architecture:
        console.print(f"  {target.value}: {router.describe(target.value)}")
    console.print()

    if build_config.remotes:
        console.print("[bold]Remote builders:[/bold]")
        for name, remote in build_config.remotes.items():
            user = f"{remote.user}@" if remote.user else ""
            console.print(f"  {name}: {user}{remote.host}:{remote.port}")
        console.print()

    missing = check_dependencies()
    if missing:
        console.print(f"[yellow]Missing tools: {', '.join(missing)}[/yellow]")
    else:
        console.print("[green]All required tools found[/green]")
    console.print(f"Cached images: {len(images)}")


if __name__ == "__main__":
    app()
