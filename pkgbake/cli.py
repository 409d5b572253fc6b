"""Thin CLI wrapper for pkgbake.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
import signal
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from pkgbake import __version__
from pkgbake.config import Settings, get_settings, print_settings_json

# Exit codes: failed targets vs. run-fatal errors
EXIT_TARGETS_FAILED = 1
EXIT_FATAL = 2

app = typer.Typer(
    name="pkgbake",
    help="pkgbake - build packages from one recipe for many distro images",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"pkgbake version {__version__}")
        raise typer.Exit()


def _configure_logging(level: str) -> None:
    """Route pkgbake log records to a Rich handler on stderr."""
    root = logging.getLogger("pkgbake")
    for handler in list(root.handlers):
        if isinstance(handler, RichHandler):
            root.removeHandler(handler)
    handler = RichHandler(console=err_console, show_path=False, markup=False)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(handler)
    root.setLevel(level)


def _make_backend(settings: Settings) -> Any:
    """Create the Docker execution backend from settings."""
    from pkgbake.backends.docker import DockerBackend

    return DockerBackend(
        base_url=settings.docker_url,
        keep_containers=settings.keep_containers,
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
    """pkgbake - build packages from one recipe for many distro images."""


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
        typer.echo(print_settings_json(settings))
    else:
        tmp_dir_display = (
            str(settings.tmp_dir) if settings.tmp_dir else "(system default)"
        )
        timeout_display = (
            str(settings.job_timeout) if settings.job_timeout else "(none)"
        )
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Output directory:    {settings.output_dir}")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print(f"  Temp directory:      {tmp_dir_display}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Log level:           {settings.log_level}")
        console.print(f"  Default shell:       {settings.default_shell}")
        console.print(f"  Docker URL:          {settings.docker_url or '(default)'}")
        console.print(f"  Keep containers:     {settings.keep_containers}")
        console.print()
        console.print("[bold]Concurrency:[/bold]")
        console.print(f"  Max parallel jobs:   {settings.max_parallel_jobs}")
        console.print(f"  Job timeout:         {timeout_display}")


@app.command()
def validate(
    path: Annotated[
        Path, typer.Argument(help="Recipe file or directory containing one")
    ],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Validate a recipe without building it."""
    from pkgbake.errors import RecipeValidationError
    from pkgbake.recipes.io import load_recipe

    try:
        recipe = load_recipe(path)
    except FileNotFoundError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(code=EXIT_FATAL) from None
    except RecipeValidationError as e:
        if json_output:
            typer.echo(json.dumps({"valid": False, "error": e.to_dict()}, indent=2))
        else:
            console.print("[red]Validation failed:[/red]")
            for violation in e.violations:
                console.print(f"  - {escape(violation)}")
        raise typer.Exit(code=EXIT_FATAL) from None
    except ValueError as e:
        console.print(f"[red]Validation failed: {escape(str(e))}[/red]")
        raise typer.Exit(code=EXIT_FATAL) from None

    if json_output:
        output = {
            "valid": True,
            "name": recipe.name,
            "version": recipe.version,
            "targets": [
                {
                    "image": t.image,
                    "os": t.os,
                    "os_version": t.os_version,
                    "format": t.format.value if t.format else None,
                }
                for t in recipe.targets
            ],
        }
        typer.echo(json.dumps(output, indent=2))
        return

    console.print(f"[green]✓ Valid recipe: {recipe.name} {recipe.version}[/green]")
    for stage in recipe.stages():
        console.print(f"  {stage.kind.value}: {len(stage.steps)} step(s)")
    console.print("  Targets:")
    for t in recipe.targets:
        fmt = t.format.value if t.format else "?"
        console.print(f"    {escape(t.image)} ({t.os} {t.os_version or '-'}, {fmt})")


@app.command()
def build(
    path: Annotated[
        Path, typer.Argument(help="Recipe file or directory containing one")
    ],
    images: Annotated[
        list[str] | None,
        typer.Option("--image", "-i", help="Image to build (can be repeated)"),
    ] = None,
    jobs: Annotated[
        int | None,
        typer.Option("--jobs", "-j", min=1, help="Maximum concurrent targets"),
    ] = None,
    timeout: Annotated[
        float | None,
        typer.Option("--timeout", min=1, help="Per-target timeout in seconds"),
    ] = None,
    output_dir: Annotated[
        Path | None,
        typer.Option("--output-dir", "-o", help="Directory for package output"),
    ] = None,
    record: Annotated[
        bool,
        typer.Option("--record/--no-record", help="Store outcomes in build history"),
    ] = True,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build a recipe for all (or the selected) target images.

    Exits with code 1 when any target fails or is cancelled, and with
    code 2 when the recipe is invalid or the runtime is unreachable.
    """
    from pkgbake.builds.orchestrator import BuildOrchestrator
    from pkgbake.builds.writer import ManifestWriter
    from pkgbake.errors import RecipeValidationError, RuntimeUnavailableError
    from pkgbake.recipes.io import load_recipe

    settings = get_settings()
    _configure_logging(settings.log_level)

    try:
        recipe = load_recipe(path)
    except FileNotFoundError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(code=EXIT_FATAL) from None
    except RecipeValidationError as e:
        _print_fatal(e, json_output)
        raise typer.Exit(code=EXIT_FATAL) from None
    except ValueError as e:
        _print_fatal(e, json_output)
        raise typer.Exit(code=EXIT_FATAL) from None

    recorder = None
    if record:
        from pkgbake.builds.service import DatabaseRecorder
        from pkgbake.db import open_history

        recorder = DatabaseRecorder(open_history(settings.db_url))

    writer = ManifestWriter(output_dir or settings.output_dir)
    orchestrator = BuildOrchestrator(
        _make_backend(settings),
        settings=settings,
        writer=writer,
        recorder=recorder,
        max_parallel_jobs=jobs,
        job_timeout=timeout,
    )

    def _on_sigterm(signum: int, frame: Any) -> None:
        orchestrator.cancel()

    previous = signal.signal(signal.SIGTERM, _on_sigterm)
    try:
        report = orchestrator.run(recipe, images)
    except (RecipeValidationError, RuntimeUnavailableError) as e:
        _print_fatal(e, json_output)
        raise typer.Exit(code=EXIT_FATAL) from None
    finally:
        signal.signal(signal.SIGTERM, previous)

    if json_output:
        typer.echo(json.dumps(report.to_dict(), indent=2))
    else:
        console.print()
        console.print(
            f"[bold]Build Results for {recipe.name} {recipe.version}:[/bold]"
        )
        console.print(f"  Total targets: {len(report.targets)}")
        console.print(f"  [green]Succeeded: {len(report.succeeded)}[/green]")
        if report.failed:
            console.print(f"  [red]Failed: {len(report.failed)}[/red]")
        if report.cancelled:
            console.print(f"  [yellow]Cancelled: {len(report.cancelled)}[/yellow]")

        console.print()
        console.print("[bold]Per-Target Results:[/bold]")
        for outcome in report.outcomes:
            image = escape(outcome.target.image)
            if outcome.succeeded:
                entries = len(outcome.manifest.entries) if outcome.manifest else 0
                console.print(f"  [green]✓ {image}[/green] ({entries} entries)")
                if outcome.package_path:
                    console.print(f"      {escape(str(outcome.package_path))}")
            else:
                color = "yellow" if outcome.status.value == "cancelled" else "red"
                state = outcome.status.value
                console.print(f"  [{color}]✗ {image} ({state})[/{color}]")
                if outcome.error is not None:
                    console.print(f"      Error: {escape(str(outcome.error))}")

    if not report.ok:
        raise typer.Exit(code=EXIT_TARGETS_FAILED)


def _print_fatal(error: Exception, json_output: bool) -> None:
    if json_output:
        if hasattr(error, "to_dict"):
            payload = error.to_dict()
        else:
            payload = {"message": str(error)}
        typer.echo(json.dumps({"ok": False, "error": payload}, indent=2))
    else:
        console.print(f"[red]Error: {escape(str(error))}[/red]")


builds_app = typer.Typer(help="Inspect build history")
app.add_typer(builds_app, name="builds")


def _record_to_dict(b: Any) -> dict[str, Any]:
    return {
        "id": b.id,
        "run_id": b.run_id,
        "job_id": b.job_id,
        "recipe": b.recipe_name,
        "version": b.recipe_version,
        "image": b.image,
        "format": b.package_format,
        "status": b.status,
        "requested_at": b.requested_at.isoformat() if b.requested_at else None,
        "started_at": b.started_at.isoformat() if b.started_at else None,
        "finished_at": b.finished_at.isoformat() if b.finished_at else None,
        "entry_count": b.entry_count,
        "package_path": b.package_path,
        "error_type": b.error_type,
        "error_message": b.error_message,
    }


@builds_app.command("list")
def builds_list(
    recipe_name: Annotated[
        str | None,
        typer.Option("--recipe", "-r", help="Filter by recipe name"),
    ] = None,
    image: Annotated[
        str | None,
        typer.Option("--image", "-i", help="Filter by target image"),
    ] = None,
    status: Annotated[
        str | None,
        typer.Option(
            "--status", "-s", help="Filter by status (succeeded/failed/cancelled)"
        ),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 100,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List build records."""
    from pkgbake.builds.service import list_builds
    from pkgbake.db import open_history
    from pkgbake.types import JobStatus

    # Parse status filter
    status_filter: JobStatus | None = None
    if status:
        try:
            status_filter = JobStatus(status)
        except ValueError:
            console.print(f"[red]Invalid status: {escape(status)}[/red]")
            console.print(
                "Valid values: " + ", ".join(s.value for s in JobStatus)
            )
            raise typer.Exit(code=1) from None

    factory = open_history()

    with factory() as session:
        builds = list_builds(
            session,
            recipe_name=recipe_name,
            image=image,
            status=status_filter,
            limit=limit,
        )

        if json_output:
            output = [_record_to_dict(b) for b in builds]
            typer.echo(json.dumps(output, indent=2))
            return

        if not builds:
            console.print("[yellow]No build records found[/yellow]")
            return

        console.print(f"[bold]Found {len(builds)} build(s):[/bold]")
        console.print()
        for b in builds:
            status_color = {
                "succeeded": "green",
                "failed": "red",
                "cancelled": "yellow",
                "running": "blue",
            }.get(b.status, "white")
            console.print(f"  [{status_color}]Build #{b.id}[/{status_color}]")
            recipe_display = f"{b.recipe_name} {b.recipe_version}"
            console.print(f"    Recipe: {escape(recipe_display)}")
            console.print(f"    Image: {escape(b.image)}")
            console.print(f"    Status: {b.status}")
            console.print(f"    Run: {b.run_id} (job {b.job_id})")
            if b.error_message:
                console.print(f"    Error: {escape(b.error_message)}")
            console.print()


@builds_app.command("show")
def builds_show(
    build_id: Annotated[int, typer.Argument(help="Build record id")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show one build record."""
    from pkgbake.builds.service import BuildNotFoundError, get_build
    from pkgbake.db import open_history

    factory = open_history()
    with factory() as session:
        try:
            b = get_build(session, build_id)
        except BuildNotFoundError:
            if json_output:
                error = {"code": "build_not_found", "build_id": build_id}
                typer.echo(json.dumps({"ok": False, "error": error}, indent=2))
            else:
                console.print(f"[red]Build #{build_id} not found[/red]")
            raise typer.Exit(code=1) from None

        if json_output:
            typer.echo(json.dumps(_record_to_dict(b), indent=2))
            return

        console.print(f"[bold]Build #{b.id}[/bold]")
        for label, value in _record_to_dict(b).items():
            if label != "id" and value is not None:
                console.print(f"  {label}: {escape(str(value))}")


if __name__ == "__main__":
    app()
