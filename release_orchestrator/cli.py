"""Thin CLI wrapper for release_orchestrator.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Annotated, Any, NoReturn

import typer
from rich.console import Console
from rich.table import Table
from sqlalchemy.orm import Session, sessionmaker

from release_orchestrator import __version__
from release_orchestrator.config import Settings, get_settings, print_settings_json
from release_orchestrator.runtime import Orchestrator

app = typer.Typer(
    name="release-orch",
    help="Release Orchestrator - native builds, job queue and OTA releases",
    no_args_is_help=True,
)
console = Console()

STATUS_COLORS = {
    "queued": "yellow",
    "building": "blue",
    "success": "green",
    "failed": "red",
    "cancelled": "dim",
    "pending": "yellow",
    "active": "green",
    "archived": "dim",
    "rolled_back": "magenta",
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"release-orchestrator version {__version__}")
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
    """Release Orchestrator - native builds, job queue and OTA releases."""
    logging.basicConfig(
        level=get_settings().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _print_json(data: Any) -> None:
    console.print(
        json.dumps(data, indent=2, default=str),
        soft_wrap=True,
        markup=False,
        highlight=False,
    )


def _fail(message: str, code: str, json_output: bool) -> NoReturn:
    """Report an error and exit with status 1."""
    if json_output:
        _print_json({"error": {"code": code, "message": message}})
    else:
        console.print(f"[red]Error: {message}[/red]")
    raise typer.Exit(code=1)


def _session_factory(settings: Settings) -> sessionmaker[Session]:
    from release_orchestrator.db import create_all_tables, get_engine, get_session_factory

    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    return get_session_factory(engine)


@contextmanager
def _runtime(settings: Settings | None = None) -> Iterator[Orchestrator]:
    """Orchestrator for one command, closed on exit."""
    settings = settings or get_settings()
    with Orchestrator(settings, _session_factory(settings)) as runtime:
        yield runtime


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
        console.print(print_settings_json(settings), soft_wrap=True, markup=False)
        return

    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Artifacts directory: {settings.artifacts_dir}")
    console.print(f"  Database URL:        {settings.db_url}")
    console.print()
    console.print("[bold]Provider:[/bold]")
    console.print(f"  Base URL:            {settings.provider_base_url}")
    console.print(f"  Token:               {'***' if settings.provider_token else '(not set)'}")
    console.print(f"  Webhook secret:      {'***' if settings.webhook_secret else '(not set)'}")
    console.print()
    console.print("[bold]Workers:[/bold]")
    console.print(f"  Concurrency:         {settings.worker_concurrency}")
    console.print(f"  Jobs per minute:     {settings.worker_rate_limit_per_minute}")
    console.print(f"  Max attempts:        {settings.job_max_attempts}")
    console.print()
    console.print("[bold]Timeouts (seconds):[/bold]")
    console.print(f"  Provider timeout:    {settings.provider_timeout}")
    console.print(f"  Storage timeout:     {settings.storage_timeout}")
    console.print(f"  Poll interval:       {settings.poll_interval}")
    console.print(f"  Poll timeout:        {settings.poll_timeout}")
    console.print()
    console.print(f"Log level: {settings.log_level}")


@app.command()
def worker(
    concurrency: Annotated[
        int | None,
        typer.Option("--concurrency", "-c", min=1, max=32, help="Worker threads"),
    ] = None,
) -> None:
    """Run the worker pool and status poller until interrupted."""
    settings = get_settings()
    if concurrency is not None:
        settings = settings.model_copy(update={"worker_concurrency": concurrency})

    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda signum, frame: stop.set())

    with _runtime(settings) as runtime:
        runtime.start(workers=True)
        console.print(
            f"[green]Worker pool running with {settings.worker_concurrency} "
            "worker(s); press Ctrl+C to stop[/green]"
        )
        try:
            while not stop.wait(1.0):
                pass
        except KeyboardInterrupt:
            pass
        console.print("[yellow]Shutting down...[/yellow]")
    console.print("[green]Stopped[/green]")


projects_app = typer.Typer(help="Manage projects")
app.add_typer(projects_app, name="projects")


@projects_app.command("add")
def projects_add(
    name: Annotated[str, typer.Argument(help="Display name")],
    slug: Annotated[str, typer.Argument(help="Unique URL-safe identifier")],
    bundle_id_ios: Annotated[
        str | None, typer.Option("--ios-bundle", help="iOS bundle identifier")
    ] = None,
    bundle_id_android: Annotated[
        str | None, typer.Option("--android-package", help="Android application id")
    ] = None,
    source_path: Annotated[
        str | None, typer.Option("--source", help="Source tree used by validation")
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Register a project."""
    from sqlalchemy.exc import IntegrityError

    from release_orchestrator.db import get_session
    from release_orchestrator.projects.service import create_project

    factory = _session_factory(get_settings())
    try:
        with get_session(factory) as session:
            project = create_project(
                session,
                name=name,
                slug=slug,
                bundle_id_ios=bundle_id_ios,
                bundle_id_android=bundle_id_android,
                source_path=source_path,
            )
            project_id = project.id
    except IntegrityError:
        _fail(f"Project slug already taken: {slug}", "project_exists", json_output)

    if json_output:
        _print_json({"id": project_id, "name": name, "slug": slug})
    else:
        console.print(f"[green]✓ Registered project {name} ({project_id})[/green]")


@projects_app.command("list")
def projects_list(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List registered projects."""
    from release_orchestrator.db import get_session
    from release_orchestrator.projects.service import list_projects

    factory = _session_factory(get_settings())
    with get_session(factory) as session:
        rows = [
            {
                "id": p.id,
                "name": p.name,
                "slug": p.slug,
                "provider_project_id": p.provider_project_id,
            }
            for p in list_projects(session)
        ]

    if json_output:
        _print_json(rows)
        return
    if not rows:
        console.print("[yellow]No projects found[/yellow]")
        return
    table = Table(title=f"{len(rows)} project(s)")
    for column in ("ID", "Name", "Slug", "Provider ID"):
        table.add_column(column)
    for row in rows:
        table.add_row(row["id"], row["name"], row["slug"], row["provider_project_id"] or "-")
    console.print(table)


builds_app = typer.Typer(help="Inspect and manage builds")
app.add_typer(builds_app, name="builds")


@builds_app.command("list")
def builds_list(
    project_id: Annotated[
        str | None,
        typer.Option("--project", "-p", help="Filter by project ID"),
    ] = None,
    platform: Annotated[
        str | None,
        typer.Option("--platform", help="Filter by platform (ios, android)"),
    ] = None,
    status: Annotated[
        str | None,
        typer.Option("--status", "-s", help="Filter by status"),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-n", min=1, max=100, help="Page size"),
    ] = 20,
    offset: Annotated[
        int,
        typer.Option("--offset", min=0, help="Rows to skip"),
    ] = 0,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List builds, newest first."""
    from release_orchestrator.builds.service import list_builds
    from release_orchestrator.db import get_session
    from release_orchestrator.types import BuildStatus, Platform

    try:
        platform_filter = Platform(platform) if platform else None
        status_filter = BuildStatus(status) if status else None
    except ValueError as e:
        _fail(str(e), "invalid_filter", json_output)

    factory = _session_factory(get_settings())
    with get_session(factory) as session:
        builds, total = list_builds(
            session,
            project_id=project_id,
            platform=platform_filter,
            status=status_filter,
            limit=limit,
            offset=offset,
        )
        rows = [b.to_dict() for b in builds]

    if json_output:
        _print_json({"items": rows, "total": total, "limit": limit, "offset": offset})
        return
    if not rows:
        console.print("[yellow]No builds found[/yellow]")
        return
    table = Table(title=f"Builds {offset + 1}-{offset + len(rows)} of {total}")
    for column in ("ID", "Platform", "Version", "Profile", "Status", "Created"):
        table.add_column(column)
    for row in rows:
        color = STATUS_COLORS.get(row["status"], "white")
        table.add_row(
            row["id"],
            row["platform"],
            str(row["version"]),
            row["profile"],
            f"[{color}]{row['status']}[/{color}]",
            row["created_at"] or "",
        )
    console.print(table)


@builds_app.command("show")
def builds_show(
    build_id: Annotated[str, typer.Argument(help="Build ID")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show a build."""
    from release_orchestrator.builds.service import BuildNotFoundError, get_build
    from release_orchestrator.db import get_session

    factory = _session_factory(get_settings())
    try:
        with get_session(factory) as session:
            data = get_build(session, build_id).to_dict()
    except BuildNotFoundError as e:
        _fail(str(e), e.code, json_output)

    if json_output:
        _print_json(data)
        return
    color = STATUS_COLORS.get(str(data["status"]), "white")
    console.print(f"[bold]Build {data['id']}[/bold]")
    console.print(f"  Status:     [{color}]{data['status']}[/{color}]")
    console.print(f"  Platform:   {data['platform']} ({data['profile']})")
    console.print(f"  Version:    {data['version']}")
    console.print(f"  Provider:   {data['external_build_id'] or '-'}")
    console.print(f"  Artifact:   {data['artifact_ref'] or '-'}")
    if data["error_summary"]:
        console.print(f"  Error:      {data['error_summary']}", markup=False)


@builds_app.command("cancel")
def builds_cancel(
    build_id: Annotated[str, typer.Argument(help="Build ID")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Cancel a queued or building build."""
    from release_orchestrator.builds.service import BuildNotFoundError, InvalidStateError

    with _runtime() as runtime:
        try:
            build = runtime.builds.cancel_build(build_id)
        except (BuildNotFoundError, InvalidStateError) as e:
            _fail(str(e), e.code, json_output)

    if json_output:
        _print_json(build.to_dict())
    else:
        console.print(f"[green]✓ Build {build_id} cancelled[/green]")


channels_app = typer.Typer(help="Manage OTA channels")
app.add_typer(channels_app, name="channels")


@channels_app.command("list")
def channels_list(
    project_id: Annotated[str, typer.Argument(help="Project ID")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List a project's channels."""
    with _runtime() as runtime:
        rows = [c.to_dict() for c in runtime.ota.list_channels(project_id)]

    if json_output:
        _print_json(rows)
        return
    if not rows:
        console.print("[yellow]No channels found[/yellow]")
        return
    for row in rows:
        marker = " [green](default)[/green]" if row["is_default"] else ""
        console.print(f"  [bold]{row['name']}[/bold]{marker}")
        console.print(f"    ID: {row['id']}")
        console.print(f"    Branch: {row['branch_ref']}")
        if row["runtime_version"]:
            console.print(f"    Runtime: {row['runtime_version']}")


ota_app = typer.Typer(help="Publish and manage OTA updates")
app.add_typer(ota_app, name="ota")


@ota_app.command("publish")
def ota_publish(
    channel_id: Annotated[str, typer.Argument(help="Channel ID")],
    message: Annotated[str, typer.Option("--message", "-m", help="Release note")],
    change_type: Annotated[
        str,
        typer.Option("--change-type", "-t", help="feature, fix, content or config"),
    ] = "fix",
    platform: Annotated[
        str,
        typer.Option("--platform", help="ios, android or all"),
    ] = "all",
    rollout: Annotated[
        int,
        typer.Option("--rollout", "-r", min=0, max=100, help="Rollout percentage"),
    ] = 100,
    runtime_version: Annotated[
        str | None,
        typer.Option("--runtime-version", help="Used if the channel pins none"),
    ] = None,
    no_rollback: Annotated[
        bool,
        typer.Option("--no-rollback", help="Forbid rolling this update back"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Publish an OTA update to a channel."""
    from release_orchestrator.ota.service import (
        ChannelNotFoundError,
        RuntimeVersionUnknownError,
    )
    from release_orchestrator.provider.client import (
        ProviderError,
        ProviderUnavailableError,
    )
    from release_orchestrator.types import ChangeType, UpdatePlatform

    try:
        change = ChangeType(change_type)
        target_platform = UpdatePlatform(platform)
    except ValueError as e:
        _fail(str(e), "invalid_option", json_output)

    with _runtime() as runtime:
        try:
            ota_update = runtime.ota.publish_update(
                channel_id,
                message,
                change,
                platform=target_platform,
                rollout_percent=rollout,
                runtime_version=runtime_version,
                can_rollback=not no_rollback,
            )
        except (
            ChannelNotFoundError,
            RuntimeVersionUnknownError,
            ProviderUnavailableError,
            ProviderError,
        ) as e:
            _fail(str(e), e.code, json_output)

    if json_output:
        _print_json(ota_update.to_dict())
    else:
        console.print(
            f"[green]✓ Published v{ota_update.version} ({ota_update.id}) "
            f"at {ota_update.rollout_percent}%[/green]"
        )


@ota_app.command("rollback")
def ota_rollback(
    update_id: Annotated[str, typer.Argument(help="Update to roll back")],
    target: Annotated[
        str | None,
        typer.Option("--to", help="Update to reactivate (default: previous version)"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Roll a channel back from an update."""
    from release_orchestrator.ota.service import (
        NoPreviousVersionError,
        NotRollbackableError,
        UpdateNotFoundError,
        UpdateStateError,
    )

    with _runtime() as runtime:
        try:
            restored = runtime.ota.rollback_update(update_id, target)
        except (
            UpdateNotFoundError,
            NotRollbackableError,
            NoPreviousVersionError,
            UpdateStateError,
        ) as e:
            _fail(str(e), e.code, json_output)

    if json_output:
        _print_json(restored.to_dict())
    else:
        console.print(
            f"[green]✓ Rolled back to v{restored.version} ({restored.id})[/green]"
        )


@ota_app.command("status")
def ota_status(
    update_id: Annotated[str, typer.Argument(help="Update ID")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show an update with its metrics and frequent errors."""
    from release_orchestrator.ota.service import UpdateNotFoundError

    with _runtime() as runtime:
        try:
            report = runtime.ota.get_update_status(update_id)
        except UpdateNotFoundError as e:
            _fail(str(e), e.code, json_output)

    if json_output:
        _print_json(report)
        return
    update = report["update"]
    color = STATUS_COLORS.get(update["status"], "white")
    console.print(f"[bold]Update v{update['version']} ({update['id']})[/bold]")
    console.print(f"  Status:    [{color}]{update['status']}[/{color}]")
    console.print(f"  Rollout:   {update['rollout_percent']}%")
    console.print(f"  Downloads: {update['download_count']}")
    console.print(f"  Errors:    {update['error_count']}")
    if report["metrics"]:
        table = Table(title="Daily metrics")
        for column in ("Date", "Platform", "App version", "Success", "Failure", "Rate"):
            table.add_column(column)
        for row in report["metrics"]:
            table.add_row(
                row["date"],
                row["platform"],
                row["app_version"],
                str(row["success_count"]),
                str(row["failure_count"]),
                f"{row['success_rate']:.1%}",
            )
        console.print(table)
    for error in report["recent_errors"]:
        console.print(f"  {error['count']}x {error['message']}", markup=False)


jobs_app = typer.Typer(help="Inspect and maintain the job queue")
app.add_typer(jobs_app, name="jobs")


@jobs_app.command("stats")
def jobs_stats(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show job counts by status."""
    with _runtime() as runtime:
        counts = runtime.queue.stats()

    if json_output:
        _print_json(counts)
        return
    for status, count in counts.items():
        console.print(f"  {status:<10} {count}")


@jobs_app.command("purge")
def jobs_purge(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Delete completed and failed jobs past their retention."""
    with _runtime() as runtime:
        removed = runtime.queue.purge()

    if json_output:
        _print_json({"purged": removed})
    else:
        console.print(f"[green]✓ Purged {removed} job(s)[/green]")


if __name__ == "__main__":
    app()
