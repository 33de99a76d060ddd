"""CLI for the robium container lifecycle engine."""

import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import click
import httpx
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
import yaml

from . import __version__
from .client import ControlClient, ControlError
from .compiler import ConfigCompiler, PackageCatalog
from .config import load_settings
from .errors import EngineCoreError
from .log import setup_logging
from .workspace import load_workspace

console = Console()

STATE_STYLE = {
    "created": "dim",
    "starting": "cyan",
    "running": "green",
    "stopping": "yellow",
    "stopped": "dim",
    "failed": "red",
}


def _fail(message: str) -> None:
    console.print(f"[red]Error: {message}[/red]")
    sys.exit(1)


def _client(ctx: click.Context) -> ControlClient:
    return ControlClient(ctx.obj["url"], token=ctx.obj["token"])


def _when(ts: Optional[float]) -> str:
    if not ts:
        return "-"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def _print_record(record: dict) -> None:
    ident = record["identity"]
    state = record["state"]
    style = STATE_STYLE.get(state, "white")
    lines = [
        f"[bold]{ident['name']}[/bold]",
        f"state:     [{style}]{state}[/{style}]",
        f"handle:    {(record.get('handle') or '-')[:12]}",
        f"artifact:  {(record.get('artifact_hash') or '-')[:12]}",
        f"network:   {record['constraints'].get('network') or 'none'}",
        f"activity:  {_when(record.get('last_activity'))}",
    ]
    if record.get("last_error"):
        lines.append(f"error:     [red]{record['last_error']}[/red]")
    console.print(Panel("\n".join(lines), title=f"{ident['project_id']}/{ident['workspace_id']}/{ident['run_id']}"))


@click.group()
@click.version_option(version=__version__, prog_name="robium-engine")
@click.option("--url", envvar="ROBIUM_URL", default="http://127.0.0.1:8870", help="Control API URL")
@click.option("--token", envvar="ROBIUM_API_TOKEN", default=None, help="Control API token")
@click.pass_context
def cli(ctx: click.Context, url: str, token: Optional[str]):
    """Robium – container lifecycle & isolation engine."""
    ctx.ensure_object(dict)
    ctx.obj["url"] = url
    ctx.obj["token"] = token


@cli.command()
@click.argument("workspace_path", type=click.Path(exists=True))
@click.option("--output", "-o", type=click.Path(), default=None, help="Write Dockerfile and compose.yaml here")
@click.option("--catalog", type=click.Path(exists=True), default=None, help="Package catalog YAML")
def compile(workspace_path: str, output: Optional[str], catalog: Optional[str]):
    """Validate a workspace file and render its artifact locally."""
    try:
        spec = load_workspace(workspace_path)
        compiler = ConfigCompiler(catalog=PackageCatalog.from_yaml(Path(catalog)) if catalog else PackageCatalog())
        artifact = compiler.compile(spec)
    except (EngineCoreError, OSError, yaml.YAMLError) as e:
        _fail(str(e))
        return

    console.print(f"[green]✓ Compiled {artifact.image_tag}[/green]")
    console.print(f"  hash:     {artifact.content_hash}")
    console.print(f"  packages: {', '.join(artifact.packages) or '-'}")
    console.print(f"  launch:   {' -> '.join(s.name for s in artifact.launch)}")

    if output:
        out = Path(output)
        out.mkdir(parents=True, exist_ok=True)
        (out / "Dockerfile").write_text(artifact.dockerfile)
        (out / "compose.yaml").write_text(artifact.compose)
        console.print(f"[dim]Wrote {out / 'Dockerfile'} and {out / 'compose.yaml'}[/dim]")


@cli.command()
@click.option("--config", "-c", "config_path", type=click.Path(exists=True), default=None, help="Engine config YAML")
@click.option("--host", default=None, help="Bind address")
@click.option("--port", "-p", default=None, type=int, help="Port")
@click.option("--no-supervisor", is_flag=True, help="Don't run the background supervisor")
def serve(config_path: Optional[str], host: Optional[str], port: Optional[int], no_supervisor: bool):
    """Run the control API with a Docker CLI engine."""
    import uvicorn

    from .api import create_app
    from .engine import DockerCliEngine
    from .lifecycle import LifecycleController
    from .supervisor import Supervisor

    try:
        settings = load_settings(config_path)
    except (ValueError, OSError) as e:
        _fail(str(e))
        return
    setup_logging(settings.log_level, console=Console(stderr=True))

    engine = DockerCliEngine(
        binary=settings.docker_binary,
        timeout=settings.call_timeout_s,
        build_timeout=settings.build_timeout_s,
    )
    if not engine.is_available():
        console.print(f"[yellow]⚠ {settings.docker_binary} daemon not reachable; runs will fail until it is[/yellow]")

    controller = LifecycleController.from_settings(settings, engine)
    supervisor = None if no_supervisor else Supervisor(controller, settings)
    app = create_app(controller, settings, supervisor=supervisor)

    console.print(Panel(
        f"API:        http://{host or settings.api_host}:{port or settings.api_port}\n"
        f"Workspaces: {settings.workspace_root}\n"
        f"Supervisor: {'off' if supervisor is None else f'every {settings.supervisor_interval_s}s'}",
        title="robium-engine",
    ))

    if supervisor:
        supervisor.start()
    try:
        uvicorn.run(app, host=host or settings.api_host, port=port or settings.api_port)
    finally:
        if supervisor:
            supervisor.stop()
        controller.shutdown()


@cli.command()
@click.argument("workspace_path", type=click.Path(exists=True))
@click.option("--project", "-P", required=True, help="Project id")
@click.option("--workspace", "-W", required=True, help="Workspace id")
@click.option("--run-id", "-R", required=True, help="Run id")
@click.pass_context
def run(ctx: click.Context, workspace_path: str, project: str, workspace: str, run_id: str):
    """Start a run of a workspace file on the engine."""
    try:
        with open(workspace_path) as f:
            spec = yaml.safe_load(f) or {}
        with _client(ctx) as client:
            record = client.start(project, workspace, run_id, spec)
    except (ControlError, httpx.HTTPError, OSError, yaml.YAMLError) as e:
        _fail(str(e))
        return
    _print_record(record)


@cli.command()
@click.argument("project")
@click.argument("workspace")
@click.argument("run_id")
@click.pass_context
def stop(ctx: click.Context, project: str, workspace: str, run_id: str):
    """Stop a running run."""
    try:
        with _client(ctx) as client:
            record = client.stop(project, workspace, run_id)
    except (ControlError, httpx.HTTPError) as e:
        _fail(str(e))
        return
    _print_record(record)


@cli.command()
@click.argument("project")
@click.argument("workspace")
@click.argument("run_id")
@click.pass_context
def destroy(ctx: click.Context, project: str, workspace: str, run_id: str):
    """Remove a stopped or failed run and its resources."""
    try:
        with _client(ctx) as client:
            result = client.destroy(project, workspace, run_id)
    except (ControlError, httpx.HTTPError) as e:
        _fail(str(e))
        return
    console.print(f"[green]✓ Destroyed {result['identity']['name']}[/green]")


@cli.command()
@click.argument("project", required=False)
@click.argument("workspace", required=False)
@click.argument("run_id", required=False)
@click.option("--state", "-s", default=None, help="Filter by state (comma separated)")
@click.pass_context
def status(ctx: click.Context, project: Optional[str], workspace: Optional[str], run_id: Optional[str], state: Optional[str]):
    """Show one run, or a table of all runs."""
    try:
        with _client(ctx) as client:
            if project and workspace and run_id:
                record = client.status(project, workspace, run_id)
                if record is None:
                    _fail(f"no run {project}/{workspace}/{run_id}")
                    return
                _print_record(record)
                return
            records = client.list_runs(state=state, project_id=project)
    except (ControlError, httpx.HTTPError) as e:
        _fail(str(e))
        return

    table = Table(title="Runs")
    table.add_column("Project", style="cyan")
    table.add_column("Workspace")
    table.add_column("Run")
    table.add_column("State")
    table.add_column("Network")
    table.add_column("Last activity")

    for record in records:
        ident = record["identity"]
        style = STATE_STYLE.get(record["state"], "white")
        table.add_row(
            ident["project_id"],
            ident["workspace_id"],
            ident["run_id"],
            f"[{style}]{record['state']}[/{style}]",
            record["constraints"].get("network") or "none",
            _when(record.get("last_activity")),
        )
    console.print(table)


@cli.command()
@click.pass_context
def sweep(ctx: click.Context):
    """Run one supervisor pass now."""
    try:
        with _client(ctx) as client:
            report = client.sweep()
    except (ControlError, httpx.HTTPError) as e:
        _fail(str(e))
        return

    for key, label, style in (
        ("failed", "Marked failed", "red"),
        ("reaped", "Reclaimed idle", "yellow"),
        ("orphans", "Removed orphans", "cyan"),
    ):
        for name in report.get(key, []):
            console.print(f"[{style}]{label}:[/{style}] {name}")
    for error in report.get("errors", []):
        console.print(f"[yellow]⚠ {error}[/yellow]")
    if not any(report.get(k) for k in ("failed", "reaped", "orphans", "errors")):
        console.print("[green]Nothing to do[/green]")


def main():
    cli()


if __name__ == "__main__":
    main()
